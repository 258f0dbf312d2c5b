"""Allowed state transitions for alerts, reviews and notification attempts.

``None`` stands for "no row yet". Terminal states map to an empty set.
"""

from __future__ import annotations

from .errors import InvalidTransition
from .models import AlertStatus, AttemptStatus, ReviewStatus

ALERT_TRANSITIONS: dict[AlertStatus | None, frozenset[AlertStatus]] = {
    None: frozenset({AlertStatus.PENDING}),
    AlertStatus.PENDING: frozenset({AlertStatus.RESPONDED, AlertStatus.ESCALATED}),
    # Escalation never blocks a later confirmation.
    AlertStatus.ESCALATED: frozenset({AlertStatus.RESPONDED}),
    AlertStatus.RESPONDED: frozenset(),
}

REVIEW_TRANSITIONS: dict[ReviewStatus | None, frozenset[ReviewStatus]] = {
    None: frozenset({ReviewStatus.PENDING}),
    ReviewStatus.PENDING: frozenset({ReviewStatus.APPROVED, ReviewStatus.REJECTED}),
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.REJECTED: frozenset(),
}

ATTEMPT_TRANSITIONS: dict[AttemptStatus | None, frozenset[AttemptStatus]] = {
    None: frozenset({AttemptStatus.QUEUED}),
    AttemptStatus.QUEUED: frozenset({AttemptStatus.SENT, AttemptStatus.FAILED, AttemptStatus.EXHAUSTED}),
    AttemptStatus.FAILED: frozenset({AttemptStatus.SENT, AttemptStatus.FAILED, AttemptStatus.EXHAUSTED}),
    AttemptStatus.SENT: frozenset(),
    AttemptStatus.EXHAUSTED: frozenset(),
}

_TABLES = {
    "alert": ALERT_TRANSITIONS,
    "review": REVIEW_TRANSITIONS,
    "notification": ATTEMPT_TRANSITIONS,
}


def can_transition(entity: str, from_state, to_state) -> bool:
    return to_state in _TABLES[entity].get(from_state, frozenset())


def check_transition(entity: str, from_state, to_state) -> None:
    """Raise InvalidTransition unless ``from_state -> to_state`` is allowed."""
    if not can_transition(entity, from_state, to_state):
        raise InvalidTransition(
            entity,
            from_state.value if from_state is not None else None,
            to_state.value,
        )
