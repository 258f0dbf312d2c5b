"""Check-in ledger: the only writer of UserLivenessProfile rows.

Every profile write is a read-modify-write with a compare-and-swap on
``version``. The read happens outside the write lock; the CAS and its side
effects (alert changes, audit entries) commit in one transaction. A lost
race re-reads and retries up to ``max_retries`` times, then raises
ConcurrencyConflict.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from vigil.config import settings

from .errors import ConcurrencyConflict, ProfileNotFound, ValidationError
from .models import (
    SYSTEM_ACTOR,
    Alert,
    AlertStatus,
    AuditEntry,
    Cadence,
    Clock,
    ReviewStatus,
    UserLivenessProfile,
    utcnow,
)
from .states import check_transition
from .store import LivenessStore

logger = logging.getLogger(__name__)

CHECKED_IN_NOTE = "Closed automatically: user checked in"

# (conn, before, after, now) -> None, runs inside the CAS transaction
SideEffect = Callable[[sqlite3.Connection, UserLivenessProfile, UserLivenessProfile, datetime], None]


def _settings_label(profile: UserLivenessProfile) -> str:
    return (
        f"cadence={profile.cadence},threshold={profile.threshold},"
        f"escalation={'on' if profile.escalation_enabled else 'off'}"
    )


def coerce_cadence(value: Cadence | str | None) -> Cadence:
    if isinstance(value, Cadence):
        return value
    return Cadence.parse(value)


def validate_threshold(threshold: int) -> int:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold <= 0:
        raise ValidationError(f"Threshold must be a positive integer, got {threshold!r}")
    return threshold


class CheckinLedger:
    """Per-user check-in records with optimistic-concurrency writes."""

    def __init__(
        self,
        store: LivenessStore,
        clock: Clock = utcnow,
        max_retries: int | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_retries = max_retries or settings.ledger_max_retries

    # -- reads -----------------------------------------------------------------

    def get(self, user_id: str) -> UserLivenessProfile:
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        return profile

    # -- writes ----------------------------------------------------------------

    def register(
        self,
        user_id: str,
        cadence: Cadence | str | None = None,
        threshold: int | None = None,
        escalation_enabled: bool = True,
    ) -> UserLivenessProfile:
        """Create the profile for a newly registered user.

        Registration is idempotent: an existing profile is returned unchanged.
        """
        now = self.clock()
        profile = UserLivenessProfile(
            user_id=user_id,
            cadence=coerce_cadence(cadence if cadence is not None else settings.default_cadence),
            last_checkin=now,
            threshold=validate_threshold(threshold if threshold is not None else settings.default_threshold),
            escalation_enabled=escalation_enabled,
        )
        profile.validate()

        with self.store.transaction() as conn:
            created = self.store.insert_profile(conn, profile, now)
            if created:
                self.store.append_audit(conn, AuditEntry(
                    "profile", user_id, None, _settings_label(profile), user_id, now,
                ))
        if not created:
            logger.debug("Profile for %s already exists", user_id)
            return self.get(user_id)
        logger.info("Registered liveness profile for %s (%s)", user_id, _settings_label(profile))
        return profile

    def confirm(self, user_id: str) -> UserLivenessProfile:
        """Record a well-being check-in.

        Resets the missed counter together with ``last_checkin``, closes any
        open alert as responded and rejects a still-pending review on the
        system's behalf.
        """

        def mutate(p: UserLivenessProfile, now: datetime) -> bool:
            p.missed_count = 0
            p.last_checkin = now
            return True

        def effects(conn: sqlite3.Connection, before: UserLivenessProfile,
                    after: UserLivenessProfile, now: datetime) -> None:
            self.store.append_audit(conn, AuditEntry(
                "profile", user_id, f"missed:{before.missed_count}", "missed:0", user_id, now,
            ))
            alert = self.store.get_open_alert(user_id, conn)
            if alert is not None:
                check_transition("alert", alert.status, AlertStatus.RESPONDED)
                if self.store.set_alert_status(conn, alert.id, alert.status, AlertStatus.RESPONDED, now):
                    self.store.append_audit(conn, AuditEntry(
                        "alert", alert.id, alert.status.value, AlertStatus.RESPONDED.value, user_id, now,
                    ))
            # The pending review is moot once the user answers.
            review = self.store.get_pending_review(user_id, conn)
            if review is not None:
                check_transition("review", review.status, ReviewStatus.REJECTED)
                if self.store.decide_review(
                    conn, review.id, ReviewStatus.REJECTED, SYSTEM_ACTOR, CHECKED_IN_NOTE, now,
                ):
                    self.store.append_audit(conn, AuditEntry(
                        "review", review.id, review.status.value, ReviewStatus.REJECTED.value,
                        SYSTEM_ACTOR, now,
                    ))
                    logger.info("Review %s for %s closed: user checked in", review.id, user_id)

        profile, _ = self._write(user_id, mutate, effects)
        logger.info("Check-in confirmed for %s", user_id)
        return profile

    def update_settings(
        self,
        user_id: str,
        cadence: Cadence | str | None = None,
        threshold: int | None = None,
        escalation_enabled: bool | None = None,
        actor: str | None = None,
        expected_version: int | None = None,
    ) -> UserLivenessProfile:
        """Change cadence, threshold or escalation. Validated before any write."""
        new_cadence = coerce_cadence(cadence) if cadence is not None else None
        new_threshold = validate_threshold(threshold) if threshold is not None else None

        def mutate(p: UserLivenessProfile, now: datetime) -> bool:
            if new_cadence is not None:
                p.cadence = new_cadence
            if new_threshold is not None:
                p.threshold = new_threshold
            if escalation_enabled is not None:
                p.escalation_enabled = escalation_enabled
            p.validate()
            return True

        def effects(conn: sqlite3.Connection, before: UserLivenessProfile,
                    after: UserLivenessProfile, now: datetime) -> None:
            self.store.append_audit(conn, AuditEntry(
                "profile", user_id, _settings_label(before), _settings_label(after),
                actor or user_id, now,
            ))

        profile, _ = self._write(user_id, mutate, effects, expected_version=expected_version)
        return profile

    def set_active(self, user_id: str, active: bool, actor: str) -> UserLivenessProfile:
        def mutate(p: UserLivenessProfile, now: datetime) -> bool:
            if p.active == active:
                return False
            p.active = active
            return True

        def effects(conn: sqlite3.Connection, before: UserLivenessProfile,
                    after: UserLivenessProfile, now: datetime) -> None:
            self.store.append_audit(conn, AuditEntry(
                "profile", user_id,
                "active" if before.active else "inactive",
                "active" if after.active else "inactive",
                actor, now,
            ))

        profile, _ = self._write(user_id, mutate, effects)
        return profile

    def advance(self, user_id: str, now: datetime) -> tuple[UserLivenessProfile, bool]:
        """Count one missed period if one has elapsed, opening a pending alert.

        Returns the current profile and whether the counter moved. At most one
        increment per call, whatever the number of elapsed periods.
        """

        def mutate(p: UserLivenessProfile, _now: datetime) -> bool:
            if not p.active or not p.should_advance(now):
                return False
            p.missed_count += 1
            return True

        def effects(conn: sqlite3.Connection, before: UserLivenessProfile,
                    after: UserLivenessProfile, _now: datetime) -> None:
            self.store.append_audit(conn, AuditEntry(
                "profile", user_id, f"missed:{before.missed_count}", f"missed:{after.missed_count}",
                SYSTEM_ACTOR, now,
            ))
            if self.store.get_open_alert(user_id, conn) is None:
                check_transition("alert", None, AlertStatus.PENDING)
                alert = Alert(user_id=user_id, status=AlertStatus.PENDING, opened_at=now)
                if self.store.open_alert(conn, alert):
                    self.store.append_audit(conn, AuditEntry(
                        "alert", alert.id, None, AlertStatus.PENDING.value, SYSTEM_ACTOR, now,
                    ))

        return self._write(user_id, mutate, effects, now=now)

    # -- CAS loop --------------------------------------------------------------

    def _write(
        self,
        user_id: str,
        mutate: Callable[[UserLivenessProfile, datetime], bool],
        effects: SideEffect | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> tuple[UserLivenessProfile, bool]:
        """Read, mutate a copy, compare-and-swap. Returns (profile, written)."""
        for attempt in range(1, self.max_retries + 1):
            before = self.get(user_id)
            if expected_version is not None and before.version != expected_version:
                raise ConcurrencyConflict(user_id, attempt)

            ts = now or self.clock()
            after = replace(before)
            if not mutate(after, ts):
                return before, False

            with self.store.transaction() as conn:
                if self.store.compare_and_swap_profile(conn, after, before.version, ts):
                    if effects is not None:
                        effects(conn, before, after, ts)
                    return after, True

            logger.debug(
                "Version conflict writing profile %s (attempt %d/%d)",
                user_id, attempt, self.max_retries,
            )
            if expected_version is not None:
                raise ConcurrencyConflict(user_id, attempt)

        logger.warning("Giving up on profile %s after %d conflicting writes", user_id, self.max_retries)
        raise ConcurrencyConflict(user_id, self.max_retries)
