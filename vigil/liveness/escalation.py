"""Escalation gate and admin review workflow.

The gate turns a pending alert into an escalated one once the missed counter
reaches the user's threshold, and opens exactly one pending review. Reviews
are decided by administrators; approval hands the review to the dispatcher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .errors import InvalidTransition, ReviewNotFound, ValidationError
from .models import (
    SYSTEM_ACTOR,
    AdminReview,
    AlertStatus,
    AuditEntry,
    Clock,
    Decision,
    ReviewStatus,
    UserLivenessProfile,
    utcnow,
)
from .states import check_transition
from .store import LivenessStore

logger = logging.getLogger(__name__)


class EscalationGate:
    """Decides, after each counter advance, whether a human must review."""

    def __init__(self, store: LivenessStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    @staticmethod
    def threshold_crossed(profile: UserLivenessProfile) -> bool:
        return profile.escalation_enabled and profile.missed_count >= profile.threshold

    def maybe_escalate(self, profile: UserLivenessProfile) -> AdminReview | None:
        """Escalate the user's open alert and open a review, if due.

        Returns the newly created review, or None when nothing changed.
        Safe to call repeatedly and concurrently for the same user.
        """
        if not self.threshold_crossed(profile):
            return None

        now = self.clock()
        with self.store.transaction() as conn:
            # Re-check under the write lock; the user may have confirmed since.
            current = self.store.get_profile(profile.user_id, conn)
            if current is None or not self.threshold_crossed(current):
                return None
            alert = self.store.get_open_alert(profile.user_id, conn)
            if alert is None or alert.status is AlertStatus.ESCALATED:
                return None

            check_transition("alert", alert.status, AlertStatus.ESCALATED)
            self.store.set_alert_status(conn, alert.id, alert.status, AlertStatus.ESCALATED)
            self.store.append_audit(conn, AuditEntry(
                "alert", alert.id, alert.status.value, AlertStatus.ESCALATED.value, SYSTEM_ACTOR, now,
            ))

            review = AdminReview(user_id=profile.user_id, created_at=now)
            if not self.store.create_review(conn, review):
                logger.debug("Pending review already open for %s", profile.user_id)
                return None
            self.store.append_audit(conn, AuditEntry(
                "review", review.id, None, ReviewStatus.PENDING.value, SYSTEM_ACTOR, now,
            ))

        logger.warning(
            "Escalated %s after %d missed check-ins (threshold %d); review %s opened",
            profile.user_id, current.missed_count, current.threshold, review.id,
        )
        return review


class ReviewWorkflow:
    """Pending admin reviews and their decisions."""

    def __init__(
        self,
        store: LivenessStore,
        clock: Clock = utcnow,
        on_approved: Callable[[AdminReview], Any] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.on_approved = on_approved  # hands approved reviews to the dispatcher

    def get(self, review_id: str) -> AdminReview:
        review = self.store.get_review(review_id)
        if review is None:
            raise ReviewNotFound(review_id)
        return review

    def list_pending(self) -> list[AdminReview]:
        return self.store.list_reviews(ReviewStatus.PENDING)

    def decide(
        self,
        review_id: str,
        decision: Decision | str,
        reviewer_id: str,
        notes: str | None = None,
    ) -> tuple[AdminReview, Any]:
        """Approve or reject a pending review.

        Rejection closes only the review: the alert stays escalated and the
        counter is untouched. Returns the decided review and whatever the
        approval hook returned (None for rejections).
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}") from None
        status = ReviewStatus(decision.value)
        now = self.clock()

        with self.store.transaction() as conn:
            review = self.store.get_review(review_id, conn)
            if review is None:
                raise ReviewNotFound(review_id)
            check_transition("review", review.status, status)
            if not self.store.decide_review(conn, review_id, status, reviewer_id, notes, now):
                raise InvalidTransition("review", review.status.value, status.value)
            self.store.append_audit(conn, AuditEntry(
                "review", review_id, review.status.value, status.value, reviewer_id, now,
            ))

        review.status = status
        review.reviewer_id = reviewer_id
        review.notes = notes
        review.decided_at = now
        logger.info("Review %s for %s %s by %s", review_id, review.user_id, status.value, reviewer_id)

        handle = None
        if status is ReviewStatus.APPROVED and self.on_approved is not None:
            handle = self.on_approved(review)
        return review, handle

    def reopen(self, user_id: str, reviewer_id: str) -> AdminReview:
        """Open a new pending review for a user whose alert is still escalated."""
        now = self.clock()
        with self.store.transaction() as conn:
            alert = self.store.get_open_alert(user_id, conn)
            if alert is None or alert.status is not AlertStatus.ESCALATED:
                raise ValidationError(f"User {user_id} has no escalated alert to review")
            existing = self.store.get_pending_review(user_id, conn)
            if existing is not None:
                return existing
            review = AdminReview(user_id=user_id, created_at=now)
            self.store.create_review(conn, review)
            self.store.append_audit(conn, AuditEntry(
                "review", review.id, None, ReviewStatus.PENDING.value, reviewer_id, now,
            ))
        logger.info("Review %s reopened for %s by %s", review.id, user_id, reviewer_id)
        return review
