"""WellbeingService: the engine's public operations.

Wires the ledger, scanner, escalation gate, review workflow and dispatcher
around one store, and enforces who may call what. Identities come from the
auth gateway and are trusted as given; admin operations require
``Role.ADMIN`` with no exceptions.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from vigil.nominees import NomineeDirectory
from vigil.notifications import NotificationChannel

from .dispatcher import DispatchReport, NotificationDispatcher
from .errors import AdminRequired, VigilError
from .escalation import EscalationGate, ReviewWorkflow
from .ledger import CheckinLedger
from .models import (
    Actor,
    AdminReview,
    AuditEntry,
    Cadence,
    Clock,
    Decision,
    NotificationAttempt,
    UserLivenessProfile,
    to_iso,
    utcnow,
)
from .scanner import LivenessScanner, SweepReport
from .store import LivenessStore

logger = logging.getLogger(__name__)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        logger.warning("Rejected admin operation by non-admin %s", actor.id)
        raise AdminRequired(f"User {actor.id} is not an administrator")


@dataclass
class ReviewDecision:
    review: AdminReview
    dispatch: Future[DispatchReport] | None = None


class WellbeingService:
    """Facade over the check-in, escalation and notification components."""

    def __init__(
        self,
        store: LivenessStore,
        directory: NomineeDirectory,
        channel: NotificationChannel,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        on_escalation: Callable[[AdminReview], Any] | None = None,
        on_exhausted: Callable[[NotificationAttempt], Any] | None = None,
        **scanner_options: Any,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ledger = CheckinLedger(store, clock=clock)
        self.gate = EscalationGate(store, clock=clock)
        self.dispatcher = NotificationDispatcher(
            store, directory, channel, clock=clock, sleep=sleep, on_exhausted=on_exhausted,
        )
        self.reviews = ReviewWorkflow(store, clock=clock, on_approved=self.dispatcher.submit)
        self.scanner = LivenessScanner(
            store, self.ledger, self.gate, clock=clock, on_escalation=on_escalation,
            after_sweep=self.resume_dispatches, **scanner_options,
        )

    # -- user operations -------------------------------------------------------

    def register_profile(
        self,
        user_id: str,
        cadence: Cadence | str | None = None,
        threshold: int | None = None,
        escalation_enabled: bool = True,
    ) -> UserLivenessProfile:
        return self.ledger.register(user_id, cadence, threshold, escalation_enabled)

    def confirm_checkin(self, user_id: str) -> UserLivenessProfile:
        return self.ledger.confirm(user_id)

    def update_settings(
        self,
        user_id: str,
        cadence: Cadence | str | None = None,
        threshold: int | None = None,
        escalation_enabled: bool | None = None,
        expected_version: int | None = None,
    ) -> UserLivenessProfile:
        return self.ledger.update_settings(
            user_id, cadence, threshold, escalation_enabled,
            actor=user_id, expected_version=expected_version,
        )

    def get_profile(self, user_id: str) -> dict[str, Any]:
        """Counters and alert state for dashboards."""
        profile = self.ledger.get(user_id)
        alert = self.store.get_latest_alert(user_id)
        pending = self.store.get_pending_review(user_id)
        data = profile.to_dict()
        data["next_due"] = to_iso(profile.next_due())
        data["overdue"] = profile.is_overdue(self.clock())
        data["alert"] = alert.to_dict() if alert else None
        data["review_pending"] = pending is not None
        return data

    # -- admin operations ------------------------------------------------------

    def set_active(self, user_id: str, active: bool, actor: Actor) -> UserLivenessProfile:
        require_admin(actor)
        return self.ledger.set_active(user_id, active, actor.id)

    def list_pending_reviews(self, actor: Actor) -> list[AdminReview]:
        require_admin(actor)
        return self.reviews.list_pending()

    def decide_review(
        self,
        review_id: str,
        decision: Decision | str,
        actor: Actor,
        notes: str | None = None,
    ) -> ReviewDecision:
        require_admin(actor)
        review, handle = self.reviews.decide(review_id, decision, actor.id, notes)
        return ReviewDecision(review=review, dispatch=handle)

    def reopen_review(self, user_id: str, actor: Actor) -> AdminReview:
        require_admin(actor)
        return self.reviews.reopen(user_id, actor.id)

    def list_followups(self, actor: Actor) -> list[dict[str, Any]]:
        require_admin(actor)
        return self.dispatcher.followups()

    def list_attempts(self, review_id: str, actor: Actor) -> list[NotificationAttempt]:
        require_admin(actor)
        self.reviews.get(review_id)
        return self.store.list_attempts(review_id)

    def audit_log(
        self,
        actor: Actor,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        require_admin(actor)
        return self.store.list_audit(entity_type, entity_id, limit)

    def stats(self, actor: Actor) -> dict[str, int]:
        require_admin(actor)
        return self.store.counts()

    def run_sweep(self, actor: Actor) -> SweepReport:
        require_admin(actor)
        return self.scanner.sweep()

    # -- lifecycle -------------------------------------------------------------

    def resume_dispatches(self) -> list[Future[DispatchReport]]:
        """Pick up approved reviews whose dispatch did not finish."""
        try:
            return self.dispatcher.resume()
        except VigilError:
            logger.exception("Could not resume pending dispatches")
            return []

    def shutdown(self) -> None:
        self.scanner.close()
        self.dispatcher.shutdown(wait=False)
