"""Nominee notification fan-out for approved reviews.

One NotificationAttempt per verified nominee. Deliveries run in parallel on a
bounded thread pool and retry independently with exponential backoff
(base * factor^(n-1), capped). An attempt that runs out of retries is marked
exhausted, audited and listed for manual follow-up. A review counts as
dispatched once every attempt is sent or exhausted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from vigil.config import settings
from vigil.nominees import Nominee, NomineeDirectory
from vigil.notifications import NotificationChannel, build_nominee_message

from .errors import DeliveryError, TransientError, ValidationError
from .models import (
    SYSTEM_ACTOR,
    AdminReview,
    AttemptStatus,
    AuditEntry,
    Clock,
    NotificationAttempt,
    ReviewStatus,
    utcnow,
)
from .states import check_transition
from .store import LivenessStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DispatchReport:
    """Outcome of one review's fan-out."""

    review_id: str
    user_id: str
    attempts: list[NotificationAttempt] = field(default_factory=list)

    @property
    def sent(self) -> list[NotificationAttempt]:
        return [a for a in self.attempts if a.status is AttemptStatus.SENT]

    @property
    def exhausted(self) -> list[NotificationAttempt]:
        return [a for a in self.attempts if a.status is AttemptStatus.EXHAUSTED]

    @property
    def complete(self) -> bool:
        return all(a.is_terminal for a in self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_id": self.review_id,
            "user_id": self.user_id,
            "complete": self.complete,
            "sent": len(self.sent),
            "exhausted": len(self.exhausted),
            "attempts": [a.to_dict() for a in self.attempts],
        }


class NotificationDispatcher:
    """Delivers approved-review notifications to every verified nominee."""

    def __init__(
        self,
        store: LivenessStore,
        directory: NomineeDirectory,
        channel: NotificationChannel,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_factor: float | None = None,
        backoff_max: float | None = None,
        concurrency: int | None = None,
        on_exhausted: Callable[[NotificationAttempt], Any] | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.channel = channel
        self.clock = clock
        self.sleep = sleep
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.dispatch_backoff_base
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.dispatch_backoff_factor
        self.backoff_max = backoff_max if backoff_max is not None else settings.dispatch_backoff_max
        self.concurrency = concurrency or settings.dispatch_concurrency
        self.on_exhausted = on_exhausted  # e.g. operator alert
        self._delivery_pool = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="vigil-deliver",
        )
        # Separate pool so a review waiting on its deliveries never starves them.
        self._review_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="vigil-dispatch")
        self._inflight: dict[str, Future[DispatchReport]] = {}
        self._lock = threading.Lock()

    # -- public API ------------------------------------------------------------

    def backoff_delay(self, attempt_count: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt_count``."""
        return min(self.backoff_base * (self.backoff_factor ** (attempt_count - 1)), self.backoff_max)

    def submit(self, review: AdminReview) -> Future[DispatchReport]:
        """Queue a review for dispatch in the background.

        A review already being dispatched returns the existing future.
        """
        with self._lock:
            existing = self._inflight.get(review.id)
            if existing is not None and not existing.done():
                return existing
            future = self._review_pool.submit(self.dispatch, review)
            self._inflight[review.id] = future

        def _finished(f: Future[DispatchReport]) -> None:
            with self._lock:
                if self._inflight.get(review.id) is f:
                    del self._inflight[review.id]
            exc = f.exception()
            if exc is not None:
                logger.error(
                    "Dispatch for review %s failed before completing: %s (resumed after the next sweep)",
                    review.id, exc, exc_info=exc,
                )

        future.add_done_callback(_finished)
        return future

    def dispatch(self, review: AdminReview) -> DispatchReport:
        """Fan out to every verified nominee and wait until all attempts settle."""
        if review.status is not ReviewStatus.APPROVED:
            raise ValidationError(f"Review {review.id} is {review.status.value}, not approved")

        nominees = self._retry_transient(
            f"nominee lookup for {review.user_id}",
            lambda: self.directory.list_verified_nominees(review.user_id),
        )
        if not nominees:
            logger.warning(
                "Review %s approved but user %s has no verified nominees, nothing to send",
                review.id, review.user_id,
            )
            self._retry_transient(f"dispatch mark for {review.id}", lambda: self._mark_dispatched(review))
            return DispatchReport(review_id=review.id, user_id=review.user_id)

        self._retry_transient(f"queueing attempts for {review.id}", lambda: self._queue_attempts(review, nominees))

        attempts = {a.nominee_id: a for a in self.store.list_attempts(review.id)}
        futures = [
            self._delivery_pool.submit(self._deliver_safely, review, nominee, attempts[nominee.nominee_id])
            for nominee in nominees
            if not attempts[nominee.nominee_id].is_terminal
        ]
        for f in futures:
            f.result()

        report = DispatchReport(
            review_id=review.id, user_id=review.user_id, attempts=self.store.list_attempts(review.id),
        )
        if report.complete:
            self._retry_transient(f"dispatch mark for {review.id}", lambda: self._mark_dispatched(review))
        logger.info(
            "Review %s dispatched: %d sent, %d exhausted of %d nominees",
            review.id, len(report.sent), len(report.exhausted), len(report.attempts),
        )
        return report

    def resume(self) -> list[Future[DispatchReport]]:
        """Re-queue approved reviews whose dispatch never completed."""
        pending = self.store.list_undispatched_approved()
        if pending:
            logger.info("Resuming %d incomplete dispatches", len(pending))
        return [self.submit(r) for r in pending]

    def followups(self) -> list[dict[str, Any]]:
        """Exhausted attempts that need a human to follow up."""
        return self.store.list_exhausted()

    def shutdown(self, wait: bool = True) -> None:
        self._review_pool.shutdown(wait=wait)
        self._delivery_pool.shutdown(wait=wait)

    # -- store access ----------------------------------------------------------

    def _retry_transient(self, what: str, fn: Callable[[], T]) -> T:
        """Run ``fn``, backing off on transient store errors up to ``max_attempts`` tries."""
        attempt = 1
        while True:
            try:
                return fn()
            except TransientError as e:
                if attempt >= self.max_attempts:
                    logger.error("Giving up on %s after %d attempts: %s", what, attempt, e)
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning("%s failed (attempt %d/%d): %s, retrying in %.1fs",
                               what, attempt, self.max_attempts, e, delay)
                self.sleep(delay)
                attempt += 1

    def _queue_attempts(self, review: AdminReview, nominees: list[Nominee]) -> None:
        now = self.clock()
        with self.store.transaction() as conn:
            for nominee in nominees:
                attempt = NotificationAttempt(review.id, nominee.nominee_id, updated_at=now)
                if self.store.create_attempt(conn, attempt):
                    self.store.append_audit(conn, AuditEntry(
                        "notification", attempt.id, None, AttemptStatus.QUEUED.value, SYSTEM_ACTOR, now,
                    ))

    # -- delivery --------------------------------------------------------------

    def _deliver_safely(self, review: AdminReview, nominee: Nominee, attempt: NotificationAttempt) -> None:
        try:
            self._deliver(review, nominee, attempt)
        except Exception as exc:
            logger.exception("Unexpected error delivering %s", attempt.id)
            if not attempt.is_terminal:
                self._record(attempt, AttemptStatus.EXHAUSTED, f"{type(exc).__name__}: {exc}")
                self._log_exhausted(attempt)

    def _deliver(self, review: AdminReview, nominee: Nominee, attempt: NotificationAttempt) -> None:
        message = build_nominee_message(review.id, review.user_id, nominee.full_name)

        while True:
            if attempt.attempt_count >= self.max_attempts:
                self._record(attempt, AttemptStatus.EXHAUSTED, attempt.last_error)
                self._log_exhausted(attempt)
                return

            attempt.attempt_count += 1
            try:
                self.channel.send(nominee.nominee_id, nominee.contact_info, message)
            except DeliveryError as e:
                if e.retryable and attempt.attempt_count < self.max_attempts:
                    self._record(attempt, AttemptStatus.FAILED, str(e))
                    delay = self.backoff_delay(attempt.attempt_count)
                    logger.warning(
                        "Delivery %s failed (attempt %d/%d): %s — retrying in %.1fs",
                        attempt.id, attempt.attempt_count, self.max_attempts, e, delay,
                    )
                    self.sleep(delay)
                    continue
                self._record(attempt, AttemptStatus.EXHAUSTED, str(e))
                self._log_exhausted(attempt)
                return

            self._record(attempt, AttemptStatus.SENT, None)
            logger.info("Delivered %s after %d attempt(s)", attempt.id, attempt.attempt_count)
            return

    def _record(self, attempt: NotificationAttempt, status: AttemptStatus, error: str | None) -> None:
        previous = attempt.status
        check_transition("notification", previous, status)
        now = self.clock()
        attempt.status = status
        attempt.last_error = error
        attempt.updated_at = now
        with self.store.transaction() as conn:
            self.store.update_attempt(conn, attempt)
            if previous is not status:
                self.store.append_audit(conn, AuditEntry(
                    "notification", attempt.id, previous.value, status.value, SYSTEM_ACTOR, now,
                ))

    def _mark_dispatched(self, review: AdminReview) -> None:
        now = self.clock()
        with self.store.transaction() as conn:
            if self.store.mark_dispatched(conn, review.id, now):
                self.store.append_audit(conn, AuditEntry(
                    "review", review.id, ReviewStatus.APPROVED.value, "dispatched", SYSTEM_ACTOR, now,
                ))
        review.dispatched_at = now

    def _log_exhausted(self, attempt: NotificationAttempt) -> None:
        logger.error(
            "Delivery %s exhausted after %d attempt(s): %s — needs manual follow-up",
            attempt.id, attempt.attempt_count, attempt.last_error,
        )
        if self.on_exhausted is not None:
            try:
                self.on_exhausted(attempt)
            except Exception:
                logger.exception("Follow-up callback error for %s", attempt.id)
