"""Liveness scanner: the recurring sweep over all active profiles.

Each sweep advances the missed counter of every overdue user by at most one
and asks the escalation gate whether to escalate. Per-user work runs on a
small thread pool with a per-item timeout; a user that fails or times out is
logged and picked up again next sweep. A pool whose workers are all stuck on
timed-out advances is replaced. A database lease keeps a single instance
sweeping at a time, and the holder runs the after-sweep hook (resuming
stalled dispatches).

``sweep(now)`` is synchronous and takes an explicit time so tests can drive
it without waiting. ``start()``/``stop()`` run it on an asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from vigil.config import settings

from .errors import ValidationError
from .escalation import EscalationGate
from .ledger import CheckinLedger
from .models import AdminReview, Clock, UserLivenessProfile, to_iso, utcnow
from .store import LivenessStore

logger = logging.getLogger(__name__)

LEASE_NAME = "liveness-sweep"


@dataclass
class SweepReport:
    """What one sweep did."""

    started_at: datetime
    finished_at: datetime | None = None
    scanned: int = 0
    skipped: int = 0
    advanced: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    skipped_lease: bool = False
    deadline_hit: bool = False
    resumed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "scanned": self.scanned,
            "skipped": self.skipped,
            "advanced": self.advanced,
            "escalated": self.escalated,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "excluded": self.excluded,
            "skipped_lease": self.skipped_lease,
            "deadline_hit": self.deadline_hit,
            "resumed": self.resumed,
        }


class LivenessScanner:
    """Finds overdue users and advances their counters.

    Lifecycle:
        scanner = LivenessScanner(store, ledger, gate)
        await scanner.start()
        ...
        await scanner.stop()
    """

    def __init__(
        self,
        store: LivenessStore,
        ledger: CheckinLedger,
        gate: EscalationGate,
        clock: Clock = utcnow,
        interval: float | None = None,
        item_timeout: float | None = None,
        deadline: float | None = None,
        workers: int | None = None,
        instance_id: str | None = None,
        lease_seconds: float | None = None,
        on_escalation: Callable[[AdminReview], Any] | None = None,
        after_sweep: Callable[[], list[Any]] | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.gate = gate
        self.clock = clock
        self.interval = interval if interval is not None else settings.sweep_interval_seconds
        self.item_timeout = item_timeout if item_timeout is not None else settings.sweep_item_timeout_seconds
        self.deadline = deadline if deadline is not None else settings.sweep_deadline_seconds
        self.instance_id = instance_id or settings.instance_id
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.sweep_lease_seconds
        self.on_escalation = on_escalation  # e.g. admin notifier
        self.after_sweep = after_sweep  # e.g. resume stalled dispatches
        self.workers = workers or settings.sweep_workers
        self._executor: ThreadPoolExecutor | None = None
        # Timed-out advances still occupying a worker thread
        self._stuck: set[Future[Any]] = set()
        self._sweep_lock = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.last_report: SweepReport | None = None

    # -- sweep -----------------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep at ``now`` (defaults to the injected clock)."""
        now = now or self.clock()
        report = SweepReport(started_at=now)

        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Sweep already running in this process — skipping")
            report.skipped_lease = True
            return report
        try:
            if not self.store.acquire_lease(LEASE_NAME, self.instance_id, self.lease_seconds, now):
                logger.info("Another instance holds the sweep lease — skipping")
                report.skipped_lease = True
                return report
            self._sweep_profiles(now, report)
        finally:
            self._sweep_lock.release()

        if self.after_sweep is not None:
            try:
                report.resumed = len(self.after_sweep())
            except Exception:
                logger.exception("After-sweep hook failed")
        report.finished_at = self.clock()
        self.last_report = report
        logger.info(
            "Sweep done: scanned=%d advanced=%d escalated=%d failed=%d timed_out=%d excluded=%d",
            report.scanned, len(report.advanced), len(report.escalated),
            len(report.failed), len(report.timed_out), len(report.excluded),
        )
        return report

    def _sweep_profiles(self, now: datetime, report: SweepReport) -> None:
        deadline = time.monotonic() + self.deadline

        for row in self.store.list_profile_rows(active_only=True):
            report.scanned += 1
            user_id = row.get("user_id", "?")
            try:
                profile = UserLivenessProfile.from_row(row)
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                logger.error("Excluding malformed profile %s from sweep: %s", user_id, e)
                report.excluded.append(user_id)
                continue

            if not profile.should_advance(now):
                report.skipped += 1
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Sweep deadline reached after %d profiles; the rest wait for the next sweep",
                    report.scanned - 1,
                )
                report.deadline_hit = True
                return

            future = self._pool().submit(self._advance_one, user_id, now)
            try:
                advanced, review = future.result(timeout=min(self.item_timeout, remaining))
            except FutureTimeout:
                logger.warning("Advance for %s timed out — retrying next sweep", user_id)
                report.timed_out.append(user_id)
                self._stuck.add(future)
                continue
            except Exception as e:
                logger.warning("Advance for %s failed — retrying next sweep: %s", user_id, e)
                report.failed.append(user_id)
                continue

            if advanced:
                report.advanced.append(user_id)
            else:
                report.skipped += 1
            if review is not None:
                report.escalated.append(user_id)
                self._notify_escalation(review)

    def _pool(self) -> ThreadPoolExecutor:
        """Worker pool, replaced once every thread is stuck on a timed-out advance."""
        self._stuck = {f for f in self._stuck if not f.done()}
        if self._executor is not None and len(self._stuck) >= self.workers:
            logger.warning("All %d sweep workers are stuck on timed-out advances; replacing the pool",
                           len(self._stuck))
            self._executor.shutdown(wait=False)
            self._executor = None
            self._stuck.clear()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="vigil-sweep")
        return self._executor

    def _advance_one(self, user_id: str, now: datetime) -> tuple[bool, AdminReview | None]:
        profile, advanced = self.ledger.advance(user_id, now)
        if not advanced:
            return False, None
        logger.debug("Advanced %s to %d missed", user_id, profile.missed_count)
        return True, self.gate.maybe_escalate(profile)

    def _notify_escalation(self, review: AdminReview) -> None:
        if self.on_escalation is None:
            return
        try:
            self.on_escalation(review)
        except Exception:
            logger.exception("Escalation callback error for review %s", review.id)

    # -- background loop -------------------------------------------------------

    async def start(self) -> None:
        """Start the recurring sweep."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="liveness-sweep")
        logger.info("Liveness scanner started (interval=%ss, instance=%s)", self.interval, self.instance_id)

    async def stop(self) -> None:
        """Stop the loop and give up the lease."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            self.store.release_lease(LEASE_NAME, self.instance_id)
        except Exception:
            logger.exception("Failed to release sweep lease")
        self.close()
        logger.info("Liveness scanner stopped")

    def close(self) -> None:
        """Release the worker threads. A later sweep starts a fresh pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._stuck.clear()

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                await loop.run_in_executor(None, self.sweep)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self.interval)
