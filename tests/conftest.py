"""Shared test fixtures."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from vigil.liveness.engine import WellbeingService
from vigil.liveness.ledger import CheckinLedger
from vigil.liveness.store import LivenessStore
from vigil.nominees import Nominee
from vigil.notifications import DeliveryReceipt, NotificationMessage

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class FakeDirectory:
    """In-memory nominee store keyed by user id."""

    def __init__(self) -> None:
        self.nominees: dict[str, list[Nominee]] = {}

    def add(self, user_id: str, nominee_id: str, mobile: str = "+440000000000") -> Nominee:
        nominee = Nominee(nominee_id=nominee_id, contact_info={"mobile": mobile}, full_name=nominee_id.title())
        self.nominees.setdefault(user_id, []).append(nominee)
        return nominee

    def list_verified_nominees(self, user_id: str) -> list[Nominee]:
        return list(self.nominees.get(user_id, []))


class FakeChannel:
    """Records sends; failures are scripted per nominee.

    ``script[nominee_id]`` is consumed one entry per send: an exception is
    raised, anything else counts as delivered. ``always_fail`` nominees fail
    on every send.
    """

    def __init__(self) -> None:
        self.script: dict[str, list[Exception | None]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.sent: list[tuple[str, NotificationMessage]] = []
        self.calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def send(self, nominee_id: str, contact_info: dict[str, str], message: NotificationMessage) -> DeliveryReceipt:
        with self._lock:
            self.calls[nominee_id] = self.calls.get(nominee_id, 0) + 1
            if nominee_id in self.always_fail:
                raise self.always_fail[nominee_id]
            planned = self.script.get(nominee_id)
            outcome = planned.pop(0) if planned else None
            if isinstance(outcome, Exception):
                raise outcome
            self.sent.append((nominee_id, message))
        return DeliveryReceipt(delivered=True, provider_id=f"msg-{nominee_id}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> LivenessStore:
    """LivenessStore backed by a temp SQLite file."""
    return LivenessStore(db_path=tmp_path / "vigil.db")


@pytest.fixture
def ledger(store, clock) -> CheckinLedger:
    return CheckinLedger(store, clock=clock)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def service(store, directory, channel, clock, sleeps):
    svc = WellbeingService(
        store, directory, channel,
        clock=clock,
        sleep=sleeps.append,
        instance_id="test-instance",
        workers=2,
        item_timeout=5.0,
        deadline=60.0,
    )
    yield svc
    svc.shutdown()


def escalate(service: WellbeingService, clock: FakeClock, user_id: str, threshold: int = 1):
    """Register ``user_id`` and sweep until a review opens. Returns the review."""
    service.register_profile(user_id, "daily", threshold)
    for _ in range(threshold):
        clock.advance(days=1, hours=1)
        report = service.scanner.sweep()
    assert user_id in report.escalated
    review = service.store.get_pending_review(user_id)
    assert review is not None
    return review


@pytest.fixture
def escalate_user(service, clock):
    """``escalate_user(user_id, threshold=1)`` -> pending review."""
    return lambda user_id, threshold=1: escalate(service, clock, user_id, threshold)
