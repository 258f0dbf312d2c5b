"""Tests for domain models and state transition tables."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vigil.liveness.errors import InvalidTransition, ValidationError
from vigil.liveness.models import (
    Actor,
    AlertStatus,
    AttemptStatus,
    Cadence,
    NotificationAttempt,
    ReviewStatus,
    Role,
    UserLivenessProfile,
    from_iso,
)
from vigil.liveness.states import can_transition, check_transition

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def _profile(**kw) -> UserLivenessProfile:
    defaults = dict(user_id="u1", cadence=Cadence.daily(), last_checkin=NOW, threshold=3)
    defaults.update(kw)
    return UserLivenessProfile(**defaults)


# ── Cadence ──────────────────────────────────────────────────────────────────


class TestCadence:
    def test_parse_named(self) -> None:
        assert Cadence.parse("daily").period == timedelta(days=1)
        assert Cadence.parse(" Weekly ").period == timedelta(days=7)

    def test_parse_custom(self) -> None:
        c = Cadence.parse("custom:3")
        assert c.kind == "custom"
        assert c.days == 3
        assert str(c) == "custom:3"

    @pytest.mark.parametrize("value", [None, "", "hourly", "custom:0", "custom:-2", "custom:abc"])
    def test_parse_rejects(self, value) -> None:
        with pytest.raises(ValidationError):
            Cadence.parse(value)

    def test_str_round_trip(self) -> None:
        for c in (Cadence.daily(), Cadence.weekly(), Cadence.custom(10)):
            assert Cadence.parse(str(c)) == c


# ── Profile arithmetic ───────────────────────────────────────────────────────


class TestProfile:
    def test_not_overdue_at_exactly_one_period(self) -> None:
        p = _profile()
        assert not p.is_overdue(NOW + timedelta(days=1))
        assert p.is_overdue(NOW + timedelta(days=1, seconds=1))

    def test_periods_elapsed_counts_whole_periods(self) -> None:
        p = _profile()
        assert p.periods_elapsed(NOW) == 0
        assert p.periods_elapsed(NOW + timedelta(hours=23)) == 0
        assert p.periods_elapsed(NOW + timedelta(days=2, hours=23)) == 2
        assert p.periods_elapsed(NOW - timedelta(days=1)) == 0

    def test_should_advance_only_when_counter_behind(self) -> None:
        p = _profile(missed_count=2)
        assert not p.should_advance(NOW + timedelta(days=2, hours=1))
        assert p.should_advance(NOW + timedelta(days=3, hours=1))

    def test_weekly_cadence(self) -> None:
        p = _profile(cadence=Cadence.weekly())
        assert not p.is_overdue(NOW + timedelta(days=6))
        assert p.periods_elapsed(NOW + timedelta(days=15)) == 2

    def test_next_due(self) -> None:
        p = _profile(missed_count=1)
        assert p.next_due() == NOW + timedelta(days=2)

    @pytest.mark.parametrize("threshold", [0, -1, True, "3"])
    def test_validate_threshold(self, threshold) -> None:
        with pytest.raises(ValidationError):
            _profile(threshold=threshold).validate()

    def test_from_row(self) -> None:
        row = {
            "user_id": "u1",
            "cadence": "custom:2",
            "last_checkin": "2025-03-03T09:00:00+00:00",
            "missed_count": 1,
            "threshold": 4,
            "escalation_enabled": 0,
            "active": 1,
            "version": 7,
        }
        p = UserLivenessProfile.from_row(row)
        assert p.cadence == Cadence.custom(2)
        assert p.escalation_enabled is False
        assert p.version == 7
        assert p.to_dict()["cadence"] == "custom:2"

    @pytest.mark.parametrize("bad", [
        {"cadence": None},
        {"cadence": "fortnightly"},
        {"threshold": 0},
        {"last_checkin": None},
    ])
    def test_from_row_malformed(self, bad) -> None:
        row = {
            "user_id": "u1",
            "cadence": "daily",
            "last_checkin": "2025-03-03T09:00:00+00:00",
            "threshold": 3,
        }
        row.update(bad)
        with pytest.raises(ValidationError):
            UserLivenessProfile.from_row(row)

    def test_naive_timestamps_are_utc(self) -> None:
        assert from_iso("2025-03-03T09:00:00") == NOW


class TestMisc:
    def test_attempt_id_and_terminal(self) -> None:
        a = NotificationAttempt("r1", "n1")
        assert a.id == "r1:n1"
        assert not a.is_terminal
        a.status = AttemptStatus.EXHAUSTED
        assert a.is_terminal

    def test_actor_role(self) -> None:
        assert Actor("a", Role.ADMIN).is_admin
        assert not Actor("u").is_admin


# ── Transition tables ────────────────────────────────────────────────────────


class TestTransitions:
    def test_alert_lifecycle(self) -> None:
        assert can_transition("alert", None, AlertStatus.PENDING)
        assert can_transition("alert", AlertStatus.PENDING, AlertStatus.ESCALATED)
        assert can_transition("alert", AlertStatus.ESCALATED, AlertStatus.RESPONDED)
        assert not can_transition("alert", AlertStatus.ESCALATED, AlertStatus.PENDING)
        assert not can_transition("alert", AlertStatus.RESPONDED, AlertStatus.PENDING)

    def test_review_decided_is_terminal(self) -> None:
        with pytest.raises(InvalidTransition) as exc:
            check_transition("review", ReviewStatus.APPROVED, ReviewStatus.REJECTED)
        assert exc.value.from_state == "approved"
        assert exc.value.to_state == "rejected"

    def test_attempt_retry_loop(self) -> None:
        assert can_transition("notification", AttemptStatus.FAILED, AttemptStatus.FAILED)
        assert can_transition("notification", AttemptStatus.FAILED, AttemptStatus.SENT)
        assert not can_transition("notification", AttemptStatus.SENT, AttemptStatus.FAILED)
