"""Tests for settings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from vigil.config import MAX_SWEEP_INTERVAL_SECONDS, Settings


class TestSettings:
    def test_defaults(self) -> None:
        s = Settings(_env_file=None)
        assert s.sweep_interval_seconds <= MAX_SWEEP_INTERVAL_SECONDS
        assert s.default_cadence == "daily"
        assert s.dispatch_max_attempts > 0

    @pytest.mark.parametrize("interval", [0, -5, MAX_SWEEP_INTERVAL_SECONDS + 1])
    def test_sweep_interval_bounded_by_shortest_cadence(self, interval) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, sweep_interval_seconds=interval)

    def test_sweep_interval_at_limit(self) -> None:
        s = Settings(_env_file=None, sweep_interval_seconds=MAX_SWEEP_INTERVAL_SECONDS)
        assert s.sweep_interval_seconds == MAX_SWEEP_INTERVAL_SECONDS

    @pytest.mark.parametrize("field", [
        "default_threshold", "ledger_max_retries", "dispatch_max_attempts", "dispatch_concurrency", "sweep_workers",
    ])
    def test_positive_fields(self, field) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "600")
        monkeypatch.setenv("GATEWAY_TOKEN", "s3cret")
        s = Settings(_env_file=None)
        assert s.sweep_interval_seconds == 600
        assert s.gateway_token == "s3cret"
