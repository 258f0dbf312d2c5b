from __future__ import annotations

import os
import socket

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Shortest supported cadence is one day; the sweep must never be slower.
MAX_SWEEP_INTERVAL_SECONDS = 86_400


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    database_path: str = "data/vigil.db"
    sqlite_busy_timeout: float = 5.0  # seconds a writer waits on a locked db

    # Liveness scanner
    sweep_interval_seconds: int = 3600
    sweep_deadline_seconds: float = 600.0
    sweep_item_timeout_seconds: float = 10.0
    sweep_workers: int = 4
    sweep_lease_seconds: int = 900
    instance_id: str = f"{socket.gethostname()}-{os.getpid()}"

    # Check-in ledger
    ledger_max_retries: int = 5
    default_cadence: str = "daily"  # daily | weekly | custom:<days>
    default_threshold: int = 15

    # Nominee notification fan-out
    dispatch_max_attempts: int = 5
    dispatch_backoff_base: float = 2.0
    dispatch_backoff_factor: float = 2.0
    dispatch_backoff_max: float = 300.0
    dispatch_concurrency: int = 4

    # Notification gateway (SMS / email relay)
    notify_webhook_url: str = ""
    notify_webhook_token: str = ""
    notify_timeout: float = 10.0

    # Operator alerts (optional, Slack and/or Telegram)
    admin_slack_webhook_url: str = ""
    admin_telegram_bot_token: str = ""
    admin_telegram_chat_id: str = ""

    # Shared secret sent by the auth gateway on every request
    gateway_token: str = ""

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"

    @field_validator("sweep_interval_seconds")
    @classmethod
    def _sweep_fits_shortest_cadence(cls, v: int) -> int:
        if v <= 0 or v > MAX_SWEEP_INTERVAL_SECONDS:
            raise ValueError(
                f"sweep_interval_seconds must be in (0, {MAX_SWEEP_INTERVAL_SECONDS}] "
                "so no cadence period is skipped"
            )
        return v

    @field_validator("default_threshold", "ledger_max_retries", "dispatch_max_attempts",
                     "dispatch_concurrency", "sweep_workers")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v


settings = Settings()
