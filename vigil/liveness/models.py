"""Domain models for the well-being check-in engine.

Profiles, alerts, admin reviews, notification attempts and audit entries.
All timestamps are timezone-aware UTC and stored as ISO-8601 strings.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .errors import ValidationError

Clock = Callable[[], datetime]

SYSTEM_ACTOR = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Enums ────────────────────────────────────────────────────────────────────


class AlertStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    ESCALATED = "escalated"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class AttemptStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


# ── Cadence ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Cadence:
    """Check-in interval: daily, weekly or every N days."""

    kind: str  # daily | weekly | custom
    days: int = 1

    @classmethod
    def daily(cls) -> Cadence:
        return cls("daily", 1)

    @classmethod
    def weekly(cls) -> Cadence:
        return cls("weekly", 7)

    @classmethod
    def custom(cls, days: int) -> Cadence:
        if not isinstance(days, int) or isinstance(days, bool) or days <= 0:
            raise ValidationError(f"Custom cadence needs a positive number of days, got {days!r}")
        return cls("custom", days)

    @classmethod
    def parse(cls, value: str | None) -> Cadence:
        """Parse ``daily``, ``weekly`` or ``custom:<days>``."""
        if not value:
            raise ValidationError("Cadence is not set")
        text = value.strip().lower()
        if text == "daily":
            return cls.daily()
        if text == "weekly":
            return cls.weekly()
        if text.startswith("custom:"):
            raw = text.split(":", 1)[1]
            try:
                days = int(raw)
            except ValueError:
                raise ValidationError(f"Invalid custom cadence: {value!r}") from None
            return cls.custom(days)
        raise ValidationError(f"Unknown cadence: {value!r}")

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.days)

    def __str__(self) -> str:
        return f"custom:{self.days}" if self.kind == "custom" else self.kind


# ── Profile ──────────────────────────────────────────────────────────────────


@dataclass
class UserLivenessProfile:
    """Per-user check-in ledger row."""

    user_id: str
    cadence: Cadence
    last_checkin: datetime
    threshold: int
    missed_count: int = 0
    escalation_enabled: bool = True
    active: bool = True
    version: int = 1

    def validate(self) -> None:
        if not self.user_id:
            raise ValidationError("Profile has no user id")
        if not isinstance(self.cadence, Cadence):
            raise ValidationError("Cadence is not set")
        if self.cadence.days <= 0:
            raise ValidationError(f"Cadence must be at least one day, got {self.cadence.days}")
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int) or self.threshold <= 0:
            raise ValidationError(f"Threshold must be a positive integer, got {self.threshold!r}")
        if self.missed_count < 0:
            raise ValidationError(f"Missed count cannot be negative, got {self.missed_count}")

    def periods_elapsed(self, now: datetime) -> int:
        """Number of whole cadence periods since the last check-in."""
        elapsed = now - self.last_checkin
        if elapsed <= timedelta(0):
            return 0
        return elapsed // self.cadence.period

    def is_overdue(self, now: datetime) -> bool:
        """True once more than one full period has passed since the last check-in."""
        return now - self.last_checkin > self.cadence.period

    def should_advance(self, now: datetime) -> bool:
        """True when a period has elapsed that the counter does not yet reflect."""
        return self.is_overdue(now) and self.periods_elapsed(now) > self.missed_count

    def next_due(self) -> datetime:
        return self.last_checkin + self.cadence.period * (self.missed_count + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "cadence": str(self.cadence),
            "last_checkin": to_iso(self.last_checkin),
            "missed_count": self.missed_count,
            "threshold": self.threshold,
            "escalation_enabled": self.escalation_enabled,
            "active": self.active,
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> UserLivenessProfile:
        """Build a profile from a stored row. Raises ValidationError if malformed."""
        last = from_iso(row.get("last_checkin"))
        if last is None:
            raise ValidationError(f"Profile {row.get('user_id')} has no last check-in")
        profile = cls(
            user_id=row["user_id"],
            cadence=Cadence.parse(row.get("cadence")),
            last_checkin=last,
            threshold=row.get("threshold"),
            missed_count=row.get("missed_count") or 0,
            escalation_enabled=bool(row.get("escalation_enabled", 1)),
            active=bool(row.get("active", 1)),
            version=row.get("version", 1),
        )
        profile.validate()
        return profile


# ── Alert / review / attempt / audit ─────────────────────────────────────────


@dataclass
class Alert:
    user_id: str
    status: AlertStatus = AlertStatus.PENDING
    id: str = field(default_factory=new_id)
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in (AlertStatus.PENDING, AlertStatus.ESCALATED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "opened_at": to_iso(self.opened_at),
            "closed_at": to_iso(self.closed_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Alert:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=AlertStatus(row["status"]),
            opened_at=from_iso(row["opened_at"]),
            closed_at=from_iso(row.get("closed_at")),
        )


@dataclass
class AdminReview:
    user_id: str
    status: ReviewStatus = ReviewStatus.PENDING
    id: str = field(default_factory=new_id)
    reviewer_id: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    decided_at: datetime | None = None
    dispatched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "reviewer_id": self.reviewer_id,
            "notes": self.notes,
            "created_at": to_iso(self.created_at),
            "decided_at": to_iso(self.decided_at),
            "dispatched_at": to_iso(self.dispatched_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AdminReview:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=ReviewStatus(row["status"]),
            reviewer_id=row.get("reviewer_id"),
            notes=row.get("notes"),
            created_at=from_iso(row["created_at"]),
            decided_at=from_iso(row.get("decided_at")),
            dispatched_at=from_iso(row.get("dispatched_at")),
        )


@dataclass
class NotificationAttempt:
    review_id: str
    nominee_id: str
    attempt_count: int = 0
    status: AttemptStatus = AttemptStatus.QUEUED
    last_error: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return f"{self.review_id}:{self.nominee_id}"

    @property
    def is_terminal(self) -> bool:
        return self.status in (AttemptStatus.SENT, AttemptStatus.EXHAUSTED)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["updated_at"] = to_iso(self.updated_at)
        return d

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> NotificationAttempt:
        return cls(
            review_id=row["review_id"],
            nominee_id=row["nominee_id"],
            attempt_count=row.get("attempt_count", 0),
            status=AttemptStatus(row["status"]),
            last_error=row.get("last_error"),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record of a single state transition."""

    entity_type: str  # profile | alert | review | notification
    entity_id: str
    from_state: str | None
    to_state: str
    actor: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor": self.actor,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AuditEntry:
        return cls(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            from_state=row.get("from_state"),
            to_state=row["to_state"],
            actor=row["actor"],
            timestamp=from_iso(row["timestamp"]),
        )


@dataclass(frozen=True)
class Actor:
    """Authenticated caller identity, supplied by the auth gateway."""

    id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
