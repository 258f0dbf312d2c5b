"""Liveness subsystem: check-in ledger, scanner, escalation, dispatch, audit."""

from .errors import (
    AdminRequired,
    ConcurrencyConflict,
    DeliveryError,
    InvalidTransition,
    NotFoundError,
    ProfileNotFound,
    ReviewNotFound,
    StoreUnavailable,
    TransientError,
    ValidationError,
    VigilError,
)
from .models import (
    Actor,
    AdminReview,
    Alert,
    AlertStatus,
    AttemptStatus,
    AuditEntry,
    Cadence,
    Decision,
    NotificationAttempt,
    ReviewStatus,
    Role,
    UserLivenessProfile,
)
