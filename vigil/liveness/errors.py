"""Error taxonomy for the liveness engine.

Validation and authorization errors are raised before anything is written.
Transient errors (store contention, exhausted CAS retries) are safe to retry.
"""

from __future__ import annotations


class VigilError(Exception):
    """Base class for all engine errors."""


class ValidationError(VigilError):
    """Raised when input or a stored profile violates a domain rule."""


class NotFoundError(VigilError):
    """Raised when a referenced entity does not exist."""


class ProfileNotFound(NotFoundError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No liveness profile for user {user_id}")


class ReviewNotFound(NotFoundError):
    def __init__(self, review_id: str) -> None:
        self.review_id = review_id
        super().__init__(f"No admin review {review_id}")


class InvalidTransition(VigilError):
    """Raised when a state change is not allowed from the current state."""

    def __init__(self, entity: str, from_state: str | None, to_state: str) -> None:
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid {entity} transition: {from_state or 'none'} -> {to_state}")


class AdminRequired(VigilError):
    """Raised when a non-admin actor calls an admin-only operation."""


class TransientError(VigilError):
    """Raised for failures that are expected to clear on retry."""


class ConcurrencyConflict(TransientError):
    """Raised when optimistic-concurrency retries are exhausted."""

    def __init__(self, user_id: str, attempts: int) -> None:
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Profile {user_id} still conflicting after {attempts} attempts")


class StoreUnavailable(TransientError):
    """Raised when the backing store cannot be reached or is locked."""


class DeliveryError(VigilError):
    """Raised by a notification channel when a message was not delivered."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)
