"""Nominee notification channels.

The engine decides what to send and to whom; delivery goes through an
SMS/email relay reached over an HTTP webhook. A channel either returns a
DeliveryReceipt or raises DeliveryError. ``retryable=False`` tells the
dispatcher not to bother retrying (bad request, channel not configured).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from vigil.config import settings
from vigil.liveness.errors import DeliveryError

logger = logging.getLogger(__name__)

# Client errors that are still worth retrying
_RETRYABLE_4XX = {408, 409, 425, 429}


@dataclass(frozen=True)
class NotificationMessage:
    review_id: str
    user_id: str
    subject: str
    body: str


@dataclass(frozen=True)
class DeliveryReceipt:
    delivered: bool
    provider_id: str | None = None


class NotificationChannel(Protocol):
    def send(
        self, nominee_id: str, contact_info: dict[str, str], message: NotificationMessage,
    ) -> DeliveryReceipt: ...


def build_nominee_message(review_id: str, user_id: str, nominee_name: str = "") -> NotificationMessage:
    """Compose the message sent to a nominee after an approved review."""
    greeting = f"Dear {nominee_name}," if nominee_name else "Hello,"
    body = (
        f"{greeting}\n\n"
        f"You were named as a trusted nominee by account {user_id}. "
        "The account holder has not responded to repeated well-being check-ins, "
        "and after review an administrator has approved notifying their nominees.\n\n"
        "Please try to contact them directly. If you have information about their "
        f"situation, reply quoting reference {review_id}.\n"
    )
    return NotificationMessage(
        review_id=review_id,
        user_id=user_id,
        subject="Well-being alert: your contact has not checked in",
        body=body,
    )


class WebhookChannel:
    """POSTs each notification to the relay's webhook."""

    def __init__(self, url: str = "", token: str = "", timeout: float | None = None) -> None:
        self.url = url or settings.notify_webhook_url
        self.token = token or settings.notify_webhook_token
        self.timeout = timeout if timeout is not None else settings.notify_timeout

    @property
    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def send(
        self, nominee_id: str, contact_info: dict[str, str], message: NotificationMessage,
    ) -> DeliveryReceipt:
        payload: dict[str, Any] = {
            "nominee_id": nominee_id,
            "contact": contact_info,
            "subject": message.subject,
            "body": message.body,
            "reference": message.review_id,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Relay timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Relay unreachable: {type(e).__name__}: {e}") from e

        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code in _RETRYABLE_4XX
            raise DeliveryError(
                f"Relay returned {resp.status_code}: {resp.text[:200]}",
                retryable=retryable,
            )

        provider_id = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                provider_id = body.get("id")
        except ValueError:
            pass
        return DeliveryReceipt(delivered=True, provider_id=provider_id)


class UnconfiguredChannel:
    """Stand-in used when no relay is configured: every send fails."""

    def send(
        self, nominee_id: str, contact_info: dict[str, str], message: NotificationMessage,
    ) -> DeliveryReceipt:
        raise DeliveryError("No notification relay configured (set NOTIFY_WEBHOOK_URL)", retryable=False)


def build_channel() -> NotificationChannel:
    """Pick the channel from settings."""
    if settings.notify_webhook_url:
        return WebhookChannel()
    logger.warning("NOTIFY_WEBHOOK_URL not set — nominee notifications will need manual follow-up")
    return UnconfiguredChannel()
