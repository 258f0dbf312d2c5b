"""Administrator alerts via Slack and Telegram webhooks.

Fires when:
- a user is escalated and a review is waiting
- a nominee delivery is exhausted and needs manual follow-up

Best effort: failures are logged, never raised. Nominee notifications do not
go through here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from vigil.config import settings

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class AdminNotifier:
    """Pushes short operator messages to Slack / Telegram."""

    def __init__(
        self,
        slack_webhook: str = "",
        telegram_token: str = "",
        telegram_chat_id: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.slack_webhook = slack_webhook or settings.admin_slack_webhook_url
        self.telegram_token = telegram_token or settings.admin_telegram_bot_token
        self.telegram_chat_id = telegram_chat_id or settings.admin_telegram_chat_id
        self.timeout = timeout

    @property
    def _telegram_ready(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)

    @property
    def is_enabled(self) -> bool:
        return bool(self.slack_webhook) or self._telegram_ready

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.is_enabled,
            "slack_configured": bool(self.slack_webhook),
            "telegram_configured": self._telegram_ready,
        }

    # -- escalation events -----------------------------------------------------

    async def notify_review_opened(
        self,
        review_id: str,
        user_id: str,
        missed_count: int | None = None,
        threshold: int | None = None,
    ) -> None:
        """A user crossed their missed check-in threshold."""
        missed = ""
        if missed_count is not None:
            missed = f" ({missed_count} missed"
            missed += f" of {threshold} allowed)" if threshold is not None else ")"
        await self._broadcast(
            f"*Well-being escalation*\n"
            f"User `{user_id}` stopped checking in{missed}.\n"
            f"Review `{review_id}` is waiting for a decision.\n"
        )

    async def notify_followup(self, review_id: str, nominee_id: str, error: str | None) -> None:
        """A nominee could not be reached after every retry."""
        lines = [
            "*Nominee notification exhausted*",
            f"Review `{review_id}` / nominee `{nominee_id}`",
        ]
        if error:
            lines.append(f"Last error: {error}")
        lines.append("Manual follow-up required.")
        await self._broadcast("\n".join(lines) + "\n")

    # -- delivery --------------------------------------------------------------

    def _targets(self, text: str) -> list[tuple[str, str, dict[str, Any]]]:
        """(channel name, url, JSON payload) for every configured channel."""
        targets = []
        if self.slack_webhook:
            targets.append(("Slack", self.slack_webhook, {"text": text, "mrkdwn": True}))
        if self._telegram_ready:
            targets.append((
                "Telegram",
                f"{TELEGRAM_API}/bot{self.telegram_token}/sendMessage",
                {"chat_id": self.telegram_chat_id, "text": text, "parse_mode": "Markdown"},
            ))
        return targets

    async def _broadcast(self, text: str) -> None:
        targets = self._targets(text)
        if not targets:
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            await asyncio.gather(*(self._post(client, name, url, payload) for name, url, payload in targets))

    async def _post(self, client: httpx.AsyncClient, name: str, url: str, payload: dict[str, Any]) -> None:
        try:
            resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("%s operator alert failed: %s", name, exc)
            return
        if resp.status_code != 200:
            logger.warning("%s operator alert returned %d: %s", name, resp.status_code, resp.text[:200])
