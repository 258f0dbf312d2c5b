"""Tests for the relay channel, operator alerts and nominee directory."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from vigil.liveness.errors import DeliveryError
from vigil.nominees import SqliteNomineeDirectory
from vigil.notifications import (
    UnconfiguredChannel,
    WebhookChannel,
    build_channel,
    build_nominee_message,
)
from vigil.notifications.admin import AdminNotifier

MESSAGE = build_nominee_message("rev1", "u1", "Alice")


def _mock_client(mock_client_cls, response=None, error=None) -> MagicMock:
    client = MagicMock()
    mock_client_cls.return_value.__enter__.return_value = client
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response
    return client


def _response(status: int, body=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


# ── Message ──────────────────────────────────────────────────────────────────


class TestMessage:
    def test_content(self) -> None:
        assert MESSAGE.review_id == "rev1"
        assert MESSAGE.body.startswith("Dear Alice,")
        assert "rev1" in MESSAGE.body

    def test_without_name(self) -> None:
        assert build_nominee_message("r", "u").body.startswith("Hello,")


# ── Webhook channel ──────────────────────────────────────────────────────────


class TestWebhookChannel:
    @patch("vigil.notifications.httpx.Client")
    def test_success(self, mock_client_cls) -> None:
        client = _mock_client(mock_client_cls, _response(202, {"id": "sms-77"}))
        channel = WebhookChannel(url="https://relay.test/send", token="t0k", timeout=3)

        receipt = channel.send("n1", {"mobile": "+4400"}, MESSAGE)
        assert receipt.delivered
        assert receipt.provider_id == "sms-77"
        _, kwargs = client.post.call_args
        assert kwargs["json"]["nominee_id"] == "n1"
        assert kwargs["json"]["contact"] == {"mobile": "+4400"}
        assert kwargs["json"]["reference"] == "rev1"
        assert kwargs["headers"]["Authorization"] == "Bearer t0k"

    @patch("vigil.notifications.httpx.Client")
    def test_non_json_body(self, mock_client_cls) -> None:
        _mock_client(mock_client_cls, _response(200, ValueError("not json")))
        receipt = WebhookChannel(url="https://relay.test/send").send("n1", {}, MESSAGE)
        assert receipt.delivered
        assert receipt.provider_id is None

    @pytest.mark.parametrize("status, retryable", [(500, True), (503, True), (429, True), (400, False), (404, False)])
    @patch("vigil.notifications.httpx.Client")
    def test_http_errors(self, mock_client_cls, status, retryable) -> None:
        _mock_client(mock_client_cls, _response(status, text="nope"))
        with pytest.raises(DeliveryError) as exc:
            WebhookChannel(url="https://relay.test/send").send("n1", {}, MESSAGE)
        assert exc.value.retryable is retryable
        assert str(status) in str(exc.value)

    @patch("vigil.notifications.httpx.Client")
    def test_timeout_is_retryable(self, mock_client_cls) -> None:
        _mock_client(mock_client_cls, error=httpx.ReadTimeout("slow"))
        with pytest.raises(DeliveryError) as exc:
            WebhookChannel(url="https://relay.test/send").send("n1", {}, MESSAGE)
        assert exc.value.retryable

    @patch("vigil.notifications.httpx.Client")
    def test_connection_error_is_retryable(self, mock_client_cls) -> None:
        _mock_client(mock_client_cls, error=httpx.ConnectError("refused"))
        with pytest.raises(DeliveryError) as exc:
            WebhookChannel(url="https://relay.test/send").send("n1", {}, MESSAGE)
        assert exc.value.retryable


class TestChannelSelection:
    def test_unconfigured_never_retries(self) -> None:
        with pytest.raises(DeliveryError) as exc:
            UnconfiguredChannel().send("n1", {}, MESSAGE)
        assert exc.value.retryable is False

    def test_build_channel(self) -> None:
        with patch("vigil.notifications.settings") as mock_settings:
            mock_settings.notify_webhook_url = ""
            assert isinstance(build_channel(), UnconfiguredChannel)
            mock_settings.notify_webhook_url = "https://relay.test/send"
            assert isinstance(build_channel(), WebhookChannel)


# ── Operator alerts ──────────────────────────────────────────────────────────


class TestAdminNotifier:
    def test_disabled_without_config(self) -> None:
        with patch("vigil.notifications.admin.settings") as mock_settings:
            mock_settings.admin_slack_webhook_url = ""
            mock_settings.admin_telegram_bot_token = ""
            mock_settings.admin_telegram_chat_id = ""
            notifier = AdminNotifier()
        assert not notifier.is_enabled
        assert notifier.status() == {"enabled": False, "slack_configured": False, "telegram_configured": False}

    def test_telegram_needs_chat_id(self) -> None:
        with patch("vigil.notifications.admin.settings") as mock_settings:
            mock_settings.admin_slack_webhook_url = ""
            mock_settings.admin_telegram_chat_id = ""
            notifier = AdminNotifier(telegram_token="bot-token")
        assert not notifier.is_enabled

    @patch("vigil.notifications.admin.httpx.AsyncClient")
    def test_review_opened_posts_to_slack(self, mock_client_cls) -> None:
        client = MagicMock()
        client.post = AsyncMock(return_value=_response(200))
        mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=None)

        notifier = AdminNotifier(slack_webhook="https://hooks.slack.test/x")
        asyncio.run(notifier.notify_review_opened("rev1", "u1", missed_count=3))

        args, kwargs = client.post.call_args
        assert args[0] == "https://hooks.slack.test/x"
        assert "rev1" in kwargs["json"]["text"]
        assert "3 missed" in kwargs["json"]["text"]

    @patch("vigil.notifications.admin.httpx.AsyncClient")
    def test_failures_swallowed(self, mock_client_cls) -> None:
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("down"))
        mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=None)

        notifier = AdminNotifier(
            slack_webhook="https://hooks.slack.test/x", telegram_token="tok", telegram_chat_id="42",
        )
        asyncio.run(notifier.notify_followup("rev1", "n1", "relay 503"))
        assert client.post.await_count == 2

    def test_review_opened_reports_threshold(self) -> None:
        notifier = AdminNotifier(slack_webhook="https://hooks.slack.test/x")
        with patch.object(notifier, "_broadcast", new=AsyncMock()) as broadcast:
            asyncio.run(notifier.notify_review_opened("rev1", "u1", missed_count=3, threshold=3))
        text = broadcast.await_args.args[0]
        assert "User `u1` stopped checking in (3 missed of 3 allowed)." in text
        assert "Review `rev1`" in text

    def test_telegram_target(self) -> None:
        with patch("vigil.notifications.admin.settings") as mock_settings:
            mock_settings.admin_slack_webhook_url = ""
            notifier = AdminNotifier(telegram_token="tok", telegram_chat_id="42")
        [(name, url, payload)] = notifier._targets("hello")
        assert name == "Telegram"
        assert url == "https://api.telegram.org/bottok/sendMessage"
        assert payload == {"chat_id": "42", "text": "hello", "parse_mode": "Markdown"}


# ── Nominee directory ────────────────────────────────────────────────────────


class TestSqliteNomineeDirectory:
    def test_only_verified(self, tmp_path) -> None:
        directory = SqliteNomineeDirectory(tmp_path / "vigil.db")
        directory.add("u1", "Alice", mobile_number="+4411", email="a@example.com", verified=True, nominee_id="n1")
        directory.add("u1", "Bob", mobile_number="+4422", verified=False, nominee_id="n2")
        directory.add("u2", "Carol", email="c@example.com", verified=True, nominee_id="n3")

        [alice] = directory.list_verified_nominees("u1")
        assert alice.nominee_id == "n1"
        assert alice.full_name == "Alice"
        assert alice.contact_info == {"mobile": "+4411", "email": "a@example.com"}

        [carol] = directory.list_verified_nominees("u2")
        assert carol.contact_info == {"email": "c@example.com"}

    def test_none_for_unknown_user(self, tmp_path) -> None:
        directory = SqliteNomineeDirectory(tmp_path / "vigil.db")
        assert directory.list_verified_nominees("ghost") == []
