"""
Unit tests for the notification sink and message texts.
"""

import json
import logging

import httpx
import pytest

from models import PayoutMethod
from services.notification_service import (
    NullNotificationSink,
    TelegramNotificationSink,
    admin_payout_error_message,
    build_notification_sink,
    payout_paid_message,
    payout_rejected_message,
    payout_sent_message,
)


def telegram(handler) -> tuple[TelegramNotificationSink, list]:
    requests: list = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return TelegramNotificationSink("123:abc", transport=httpx.MockTransport(record)), requests


class TestTelegramNotificationSink:

    def test_sends_html_message(self):
        sink, requests = telegram(lambda r: httpx.Response(200, json={"ok": True}))

        assert sink.notify("42", "<b>Привет</b>") is True

        assert requests[0].url.path == "/bot123:abc/sendMessage"
        assert json.loads(requests[0].content) == {"chat_id": "42", "text": "<b>Привет</b>", "parse_mode": "HTML"}

    def test_missing_chat_id_is_skipped(self):
        sink, requests = telegram(lambda r: httpx.Response(200))

        assert sink.notify(None, "text") is False
        assert requests == []

    def test_http_failure_is_reported_not_raised(self, caplog):
        sink, _ = telegram(lambda r: httpx.Response(403, json={"ok": False}))

        with caplog.at_level(logging.ERROR):
            assert sink.notify("42", "text") is False

        assert "Failed to send notification to 42" in caplog.text

    def test_transport_failure_is_reported_not_raised(self):
        def fail(request):
            raise httpx.ConnectError("down", request=request)

        sink, _ = telegram(fail)

        assert sink.notify("42", "text") is False

    def test_token_required(self):
        with pytest.raises(ValueError):
            TelegramNotificationSink("")


def test_build_without_token_drops_messages():
    sink = build_notification_sink("")

    assert isinstance(sink, NullNotificationSink)
    assert sink.notify("42", "text") is False


class TestMessages:

    def test_sent(self):
        message = payout_sent_message(700_000, PayoutMethod.SBP)
        assert "по СБП" in message
        assert "7 000 ₽" in message

    def test_paid_and_rejected(self):
        assert "1 234,50 ₽" in payout_paid_message(123_450)
        assert "отклонена" in payout_rejected_message(100)

    def test_admin_error(self):
        message = admin_payout_error_message("Иванов Иван", 7_000, None)
        assert "Иванов Иван" in message
        assert "ID у провайдера: -" in message
