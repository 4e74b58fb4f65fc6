"""Unit tests for push transport error classification."""

import pytest
import requests
from pywebpush import WebPushException

from safework.core.exceptions import (
    PermanentSubscriptionError,
    RateLimitError,
    TransportError,
)
from safework.push import transport as transport_module
from safework.push.transport import (
    WebPushTransport,
    classify_error,
    is_non_retryable_message,
    parse_retry_after,
)


class FakeResponse:
    def __init__(self, status_code, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self.text = ""


class TestClassifyError:
    """Tests for mapping failures onto the error taxonomy."""

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 410, 413])
    def test_permanent_status_codes(self, status_code):
        error = classify_error("rejected", status_code)
        assert isinstance(error, PermanentSubscriptionError)
        assert not error.retryable

    def test_rate_limit(self):
        error = classify_error("Too Many Requests", 429, retry_after=30.0)
        assert isinstance(error, RateLimitError)
        assert error.retryable
        assert error.retry_after == 30.0

    @pytest.mark.parametrize("status_code", [500, 502, 503, 504])
    def test_server_errors_are_transient(self, status_code):
        error = classify_error("upstream failure", status_code)
        assert type(error) is TransportError
        assert error.retryable

    def test_status_code_wins_over_message(self):
        """Test a 503 mentioning 410 in its body is still retried."""
        error = classify_error("retry later, not a 410", 503)
        assert type(error) is TransportError

    def test_message_fallback_without_status(self):
        assert isinstance(classify_error("Push failed: 410 Gone"), PermanentSubscriptionError)
        assert isinstance(classify_error("Invalid subscription"), PermanentSubscriptionError)
        assert type(classify_error("connection reset by peer")) is TransportError


class TestMessageClassification:
    @pytest.mark.parametrize(
        "message",
        ["No such subscription", "SUBSCRIPTION HAS EXPIRED", "received 404 from endpoint"],
    )
    def test_non_retryable(self, message):
        assert is_non_retryable_message(message)

    def test_retryable(self):
        assert not is_non_retryable_message("read timed out")


class TestRetryAfter:
    @pytest.mark.parametrize(
        "value,expected",
        [("120", 120.0), ("1.5", 1.5), ("-3", 0.0), (None, None), ("", None)],
    )
    def test_parse(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_http_date_ignored(self):
        assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT") is None


class TestWebPushTransport:
    """Tests for the pywebpush adapter."""

    @pytest.mark.asyncio
    async def test_sends_urgency_and_topic_headers(self, key_manager, monkeypatch):
        captured = {}

        def fake_webpush(**kwargs):
            captured.update(kwargs)

        monkeypatch.setattr(transport_module, "webpush", fake_webpush)
        transport = WebPushTransport(key_manager, request_timeout=5.0)

        await transport.send(
            {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "a", "auth": "b"}},
            '{"title": "x"}',
            urgency="high",
            ttl=60,
            topic="lmra-42",
        )

        assert captured["headers"] == {"Urgency": "high", "Topic": "lmra-42"}
        assert captured["ttl"] == 60
        assert captured["timeout"] == 5.0
        assert captured["vapid_private_key"] == key_manager.private_key
        assert captured["vapid_claims"] == {"sub": "mailto:safety@example.com"}

    @pytest.mark.asyncio
    async def test_gone_response_is_permanent(self, key_manager, monkeypatch):
        def fake_webpush(**kwargs):
            raise WebPushException("Push failed: 410 Gone", response=FakeResponse(410))

        monkeypatch.setattr(transport_module, "webpush", fake_webpush)
        transport = WebPushTransport(key_manager)

        with pytest.raises(PermanentSubscriptionError) as exc_info:
            await transport.send({"endpoint": "e", "keys": {}}, "{}", urgency="high", ttl=60)
        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    async def test_rate_limited_response(self, key_manager, monkeypatch):
        def fake_webpush(**kwargs):
            raise WebPushException(
                "Push failed: 429",
                response=FakeResponse(429, {"Retry-After": "12"}),
            )

        monkeypatch.setattr(transport_module, "webpush", fake_webpush)
        transport = WebPushTransport(key_manager)

        with pytest.raises(RateLimitError) as exc_info:
            await transport.send({"endpoint": "e", "keys": {}}, "{}", urgency="high", ttl=60)
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, key_manager, monkeypatch):
        def fake_webpush(**kwargs):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setattr(transport_module, "webpush", fake_webpush)
        transport = WebPushTransport(key_manager)

        with pytest.raises(TransportError) as exc_info:
            await transport.send({"endpoint": "e", "keys": {}}, "{}", urgency="low", ttl=60)
        assert exc_info.value.retryable
        assert exc_info.value.status_code is None
