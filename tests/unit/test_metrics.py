"""Unit tests for metrics helpers."""

import pytest

from safework.core.metrics import PUSH_ATTEMPTS_TOTAL, normalize_endpoint, record_push_attempt


class TestNormalizeEndpoint:
    """Tests for endpoint path normalization."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            (
                "/api/notifications/history/hist_0123456789abcdef0123456789abcdef/read",
                "/api/notifications/history/{id}/read",
            ),
            (
                "/api/items/550e8400-e29b-41d4-a716-446655440000",
                "/api/items/{id}",
            ),
            ("/api/items/42", "/api/items/{id}"),
            ("/api/notifications/vapid-key", "/api/notifications/vapid-key"),
        ],
    )
    def test_ids_replaced(self, path, expected):
        assert normalize_endpoint(path) == expected


class TestPushMetrics:
    def test_attempt_counter(self):
        before = PUSH_ATTEMPTS_TOTAL.labels(result="transient")._value.get()
        record_push_attempt("transient")
        assert PUSH_ATTEMPTS_TOTAL.labels(result="transient")._value.get() == before + 1
