"""
Web Push transport.

Translates push-service failures into typed errors so the delivery engine
can decide on retries without inspecting free text. Message matching is
kept only as a fallback for failures that carry no HTTP status.
"""

import asyncio
import logging
from typing import Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

from safework.core.exceptions import (
    PermanentSubscriptionError,
    RateLimitError,
    TransportError,
)
from safework.push.keys import KeyManager

logger = logging.getLogger(__name__)

# Status codes meaning the request can never succeed for this subscription
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 410, 413})

NON_RETRYABLE_PHRASES = (
    "no such subscription",
    "invalid subscription",
    "subscription has expired",
)


class PushTransport(Protocol):
    """Performs one network exchange with a push service."""

    async def send(
        self,
        subscription_info: dict,
        data: str,
        *,
        urgency: str,
        ttl: int,
        topic: Optional[str] = None,
    ) -> None:
        ...


def is_non_retryable_message(message: str) -> bool:
    """Legacy classification for opaque errors without a status code."""
    text = message.lower()
    if any(str(code) in text for code in NON_RETRYABLE_STATUS_CODES):
        return True
    return any(phrase in text for phrase in NON_RETRYABLE_PHRASES)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not used by push services in practice
        return None
    return max(0.0, seconds)


def classify_error(
    message: str,
    status_code: Optional[int] = None,
    retry_after: Optional[float] = None,
) -> TransportError:
    """Map a failed exchange to the transport error taxonomy."""
    if status_code == 429:
        return RateLimitError(message, status_code=status_code, retry_after=retry_after)
    if status_code in NON_RETRYABLE_STATUS_CODES:
        return PermanentSubscriptionError(message, status_code=status_code)
    if status_code is None and is_non_retryable_message(message):
        return PermanentSubscriptionError(message)
    return TransportError(message, status_code=status_code)


class WebPushTransport:
    """Sends encrypted Web Push messages through pywebpush."""

    def __init__(self, key_manager: KeyManager, request_timeout: float = 10.0):
        self.key_manager = key_manager
        self.request_timeout = request_timeout

    async def send(
        self,
        subscription_info: dict,
        data: str,
        *,
        urgency: str,
        ttl: int,
        topic: Optional[str] = None,
    ) -> None:
        headers = {"Urgency": urgency}
        if topic:
            headers["Topic"] = topic

        try:
            # pywebpush is synchronous; keep it off the event loop
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self.key_manager.private_key,
                vapid_claims=self.key_manager.vapid_claims(),
                ttl=ttl,
                headers=headers,
                timeout=self.request_timeout,
            )
        except WebPushException as e:
            response = e.response
            status_code = response.status_code if response is not None else None
            retry_after = None
            if response is not None:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise classify_error(str(e), status_code, retry_after) from e
        except requests.RequestException as e:
            raise TransportError(f"Network error: {e}") from e
