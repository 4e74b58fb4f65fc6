"""
Single-recipient push delivery.

Builds the wire body, performs the network exchange with linear-backoff
retries and records the outcome. Expected transport failures come back as a
failed DeliveryResult; only malformed input raises.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from safework.core.exceptions import (
    PermanentSubscriptionError,
    RateLimitError,
    TransportError,
    ValidationError,
)
from safework.core.metrics import (
    record_push_attempt,
    record_push_delivery,
    record_subscription_deactivated,
)
from safework.push.payload import DeliveryStatus, NotificationPayload, NotificationPriority
from safework.push.transport import PushTransport, classify_error

logger = logging.getLogger(__name__)

DEFAULT_ICON = "/icon-192x192.png"
DEFAULT_BADGE = "/badge-72x72.png"
DEFAULT_TTL = 86400
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

URGENCY_BY_PRIORITY = {
    NotificationPriority.CRITICAL: "high",
    NotificationPriority.HIGH: "normal",
    NotificationPriority.MEDIUM: "low",
    NotificationPriority.LOW: "very-low",
}

VALID_URGENCIES = frozenset(URGENCY_BY_PRIORITY.values())


class HistoryRecorder(Protocol):
    async def record(
        self,
        payload: NotificationPayload,
        subscription_id: str,
        status: DeliveryStatus,
        error: Optional[str] = None,
    ) -> Any:
        ...


class SubscriptionMaintainer(Protocol):
    async def touch(self, subscription_id: str) -> None:
        ...

    async def deactivate(self, subscription_id: str) -> bool:
        ...


@dataclass(frozen=True)
class DeliveryOptions:
    """Per-call overrides. None means use the engine default."""

    urgency: Optional[str] = None
    topic: Optional[str] = None
    ttl: Optional[int] = None
    max_retries: Optional[int] = None
    retry_delay: Optional[float] = None

    def __post_init__(self) -> None:
        if self.urgency is not None and self.urgency not in VALID_URGENCIES:
            raise ValidationError(f"Unknown urgency: {self.urgency!r}")


@dataclass
class DeliveryResult:
    """Outcome of one send to one subscription."""

    success: bool
    subscription_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    status_code: Optional[int] = None
    permanent: bool = False
    suppressed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "subscription_id": self.subscription_id,
            "attempts": self.attempts,
            "error": self.error,
            "status_code": self.status_code,
            "permanent": self.permanent,
            "suppressed": self.suppressed,
        }


def urgency_for(priority: NotificationPriority) -> str:
    """Transport urgency hint derived from application priority."""
    return URGENCY_BY_PRIORITY.get(priority, "very-low")


def build_wire_payload(payload: NotificationPayload) -> dict[str, Any]:
    """JSON body delivered to the service worker."""
    return {
        "title": payload.title,
        "body": payload.body,
        "icon": payload.icon or DEFAULT_ICON,
        "badge": payload.badge or DEFAULT_BADGE,
        "image": payload.image,
        "data": payload.data or {},
        "actions": [a.to_dict() for a in payload.actions],
        "requireInteraction": payload.require_interaction,
        "silent": payload.silent,
        "tag": payload.tag,
        "renotify": payload.renotify,
        "timestamp": payload.timestamp_ms,
        "priority": payload.priority.value,
        "type": payload.type.value,
    }


def subscription_info(subscription: Any) -> dict[str, Any]:
    """Endpoint and keys in the shape pywebpush expects."""
    return {
        "endpoint": subscription.endpoint,
        "keys": {
            "p256dh": subscription.p256dh_key,
            "auth": subscription.auth_key,
        },
    }


class DeliveryEngine:
    """Sends one notification to one subscription with retries."""

    def __init__(
        self,
        transport: PushTransport,
        history: Optional[HistoryRecorder] = None,
        subscriptions: Optional[SubscriptionMaintainer] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        default_ttl: int = DEFAULT_TTL,
        deactivate_on_permanent_failure: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.history = history
        self.subscriptions = subscriptions
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_ttl = default_ttl
        self.deactivate_on_permanent_failure = deactivate_on_permanent_failure
        self._sleep = sleep

    async def send(
        self,
        subscription: Any,
        payload: NotificationPayload,
        options: Optional[DeliveryOptions] = None,
        timeout: Optional[float] = None,
    ) -> DeliveryResult:
        """Deliver `payload` to `subscription`.

        Args:
            subscription: Object exposing id, endpoint, p256dh_key, auth_key
            payload: Validated notification payload
            options: Urgency/topic/TTL/retry overrides
            timeout: Deadline in seconds for all attempts and backoff

        Returns:
            DeliveryResult; never raises for transport failures
        """
        if not isinstance(payload, NotificationPayload):
            raise ValidationError("payload must be a NotificationPayload")
        if not getattr(subscription, "endpoint", None):
            raise ValidationError("subscription has no endpoint")

        options = options or DeliveryOptions()
        subscription_id = str(subscription.id) if getattr(subscription, "id", None) else None
        result = DeliveryResult(success=False, subscription_id=subscription_id)
        data = json.dumps(build_wire_payload(payload))

        start = time.perf_counter()
        try:
            if timeout is None:
                await self._deliver(subscription, data, payload, options, result)
            else:
                await asyncio.wait_for(
                    self._deliver(subscription, data, payload, options, result),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            result.success = False
            result.error = f"Delivery timed out after {timeout}s ({result.attempts} attempts)"
            logger.warning(f"Push to subscription {subscription_id} timed out")
        except asyncio.CancelledError:
            result.success = False
            result.error = f"Delivery cancelled after {result.attempts} attempts"
            logger.warning(f"Push to subscription {subscription_id} cancelled")
            record_push_delivery(payload.priority.value, False, time.perf_counter() - start)
            # The caller gave up on this send; the attempt still gets a history row
            await asyncio.shield(self._record_history(payload, result))
            raise

        record_push_delivery(payload.priority.value, result.success, time.perf_counter() - start)
        await self._after_delivery(payload, result)
        return result

    async def _deliver(
        self,
        subscription: Any,
        data: str,
        payload: NotificationPayload,
        options: DeliveryOptions,
        result: DeliveryResult,
    ) -> None:
        max_retries = options.max_retries if options.max_retries is not None else self.max_retries
        max_retries = max(1, max_retries)
        retry_delay = options.retry_delay if options.retry_delay is not None else self.retry_delay
        urgency = options.urgency or urgency_for(payload.priority)
        ttl = options.ttl if options.ttl is not None else self.default_ttl
        info = subscription_info(subscription)

        for attempt in range(1, max_retries + 1):
            result.attempts = attempt
            try:
                await self.transport.send(
                    info,
                    data,
                    urgency=urgency,
                    ttl=ttl,
                    topic=options.topic,
                )
            except TransportError as e:
                error = e
            except Exception as e:
                # Opaque failure from the transport: classify by message
                logger.warning(f"Unclassified push error: {e}", exc_info=True)
                error = classify_error(str(e) or type(e).__name__)
            else:
                record_push_attempt("ok")
                result.success = True
                result.error = None
                result.status_code = None
                return

            result.error = error.message
            result.status_code = error.status_code

            if isinstance(error, PermanentSubscriptionError):
                record_push_attempt("permanent")
                result.permanent = True
                logger.info(
                    f"Subscription {result.subscription_id} rejected permanently: {error.message}"
                )
                return

            record_push_attempt("rate_limited" if isinstance(error, RateLimitError) else "transient")

            if attempt < max_retries:
                if isinstance(error, RateLimitError) and error.retry_after is not None:
                    delay = error.retry_after
                else:
                    delay = retry_delay * attempt
                logger.info(
                    f"Push attempt {attempt}/{max_retries} to {result.subscription_id} failed "
                    f"({error.message}); retrying in {delay}s"
                )
                await self._sleep(delay)

        if not result.error:
            result.error = "Failed to send notification after retries"

    async def _record_history(self, payload: NotificationPayload, result: DeliveryResult) -> None:
        if result.subscription_id is None or self.history is None:
            return

        status = DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED
        try:
            await self.history.record(payload, result.subscription_id, status, result.error)
        except Exception:
            logger.exception(f"Failed to record history for {payload.id}")

    async def _after_delivery(self, payload: NotificationPayload, result: DeliveryResult) -> None:
        if result.subscription_id is None:
            return

        await self._record_history(payload, result)

        if self.subscriptions is None:
            return

        try:
            if result.success:
                await self.subscriptions.touch(result.subscription_id)
            elif result.permanent and self.deactivate_on_permanent_failure:
                if await self.subscriptions.deactivate(result.subscription_id):
                    record_subscription_deactivated("permanent_failure")
                    logger.info(f"Deactivated stale subscription {result.subscription_id}")
        except Exception:
            logger.exception(f"Failed to update subscription {result.subscription_id}")
