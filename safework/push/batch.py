"""
Batch fan-out of one notification to many subscriptions.

Recipients are filtered by their preferences, split into fixed-size chunks
and sent concurrently within a chunk. A fixed pause between chunks keeps the
request rate under push-service limits. One recipient failing never aborts
the rest of the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Awaitable, Callable, Optional, Sequence

from safework.core.exceptions import ValidationError
from safework.core.metrics import record_batch, record_push_suppressed
from safework.push.delivery import DeliveryEngine, DeliveryOptions, DeliveryResult
from safework.push.payload import NotificationPayload
from safework.push.preferences import Preferences, should_deliver

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_BATCH_DELAY = 1.0

NO_ELIGIBLE_MESSAGE = "No eligible subscriptions for this notification"
DEADLINE_CANCELLED_ERROR = "Delivery cancelled: batch deadline exceeded"


@dataclass
class BatchResult:
    """Aggregate outcome of a batch send."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0  # not attempted because the batch deadline passed
    suppressed: int = 0  # filtered out by preferences
    chunks: int = 0
    errors: list[str] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failed == 0 and self.skipped == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "suppressed": self.suppressed,
            "chunks": self.chunks,
            "errors": list(self.errors),
            "message": self.message,
        }


def preferences_of(subscription: Any) -> Preferences:
    prefs = getattr(subscription, "preferences", None)
    if isinstance(prefs, Preferences):
        return prefs
    return Preferences.from_dict(prefs)


def chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchOrchestrator:
    """Fans a notification out over the Delivery Engine in throttled chunks."""

    def __init__(
        self,
        engine: DeliveryEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        quiet_hours_tz: tzinfo = timezone.utc,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.quiet_hours_tz = quiet_hours_tz
        self._sleep = sleep

    def filter_eligible(
        self,
        subscriptions: Sequence[Any],
        payload: NotificationPayload,
        now: datetime,
        result: BatchResult,
    ) -> list[Any]:
        eligible = []
        for subscription in subscriptions:
            try:
                prefs = preferences_of(subscription)
            except ValidationError as e:
                result.failed += 1
                result.errors.append(
                    f"Invalid preferences for subscription {getattr(subscription, 'id', '?')}: {e.message}"
                )
                continue

            if should_deliver(prefs, payload, now):
                eligible.append(subscription)
            else:
                result.suppressed += 1
                record_push_suppressed(payload.type.value)
        return eligible

    async def send_batch(
        self,
        subscriptions: Sequence[Any],
        payload: NotificationPayload,
        options: Optional[DeliveryOptions] = None,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> BatchResult:
        """Send `payload` to every eligible subscription.

        Args:
            subscriptions: Candidate recipients (inactive ones are skipped)
            payload: Notification; each recipient gets an addressed copy
            options: Delivery overrides passed to every send
            batch_size: Chunk size, defaults to the orchestrator setting
            now: Clock reading for quiet hours, defaults to the current time
            timeout: Optional deadline in seconds for the whole batch

        Returns:
            BatchResult with per-recipient errors collected
        """
        result = BatchResult()
        now = now or datetime.now(self.quiet_hours_tz)

        active = [s for s in subscriptions if getattr(s, "is_active", True)]
        eligible = self.filter_eligible(active, payload, now, result)
        record_batch(len(eligible))

        if not eligible:
            result.message = NO_ELIGIBLE_MESSAGE
            logger.info(
                f"Batch {payload.id}: no eligible recipients "
                f"({result.suppressed} suppressed of {len(subscriptions)})"
            )
            return result

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        chunks = chunked(eligible, batch_size or self.batch_size)

        logger.info(
            f"Batch {payload.id}: sending to {len(eligible)} recipients in {len(chunks)} chunks"
        )

        for index, chunk in enumerate(chunks):
            if deadline is not None and loop.time() >= deadline:
                remaining = sum(len(c) for c in chunks[index:])
                result.skipped += remaining
                result.errors.append(
                    f"Batch deadline exceeded; {remaining} recipients not attempted"
                )
                logger.warning(f"Batch {payload.id}: deadline exceeded, skipped {remaining}")
                break

            await self._send_chunk(chunk, payload, options, result, deadline)
            result.chunks += 1

            if index < len(chunks) - 1:
                delay = self.batch_delay
                if deadline is not None:
                    delay = min(delay, max(0.0, deadline - loop.time()))
                await self._sleep(delay)

        logger.info(
            f"Batch {payload.id} finished: sent={result.sent} failed={result.failed} "
            f"skipped={result.skipped} suppressed={result.suppressed}"
        )
        return result

    async def _send_chunk(
        self,
        chunk: Sequence[Any],
        payload: NotificationPayload,
        options: Optional[DeliveryOptions],
        result: BatchResult,
        deadline: Optional[float],
    ) -> None:
        tasks = [
            asyncio.ensure_future(
                self.engine.send(subscription, self._addressed(payload, subscription), options)
            )
            for subscription in chunk
        ]

        if deadline is None:
            await asyncio.wait(tasks)
        else:
            remaining = max(0.0, deadline - asyncio.get_running_loop().time())
            _, pending = await asyncio.wait(tasks, timeout=remaining)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if task.cancelled():
                result.failed += 1
                result.errors.append(DEADLINE_CANCELLED_ERROR)
                continue

            error = task.exception()
            if error is not None:
                result.failed += 1
                result.errors.append(str(error) or type(error).__name__)
                continue

            outcome: DeliveryResult = task.result()
            if outcome.success:
                result.sent += 1
            else:
                result.failed += 1
                if outcome.error:
                    result.errors.append(outcome.error)

    @staticmethod
    def _addressed(payload: NotificationPayload, subscription: Any) -> NotificationPayload:
        user_id = getattr(subscription, "user_id", None)
        tenant_id = getattr(subscription, "tenant_id", None)
        if user_id is None or tenant_id is None:
            return payload
        return payload.for_recipient(str(user_id), str(tenant_id))
