"""Push notification service for SafeWork.

Entry point for event producers and the HTTP API. Built once at process
start and passed to call sites, it wires together:
- Subscription registry (who can receive)
- Preference filter (who wants to receive, and when)
- Delivery engine and batch orchestrator (sending with retries)
- History tracker (what happened)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safework.config import Settings
from safework.core.exceptions import NotFoundError
from safework.core.metrics import record_push_suppressed, record_subscription_deactivated
from safework.push.batch import BatchOrchestrator, BatchResult
from safework.push.delivery import DeliveryEngine, DeliveryOptions, DeliveryResult
from safework.push.keys import KeyManager
from safework.push.payload import (
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    generate_notification_id,
)
from safework.push.preferences import Preferences, should_deliver
from safework.push.transport import PushTransport, WebPushTransport
from safework.services.history_tracker import HistoryTracker
from safework.services.subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchRequest:
    """One notification for an explicit user list or a whole tenant."""

    tenant_id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    body: str
    user_ids: Optional[Sequence[str]] = None
    data: Optional[dict[str, Any]] = None
    tag: Optional[str] = None
    scheduled_for: Optional[datetime] = None

    def to_payload(self) -> NotificationPayload:
        # Recipient fields are filled in per subscription during fan-out
        return NotificationPayload(
            id=generate_notification_id("batch"),
            user_id="",
            tenant_id=self.tenant_id,
            type=self.type,
            priority=self.priority,
            title=self.title,
            body=self.body,
            data=dict(self.data or {}),
            tag=self.tag,
            timestamp=self.scheduled_for or datetime.now(timezone.utc),
        )


class NotificationService:
    """Service for registering recipients and sending push notifications."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        history: HistoryTracker,
        engine: DeliveryEngine,
        orchestrator: BatchOrchestrator,
        key_manager: Optional[KeyManager] = None,
        quiet_hours_tz: Any = timezone.utc,
    ):
        self.registry = registry
        self.history = history
        self.engine = engine
        self.orchestrator = orchestrator
        self.key_manager = key_manager
        self.quiet_hours_tz = quiet_hours_tz

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        transport: Optional[PushTransport] = None,
        key_manager: Optional[KeyManager] = None,
    ) -> "NotificationService":
        """Assemble the pipeline from settings.

        Raises KeyConfigurationError when no transport is supplied and the
        VAPID keys are missing or malformed.
        """
        if transport is None:
            key_manager = key_manager or KeyManager.from_settings(settings)
            transport = WebPushTransport(key_manager, request_timeout=settings.push_request_timeout)

        registry = SubscriptionRegistry(session_factory)
        history = HistoryTracker(session_factory)
        engine = DeliveryEngine(
            transport,
            history=history,
            subscriptions=registry,
            max_retries=settings.push_max_retries,
            retry_delay=settings.push_retry_delay,
            default_ttl=settings.push_default_ttl,
            deactivate_on_permanent_failure=settings.push_deactivate_on_permanent_failure,
        )
        tz = ZoneInfo(settings.quiet_hours_timezone)
        orchestrator = BatchOrchestrator(
            engine,
            batch_size=settings.push_batch_size,
            batch_delay=settings.push_batch_delay,
            quiet_hours_tz=tz,
        )
        return cls(
            registry=registry,
            history=history,
            engine=engine,
            orchestrator=orchestrator,
            key_manager=key_manager,
            quiet_hours_tz=tz,
        )

    @property
    def public_key(self) -> Optional[str]:
        return self.key_manager.public_key if self.key_manager else None

    async def initialize_user(
        self,
        user_id: str,
        tenant_id: str,
        subscription_data: Mapping[str, Any],
        preferences: Optional[Mapping[str, Any]] = None,
        user_agent: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> str:
        """Return the user's active subscription id, creating one if needed."""
        existing = await self.registry.find_active(user_id, tenant_id)
        if existing is not None:
            return existing.id

        return await self.registry.create(
            user_id,
            tenant_id,
            subscription_data,
            preferences=preferences,
            user_agent=user_agent,
            platform=platform,
        )

    async def get_preferences(self, user_id: str, tenant_id: str) -> Optional[Preferences]:
        subscription = await self.registry.find_active(user_id, tenant_id)
        if subscription is None:
            return None
        return subscription.get_preferences()

    async def update_preferences(
        self,
        user_id: str,
        tenant_id: str,
        partial: Mapping[str, Any],
    ) -> Preferences:
        subscription = await self.registry.find_active(user_id, tenant_id)
        if subscription is None:
            raise NotFoundError("No active subscription found")
        return await self.registry.update_preferences(subscription.id, partial)

    async def unsubscribe_user(self, user_id: str, tenant_id: str) -> bool:
        """Deactivate the user's active subscription, if any."""
        subscription = await self.registry.find_active(user_id, tenant_id)
        if subscription is None:
            return False
        deactivated = await self.registry.deactivate(subscription.id)
        if deactivated:
            record_subscription_deactivated("unsubscribe")
        return deactivated

    async def send_to_user(
        self,
        payload: NotificationPayload,
        options: Optional[DeliveryOptions] = None,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> DeliveryResult:
        """Send to the addressed user's active subscription.

        A notification filtered out by preferences is not an error: the
        result is successful with `suppressed` set and nothing is recorded.
        """
        subscription = await self.registry.find_active(payload.user_id, payload.tenant_id)
        if subscription is None:
            return DeliveryResult(success=False, error="No active subscription found for user")

        now = now or datetime.now(self.quiet_hours_tz)
        if not should_deliver(subscription.get_preferences(), payload, now):
            record_push_suppressed(payload.type.value)
            return DeliveryResult(success=True, subscription_id=subscription.id, suppressed=True)

        result = await self.engine.send(subscription, payload, options, timeout=timeout)
        if not result.success:
            logger.warning(
                f"Push {payload.id} to user {payload.user_id} failed after "
                f"{result.attempts} attempts: {result.error}"
            )
        return result

    async def send_batch(
        self,
        request: BatchRequest,
        options: Optional[DeliveryOptions] = None,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        """Fan a notification out to the request's target audience."""
        payload = request.to_payload()
        subscriptions = await self.registry.list_active_for_tenant(
            request.tenant_id,
            user_ids=request.user_ids,
        )

        if not subscriptions:
            return BatchResult(message="No active subscriptions found for target users")

        return await self.orchestrator.send_batch(
            subscriptions,
            payload,
            options=options,
            now=now,
            timeout=timeout,
        )
