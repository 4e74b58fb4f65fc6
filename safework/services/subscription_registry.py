"""Registry of per-recipient push subscriptions.

Durability is delegated to the database; every operation opens its own
session so concurrent deliveries never share one. Nothing is cached.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safework.core.exceptions import NotFoundError, ValidationError
from safework.db.models.notification import PushSubscription
from safework.push.preferences import Preferences

logger = logging.getLogger(__name__)

BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")


def validate_subscription_data(data: Any) -> list[str]:
    """Return the problems with client-supplied subscription data."""
    errors: list[str] = []
    if not isinstance(data, Mapping):
        return ["Subscription data must be an object"]

    keys = data.get("keys") or {}
    if not isinstance(keys, Mapping):
        keys = {}

    if not data.get("endpoint"):
        errors.append("Missing endpoint")

    p256dh = keys.get("p256dh")
    auth = keys.get("auth")
    if not p256dh:
        errors.append("Missing p256dh key")
    elif not BASE64URL_PATTERN.match(p256dh):
        errors.append("Invalid p256dh key format")

    if not auth:
        errors.append("Missing auth key")
    elif not BASE64URL_PATTERN.match(auth):
        errors.append("Invalid auth key format")

    return errors


def detect_browser(user_agent: Optional[str]) -> str:
    """Coarse browser name from a user agent string."""
    if not user_agent:
        return "Unknown"
    # Edge and Chrome both advertise Chrome; Chrome and Safari both advertise Safari
    if "Edg" in user_agent:
        return "Edge"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Unknown"


class SubscriptionRegistry:
    """Create, read and deactivate push subscriptions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        user_id: str,
        tenant_id: str,
        endpoint_data: Mapping[str, Any],
        preferences: Optional[Mapping[str, Any]] = None,
        user_agent: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> str:
        """Register a subscription and return its id.

        Does not check for an existing active subscription; callers that
        want one per device should call find_active first.
        """
        errors = validate_subscription_data(endpoint_data)
        if errors:
            raise ValidationError("Invalid subscription data", errors=errors)

        prefs = Preferences.defaults().merged(preferences or {})

        subscription = PushSubscription(
            user_id=user_id,
            tenant_id=tenant_id,
            endpoint=endpoint_data["endpoint"],
            p256dh_key=endpoint_data["keys"]["p256dh"],
            auth_key=endpoint_data["keys"]["auth"],
            user_agent=user_agent,
            platform=platform,
            browser=detect_browser(user_agent),
            is_active=True,
            preferences=prefs.to_dict(),
        )

        async with self.session_factory() as session:
            session.add(subscription)
            await session.commit()

        logger.info(f"Created push subscription {subscription.id} for user {user_id}")
        return subscription.id

    async def get(self, subscription_id: str) -> Optional[PushSubscription]:
        async with self.session_factory() as session:
            return await session.get(PushSubscription, subscription_id)

    async def find_active(self, user_id: str, tenant_id: str) -> Optional[PushSubscription]:
        """First active subscription for the user; uniqueness is not enforced."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PushSubscription)
                .where(PushSubscription.user_id == user_id)
                .where(PushSubscription.tenant_id == tenant_id)
                .where(PushSubscription.is_active.is_(True))
                .order_by(PushSubscription.created_at)
                .limit(1)
            )
            return result.scalars().first()

    async def list_active_for_tenant(
        self,
        tenant_id: str,
        user_ids: Optional[Sequence[str]] = None,
    ) -> list[PushSubscription]:
        """Active subscriptions for a batch target."""
        stmt = (
            select(PushSubscription)
            .where(PushSubscription.tenant_id == tenant_id)
            .where(PushSubscription.is_active.is_(True))
            .order_by(PushSubscription.created_at)
        )
        if user_ids:
            stmt = stmt.where(PushSubscription.user_id.in_(list(user_ids)))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_preferences(
        self,
        subscription_id: str,
        partial: Mapping[str, Any],
    ) -> Preferences:
        """Shallow-merge `partial` into the stored preferences."""
        async with self.session_factory() as session:
            subscription = await session.get(PushSubscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")

            merged = subscription.get_preferences().merged(partial)
            subscription.preferences = merged.to_dict()
            subscription.updated_at = datetime.now(timezone.utc)
            await session.commit()

        return merged

    async def deactivate(self, subscription_id: str) -> bool:
        """Soft-delete. Returns False when the subscription was not active."""
        async with self.session_factory() as session:
            subscription = await session.get(PushSubscription, subscription_id)
            if subscription is None or not subscription.is_active:
                return False

            subscription.is_active = False
            subscription.updated_at = datetime.now(timezone.utc)
            await session.commit()

        logger.info(f"Deactivated push subscription {subscription_id}")
        return True

    async def touch(self, subscription_id: str) -> None:
        """Stamp the last successful delivery."""
        async with self.session_factory() as session:
            subscription = await session.get(PushSubscription, subscription_id)
            if subscription is None:
                return
            subscription.last_used_at = datetime.now(timezone.utc)
            await session.commit()
