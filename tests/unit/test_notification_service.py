"""Tests for the notification service facade."""

from datetime import time

import pytest

from safework.core.exceptions import NotFoundError, TransportError
from safework.push.payload import NotificationPriority, NotificationType
from safework.services.notification_service import BatchRequest

NOON = time(12, 0)


async def subscribe(service, subscription_data, user_id="user-1", tenant_id="tenant-1", preferences=None):
    return await service.initialize_user(user_id, tenant_id, subscription_data(), preferences=preferences)


class TestSubscriptions:
    """Tests for subscription lifecycle through the facade."""

    @pytest.mark.asyncio
    async def test_initialize_user_is_idempotent(self, notification_service, subscription_data):
        first = await subscribe(notification_service, subscription_data)
        second = await subscribe(notification_service, subscription_data)

        assert first == second

    @pytest.mark.asyncio
    async def test_preferences_roundtrip(self, notification_service, subscription_data):
        await subscribe(notification_service, subscription_data)

        updated = await notification_service.update_preferences(
            "user-1", "tenant-1", {"types": {"WEATHER_ALERT": False}}
        )
        loaded = await notification_service.get_preferences("user-1", "tenant-1")

        assert updated == loaded
        assert loaded.types[NotificationType.WEATHER_ALERT] is False

    @pytest.mark.asyncio
    async def test_preferences_without_subscription(self, notification_service):
        assert await notification_service.get_preferences("user-1", "tenant-1") is None
        with pytest.raises(NotFoundError):
            await notification_service.update_preferences("user-1", "tenant-1", {"enabled": False})

    @pytest.mark.asyncio
    async def test_unsubscribe(self, notification_service, subscription_data):
        await subscribe(notification_service, subscription_data)

        assert await notification_service.unsubscribe_user("user-1", "tenant-1") is True
        assert await notification_service.unsubscribe_user("user-1", "tenant-1") is False

    def test_public_key(self, notification_service, key_manager):
        assert notification_service.public_key == key_manager.public_key


class TestSendToUser:
    """Tests for single-user sends."""

    @pytest.mark.asyncio
    async def test_no_subscription(self, notification_service, transport, make_payload):
        result = await notification_service.send_to_user(make_payload(), now=NOON)

        assert not result.success
        assert result.error == "No active subscription found for user"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_delivered_and_recorded(self, notification_service, transport, subscription_data, make_payload):
        subscription_id = await subscribe(notification_service, subscription_data)
        payload = make_payload()

        result = await notification_service.send_to_user(payload, now=NOON)

        assert result.success
        assert result.subscription_id == subscription_id
        assert len(transport.calls) == 1
        page = await notification_service.history.query("user-1", "tenant-1")
        assert [e.notification_id for e in page.items] == [payload.id]
        assert page.items[0].status == "SENT"
        subscription = await notification_service.registry.get(subscription_id)
        assert subscription.last_used_at is not None

    @pytest.mark.asyncio
    async def test_suppressed_is_success_without_history(
        self, notification_service, transport, subscription_data, make_payload
    ):
        await subscribe(notification_service, subscription_data, preferences={"priorities": {"LOW": False}})

        result = await notification_service.send_to_user(
            make_payload(priority=NotificationPriority.LOW), now=NOON
        )

        assert result.success
        assert result.suppressed
        assert transport.calls == []
        assert (await notification_service.history.query("user-1", "tenant-1")).total == 0

    @pytest.mark.asyncio
    async def test_failure_recorded(self, notification_service, transport, subscription_data, make_payload):
        await subscribe(notification_service, subscription_data)
        transport.outcomes = [TransportError("Service Unavailable", status_code=503)]

        result = await notification_service.send_to_user(make_payload(), now=NOON)

        assert not result.success
        assert result.attempts == 3
        page = await notification_service.history.query("user-1", "tenant-1")
        assert page.items[0].status == "FAILED"
        assert page.items[0].error_message == "Service Unavailable"


class TestSendBatch:
    """Tests for tenant fan-out."""

    @pytest.mark.asyncio
    async def test_whole_tenant(self, notification_service, transport, subscription_data):
        for user_id in ("alice", "bob", "carol"):
            await subscribe(notification_service, subscription_data, user_id=user_id)
        await subscribe(notification_service, subscription_data, user_id="mallory", tenant_id="tenant-2")

        result = await notification_service.send_batch(
            BatchRequest(
                tenant_id="tenant-1",
                type=NotificationType.WEATHER_ALERT,
                priority=NotificationPriority.HIGH,
                title="Storm warning",
                body="Stop all crane work",
            ),
            now=NOON,
        )

        assert result.sent == 3
        assert result.success
        assert len(transport.calls) == 3
        for user_id in ("alice", "bob", "carol"):
            page = await notification_service.history.query(user_id, "tenant-1")
            assert page.total == 1
            assert page.items[0].notification_id.startswith("batch_")

    @pytest.mark.asyncio
    async def test_listed_users_only(self, notification_service, transport, subscription_data):
        for user_id in ("alice", "bob"):
            await subscribe(notification_service, subscription_data, user_id=user_id)

        result = await notification_service.send_batch(
            BatchRequest(
                tenant_id="tenant-1",
                user_ids=["bob"],
                type=NotificationType.TRA_APPROVED,
                priority=NotificationPriority.MEDIUM,
                title="TRA approved",
                body="TRA-17 was approved",
            ),
            now=NOON,
        )

        assert result.sent == 1
        assert (await notification_service.history.query("alice", "tenant-1")).total == 0

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, notification_service, transport):
        result = await notification_service.send_batch(
            BatchRequest(
                tenant_id="tenant-1",
                type=NotificationType.SYSTEM_ALERT,
                priority=NotificationPriority.LOW,
                title="Maintenance",
                body="Tonight 22:00",
            )
        )

        assert result.sent == 0
        assert result.message == "No active subscriptions found for target users"
        assert transport.calls == []
