"""Tests for the subscription registry."""

import pytest

from safework.core.exceptions import NotFoundError, ValidationError
from safework.push.payload import NotificationPriority, NotificationType
from safework.services.subscription_registry import detect_browser, validate_subscription_data
from tests.conftest import AUTH_KEY, P256DH_KEY


class TestValidation:
    """Tests for client subscription data validation."""

    def test_valid(self, subscription_data):
        assert validate_subscription_data(subscription_data()) == []

    def test_missing_everything(self):
        assert validate_subscription_data({}) == [
            "Missing endpoint",
            "Missing p256dh key",
            "Missing auth key",
        ]

    def test_bad_key_encoding(self):
        data = {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "a+b/c", "auth": AUTH_KEY}}
        assert validate_subscription_data(data) == ["Invalid p256dh key format"]

    def test_not_an_object(self):
        assert validate_subscription_data("endpoint") == ["Subscription data must be an object"]

    @pytest.mark.parametrize(
        "user_agent,browser",
        [
            ("Mozilla/5.0 (Windows NT 10.0) AppleWebKit/537.36 Chrome/120.0 Safari/537.36", "Chrome"),
            ("Mozilla/5.0 (Windows NT 10.0) Chrome/120.0 Safari/537.36 Edg/120.0", "Edge"),
            ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", "Firefox"),
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) AppleWebKit/605.1.15 Safari/604.1", "Safari"),
            (None, "Unknown"),
        ],
    )
    def test_detect_browser(self, user_agent, browser):
        assert detect_browser(user_agent) == browser


class TestSubscriptionRegistry:
    """Tests for subscription persistence."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self, registry, subscription_data):
        data = subscription_data()
        subscription_id = await registry.create("user-1", "tenant-1", data, user_agent="Firefox/121.0")

        subscription = await registry.get(subscription_id)
        assert subscription_id.startswith("sub_")
        assert subscription.endpoint == data["endpoint"]
        assert subscription.p256dh_key == P256DH_KEY
        assert subscription.browser == "Firefox"
        assert subscription.is_active
        prefs = subscription.get_preferences()
        assert prefs.types[NotificationType.LMRA_COMPLETED] is False

    @pytest.mark.asyncio
    async def test_create_with_partial_preferences(self, registry, subscription_data):
        subscription_id = await registry.create(
            "user-1", "tenant-1", subscription_data(), preferences={"priorities": {"LOW": False}}
        )

        prefs = (await registry.get(subscription_id)).get_preferences()
        assert prefs.priorities[NotificationPriority.LOW] is False
        assert prefs.priorities[NotificationPriority.CRITICAL] is True

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_data(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            await registry.create("user-1", "tenant-1", {"endpoint": "https://push.example.com"})
        assert "Missing p256dh key" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_find_active_scoped_to_tenant(self, registry, subscription_data):
        await registry.create("user-1", "tenant-1", subscription_data())

        assert await registry.find_active("user-1", "tenant-1") is not None
        assert await registry.find_active("user-1", "tenant-2") is None
        assert await registry.find_active("user-2", "tenant-1") is None

    @pytest.mark.asyncio
    async def test_deactivate(self, registry, subscription_data):
        subscription_id = await registry.create("user-1", "tenant-1", subscription_data())

        assert await registry.deactivate(subscription_id) is True
        assert await registry.deactivate(subscription_id) is False
        assert await registry.find_active("user-1", "tenant-1") is None
        assert (await registry.get(subscription_id)).is_active is False

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, registry):
        assert await registry.deactivate("sub_missing") is False

    @pytest.mark.asyncio
    async def test_update_preferences_shallow_merge(self, registry, subscription_data):
        subscription_id = await registry.create(
            "user-1",
            "tenant-1",
            subscription_data(),
            preferences={"quietHours": {"enabled": True, "start": "21:00", "end": "06:00"}},
        )

        prefs = await registry.update_preferences(subscription_id, {"quietHours": {"enabled": True}})

        assert prefs.quiet_hours.start == "22:00"
        stored = (await registry.get(subscription_id)).preferences
        assert stored["quietHours"] == {"enabled": True, "start": "22:00", "end": "08:00"}

    @pytest.mark.asyncio
    async def test_update_preferences_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.update_preferences("sub_missing", {"enabled": False})

    @pytest.mark.asyncio
    async def test_list_active_for_tenant(self, registry, subscription_data):
        alice = await registry.create("alice", "tenant-1", subscription_data())
        bob = await registry.create("bob", "tenant-1", subscription_data())
        carol = await registry.create("carol", "tenant-1", subscription_data())
        await registry.create("dave", "tenant-2", subscription_data())
        await registry.deactivate(carol)

        everyone = await registry.list_active_for_tenant("tenant-1")
        listed = await registry.list_active_for_tenant("tenant-1", user_ids=["bob", "dave"])

        assert {s.id for s in everyone} == {alice, bob}
        assert [s.id for s in listed] == [bob]

    @pytest.mark.asyncio
    async def test_touch(self, registry, subscription_data):
        subscription_id = await registry.create("user-1", "tenant-1", subscription_data())

        await registry.touch(subscription_id)

        assert (await registry.get(subscription_id)).last_used_at is not None
