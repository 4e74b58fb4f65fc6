from typing import AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safework.config import settings
from safework.core.security import create_access_token
from safework.db import models  # noqa: F401
from safework.db.database import Base, build_engine, create_session_factory
from safework.db.models.notification import PushSubscription
from safework.main import app
from safework.push.keys import KeyManager
from safework.push.payload import NotificationPayload, NotificationPriority, NotificationType
from safework.push.preferences import Preferences
from safework.services.history_tracker import HistoryTracker
from safework.services.notification_service import NotificationService
from safework.services.subscription_registry import SubscriptionRegistry

# Valid-looking base64url keys as produced by browsers
P256DH_KEY = "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM"
AUTH_KEY = "tBHItJI5svbpez7KI4CCXg"


class FakeTransport:
    """Push transport double.

    `outcomes` is consumed one per attempt; the last outcome repeats.
    None means success, an exception instance is raised.
    """

    def __init__(self, outcomes: Optional[list] = None):
        self.outcomes = list(outcomes or [None])
        self.calls: list[dict] = []

    async def send(self, subscription_info, data, *, urgency, ttl, topic=None):
        self.calls.append({
            "subscription_info": subscription_info,
            "data": data,
            "urgency": urgency,
            "ttl": ttl,
            "topic": topic,
        })
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome is not None:
            raise outcome


class RecordingSleep:
    """Replaces asyncio.sleep; records requested delays without waiting."""

    def __init__(self, log: Optional[list] = None):
        self.delays: list[float] = []
        self.log = log

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.log is not None:
            self.log.append(("sleep", delay))


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a test database engine."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'safework.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
def registry(session_factory) -> SubscriptionRegistry:
    return SubscriptionRegistry(session_factory)


@pytest.fixture
def history(session_factory) -> HistoryTracker:
    return HistoryTracker(session_factory)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    pair = KeyManager.generate_key_pair()
    return KeyManager(pair.public_key, pair.private_key, "safety@example.com")


@pytest.fixture
def notification_service(session_factory, transport, key_manager) -> NotificationService:
    service = NotificationService.build(
        settings, session_factory, transport=transport, key_manager=key_manager
    )
    service.engine.retry_delay = 0
    service.orchestrator.batch_delay = 0
    return service


@pytest_asyncio.fixture
async def client(notification_service) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app.state.notification_service = notification_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.notification_service = None


@pytest.fixture
def auth_headers():
    """Build bearer headers for a user within a tenant."""

    def _headers(user_id: str = "user-1", tenant_id: str = "tenant-1") -> dict[str, str]:
        token = create_access_token({"sub": user_id, "tenant_id": tenant_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def subscription_data():
    def _data(endpoint: Optional[str] = None) -> dict:
        return {
            "endpoint": endpoint or f"https://fcm.googleapis.com/fcm/send/{uuid4().hex}",
            "keys": {"p256dh": P256DH_KEY, "auth": AUTH_KEY},
        }

    return _data


@pytest.fixture
def make_subscription():
    """Unsaved subscription rows for engine and batch tests."""

    def _make(
        user_id: str = "user-1",
        tenant_id: str = "tenant-1",
        preferences: Optional[dict] = None,
        **overrides,
    ) -> PushSubscription:
        sub_id = overrides.pop("id", f"sub_{uuid4().hex}")
        return PushSubscription(
            id=sub_id,
            user_id=user_id,
            tenant_id=tenant_id,
            endpoint=overrides.pop("endpoint", f"https://push.example.com/{sub_id}"),
            p256dh_key=P256DH_KEY,
            auth_key=AUTH_KEY,
            is_active=overrides.pop("is_active", True),
            preferences=preferences if preferences is not None else Preferences().to_dict(),
            **overrides,
        )

    return _make


@pytest.fixture
def make_payload():
    def _make(**overrides) -> NotificationPayload:
        fields = {
            "user_id": "user-1",
            "tenant_id": "tenant-1",
            "type": NotificationType.LMRA_STOP_WORK,
            "priority": NotificationPriority.CRITICAL,
            "title": "Stop work",
            "body": "Work on scaffold B2 has been stopped",
        }
        fields.update(overrides)
        return NotificationPayload(**fields)

    return _make
