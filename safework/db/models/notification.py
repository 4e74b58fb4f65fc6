"""Database models for push subscriptions and delivery history."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from safework.db.database import Base
from safework.push.payload import DeliveryStatus
from safework.push.preferences import Preferences

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_subscription_id() -> str:
    return f"sub_{uuid4().hex}"


def new_history_id() -> str:
    return f"hist_{uuid4().hex}"


class PushSubscription(Base):
    """A recipient device's push endpoint, keys and preferences."""

    __tablename__ = "push_subscriptions"
    __table_args__ = (
        Index("idx_push_subscriptions_owner", "user_id", "tenant_id", "is_active"),
        Index("idx_push_subscriptions_tenant", "tenant_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_subscription_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh_key: Mapped[str] = mapped_column(Text, nullable=False)
    auth_key: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    browser: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def get_preferences(self) -> Preferences:
        return Preferences.from_dict(self.preferences)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "endpoint": self.endpoint,
            "device_info": {
                "user_agent": self.user_agent,
                "platform": self.platform,
                "browser": self.browser,
            },
            "is_active": self.is_active,
            "preferences": self.preferences,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class NotificationHistory(Base):
    """Outcome of one delivery to one subscription."""

    __tablename__ = "notification_history"
    __table_args__ = (
        Index("idx_notification_history_owner", "user_id", "tenant_id", "sent_at"),
        Index("idx_notification_history_status", "user_id", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_history_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=DeliveryStatus.SENT.value, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_action: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    @property
    def is_read(self) -> bool:
        return self.status in (DeliveryStatus.CLICKED.value, DeliveryStatus.DISMISSED.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "body": self.body,
            "status": self.status,
            "error_message": self.error_message,
            "is_read": self.is_read,
            "actions": (self.payload or {}).get("actions", []),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "clicked_at": self.clicked_at.isoformat() if self.clicked_at else None,
            "dismissed_at": self.dismissed_at.isoformat() if self.dismissed_at else None,
            "clicked_action": self.clicked_action,
        }
