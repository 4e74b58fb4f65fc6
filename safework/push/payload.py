"""
Notification payload model.

A payload is immutable once built: batch fan-out derives one copy per
recipient with `for_recipient` instead of mutating the original.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from safework.core.exceptions import ValidationError


class NotificationPriority(str, Enum):
    """Application-level importance of a notification."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class NotificationType(str, Enum):
    """Safety events that produce notifications."""

    LMRA_STOP_WORK = "LMRA_STOP_WORK"
    LMRA_COMPLETED = "LMRA_COMPLETED"
    TRA_APPROVED = "TRA_APPROVED"
    TRA_REJECTED = "TRA_REJECTED"
    TRA_OVERDUE = "TRA_OVERDUE"
    SAFETY_INCIDENT = "SAFETY_INCIDENT"
    EQUIPMENT_ISSUE = "EQUIPMENT_ISSUE"
    WEATHER_ALERT = "WEATHER_ALERT"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class DeliveryStatus(str, Enum):
    """Lifecycle of a history entry."""

    SENT = "SENT"
    DELIVERED = "DELIVERED"
    CLICKED = "CLICKED"
    DISMISSED = "DISMISSED"
    FAILED = "FAILED"


def generate_notification_id(prefix: str = "notif") -> str:
    return f"{prefix}_{uuid4().hex}"


def coerce_priority(value: Any) -> NotificationPriority:
    try:
        return NotificationPriority(value)
    except ValueError:
        raise ValidationError(f"Unknown notification priority: {value!r}") from None


def coerce_type(value: Any) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        raise ValidationError(f"Unknown notification type: {value!r}") from None


@dataclass(frozen=True)
class NotificationAction:
    """An action button shown on the notification."""

    action: str
    title: str
    icon: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"action": self.action, "title": self.title}
        if self.icon:
            data["icon"] = self.icon
        return data


@dataclass(frozen=True)
class NotificationPayload:
    """A notification addressed to one user within one tenant."""

    user_id: str
    tenant_id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    body: str
    id: str = field(default_factory=generate_notification_id)
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    actions: tuple[NotificationAction, ...] = ()
    require_interaction: bool = False
    silent: bool = False
    tag: Optional[str] = None
    renotify: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        errors = []
        if not isinstance(self.title, str) or not self.title.strip():
            errors.append("Missing title")
        if not isinstance(self.body, str) or not self.body.strip():
            errors.append("Missing body")
        if self.type is None:
            errors.append("Missing type")
        if self.priority is None:
            errors.append("Missing priority")
        if errors:
            raise ValidationError("Invalid notification payload", errors=errors)

        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "type", coerce_type(self.type))
        object.__setattr__(self, "priority", coerce_priority(self.priority))
        object.__setattr__(
            self,
            "actions",
            tuple(
                a if isinstance(a, NotificationAction) else NotificationAction(**a)
                for a in self.actions
            ),
        )
        object.__setattr__(self, "data", dict(self.data or {}))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    def for_recipient(self, user_id: str, tenant_id: str) -> "NotificationPayload":
        """Copy of this payload addressed to another recipient."""
        return replace(self, user_id=user_id, tenant_id=tenant_id)
