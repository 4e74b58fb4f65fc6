from safework.push.batch import BatchOrchestrator, BatchResult
from safework.push.delivery import (
    DeliveryEngine,
    DeliveryOptions,
    DeliveryResult,
    build_wire_payload,
    urgency_for,
)
from safework.push.keys import KeyManager, VapidKeyPair
from safework.push.payload import (
    DeliveryStatus,
    NotificationAction,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
)
from safework.push.preferences import Preferences, QuietHours, should_deliver
from safework.push.transport import WebPushTransport

__all__ = [
    "BatchOrchestrator",
    "BatchResult",
    "DeliveryEngine",
    "DeliveryOptions",
    "DeliveryResult",
    "DeliveryStatus",
    "KeyManager",
    "NotificationAction",
    "NotificationPayload",
    "NotificationPriority",
    "NotificationType",
    "Preferences",
    "QuietHours",
    "VapidKeyPair",
    "WebPushTransport",
    "build_wire_payload",
    "should_deliver",
    "urgency_for",
]
