from safework.db.models.notification import NotificationHistory, PushSubscription

__all__ = [
    "NotificationHistory",
    "PushSubscription",
]
