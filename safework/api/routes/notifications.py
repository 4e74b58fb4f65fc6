"""API routes for push notifications."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from safework.core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SafeWorkError,
    ValidationError,
    bad_gateway,
    bad_request,
    conflict,
    forbidden,
    not_found,
    service_unavailable,
)
from safework.core.security import CurrentUser, get_current_user
from safework.push.delivery import DeliveryOptions
from safework.push.payload import NotificationAction, NotificationPayload
from safework.services.history_tracker import HistoryFilters, Pagination
from safework.services.notification_service import BatchRequest, NotificationService


router = APIRouter()


def get_notification_service(request: Request) -> NotificationService:
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise service_unavailable(
            "Push notifications not configured. Set VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY."
        )
    return service


def to_http_error(error: SafeWorkError) -> HTTPException:
    if isinstance(error, ValidationError):
        return bad_request({"message": error.message, "errors": error.errors})
    if isinstance(error, NotFoundError):
        return not_found(error.message)
    if isinstance(error, AuthorizationError):
        return forbidden(error.message)
    if isinstance(error, InvalidTransitionError):
        return conflict(error.message)
    return bad_request(error.message)


class SubscriptionKeys(BaseModel):
    p256dh: str = ""
    auth: str = ""


class SubscriptionData(BaseModel):
    endpoint: str = ""
    keys: SubscriptionKeys = Field(default_factory=SubscriptionKeys)


class QuietHoursUpdate(BaseModel):
    enabled: Optional[bool] = None
    start: Optional[str] = None
    end: Optional[str] = None


class ChannelsUpdate(BaseModel):
    push: Optional[bool] = None
    email: Optional[bool] = None
    sms: Optional[bool] = None


class PreferencesUpdate(BaseModel):
    """Partial preferences; each section given replaces the stored one."""
    model_config = ConfigDict(populate_by_name=True)

    enabled: Optional[bool] = None
    priorities: Optional[dict[str, bool]] = None
    types: Optional[dict[str, bool]] = None
    quiet_hours: Optional[QuietHoursUpdate] = Field(default=None, alias="quietHours")
    channels: Optional[ChannelsUpdate] = None

    def to_partial(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SubscribeRequest(BaseModel):
    """Request to subscribe to push notifications."""
    subscription: SubscriptionData
    preferences: Optional[PreferencesUpdate] = None
    platform: Optional[str] = None


class ActionModel(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class NotificationContent(BaseModel):
    type: str
    priority: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    tag: Optional[str] = None


class SendRequest(NotificationContent):
    """Single-recipient send within the caller's tenant."""
    user_id: str
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    actions: list[ActionModel] = Field(default_factory=list)
    require_interaction: bool = False
    silent: bool = False
    renotify: bool = False
    urgency: Optional[str] = None
    topic: Optional[str] = None
    ttl: Optional[int] = Field(default=None, ge=0)


class BatchSendRequest(NotificationContent):
    """Fan-out to listed users, or the whole tenant when user_ids is omitted."""
    user_ids: Optional[list[str]] = None
    scheduled_for: Optional[datetime] = None


class ReadRequest(BaseModel):
    action: Optional[str] = None


@router.get("/vapid-key")
async def get_vapid_key(
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Get the VAPID public key for push subscriptions."""
    if not service.public_key:
        raise service_unavailable("Push notifications not configured")
    return {"publicKey": service.public_key}


@router.post("/subscribe")
async def subscribe(
    request: SubscribeRequest,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
    user_agent: Optional[str] = Header(default=None),
) -> dict:
    """Subscribe to push notifications."""
    try:
        subscription_id = await service.initialize_user(
            user.user_id,
            user.tenant_id,
            request.subscription.model_dump(),
            preferences=request.preferences.to_partial() if request.preferences else None,
            user_agent=user_agent,
            platform=request.platform,
        )
    except SafeWorkError as e:
        raise to_http_error(e) from e

    return {
        "success": True,
        "subscriptionId": subscription_id,
        "vapidPublicKey": service.public_key,
    }


@router.get("/subscription")
async def get_subscription(
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Current subscription status and preferences."""
    prefs = await service.get_preferences(user.user_id, user.tenant_id)
    if prefs is None:
        return {"subscribed": False, "preferences": None}
    return {"subscribed": True, "preferences": prefs.to_dict()}


@router.put("/preferences")
async def update_preferences(
    request: PreferencesUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Update notification preferences."""
    try:
        prefs = await service.update_preferences(user.user_id, user.tenant_id, request.to_partial())
    except SafeWorkError as e:
        raise to_http_error(e) from e
    return prefs.to_dict()


@router.post("/unsubscribe")
async def unsubscribe(
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Unsubscribe from push notifications."""
    removed = await service.unsubscribe_user(user.user_id, user.tenant_id)

    if removed:
        return {"message": "Unsubscribed from push notifications"}
    else:
        return {"message": "Subscription not found"}


@router.post("/send")
async def send_notification(
    request: SendRequest,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Send a notification to one user of the caller's tenant."""
    try:
        payload = NotificationPayload(
            user_id=request.user_id,
            tenant_id=user.tenant_id,
            type=request.type,
            priority=request.priority,
            title=request.title,
            body=request.body,
            icon=request.icon,
            badge=request.badge,
            image=request.image,
            data=request.data,
            actions=tuple(NotificationAction(**a.model_dump()) for a in request.actions),
            require_interaction=request.require_interaction,
            silent=request.silent,
            tag=request.tag,
            renotify=request.renotify,
        )
        options = DeliveryOptions(urgency=request.urgency, topic=request.topic, ttl=request.ttl)
    except SafeWorkError as e:
        raise to_http_error(e) from e

    result = await service.send_to_user(payload, options)
    if not result.success:
        raise bad_gateway({"message": "Notification delivery failed", **result.to_dict()})

    return {"notificationId": payload.id, **result.to_dict()}


@router.post("/batch")
async def send_batch(
    request: BatchSendRequest,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Send one notification to many users of the caller's tenant."""
    try:
        batch = BatchRequest(
            tenant_id=user.tenant_id,
            user_ids=request.user_ids,
            type=request.type,
            priority=request.priority,
            title=request.title,
            body=request.body,
            data=request.data,
            tag=request.tag,
            scheduled_for=request.scheduled_for,
        )
        # Validate the content up front so a bad payload fails the request
        batch.to_payload()
    except SafeWorkError as e:
        raise to_http_error(e) from e

    result = await service.send_batch(batch)
    return result.to_dict()


@router.get("/history")
async def get_history(
    types: list[str] = Query(default=[]),
    priorities: list[str] = Query(default=[]),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Paged notification history with unread count."""
    try:
        filters = HistoryFilters(types=types, priorities=priorities, start=start, end=end)
        pagination = Pagination(page=page, limit=limit)
    except SafeWorkError as e:
        raise to_http_error(e) from e

    result = await service.history.query(user.user_id, user.tenant_id, filters, pagination)
    return result.to_dict()


@router.post("/history/{entry_id}/read")
async def mark_read(
    entry_id: str,
    request: Optional[ReadRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Mark a notification as read (clicked)."""
    try:
        entry = await service.history.mark_read(
            entry_id,
            user.user_id,
            action=request.action if request else None,
            tenant_id=user.tenant_id,
        )
    except SafeWorkError as e:
        raise to_http_error(e) from e
    return entry.to_dict()


@router.post("/history/{entry_id}/delivered")
async def mark_delivered(
    entry_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Delivery receipt reported by the service worker."""
    try:
        entry = await service.history.mark_delivered(entry_id, user.user_id, tenant_id=user.tenant_id)
    except SafeWorkError as e:
        raise to_http_error(e) from e
    return entry.to_dict()


@router.post("/history/{entry_id}/dismiss")
async def mark_dismissed(
    entry_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Notification closed without interaction."""
    try:
        entry = await service.history.mark_dismissed(entry_id, user.user_id, tenant_id=user.tenant_id)
    except SafeWorkError as e:
        raise to_http_error(e) from e
    return entry.to_dict()


@router.get("/stats")
async def get_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user: CurrentUser = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict:
    """Delivery statistics for the caller's tenant."""
    stats = await service.history.stats(user.tenant_id, start=start, end=end)
    return stats.to_dict()
