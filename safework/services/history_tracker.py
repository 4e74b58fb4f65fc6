"""Delivery history: one entry per (subscription, notification).

Entries only move forward:

    SENT -> DELIVERED -> CLICKED | DISMISSED
    SENT -> CLICKED | DISMISSED    (delivery receipt never arrived)
    SENT -> FAILED

CLICKED, DISMISSED and FAILED are terminal. A SENT -> CLICKED/DISMISSED
jump also stamps delivered_at, since the client could not have interacted
with a notification it never received.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safework.core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from safework.db.models.notification import NotificationHistory
from safework.push.delivery import build_wire_payload
from safework.push.payload import (
    DeliveryStatus,
    NotificationPayload,
    NotificationPriority,
    NotificationType,
    coerce_priority,
    coerce_type,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.SENT: frozenset({
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CLICKED,
        DeliveryStatus.DISMISSED,
        DeliveryStatus.FAILED,
    }),
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.CLICKED, DeliveryStatus.DISMISSED}),
    DeliveryStatus.CLICKED: frozenset(),
    DeliveryStatus.DISMISSED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}

UNREAD_STATUSES = (DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value)

MAX_PAGE_SIZE = 100


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class HistoryFilters:
    types: Sequence[NotificationType] = ()
    priorities: Sequence[NotificationPriority] = ()
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "types", tuple(coerce_type(t) for t in self.types))
        object.__setattr__(self, "priorities", tuple(coerce_priority(p) for p in self.priorities))
        if self.start and self.end and self.start > self.end:
            raise ValidationError("Date range start is after end")

    def to_dict(self) -> dict[str, Any]:
        return {
            "types": [t.value for t in self.types],
            "priorities": [p.value for p in self.priorities],
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class HistoryPage:
    items: list[NotificationHistory]
    page: int
    limit: int
    total: int
    unread_count: int
    filters: HistoryFilters = field(default_factory=HistoryFilters)

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "notifications": [item.to_dict() for item in self.items],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "has_next": self.has_next,
                "has_prev": self.has_prev,
            },
            "filters": self.filters.to_dict(),
            "unread_count": self.unread_count,
        }


@dataclass
class NotificationStats:
    """Tenant-wide delivery statistics over a period."""

    tenant_id: str
    start: Optional[datetime]
    end: Optional[datetime]
    by_status: dict[str, int]
    by_priority: dict[str, int]
    by_type: dict[str, int]
    average_delivery_ms: Optional[float]

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "period": {
                "start": self.start.isoformat() if self.start else None,
                "end": self.end.isoformat() if self.end else None,
            },
            "total": self.total,
            "total_failed": self.by_status.get(DeliveryStatus.FAILED.value, 0),
            "total_clicked": self.by_status.get(DeliveryStatus.CLICKED.value, 0),
            "by_status": self.by_status,
            "by_priority": self.by_priority,
            "by_type": self.by_type,
            "average_delivery_ms": self.average_delivery_ms,
        }


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class HistoryTracker:
    """Append-mostly log of delivery outcomes with read-side aggregation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        payload: NotificationPayload,
        subscription_id: str,
        status: DeliveryStatus,
        error: Optional[str] = None,
    ) -> str:
        """Append the outcome of one delivery attempt."""
        status = DeliveryStatus(status)
        now = datetime.now(timezone.utc)
        entry = NotificationHistory(
            user_id=payload.user_id,
            tenant_id=payload.tenant_id,
            subscription_id=subscription_id,
            notification_id=payload.id,
            type=payload.type.value,
            priority=payload.priority.value,
            title=payload.title,
            body=payload.body,
            payload=build_wire_payload(payload),
            status=status.value,
            error_message=error,
            sent_at=now,
            delivered_at=now if status == DeliveryStatus.DELIVERED else None,
        )

        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()

        return entry.id

    async def get(self, entry_id: str) -> Optional[NotificationHistory]:
        async with self.session_factory() as session:
            return await session.get(NotificationHistory, entry_id)

    def _owner_query(self, user_id: str, tenant_id: str, filters: HistoryFilters):
        stmt = (
            select(NotificationHistory)
            .where(NotificationHistory.user_id == user_id)
            .where(NotificationHistory.tenant_id == tenant_id)
        )
        if filters.types:
            stmt = stmt.where(NotificationHistory.type.in_([t.value for t in filters.types]))
        if filters.priorities:
            stmt = stmt.where(
                NotificationHistory.priority.in_([p.value for p in filters.priorities])
            )
        if filters.start is not None:
            stmt = stmt.where(NotificationHistory.sent_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(NotificationHistory.sent_at <= filters.end)
        return stmt

    async def query(
        self,
        user_id: str,
        tenant_id: str,
        filters: Optional[HistoryFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> HistoryPage:
        """Filtered page of a user's history, newest first."""
        filters = filters or HistoryFilters()
        pagination = pagination or Pagination()
        stmt = self._owner_query(user_id, tenant_id, filters)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(stmt.subquery())
            )
            result = await session.execute(
                stmt.order_by(NotificationHistory.sent_at.desc(), NotificationHistory.id.desc())
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            items = list(result.scalars().all())
            unread = await self._unread_count(session, user_id, tenant_id)

        return HistoryPage(
            items=items,
            page=pagination.page,
            limit=pagination.limit,
            total=total or 0,
            unread_count=unread,
            filters=filters,
        )

    async def unread_count(self, user_id: str, tenant_id: str) -> int:
        """Entries still SENT or DELIVERED."""
        async with self.session_factory() as session:
            return await self._unread_count(session, user_id, tenant_id)

    async def _unread_count(self, session: AsyncSession, user_id: str, tenant_id: str) -> int:
        count = await session.scalar(
            select(func.count(NotificationHistory.id))
            .where(NotificationHistory.user_id == user_id)
            .where(NotificationHistory.tenant_id == tenant_id)
            .where(NotificationHistory.status.in_(UNREAD_STATUSES))
        )
        return count or 0

    async def transition(
        self,
        entry_id: str,
        target: DeliveryStatus,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> NotificationHistory:
        """Move an entry forward.

        `user_id` and `tenant_id`, when given, must match the entry's owner.
        """
        target = DeliveryStatus(target)

        async with self.session_factory() as session:
            entry = await session.get(NotificationHistory, entry_id)
            if entry is None:
                raise NotFoundError(f"Notification {entry_id} not found")
            if user_id is not None and entry.user_id != user_id:
                raise AuthorizationError("Notification belongs to another user")
            if tenant_id is not None and entry.tenant_id != tenant_id:
                raise AuthorizationError("Notification belongs to another tenant")

            current = DeliveryStatus(entry.status)
            if current == target:
                return entry
            if not can_transition(current, target):
                raise InvalidTransitionError(
                    f"Cannot move notification from {current.value} to {target.value}"
                )

            now = datetime.now(timezone.utc)
            entry.status = target.value
            if target == DeliveryStatus.DELIVERED:
                entry.delivered_at = now
            elif target in (DeliveryStatus.CLICKED, DeliveryStatus.DISMISSED):
                if entry.delivered_at is None:
                    entry.delivered_at = now
                if target == DeliveryStatus.CLICKED:
                    entry.clicked_at = now
                    entry.clicked_action = action
                else:
                    entry.dismissed_at = now

            await session.commit()

        logger.debug(f"History {entry_id}: {current.value} -> {target.value}")
        return entry

    async def mark_delivered(
        self,
        entry_id: str,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> NotificationHistory:
        return await self.transition(
            entry_id, DeliveryStatus.DELIVERED, user_id=user_id, tenant_id=tenant_id
        )

    async def mark_read(
        self,
        entry_id: str,
        user_id: str,
        action: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> NotificationHistory:
        """Mark an entry read (CLICKED) on behalf of its owner."""
        return await self.transition(
            entry_id, DeliveryStatus.CLICKED, user_id=user_id, action=action, tenant_id=tenant_id
        )

    async def mark_dismissed(
        self,
        entry_id: str,
        user_id: str,
        tenant_id: Optional[str] = None,
    ) -> NotificationHistory:
        return await self.transition(
            entry_id, DeliveryStatus.DISMISSED, user_id=user_id, tenant_id=tenant_id
        )

    async def stats(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> NotificationStats:
        """Counts by status, priority and type plus mean time to delivery."""
        conditions = [NotificationHistory.tenant_id == tenant_id]
        if start is not None:
            conditions.append(NotificationHistory.sent_at >= start)
        if end is not None:
            conditions.append(NotificationHistory.sent_at <= end)

        async with self.session_factory() as session:
            grouped = {}
            for column in (
                NotificationHistory.status,
                NotificationHistory.priority,
                NotificationHistory.type,
            ):
                rows = await session.execute(
                    select(column, func.count()).where(*conditions).group_by(column)
                )
                grouped[column.key] = {key: count for key, count in rows.all()}

            timings = await session.execute(
                select(NotificationHistory.sent_at, NotificationHistory.delivered_at)
                .where(*conditions)
                .where(NotificationHistory.delivered_at.is_not(None))
            )
            durations = [
                (_as_utc(delivered) - _as_utc(sent)).total_seconds() * 1000
                for sent, delivered in timings.all()
            ]

        return NotificationStats(
            tenant_id=tenant_id,
            start=start,
            end=end,
            by_status=grouped["status"],
            by_priority=grouped["priority"],
            by_type=grouped["type"],
            average_delivery_ms=sum(durations) / len(durations) if durations else None,
        )
