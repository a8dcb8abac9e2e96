"""Notification store — persistence and query surface for notifications."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models import utcnow
from app.models.notification import (
    DELIVERY_TRANSITIONS,
    PRIORITY_RANK,
    DeliveryStatus,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationDelivery,
    NotificationPriority,
    derive_classification,
    ordered_channels,
)
from app.schemas import NotificationCreate, NotificationFilter

logger = logging.getLogger(__name__)


class NotificationOwnershipError(PermissionError):
    """Raised when a bulk operation targets notifications the caller does not own."""

    def __init__(self, notification_ids: list[str]):
        self.notification_ids = notification_ids
        super().__init__(f"Notifications not found or not owned: {', '.join(notification_ids)}")


@dataclass
class NotificationPage:
    items: list[Notification]
    total_count: int
    has_more: bool


@dataclass
class NotificationSummary:
    user_id: str
    unread_count: int = 0
    total_count: int = 0
    count_by_category: dict[str, int] = field(default_factory=dict)
    count_by_priority: dict[str, int] = field(default_factory=dict)


def _value(v):
    return v.value if hasattr(v, "value") else v


def filter_conditions(filters: NotificationFilter, now: Optional[datetime] = None) -> list:
    """WHERE clauses shared by listing, counting and summaries."""
    now = now or datetime.now(timezone.utc)
    n = Notification
    conditions = []
    if filters.user_id:
        conditions.append(n.user_id == filters.user_id)
    for column, wanted in ((n.type, filters.type), (n.category, filters.category), (n.priority, filters.priority)):
        if wanted is None:
            continue
        if isinstance(wanted, list):
            conditions.append(column.in_([_value(w) for w in wanted]))
        else:
            conditions.append(column == _value(wanted))
    if filters.is_read is not None:
        conditions.append(n.is_read.is_(filters.is_read))
    if filters.is_archived is not None:
        conditions.append(n.is_archived.is_(filters.is_archived))
    if filters.created_after:
        conditions.append(n.created_at >= filters.created_after)
    if filters.created_before:
        conditions.append(n.created_at <= filters.created_before)
    if filters.source_id:
        conditions.append(n.source_id == filters.source_id)
    if filters.source_type:
        conditions.append(n.source_type == filters.source_type)
    if filters.group_key:
        conditions.append(n.group_key == filters.group_key)
    if not filters.include_expired:
        # Expiry is a query-time filter; rows stay until the retention sweep
        conditions.append(or_(n.expires_at.is_(None), n.expires_at > now))
    return conditions


SORT_COLUMNS = {
    "created_at": Notification.created_at,
    "priority": Notification.priority_rank,
    "read_at": Notification.read_at,
}


class NotificationStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(
        self, data: NotificationCreate, channels: Iterable[NotificationChannel]
    ) -> Notification:
        channels = ordered_channels(channels)
        if not channels:
            raise ValueError("A notification needs at least one channel")
        category, priority = derive_classification(data.type, data.category, data.priority)

        notification = Notification(
            user_id=data.user_id,
            user_email=data.user_email,
            type=data.type.value,
            category=category.value,
            priority=priority.value,
            priority_rank=PRIORITY_RANK[priority],
            title=data.title,
            message=data.message,
            data=json.dumps(data.data, default=str),
            channels=json.dumps([c.value for c in channels]),
            is_read=False,
            is_archived=False,
            action_label=data.action.label if data.action else None,
            action_url=data.action.url if data.action else None,
            expires_at=data.expires_at,
            group_key=data.group_key,
            source_id=data.source_id,
            source_type=data.source_type,
            triggered_by=data.triggered_by,
        )
        notification.deliveries = [
            NotificationDelivery(channel=c.value, status=DeliveryStatus.PENDING.value, retry_count=0)
            for c in channels
        ]
        async with self.session_factory() as db:
            db.add(notification)
            await db.commit()
        return await self.get(notification.id)

    async def get(self, notification_id: str, user_id: Optional[str] = None) -> Optional[Notification]:
        stmt = select(Notification).where(Notification.id == notification_id)
        if user_id is not None:
            stmt = stmt.where(Notification.user_id == user_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_notifications(self, filters: NotificationFilter) -> NotificationPage:
        conditions = filter_conditions(filters)
        sort_col = SORT_COLUMNS[filters.sort_by]
        order = sort_col.asc() if filters.sort_order == "asc" else sort_col.desc()
        offset = (filters.page - 1) * filters.limit

        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count(Notification.id)).where(*conditions)
            )).scalar() or 0
            result = await db.execute(
                select(Notification)
                .where(*conditions)
                .order_by(order, Notification.id)
                .offset(offset)
                .limit(filters.limit)
            )
            items = list(result.scalars().all())

        return NotificationPage(
            items=items,
            total_count=total,
            has_more=total > filters.page * filters.limit,
        )

    async def unread_count(self, user_id: str) -> int:
        conditions = filter_conditions(NotificationFilter(user_id=user_id, is_read=False, is_archived=False))
        async with self.session_factory() as db:
            return (await db.execute(
                select(func.count(Notification.id)).where(*conditions)
            )).scalar() or 0

    async def summary(self, user_id: str) -> NotificationSummary:
        """Badge counts over the user's visible (unarchived, unexpired) notifications."""
        conditions = filter_conditions(NotificationFilter(user_id=user_id, is_archived=False))
        summary = NotificationSummary(
            user_id=user_id,
            count_by_category={c.value: 0 for c in NotificationCategory},
            count_by_priority={p.value: 0 for p in NotificationPriority},
        )
        async with self.session_factory() as db:
            summary.total_count = (await db.execute(
                select(func.count(Notification.id)).where(*conditions)
            )).scalar() or 0
            summary.unread_count = (await db.execute(
                select(func.count(Notification.id)).where(*conditions, Notification.is_read.is_(False))
            )).scalar() or 0
            for column, bucket in (
                (Notification.category, summary.count_by_category),
                (Notification.priority, summary.count_by_priority),
            ):
                rows = await db.execute(
                    select(column, func.count(Notification.id)).where(*conditions).group_by(column)
                )
                for key, count in rows.all():
                    bucket[key] = count
        return summary

    # ── Read / archive ───────────────────────────────────

    async def _mark_read(self, db, ids: list[str], user_id: str) -> int:
        if not ids:
            return 0
        now = utcnow()
        result = await db.execute(
            update(Notification)
            .where(
                Notification.id.in_(ids),
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(NotificationDelivery)
            .where(
                NotificationDelivery.notification_id.in_(ids),
                NotificationDelivery.channel == NotificationChannel.IN_APP.value,
                NotificationDelivery.status == DeliveryStatus.DELIVERED.value,
            )
            .values(status=DeliveryStatus.READ.value, read_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Returns False when already read (no-op) or not owned by ``user_id``."""
        async with self.session_factory() as db:
            return await self._mark_read(db, [notification_id], user_id) > 0

    async def mark_many_read(self, notification_ids: list[str], user_id: str) -> int:
        async with self.session_factory() as db:
            return await self._mark_read(db, list(notification_ids), user_id)

    async def mark_all_read(self, user_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification.id).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            ids = list(result.scalars().all())
            return await self._mark_read(db, ids, user_id)

    async def archive(self, notification_id: str, user_id: str) -> bool:
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(Notification)
                .where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                    Notification.is_archived.is_(False),
                )
                .values(is_archived=True, archived_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0

    # ── Delete ───────────────────────────────────────────

    async def _delete_ids(self, db, ids: list[str]) -> int:
        await db.execute(
            delete(NotificationDelivery).where(NotificationDelivery.notification_id.in_(ids))
        )
        result = await db.execute(delete(Notification).where(Notification.id.in_(ids)))
        await db.commit()
        return result.rowcount

    async def delete(self, notification_id: str, user_id: str) -> bool:
        async with self.session_factory() as db:
            owned = (await db.execute(
                select(Notification.id).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )).scalar_one_or_none()
            if owned is None:
                return False
            return await self._delete_ids(db, [owned]) > 0

    async def delete_many(self, notification_ids: list[str], user_id: str) -> int:
        """All-or-nothing: every id must belong to ``user_id``."""
        wanted = list(dict.fromkeys(notification_ids))
        if not wanted:
            return 0
        async with self.session_factory() as db:
            owned = set((await db.execute(
                select(Notification.id).where(
                    Notification.id.in_(wanted),
                    Notification.user_id == user_id,
                )
            )).scalars().all())
            missing = [i for i in wanted if i not in owned]
            if missing:
                raise NotificationOwnershipError(missing)
            return await self._delete_ids(db, wanted)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Retention sweep: hard-delete notifications whose expiry has passed."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            ids = list((await db.execute(
                select(Notification.id).where(Notification.expires_at <= now)
            )).scalars().all())
            if not ids:
                return 0
            deleted = await self._delete_ids(db, ids)
        logger.info(f"Retention sweep removed {deleted} expired notifications")
        return deleted

    # ── Delivery status ──────────────────────────────────

    async def update_delivery_status(
        self,
        notification_id: str,
        channel: NotificationChannel,
        status: DeliveryStatus,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> bool:
        channel = NotificationChannel(channel)
        status = DeliveryStatus(status)
        now = utcnow()
        async with self.session_factory() as db:
            async with db.begin():
                delivery = (await db.execute(
                    select(NotificationDelivery)
                    .where(
                        NotificationDelivery.notification_id == notification_id,
                        NotificationDelivery.channel == channel.value,
                    )
                    .with_for_update()
                )).scalar_one_or_none()
                if delivery is None:
                    logger.warning(f"No {channel.value} delivery on notification {notification_id}")
                    return False

                current = DeliveryStatus(delivery.status)
                if status not in DELIVERY_TRANSITIONS[current]:
                    logger.warning(
                        f"Ignoring {channel.value} transition {current.value} -> {status.value} "
                        f"on notification {notification_id}"
                    )
                    return False

                delivery.status = status.value
                if status == DeliveryStatus.SENT:
                    delivery.sent_at = now
                elif status == DeliveryStatus.DELIVERED:
                    delivery.sent_at = delivery.sent_at or now
                    delivery.delivered_at = now
                elif status == DeliveryStatus.READ:
                    delivery.read_at = now
                elif status == DeliveryStatus.FAILED:
                    delivery.error = error
                    delivery.last_retry_at = now
                if retry_count is not None:
                    delivery.retry_count = retry_count
        return True
