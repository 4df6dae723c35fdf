"""
In-app notification service.

Notifications are rows in the notifications table; dashboards pick them up
through the realtime channel and the notifications endpoints.
"""
import logging
import uuid
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.realtime import manager as realtime
from app.core.utils import utcnow
from app.models.notifications import Notification, NotificationPriority
from app.models.user import User, UserRole


logger = logging.getLogger(__name__)


class NotificationService:
    """Create and read in-app notifications."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        priority: str = NotificationPriority.NORMAL.value,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            action_url=action_url,
            extra_data=metadata or {},
        )
        self.db.add(notification)
        await self.db.flush()

        realtime.queue(self.db, "notifications", "INSERT", {
            "id": notification.id,
            "user_id": user_id,
            "type": type,
            "title": title,
            "priority": priority,
        })
        return notification

    async def notify_role(
        self,
        role: str,
        type: str,
        title: str,
        message: str,
        priority: str = NotificationPriority.NORMAL.value,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Notify every active user holding ``role``. Returns notifications created."""
        stmt = (
            select(UserRole.user_id)
            .join(User, User.id == UserRole.user_id)
            .where(
                UserRole.role == role,
                UserRole.is_active == True,  # noqa: E712
                User.is_active == True,  # noqa: E712
            )
            .distinct()
        )
        user_ids = (await self.db.execute(stmt)).scalars().all()

        for user_id in user_ids:
            await self.create(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                priority=priority,
                action_url=action_url,
                metadata=metadata,
            )

        if not user_ids:
            logger.info("No active users with role %s to notify", role)
        return len(user_ids)

    async def get_user_notifications(
        self,
        user_id: uuid.UUID,
        unread_only: bool = False,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Notification], int, int]:
        """Returns (notifications, total, unread_count)."""
        filters = [Notification.user_id == user_id]
        if unread_only:
            filters.append(Notification.is_read == False)  # noqa: E712

        total = (await self.db.execute(
            select(func.count(Notification.id)).where(*filters)
        )).scalar() or 0
        unread = (await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read == False,  # noqa: E712
            )
        )).scalar() or 0

        stmt = (
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total, unread

    async def mark_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Notification]:
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        notification = result.scalar_one_or_none()
        if notification and not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            await self.db.flush()
        return notification

    async def mark_all_read(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
            .values(is_read=True, read_at=utcnow())
        )
        return result.rowcount or 0
