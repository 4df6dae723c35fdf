from typing import Optional, Dict, Any, List, Tuple
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity_log import ActivityLog


# Actor recorded for system actions (webhooks, scheduled jobs)
SYSTEM_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000000")


class ActivityLogService:
    """
    Activity log service for recording business events on orders, returns and POS.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityLog:
        """
        Create an activity log entry.

        Args:
            action: The action performed (status_changed, tracking_updated, ...)
            entity_type: Type of entity (order, return, pos_session, ...)
            entity_id: ID of the affected entity
            user_id: ID of the user performing the action, system user when omitted
            details: Structured event details

        Returns:
            The created ActivityLog entry
        """
        activity = ActivityLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id or SYSTEM_USER_ID,
            details=details or {},
        )
        self.db.add(activity)
        await self.db.flush()
        return activity

    async def get_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[ActivityLog], int]:
        """Get activity logs with filters, newest first."""
        stmt = select(ActivityLog)
        count_stmt = select(func.count(ActivityLog.id))

        filters = []
        if entity_type:
            filters.append(ActivityLog.entity_type == entity_type)
        if entity_id:
            filters.append(ActivityLog.entity_id == entity_id)
        if user_id:
            filters.append(ActivityLog.user_id == user_id)
        if action:
            filters.append(ActivityLog.action == action)

        if filters:
            stmt = stmt.where(*filters)
            count_stmt = count_stmt.where(*filters)

        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = stmt.order_by(ActivityLog.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def get_entity_history(self, entity_type: str, entity_id: uuid.UUID) -> List[ActivityLog]:
        """Full history of one entity, oldest first."""
        stmt = (
            select(ActivityLog)
            .where(ActivityLog.entity_type == entity_type, ActivityLog.entity_id == entity_id)
            .order_by(ActivityLog.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
