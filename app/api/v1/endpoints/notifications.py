import uuid

from fastapi import APIRouter, Query

from app.api.deps import DB, CurrentUser
from app.core.errors import NotFoundError
from app.schemas.base import MessageResponse
from app.schemas.notifications import NotificationResponse, NotificationListResponse
from app.services.notification_service import NotificationService


router = APIRouter()


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    db: DB,
    current_user: CurrentUser,
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    """Notifications for the current user, newest first."""
    items, total, unread = await NotificationService(db).get_user_notifications(
        current_user.id, unread_only=unread_only, skip=(page - 1) * size, limit=size
    )
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        unread_count=unread,
    )


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(db: DB, current_user: CurrentUser):
    count = await NotificationService(db).mark_all_read(current_user.id)
    return MessageResponse(message=f"{count} notifications marked as read")


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: uuid.UUID, db: DB, current_user: CurrentUser):
    notification = await NotificationService(db).mark_read(notification_id, current_user.id)
    if not notification:
        raise NotFoundError("Notification not found", error_code="NOTIFICATION_NOT_FOUND")
    return NotificationResponse.model_validate(notification)
