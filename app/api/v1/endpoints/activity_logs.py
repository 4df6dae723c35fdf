from typing import Optional
import uuid

from fastapi import APIRouter, Query

from app.api.deps import DB, CurrentUser
from app.schemas.base import PaginatedResponse
from app.schemas.notifications import ActivityLogResponse
from app.services.activity_log_service import ActivityLogService


router = APIRouter()


@router.get("", response_model=PaginatedResponse[ActivityLogResponse])
async def list_activity_logs(
    db: DB,
    current_user: CurrentUser,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    logs, total = await ActivityLogService(db).get_logs(
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        action=action,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[ActivityLogResponse].build(
        [ActivityLogResponse.model_validate(log) for log in logs], total, page, size
    )
