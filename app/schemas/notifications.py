from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from datetime import datetime
import uuid

from app.schemas.base import BaseResponseSchema


class NotificationResponse(BaseResponseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    priority: str
    action_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra_data")
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: List[NotificationResponse]
    total: int
    unread_count: int


class AlertResponse(BaseResponseSchema):
    id: uuid.UUID
    alert_type: str
    entity_type: str
    entity_id: uuid.UUID
    severity: str
    title: str
    message: str
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra_data")
    status: str
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[uuid.UUID] = None
    created_at: datetime


class ActivityLogResponse(BaseResponseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    entity_type: str
    entity_id: Optional[uuid.UUID] = None
    action: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
