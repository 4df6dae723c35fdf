from typing import Optional, List
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from app.api.deps import DB, CurrentUser, require_roles
from app.core.errors import ImportValidationError
from app.models.order import OrderStatus
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse, MessageResponse
from app.schemas.notifications import ActivityLogResponse
from app.schemas.order import (
    OrderCreate,
    OrderUpdate,
    OrderStatusUpdate,
    OrderTrackingUpdate,
    BulkStatusUpdate,
    BulkStatusResult,
    OrderResponse,
    OrderDetailResponse,
    DispatchBrief,
    OrderStatusCounts,
    OrderImportResult,
)
from app.services.order_import_service import OrderImportService
from app.services.order_service import OrderService
from app.services.order_status_service import OrderStatusService


router = APIRouter()

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@router.get("", response_model=PaginatedResponse[OrderResponse])
async def list_orders(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=200),
    status: Optional[OrderStatus] = None,
    courier: Optional[str] = None,
    city: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    """
    List orders with filters.

    The date range applies to the timestamp matching the status filter
    (booked_at for booked, dispatched_at for dispatched, and so on).
    """
    orders, total = await OrderService(db).get_orders(
        status=status.value if status else None,
        courier=courier,
        city=city,
        search=search,
        date_from=date_from,
        date_to=date_to,
        skip=(page - 1) * size,
        limit=size,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return PaginatedResponse[OrderResponse].build(
        [OrderResponse.model_validate(o) for o in orders], total, page, size
    )


@router.get("/counts", response_model=OrderStatusCounts)
async def get_order_counts(db: DB, current_user: CurrentUser):
    """Number of orders per status."""
    return OrderStatusCounts(**await OrderService(db).get_status_counts())


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(data: OrderCreate, db: DB, current_user: CurrentUser):
    """Create a manual order."""
    order = await OrderService(db).create_order(data, created_by=current_user.id)
    return OrderResponse.model_validate(order)


@router.post("/import", response_model=OrderImportResult)
async def import_orders(
    db: DB,
    current_user: CurrentUser,
    file: UploadFile = File(...),
):
    """Bulk-create orders from a CSV or XLSX file."""
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise ImportValidationError("File too large (max 10MB)", error_code="FILE_TOO_LARGE")
    result = await OrderImportService(db).import_orders(content, file.filename or "upload.csv", current_user.id)
    return OrderImportResult(**result)


@router.post("/bulk-status", response_model=BulkStatusResult)
async def bulk_update_status(data: BulkStatusUpdate, db: DB, current_user: CurrentUser):
    """Apply one status to many orders. Forcing requires an admin."""
    if data.force and not current_user.has_role(AppRole.ADMIN.value):
        data.force = False
    result = await OrderStatusService(db).bulk_update_status(
        data.order_ids, data.status.value, user_id=current_user.id, force=data.force
    )
    return BulkStatusResult(**result)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Get an order with its items and latest dispatch."""
    service = OrderService(db)
    order = await service.get_order(order_id)
    dispatch = await service.get_order_dispatch(order_id)

    response = OrderDetailResponse.model_validate(order)
    response.dispatch = DispatchBrief.model_validate(dispatch) if dispatch else None
    return response


@router.patch("/{order_id}", response_model=OrderResponse)
async def update_order(order_id: uuid.UUID, data: OrderUpdate, db: DB, current_user: CurrentUser):
    order = await OrderService(db).update_order(order_id, data, user_id=current_user.id)
    return OrderResponse.model_validate(order)


@router.delete(
    "/{order_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_roles(AppRole.ADMIN))],
)
async def delete_order(order_id: uuid.UUID, db: DB, current_user: CurrentUser):
    await OrderService(db).delete_order(order_id, user_id=current_user.id)
    return MessageResponse(message="Order deleted")


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    current_user: CurrentUser,
):
    """
    Move an order through its lifecycle.

    Illegal transitions are rejected unless ``force`` is set by an admin.
    """
    force = data.force and current_user.has_role(AppRole.ADMIN.value)
    order = await OrderStatusService(db).update_order_status(
        order_id,
        data.status.value,
        user_id=current_user.id,
        courier=data.courier,
        tracking_id=data.tracking_id,
        notes=data.notes,
        send_notification=data.send_notification,
        force=force,
    )
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/tracking", response_model=OrderResponse)
async def update_order_tracking(
    order_id: uuid.UUID,
    data: OrderTrackingUpdate,
    db: DB,
    current_user: CurrentUser,
):
    order = await OrderStatusService(db).update_order_tracking(
        order_id, data.tracking_id, courier=data.courier, user_id=current_user.id
    )
    return OrderResponse.model_validate(order)


@router.get("/{order_id}/activity", response_model=List[ActivityLogResponse])
async def get_order_activity(order_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Activity history for an order, newest first."""
    logs = await OrderService(db).get_order_activity(order_id)
    return [ActivityLogResponse.model_validate(log) for log in logs]
