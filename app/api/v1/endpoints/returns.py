from typing import Optional
import uuid

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import DB, CurrentUser, require_roles
from app.core.errors import ServiceError
from app.models.return_order import ReturnStatus
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse
from app.schemas.returns import (
    ReturnCreate,
    ReturnUpdate,
    ReturnClaim,
    ReceiveReturnRequest,
    ScanRequest,
    ReturnResponse,
    ReturnListItem,
    ReceiveReturnResult,
    ScanResult,
)
from app.services.returns_service import ReturnsService


router = APIRouter()

warehouse_staff = Depends(require_roles(AppRole.ADMIN, AppRole.WAREHOUSE_MANAGER, AppRole.STAFF))


@router.get("", response_model=PaginatedResponse[ReturnListItem])
async def list_returns(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    return_status: Optional[ReturnStatus] = None,
    search: Optional[str] = None,
):
    rows, total = await ReturnsService(db).get_returns(
        return_status=return_status.value if return_status else None,
        search=search,
        skip=(page - 1) * size,
        limit=size,
    )
    items = [
        ReturnListItem(
            **ReturnResponse.model_validate(record).model_dump(),
            order_number=order.order_number,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            courier=order.courier,
            order_status=order.status,
        )
        for record, order in rows
    ]
    return PaginatedResponse[ReturnListItem].build(items, total, page, size)


@router.post("", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def create_return(data: ReturnCreate, db: DB, current_user: CurrentUser):
    record = await ReturnsService(db).create_return(
        order_id=data.order_id,
        reason=data.reason,
        tracking_id=data.tracking_id,
        worth=data.worth,
        notes=data.notes,
        user_id=current_user.id,
    )
    return ReturnResponse.model_validate(record)


@router.post("/scan", response_model=ScanResult)
async def scan_return(data: ScanRequest, db: DB, current_user: CurrentUser):
    """
    Barcode scanner intake for returned parcels.

    Scanner failures are answered with 200 and ``success: false`` so the
    scanning station keeps its flow.
    """
    try:
        async with db.begin_nested():
            result = await ReturnsService(db).rapid_return(data.entry, current_user.id)
    except ServiceError as e:
        return ScanResult(success=False, error=e.message, error_code=e.error_code, details=e.details or None)
    return ScanResult(**result)


@router.patch("/{return_id}", response_model=ReturnResponse)
async def update_return(return_id: uuid.UUID, data: ReturnUpdate, db: DB, current_user: CurrentUser):
    record = await ReturnsService(db).update_return(
        return_id,
        condition=data.condition,
        notes=data.notes,
        reason=data.reason,
        inspected=data.inspected,
        user_id=current_user.id,
    )
    return ReturnResponse.model_validate(record)


@router.post("/{return_id}/receive", response_model=ReceiveReturnResult, dependencies=[warehouse_staff])
async def receive_return(return_id: uuid.UUID, data: ReceiveReturnRequest, db: DB, current_user: CurrentUser):
    """Receive a return at an outlet and restock its items."""
    result = await ReturnsService(db).receive_return(return_id, data.outlet_id, user_id=current_user.id)
    return ReceiveReturnResult(**result)


@router.post(
    "/{return_id}/claim",
    response_model=ReturnResponse,
    dependencies=[Depends(require_roles(AppRole.ADMIN, AppRole.WAREHOUSE_MANAGER))],
)
async def claim_return(return_id: uuid.UUID, data: ReturnClaim, db: DB, current_user: CurrentUser):
    """Mark a return as claimed against the courier."""
    record = await ReturnsService(db).mark_claimed(return_id, claim_amount=data.claim_amount, user_id=current_user.id)
    return ReturnResponse.model_validate(record)
