from typing import Optional, List
import uuid

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.api.deps import DB, CurrentUser, require_roles
from app.core.errors import ServiceError
from app.models.dispatch import DispatchStatus
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse, MessageResponse
from app.schemas.courier import (
    CourierCreate,
    CourierUpdate,
    CourierResponse,
    BookCourierRequest,
    BookingResponse,
    TrackingResponse,
    CancelBookingRequest,
    DispatchResponse,
    BookingAttemptResponse,
    BulkBookingRequest,
    BulkBookingResponse,
    BulkTrackingRequest,
    BulkTrackingResponse,
)
from app.schemas.returns import ScanRequest, ScanResult
from app.services.courier_clients import BookingAddress, BookingItem
from app.services.courier_service import CourierService


router = APIRouter()

admins = Depends(require_roles(AppRole.ADMIN))
dispatchers = Depends(require_roles(AppRole.ADMIN, AppRole.DISPATCH_MANAGER, AppRole.STAFF))


# ==================== REGISTRY ====================

@router.get("", response_model=List[CourierResponse])
async def list_couriers(db: DB, current_user: CurrentUser, active_only: bool = False):
    couriers = await CourierService(db).list_couriers(active_only=active_only)
    return [CourierResponse.model_validate(c) for c in couriers]


@router.post("", response_model=CourierResponse, status_code=status.HTTP_201_CREATED, dependencies=[admins])
async def create_courier(data: CourierCreate, db: DB, current_user: CurrentUser):
    courier = await CourierService(db).create_courier(data.model_dump(), user_id=current_user.id)
    return CourierResponse.model_validate(courier)


# ==================== DISPATCH ====================

@router.post("/book", response_model=BookingResponse, dependencies=[dispatchers])
async def book_courier(data: BookCourierRequest, db: DB, current_user: CurrentUser):
    """
    Book an order with a courier and fetch its shipping label.

    A booking without a label answers 200 with ``error_code=BOOKING_NO_LABEL``.
    Courier failures answer with their status code; the failed attempt and
    any retry queue entry are still saved.
    """
    result = await CourierService(db).book_courier(
        order_id=data.order_id,
        courier_id=data.courier_id,
        pickup_address=BookingAddress(**data.pickup_address.model_dump()),
        delivery_address=BookingAddress(**data.delivery_address.model_dump()),
        weight=data.weight,
        pieces=data.pieces,
        cod_amount=data.cod_amount,
        special_instructions=data.special_instructions,
        items=[BookingItem(**i.model_dump()) for i in data.items],
        user_id=current_user.id,
    )
    response = BookingResponse(**result)
    if not result["success"] and result.get("status_code"):
        return JSONResponse(
            status_code=result["status_code"],
            content=jsonable_encoder(response, exclude_none=True),
        )
    return response


@router.post("/bulk-book", response_model=BulkBookingResponse, dependencies=[dispatchers])
async def bulk_book(data: BulkBookingRequest, db: DB, current_user: CurrentUser):
    """
    Book many orders with one courier from the configured pickup address.

    Always answers 200; per-order failures are listed in ``results``.
    """
    result = await CourierService(db).bulk_book(data.order_ids, data.courier_id, user_id=current_user.id)
    return BulkBookingResponse(**result)


@router.post("/bulk-track", response_model=BulkTrackingResponse)
async def bulk_track(data: BulkTrackingRequest, db: DB, current_user: CurrentUser):
    return BulkTrackingResponse(**await CourierService(db).bulk_track(data.tracking_ids, data.courier_code))


@router.get("/track/{tracking_id}", response_model=TrackingResponse)
async def track_shipment(
    tracking_id: str,
    db: DB,
    current_user: CurrentUser,
    courier: str = Query(..., description="Courier code, e.g. POSTEX"),
):
    """Live tracking from the courier; the dispatch row is refreshed."""
    return TrackingResponse(**await CourierService(db).track_shipment(tracking_id, courier))


@router.post("/orders/{order_id}/cancel", dependencies=[dispatchers])
async def cancel_booking(
    order_id: uuid.UUID,
    data: CancelBookingRequest,
    db: DB,
    current_user: CurrentUser,
):
    """Cancel the courier booking and send the order back to pending."""
    return await CourierService(db).cancel_booking(order_id, reason=data.reason, user_id=current_user.id)


@router.get("/orders/{order_id}/attempts", response_model=List[BookingAttemptResponse])
async def list_booking_attempts(order_id: uuid.UUID, db: DB, current_user: CurrentUser):
    attempts = await CourierService(db).get_booking_attempts(order_id)
    return [BookingAttemptResponse.model_validate(a) for a in attempts]


@router.post("/dispatch/scan", response_model=ScanResult, dependencies=[dispatchers])
async def scan_dispatch(data: ScanRequest, db: DB, current_user: CurrentUser):
    """
    Barcode scanner hand-over to the courier.

    Scanner failures are answered with 200 and ``success: false``.
    """
    try:
        async with db.begin_nested():
            result = await CourierService(db).rapid_dispatch(data.entry, current_user.id, courier=data.courier)
    except ServiceError as e:
        return ScanResult(success=False, error=e.message, error_code=e.error_code, details=e.details or None)
    return ScanResult(**result)


@router.get("/dispatches", response_model=PaginatedResponse[DispatchResponse])
async def list_dispatches(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    status: Optional[DispatchStatus] = None,
    courier: Optional[str] = None,
):
    dispatches, total = await CourierService(db).get_dispatches(
        status=status.value if status else None,
        courier=courier,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[DispatchResponse].build(
        [DispatchResponse.model_validate(d) for d in dispatches], total, page, size
    )


# ==================== REGISTRY (by id) ====================

@router.get("/{courier_id}", response_model=CourierResponse)
async def get_courier(courier_id: uuid.UUID, db: DB, current_user: CurrentUser):
    return CourierResponse.model_validate(await CourierService(db).get_courier(courier_id))


@router.patch("/{courier_id}", response_model=CourierResponse, dependencies=[admins])
async def update_courier(courier_id: uuid.UUID, data: CourierUpdate, db: DB, current_user: CurrentUser):
    courier = await CourierService(db).update_courier(
        courier_id, data.model_dump(exclude_unset=True), user_id=current_user.id
    )
    return CourierResponse.model_validate(courier)


@router.delete("/{courier_id}", response_model=MessageResponse, dependencies=[admins])
async def delete_courier(courier_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Deactivate a courier. Existing dispatches keep their reference."""
    await CourierService(db).delete_courier(courier_id, user_id=current_user.id)
    return MessageResponse(message="Courier deactivated")
