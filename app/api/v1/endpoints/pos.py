from typing import Optional, List
import uuid

from fastapi import APIRouter, Depends, status

from app.api.deps import DB, CurrentUser, require_roles
from app.models.user import AppRole
from app.schemas.pos import (
    POSSessionOpen,
    POSSessionClose,
    CashEventRequest,
    POSSaleRequest,
    POSSessionResponse,
    POSSessionCloseResult,
    POSSaleResponse,
    CashDrawerEventResponse,
)
from app.services.pos_service import POSService


router = APIRouter(
    dependencies=[Depends(require_roles(AppRole.CASHIER, AppRole.ADMIN))],
)


@router.post("/sessions/open", response_model=POSSessionResponse, status_code=status.HTTP_201_CREATED)
async def open_session(data: POSSessionOpen, db: DB, current_user: CurrentUser):
    """Open a register session. A cashier can hold one open session at a time."""
    session = await POSService(db).open_session(
        cashier_id=current_user.id,
        outlet_id=data.outlet_id,
        opening_cash=data.opening_cash,
        register_number=data.register_number,
    )
    return POSSessionResponse.model_validate(session)


@router.get("/sessions/current", response_model=Optional[POSSessionResponse])
async def get_current_session(db: DB, current_user: CurrentUser):
    session = await POSService(db).get_open_session(current_user.id)
    return POSSessionResponse.model_validate(session) if session else None


@router.get("/sessions/{session_id}/expected-cash")
async def get_expected_cash(session_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Cash the drawer should hold right now."""
    service = POSService(db)
    session = await service.get_cashier_session(session_id, current_user.id)
    return {"session_id": session.id, "expected_cash": await service.calculate_expected_cash(session)}


@router.post("/sessions/{session_id}/close", response_model=POSSessionCloseResult)
async def close_session(session_id: uuid.UUID, data: POSSessionClose, db: DB, current_user: CurrentUser):
    """Close the session and reconcile counted cash against expected cash."""
    result = await POSService(db).close_session(
        session_id=session_id,
        cashier_id=current_user.id,
        closing_cash=data.closing_cash,
        notes=data.notes,
    )
    return POSSessionCloseResult(
        session=POSSessionResponse.model_validate(result["session"]),
        expected_cash=result["expected_cash"],
        cash_difference=result["cash_difference"],
    )


@router.post(
    "/sessions/{session_id}/cash-events",
    response_model=CashDrawerEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_cash_event(session_id: uuid.UUID, data: CashEventRequest, db: DB, current_user: CurrentUser):
    """Record cash put in, taken out or refunded from the drawer."""
    event = await POSService(db).record_cash_event(
        session_id=session_id,
        cashier_id=current_user.id,
        event_type=data.event_type,
        amount=data.amount,
        notes=data.notes,
    )
    return CashDrawerEventResponse.model_validate(event)


@router.get("/sessions/{session_id}/sales", response_model=List[POSSaleResponse])
async def list_session_sales(session_id: uuid.UUID, db: DB, current_user: CurrentUser):
    service = POSService(db)
    await service.get_cashier_session(session_id, current_user.id)
    sales = await service.get_session_sales(session_id)
    return [POSSaleResponse.model_validate(s) for s in sales]


@router.post("/sales", response_model=POSSaleResponse, status_code=status.HTTP_201_CREATED)
async def create_sale(data: POSSaleRequest, db: DB, current_user: CurrentUser):
    sale = await POSService(db).process_sale(current_user.id, data)
    return POSSaleResponse.model_validate(sale)
