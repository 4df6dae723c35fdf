from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.pos import POSPaymentMethod, CashDrawerEventType
from app.schemas.base import BaseResponseSchema


class POSSessionOpen(BaseModel):
    outlet_id: uuid.UUID
    opening_cash: Decimal = Field(Decimal("0"), ge=0)
    register_number: Optional[str] = Field(None, max_length=20)


class POSSessionClose(BaseModel):
    closing_cash: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class CashEventRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    event_type: CashDrawerEventType
    amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = None


class POSSaleItemRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0)  # Defaults to product price
    discount_percent: Decimal = Field(Decimal("0"), ge=0, le=100)


class POSPaymentLeg(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    payment_method: POSPaymentMethod
    amount: Decimal = Field(..., gt=0)
    payment_reference: Optional[str] = None


class POSSaleRequest(BaseModel):
    """A sale rung up at the register."""
    model_config = ConfigDict(use_enum_values=True)

    session_id: uuid.UUID
    outlet_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    items: List[POSSaleItemRequest] = Field(..., min_length=1)
    payment_method: POSPaymentMethod
    payments: Optional[List[POSPaymentLeg]] = None  # Split payment legs
    amount_paid: Decimal = Field(..., ge=0)
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=1, description="Fraction, e.g. 0.16")
    notes: Optional[str] = None


class POSSessionResponse(BaseResponseSchema):
    id: uuid.UUID
    session_number: str
    outlet_id: uuid.UUID
    cashier_id: uuid.UUID
    register_number: Optional[str] = None
    opening_cash: Decimal
    closing_cash: Optional[Decimal] = None
    expected_cash: Optional[Decimal] = None
    cash_difference: Optional[Decimal] = None
    status: str
    opened_at: datetime
    closed_at: Optional[datetime] = None
    notes: Optional[str] = None


class POSSessionCloseResult(BaseModel):
    session: POSSessionResponse
    expected_cash: Decimal
    cash_difference: Decimal


class POSSaleItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    unit_price: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    line_total: Decimal


class POSSaleResponse(BaseResponseSchema):
    id: uuid.UUID
    sale_number: str
    session_id: uuid.UUID
    outlet_id: uuid.UUID
    cashier_id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    change_amount: Decimal
    payment_method: str
    status: str
    notes: Optional[str] = None
    created_at: datetime
    sale_items: List[POSSaleItemResponse] = []


class CashDrawerEventResponse(BaseResponseSchema):
    id: uuid.UUID
    session_id: uuid.UUID
    event_type: str
    amount: Decimal
    notes: Optional[str] = None
    created_at: datetime
