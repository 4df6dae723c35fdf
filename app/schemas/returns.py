from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from datetime import datetime
from decimal import Decimal
import uuid

from app.schemas.base import BaseResponseSchema


class ReturnCreate(BaseModel):
    order_id: uuid.UUID
    reason: Optional[str] = Field(None, max_length=255)
    tracking_id: Optional[str] = None
    worth: Optional[Decimal] = Field(None, ge=0)  # Defaults to the order total
    notes: Optional[str] = None


class ReturnUpdate(BaseModel):
    condition: Optional[str] = Field(None, max_length=50)
    reason: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    inspected: bool = False


class ReturnClaim(BaseModel):
    claim_amount: Optional[Decimal] = Field(None, ge=0)


class ReceiveReturnRequest(BaseModel):
    outlet_id: uuid.UUID


class ScanRequest(BaseModel):
    """Barcode scanner input: tracking id or order number."""
    entry: str = Field(..., max_length=200)
    courier: Optional[str] = None


class ReturnResponse(BaseResponseSchema):
    id: uuid.UUID
    order_id: uuid.UUID
    tracking_id: Optional[str] = None
    return_status: str
    worth: Decimal
    reason: Optional[str] = None
    condition: Optional[str] = None
    notes: Optional[str] = None
    received_at: Optional[datetime] = None
    received_by: Optional[uuid.UUID] = None
    restocked_outlet_id: Optional[uuid.UUID] = None
    claimed_at: Optional[datetime] = None
    claim_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime


class ReturnListItem(ReturnResponse):
    order_number: str
    customer_name: str
    customer_phone: Optional[str] = None
    courier: Optional[str] = None
    order_status: str


class ReceiveReturnResult(BaseModel):
    return_id: uuid.UUID
    items_restocked: int
    items_skipped: int
    skipped_items: List[Dict[str, Any]] = []


class ScanResult(BaseModel):
    """Scanner response; failures are reported in-band so the scanner keeps going."""
    success: bool
    order: Optional[Dict[str, Any]] = None
    tracking_id: Optional[str] = None
    match_type: Optional[str] = None
    return_id: Optional[uuid.UUID] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
