from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.inventory import AdjustmentReason
from app.schemas.base import BaseResponseSchema


class StockReserveRequest(BaseModel):
    product_id: uuid.UUID
    outlet_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class StockAdjustRequest(BaseModel):
    product_id: uuid.UUID
    outlet_id: uuid.UUID
    quantity_change: int = Field(..., description="Positive adds stock, negative removes it")
    reason: Optional[AdjustmentReason] = None
    notes: Optional[str] = None


class StockTransferRequest(BaseModel):
    product_id: uuid.UUID
    from_outlet_id: uuid.UUID
    to_outlet_id: uuid.UUID
    quantity: int = Field(..., ge=1)
    notes: Optional[str] = None


class AvailabilityResponse(BaseModel):
    available: bool
    available_quantity: int


class InventoryResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    outlet_id: uuid.UUID
    quantity: int
    reserved_quantity: int
    available_quantity: int
    last_restocked_at: Optional[datetime] = None
    updated_at: datetime


class InventoryListItem(InventoryResponse):
    """Inventory row with product details for list views."""
    product_name: str
    sku: Optional[str] = None
    reorder_level: int
    is_low_stock: bool


class StockMovementResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    outlet_id: uuid.UUID
    movement_type: str
    quantity: int
    reference_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime


# ==================== TRANSFER REQUESTS ====================

class TransferItemInput(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class TransferCreateRequest(BaseModel):
    from_outlet_id: uuid.UUID
    to_outlet_id: uuid.UUID
    items: List[TransferItemInput] = Field(..., min_length=1)
    notes: Optional[str] = None


class TransferApproval(BaseModel):
    item_id: uuid.UUID
    quantity_approved: int = Field(..., ge=0)


class TransferApproveRequest(BaseModel):
    items: List[TransferApproval] = Field(default_factory=list, description="Lines left out are approved as requested")


class TransferRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class TransferReceipt(BaseModel):
    item_id: uuid.UUID
    quantity_received: int = Field(..., ge=0)
    variance_reason: Optional[str] = None


class TransferReceiveRequest(BaseModel):
    items: List[TransferReceipt] = Field(default_factory=list, description="Lines left out are received in full")


class TransferItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    quantity_requested: int
    quantity_approved: Optional[int] = None
    quantity_received: Optional[int] = None
    variance: int = 0
    variance_value: Decimal = Decimal("0")
    variance_severity: Optional[str] = None
    variance_reason: Optional[str] = None


class TransferResponse(BaseResponseSchema):
    id: uuid.UUID
    transfer_number: str
    from_outlet_id: uuid.UUID
    to_outlet_id: uuid.UUID
    status: str
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_by: uuid.UUID
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    dispatched_by: Optional[uuid.UUID] = None
    dispatched_at: Optional[datetime] = None
    received_by: Optional[uuid.UUID] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    items: List[TransferItemResponse] = []


class TransferReceiveResponse(BaseModel):
    transfer: TransferResponse
    variance_count: int
    variances: List[TransferItemResponse] = []
