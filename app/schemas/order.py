from pydantic import BaseModel, Field, computed_field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.order import OrderStatus
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemCreate(BaseModel):
    """Order item creation schema."""
    product_id: Optional[uuid.UUID] = None
    item_name: Optional[str] = Field(None, max_length=255)
    sku: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: Optional[Decimal] = Field(None, ge=0)  # Defaults to product price


class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    item_name: str
    sku: Optional[str] = None
    quantity: int
    price: Decimal

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


# ==================== ORDER SCHEMAS ====================

class OrderCreate(BaseCreateSchema):
    """Manual order creation."""
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_phone: Optional[str] = Field(None, max_length=30)
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None
    city: Optional[str] = Field(None, max_length=100)
    shipping_charges: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)  # Computed from items when omitted
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    items: List[OrderItemCreate] = Field(..., min_length=1)


class OrderUpdate(BaseUpdateSchema):
    """Editable order fields; status changes go through the status endpoint."""
    customer_name: Optional[str] = Field(None, min_length=1, max_length=200)
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    customer_address: Optional[str] = None
    city: Optional[str] = None
    shipping_charges: Optional[Decimal] = Field(None, ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    notes: Optional[str] = None
    send_notification: bool = False
    force: bool = False


class OrderTrackingUpdate(BaseModel):
    tracking_id: str = Field(..., min_length=1, max_length=100)
    courier: Optional[str] = None


class BulkStatusUpdate(BaseModel):
    order_ids: List[uuid.UUID] = Field(..., min_length=1)
    status: OrderStatus
    force: bool = False


class BulkStatusResult(BaseModel):
    successful: int
    failed: int
    errors: List[str]


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    order_number: str
    shopify_order_id: Optional[str] = None
    shopify_order_number: Optional[str] = None
    customer_id: Optional[uuid.UUID] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    city: Optional[str] = None
    total_amount: Decimal
    shipping_charges: Decimal
    status: str
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    booked_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    synced_to_shopify: bool
    created_at: datetime
    updated_at: datetime
    order_items: List[OrderItemResponse] = []

    @computed_field
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.order_items)


class DispatchBrief(BaseResponseSchema):
    id: uuid.UUID
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    status: str
    dispatch_date: datetime
    label_url: Optional[str] = None
    last_tracking_update: Optional[datetime] = None


class OrderDetailResponse(OrderResponse):
    dispatch: Optional[DispatchBrief] = None


class OrderStatusCounts(BaseModel):
    total: int
    pending: int = 0
    confirmed: int = 0
    booked: int = 0
    dispatched: int = 0
    delivered: int = 0
    cancelled: int = 0
    returned: int = 0


class OrderImportResult(BaseModel):
    created: int
    failed: int
    errors: List[str]
    order_numbers: List[str] = []
