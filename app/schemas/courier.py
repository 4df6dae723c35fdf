from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any, Dict
from datetime import datetime
import uuid

from app.models.dispatch import CourierAuthType
from app.schemas.base import BaseResponseSchema


class CourierCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=2, max_length=30)
    api_endpoint: Optional[str] = None
    booking_endpoint: Optional[str] = None
    tracking_endpoint: Optional[str] = Field(None, description="May contain {tracking_id}")
    cancellation_endpoint: Optional[str] = None
    auth_type: CourierAuthType = Field(CourierAuthType.BEARER_TOKEN, validate_default=True)
    auth_config: Dict[str, Any] = Field(default_factory=dict)
    label_format: str = "pdf"
    auto_download_label: bool = True
    is_active: bool = True


class CourierUpdate(BaseModel):
    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    code: Optional[str] = Field(None, min_length=2, max_length=30)
    api_endpoint: Optional[str] = None
    booking_endpoint: Optional[str] = None
    tracking_endpoint: Optional[str] = None
    cancellation_endpoint: Optional[str] = None
    auth_type: Optional[CourierAuthType] = None
    auth_config: Optional[Dict[str, Any]] = None
    label_format: Optional[str] = None
    auto_download_label: Optional[bool] = None
    is_active: Optional[bool] = None


class CourierResponse(BaseResponseSchema):
    id: uuid.UUID
    name: str
    code: str
    api_endpoint: Optional[str] = None
    booking_endpoint: Optional[str] = None
    tracking_endpoint: Optional[str] = None
    cancellation_endpoint: Optional[str] = None
    auth_type: str
    auth_config: Optional[Dict[str, Any]] = None
    label_format: str
    auto_download_label: bool
    is_active: bool
    created_at: datetime


class AddressInput(BaseModel):
    name: str
    phone: str
    address: str
    city: str


class BookingItemInput(BaseModel):
    name: str
    quantity: int = Field(1, ge=1)


class BookCourierRequest(BaseModel):
    order_id: uuid.UUID
    courier_id: uuid.UUID
    pickup_address: AddressInput
    delivery_address: AddressInput
    weight: float = Field(1.0, gt=0)
    pieces: int = Field(1, ge=1)
    cod_amount: float = Field(0, ge=0)
    special_instructions: str = ""
    items: List[BookingItemInput] = Field(default_factory=list)


class BookingResponse(BaseModel):
    success: bool
    tracking_id: Optional[str] = None
    label_url: Optional[str] = None
    label_data: Optional[str] = None
    label_format: Optional[str] = None
    dispatch_id: Optional[str] = None
    courier: Optional[str] = None
    is_mock: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None
    queued_for_retry: Optional[bool] = None


class TrackingResponse(BaseModel):
    tracking_id: str
    status: str
    current_location: Optional[str] = None
    status_history: List[Any] = []
    estimated_delivery: Optional[str] = None
    courier: str


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class DispatchResponse(BaseResponseSchema):
    id: uuid.UUID
    order_id: uuid.UUID
    courier_id: Optional[uuid.UUID] = None
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    status: str
    dispatch_date: datetime
    dispatched_by: Optional[uuid.UUID] = None
    courier_booking_id: Optional[str] = None
    label_url: Optional[str] = None
    label_format: Optional[str] = None
    last_tracking_update: Optional[datetime] = None
    notes: Optional[str] = None


class BookingAttemptResponse(BaseResponseSchema):
    id: uuid.UUID
    order_id: uuid.UUID
    courier_code: Optional[str] = None
    status: str
    tracking_id: Optional[str] = None
    label_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempt_number: int
    created_at: datetime


class BulkBookingRequest(BaseModel):
    order_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=200)
    courier_id: uuid.UUID


class BulkBookingResult(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    success: bool
    tracking_id: Optional[str] = None
    label_url: Optional[str] = None
    label_format: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    queued_for_retry: Optional[bool] = None


class BulkBookingResponse(BaseModel):
    success: bool
    total: int
    success_count: int
    failed_count: int
    results: List[BulkBookingResult]


class BulkTrackingRequest(BaseModel):
    tracking_ids: List[str] = Field(..., min_length=1, max_length=500)
    courier_code: Optional[str] = Field(None, description="Looked up from dispatches when omitted")


class BulkTrackingResult(BaseModel):
    tracking_id: str
    status: str = Field(..., description="success or failed")
    courier: Optional[str] = None
    data: Optional[TrackingResponse] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkTrackingResponse(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[BulkTrackingResult]
