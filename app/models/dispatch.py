import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, UUIDType


class CourierAuthType(str, Enum):
    BEARER_TOKEN = "bearer_token"
    API_KEY_HEADER = "api_key_header"
    BASIC_AUTH = "basic_auth"
    TOKEN_HEADER = "token_header"


class DispatchStatus(str, Enum):
    PENDING = "pending"
    BOOKED = "booked"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    RETURNED = "returned"


class BookingAttemptStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class BookingQueueStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class Courier(Base):
    """
    Courier company configuration.
    Endpoints override the built-in API clients; api_endpoint 'mock' enables mock booking.
    """
    __tablename__ = "couriers"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment="POSTEX, LEOPARD, TCS, ..."
    )
    api_endpoint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    booking_endpoint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    tracking_endpoint: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="May contain a {tracking_id} placeholder"
    )
    cancellation_endpoint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    auth_type: Mapped[str] = mapped_column(
        String(30),
        default=CourierAuthType.BEARER_TOKEN.value,
        nullable=False,
        comment="bearer_token, api_key_header, basic_auth, token_header"
    )
    auth_config: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="header_name, username, custom_headers"
    )
    label_format: Mapped[str] = mapped_column(String(20), default="pdf", nullable=False)
    auto_download_label: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Courier(code='{self.code}')>"


class Dispatch(Base):
    """Shipment handed to a courier for one order."""
    __tablename__ = "dispatches"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("couriers.id", ondelete="SET NULL"),
        nullable=True
    )
    courier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(30),
        default=DispatchStatus.PENDING.value,
        nullable=False,
        comment="pending, booked, in_transit, out_for_delivery, delivered, returned"
    )
    dispatch_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    dispatched_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    courier_booking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    courier_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    label_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Base64 label")
    label_format: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_tracking_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class CourierBookingAttempt(Base):
    """Audit of every booking call made to a courier."""
    __tablename__ = "courier_booking_attempts"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    courier_code: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    booking_request: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    booking_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="success, partial, failed")
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class CourierBookingQueue(Base):
    """Failed bookings waiting for an automatic retry."""
    __tablename__ = "courier_booking_queue"
    __table_args__ = (
        Index("ix_booking_queue_status_next", "status", "next_retry_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    courier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("couriers.id", ondelete="CASCADE"),
        nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default=BookingQueueStatus.PENDING.value,
        nullable=False,
        comment="pending, retrying, success, failed"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
