import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType


class StockTransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VarianceSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StockTransfer(Base):
    """
    Request to move stock from one outlet to another.

    pending -> approved -> in_transit -> completed, with rejected and
    cancelled as terminal side exits.
    """
    __tablename__ = "stock_transfers"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    transfer_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    from_outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    to_outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=StockTransferStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, approved, rejected, in_transit, completed, cancelled"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_by: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("users.id"), nullable=False)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("users.id"), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("users.id"), nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    received_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, ForeignKey("users.id"), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    items: Mapped[List["StockTransferItem"]] = relationship(
        "StockTransferItem",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<StockTransfer(number='{self.transfer_number}', status='{self.status}')>"


class StockTransferItem(Base):
    """One product line of a transfer. Receipt variance is kept on the line."""
    __tablename__ = "stock_transfer_items"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stock_transfers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("products.id"), nullable=False)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_approved: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity_received: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    variance: Mapped[int] = mapped_column(Integer, default=0, nullable=False, comment="shipped - received")
    variance_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    variance_severity: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    variance_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def quantity_to_ship(self) -> int:
        return self.quantity_requested if self.quantity_approved is None else self.quantity_approved
