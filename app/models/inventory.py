import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType


class MovementType(str, Enum):
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    PURCHASE = "purchase"


class AdjustmentReason(str, Enum):
    ADDITION = "addition"
    REDUCTION = "reduction"
    CORRECTION = "correction"
    DAMAGE = "damage"
    RETURN = "return"


class Inventory(Base):
    """
    Stock level of one product at one outlet.
    available_quantity is always quantity - reserved_quantity.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("product_id", "outlet_id", name="uq_inventory_product_outlet"),
        Index("ix_inventory_outlet_available", "outlet_id", "available_quantity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_restocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    def recompute_available(self) -> None:
        self.available_quantity = (self.quantity or 0) - (self.reserved_quantity or 0)

    def __repr__(self) -> str:
        return f"<Inventory(product={self.product_id}, outlet={self.outlet_id}, qty={self.quantity})>"


class StockMovement(Base):
    """Ledger row for every stock change. Quantity is signed."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("ix_stock_movement_product_outlet", "product_id", "outlet_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False
    )
    outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="CASCADE"),
        nullable=False
    )
    movement_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="sale, return, adjustment, transfer_in, transfer_out, purchase"
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class LowStockNotification(Base):
    """Record of a low stock warning, used to throttle repeats."""
    __tablename__ = "low_stock_notifications"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="CASCADE"),
        nullable=False
    )
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False)
    suggested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
