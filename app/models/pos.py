"""
Point-of-sale models: register sessions, sales, payments and cash drawer events.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType


class POSSessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class POSPaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE_WALLET = "mobile_wallet"
    SPLIT = "split"


class CashDrawerEventType(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    SALE = "sale"
    CASH_IN = "cash_in"
    CASH_OUT = "cash_out"
    REFUND = "refund"


class POSSession(Base):
    """Cashier register session. One open session per cashier."""
    __tablename__ = "pos_sessions"
    __table_args__ = (
        Index("ix_pos_session_cashier_status", "cashier_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    session_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    outlet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("outlets.id", ondelete="RESTRICT"),
        nullable=False
    )
    cashier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False
    )
    register_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    opening_cash: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    closing_cash: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    expected_cash: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    cash_difference: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(10), default=POSSessionStatus.OPEN.value, nullable=False)
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class POSSale(Base):
    __tablename__ = "pos_sales"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    sale_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("pos_sessions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    outlet_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("outlets.id"), nullable=False)
    cashier_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("users.id"), nullable=False)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    change_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, comment="cash, card, mobile_wallet, split")
    status: Mapped[str] = mapped_column(String(20), default="completed", nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    sale_items: Mapped[List["POSSaleItem"]] = relationship(
        "POSSaleItem",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class POSSaleItem(Base):
    __tablename__ = "pos_sale_items"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    sale_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("pos_sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType, ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)


class POSTransaction(Base):
    """Individual payment leg of a sale (several for split payments)."""
    __tablename__ = "pos_transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    sale_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("pos_sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class CashDrawerEvent(Base):
    __tablename__ = "cash_drawer_events"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("pos_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="open, close, sale, cash_in, cash_out, refund"
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
