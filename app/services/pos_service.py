"""
Point-of-sale service.

Session lifecycle (open -> sales / cash events -> close with reconciliation)
and sale processing with stock deduction at the session's outlet.
"""
import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, POSError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow, generate_number
from app.models.pos import (
    POSSession,
    POSSale,
    POSSaleItem,
    POSTransaction,
    CashDrawerEvent,
    POSSessionStatus,
    POSPaymentMethod,
    CashDrawerEventType,
)
from app.models.product import Product
from app.schemas.pos import POSSaleRequest
from app.services.activity_log_service import ActivityLogService
from app.services.inventory_service import InventoryService


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class POSService:
    """Cash register sessions and sales."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.activity = ActivityLogService(db)
        self.inventory = InventoryService(db)

    # ==================== SESSIONS ====================

    async def get_open_session(self, cashier_id: uuid.UUID) -> Optional[POSSession]:
        result = await self.db.execute(
            select(POSSession).where(
                POSSession.cashier_id == cashier_id,
                POSSession.status == POSSessionStatus.OPEN.value,
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_cashier_session(self, session_id: uuid.UUID, cashier_id: uuid.UUID) -> POSSession:
        result = await self.db.execute(
            select(POSSession).where(
                POSSession.id == session_id,
                POSSession.cashier_id == cashier_id,
            )
        )
        session = result.scalar_one_or_none()
        if not session:
            raise NotFoundError("Session not found", error_code="SESSION_NOT_FOUND")
        return session

    async def _drawer_event(
        self,
        session: POSSession,
        event_type: str,
        amount: Decimal,
        user_id: Optional[uuid.UUID],
        reference_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> CashDrawerEvent:
        event = CashDrawerEvent(
            session_id=session.id,
            event_type=event_type,
            amount=money(amount),
            reference_id=reference_id,
            notes=notes,
            created_by=user_id,
        )
        self.db.add(event)
        return event

    async def open_session(
        self,
        cashier_id: uuid.UUID,
        outlet_id: uuid.UUID,
        opening_cash: Decimal,
        register_number: Optional[str] = None,
    ) -> POSSession:
        if await self.get_open_session(cashier_id):
            raise POSError(
                "You already have an open session. Please close it first.",
                error_code="SESSION_ALREADY_OPEN",
            )

        session = POSSession(
            session_number=generate_number("POS"),
            outlet_id=outlet_id,
            cashier_id=cashier_id,
            register_number=register_number,
            opening_cash=money(opening_cash),
            status=POSSessionStatus.OPEN.value,
            opened_at=utcnow(),
        )
        self.db.add(session)
        await self.db.flush()

        await self._drawer_event(session, CashDrawerEventType.OPEN.value, opening_cash, cashier_id, notes="Session opened")
        await self.activity.log(
            action="pos_session_opened",
            entity_type="pos_session",
            entity_id=session.id,
            user_id=cashier_id,
            details={
                "session_number": session.session_number,
                "outlet_id": str(outlet_id),
                "opening_cash": str(session.opening_cash),
            },
        )
        await self.db.flush()

        logger.info("POS session %s opened by %s", session.session_number, cashier_id)
        realtime.queue(self.db, "pos_sessions", "INSERT", {"id": session.id, "status": session.status})
        return session

    async def calculate_expected_cash(self, session: POSSession) -> Decimal:
        """
        Opening float + cash taken for completed sales + cash_in - cash_out - refunds.

        Cash legs of split payments count as cash taken.
        """
        cash_sales = (await self.db.execute(
            select(func.coalesce(func.sum(POSSale.total_amount), 0)).where(
                POSSale.session_id == session.id,
                POSSale.status == "completed",
                POSSale.payment_method == POSPaymentMethod.CASH.value,
            )
        )).scalar()
        split_cash = (await self.db.execute(
            select(func.coalesce(func.sum(POSTransaction.amount), 0))
            .join(POSSale, POSSale.id == POSTransaction.sale_id)
            .where(
                POSSale.session_id == session.id,
                POSSale.status == "completed",
                POSSale.payment_method == POSPaymentMethod.SPLIT.value,
                POSTransaction.payment_method == POSPaymentMethod.CASH.value,
            )
        )).scalar()

        expected = Decimal(session.opening_cash) + Decimal(str(cash_sales)) + Decimal(str(split_cash))

        events = (await self.db.execute(
            select(CashDrawerEvent.event_type, CashDrawerEvent.amount).where(
                CashDrawerEvent.session_id == session.id,
                CashDrawerEvent.event_type.in_([
                    CashDrawerEventType.CASH_IN.value,
                    CashDrawerEventType.CASH_OUT.value,
                    CashDrawerEventType.REFUND.value,
                ]),
            )
        )).all()
        for event_type, amount in events:
            if event_type == CashDrawerEventType.CASH_IN.value:
                expected += Decimal(amount)
            else:
                expected -= Decimal(amount)

        return money(expected)

    async def close_session(
        self,
        session_id: uuid.UUID,
        cashier_id: uuid.UUID,
        closing_cash: Decimal,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = await self.get_cashier_session(session_id, cashier_id)
        if session.status != POSSessionStatus.OPEN.value:
            raise POSError("Session not found or already closed", error_code="SESSION_CLOSED", status_code=404)

        expected_cash = await self.calculate_expected_cash(session)
        closing_cash = money(closing_cash)
        cash_difference = money(closing_cash - expected_cash)

        session.status = POSSessionStatus.CLOSED.value
        session.closing_cash = closing_cash
        session.expected_cash = expected_cash
        session.cash_difference = cash_difference
        session.closed_at = utcnow()
        if notes:
            session.notes = notes

        await self._drawer_event(session, CashDrawerEventType.CLOSE.value, closing_cash, cashier_id, notes=notes)
        await self.activity.log(
            action="pos_session_closed",
            entity_type="pos_session",
            entity_id=session.id,
            user_id=cashier_id,
            details={
                "session_number": session.session_number,
                "expected_cash": str(expected_cash),
                "closing_cash": str(closing_cash),
                "cash_difference": str(cash_difference),
            },
        )
        await self.db.flush()

        if cash_difference != 0:
            logger.warning("POS session %s closed with difference %s", session.session_number, cash_difference)
        realtime.queue(self.db, "pos_sessions", "UPDATE", {"id": session.id, "status": session.status})
        return {
            "session": session,
            "expected_cash": expected_cash,
            "cash_difference": cash_difference,
        }

    async def record_cash_event(
        self,
        session_id: uuid.UUID,
        cashier_id: uuid.UUID,
        event_type: str,
        amount: Decimal,
        notes: Optional[str] = None,
    ) -> CashDrawerEvent:
        allowed = {
            CashDrawerEventType.CASH_IN.value,
            CashDrawerEventType.CASH_OUT.value,
            CashDrawerEventType.REFUND.value,
        }
        if event_type not in allowed:
            raise POSError(f"Invalid cash event type: {event_type}", error_code="INVALID_EVENT_TYPE")
        if amount <= 0:
            raise POSError("Amount must be positive", error_code="INVALID_AMOUNT")

        session = await self.get_cashier_session(session_id, cashier_id)
        if session.status != POSSessionStatus.OPEN.value:
            raise POSError("Session is closed", error_code="SESSION_CLOSED")

        event = await self._drawer_event(session, event_type, amount, cashier_id, notes=notes)
        await self.db.flush()
        return event

    # ==================== SALES ====================

    async def process_sale(self, cashier_id: uuid.UUID, request: POSSaleRequest) -> POSSale:
        """
        Ring up a sale in an open session.

        Line discount = unit_price * quantity * discount_percent / 100,
        tax = subtotal * tax_rate, change = amount_paid - total.
        """
        session = await self.get_cashier_session(request.session_id, cashier_id)
        if session.status != POSSessionStatus.OPEN.value:
            raise POSError("Invalid or closed session", error_code="SESSION_CLOSED")
        outlet_id = request.outlet_id or session.outlet_id

        lines: List[Dict[str, Any]] = []
        requested: Dict[uuid.UUID, int] = {}
        subtotal = Decimal("0")
        discount_total = Decimal("0")
        for item in request.items:
            product = await self.db.get(Product, item.product_id)
            if not product:
                raise NotFoundError("Product not found", error_code="PRODUCT_NOT_FOUND", details={"product_id": str(item.product_id)})

            # the same product can appear on several lines
            requested[product.id] = requested.get(product.id, 0) + item.quantity
            availability = await self.inventory.check_availability(product.id, outlet_id, requested[product.id])
            if not availability["available"]:
                raise POSError(
                    f"Insufficient stock for {product.name}",
                    error_code="INSUFFICIENT_STOCK",
                    details={
                        "product_id": str(product.id),
                        "requested": requested[product.id],
                        "available": availability["available_quantity"],
                    },
                )

            unit_price = Decimal(str(item.unit_price)) if item.unit_price is not None else Decimal(product.price)
            gross = unit_price * item.quantity
            discount_amount = money(gross * Decimal(str(item.discount_percent)) / 100)
            line_total = money(gross - discount_amount)
            subtotal += line_total
            discount_total += discount_amount
            lines.append({
                "product": product,
                "quantity": item.quantity,
                "unit_price": money(unit_price),
                "discount_percent": Decimal(str(item.discount_percent)),
                "discount_amount": discount_amount,
                "line_total": line_total,
            })

        subtotal = money(subtotal)
        tax_amount = money(subtotal * Decimal(str(request.tax_rate)))
        total_amount = money(subtotal + tax_amount)
        amount_paid = money(Decimal(str(request.amount_paid)))
        change_amount = money(amount_paid - total_amount)
        if change_amount < 0:
            raise POSError(
                "Insufficient payment amount",
                error_code="INSUFFICIENT_PAYMENT",
                details={"total_amount": str(total_amount), "amount_paid": str(amount_paid)},
            )

        if request.payment_method == POSPaymentMethod.SPLIT.value:
            if not request.payments:
                raise POSError("Split payment requires payment legs", error_code="INVALID_PAYMENT")
            legs_total = money(sum((Decimal(str(p.amount)) for p in request.payments), Decimal("0")))
            if legs_total < total_amount:
                raise POSError("Insufficient payment amount", error_code="INSUFFICIENT_PAYMENT")

        sale = POSSale(
            sale_number=generate_number("SALE"),
            session_id=session.id,
            outlet_id=outlet_id,
            cashier_id=cashier_id,
            customer_id=request.customer_id,
            subtotal=subtotal,
            discount_amount=money(discount_total),
            tax_amount=tax_amount,
            total_amount=total_amount,
            amount_paid=amount_paid,
            change_amount=change_amount,
            payment_method=request.payment_method,
            status="completed",
            notes=request.notes,
            sale_items=[
                POSSaleItem(
                    product_id=line["product"].id,
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    discount_percentage=line["discount_percent"],
                    discount_amount=line["discount_amount"],
                    line_total=line["line_total"],
                )
                for line in lines
            ],
        )
        self.db.add(sale)
        await self.db.flush()

        if request.payment_method == POSPaymentMethod.SPLIT.value:
            for payment in request.payments:
                self.db.add(POSTransaction(
                    sale_id=sale.id,
                    payment_method=payment.payment_method,
                    amount=money(Decimal(str(payment.amount))),
                    reference_number=payment.payment_reference,
                ))
        else:
            self.db.add(POSTransaction(
                sale_id=sale.id,
                payment_method=request.payment_method,
                amount=total_amount,
            ))

        for line in lines:
            await self.inventory.record_sale(
                product_id=line["product"].id,
                outlet_id=outlet_id,
                quantity=line["quantity"],
                reference_id=sale.id,
                user_id=cashier_id,
                release_reserved=False,
            )

        await self._drawer_event(
            session, CashDrawerEventType.SALE.value, total_amount, cashier_id, reference_id=sale.id
        )
        await self.db.flush()

        logger.info("POS sale %s: %s (%s)", sale.sale_number, total_amount, request.payment_method)
        realtime.queue(self.db, "pos_sales", "INSERT", {
            "id": sale.id,
            "session_id": session.id,
            "total_amount": total_amount,
        })
        return sale

    async def get_session_sales(self, session_id: uuid.UUID) -> List[POSSale]:
        result = await self.db.execute(
            select(POSSale).where(POSSale.session_id == session_id).order_by(POSSale.created_at.asc())
        )
        return list(result.scalars().all())
