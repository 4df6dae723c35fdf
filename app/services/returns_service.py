"""
Returns processing.

Covers return creation, warehouse receipt with restocking, the barcode
scanner flow (rapid return) and claim tracking.
"""
import logging
import re
import uuid
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ReturnProcessingError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow
from app.models.customer import Customer
from app.models.order import Order, OrderStatus
from app.models.product import Product
from app.models.return_order import Return, ReturnStatus
from app.services.activity_log_service import ActivityLogService
from app.services.inventory_service import InventoryService
from app.services.order_status_service import OrderStatusService


logger = logging.getLogger(__name__)


SCIENTIFIC_NOTATION = re.compile(r"^\d+\.?\d*[eE][+\-]?\d+$")
COURIER_NAMES = {
    "postex", "leopard", "tcs", "callcourier", "call courier",
    "dhl", "fedex", "m&p", "swyft", "trax",
}


def validate_scan_entry(entry: str) -> None:
    """Reject scanner input that cannot be a tracking id or order number."""
    if len(entry) < 5:
        raise ReturnProcessingError(
            "Entry too short",
            error_code="INVALID_FORMAT",
            details={"suggestion": "Enter complete tracking ID or order number (minimum 5 characters)"},
        )
    if SCIENTIFIC_NOTATION.match(entry):
        raise ReturnProcessingError(
            "Invalid format - Excel scientific notation detected",
            error_code="INVALID_FORMAT",
            details={"suggestion": "Format the Excel column as Text before copying"},
        )
    if entry.lower() in COURIER_NAMES:
        raise ReturnProcessingError(
            "Courier name entered instead of tracking ID",
            error_code="INVALID_FORMAT",
            details={"suggestion": "Enter tracking ID or order number, not courier name"},
        )


def order_number_clause(entry: str):
    """Match an order by its own number, the SHOP- prefixed form or the Shopify number."""
    return or_(
        Order.order_number == entry,
        Order.order_number == f"SHOP-{entry}",
        Order.shopify_order_number == entry,
    )


class ReturnsService:
    """Return lifecycle: pending -> received -> restocked / claimed."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.activity = ActivityLogService(db)
        self.inventory = InventoryService(db)

    async def get_return(self, return_id: uuid.UUID) -> Return:
        record = await self.db.get(Return, return_id)
        if not record:
            raise NotFoundError("Return not found", error_code="RETURN_NOT_FOUND")
        return record

    async def _bump_customer_returns(self, order: Order) -> None:
        if order.customer_id:
            customer = await self.db.get(Customer, order.customer_id)
            if customer:
                customer.return_count = (customer.return_count or 0) + 1

    # ==================== CREATE / UPDATE ====================

    async def create_return(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        tracking_id: Optional[str] = None,
        worth: Optional[Decimal] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Return:
        order = await self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")

        existing = (await self.db.execute(
            select(Return).where(Return.order_id == order_id).limit(1)
        )).scalar_one_or_none()
        if existing:
            raise ReturnProcessingError(
                "A return already exists for this order",
                error_code="RETURN_EXISTS",
                status_code=409,
                details={"return_id": str(existing.id)},
            )

        record = Return(
            order_id=order.id,
            tracking_id=tracking_id or order.tracking_id,
            return_status=ReturnStatus.PENDING.value,
            worth=worth if worth is not None else order.total_amount,
            reason=reason,
            notes=notes,
        )
        self.db.add(record)
        await self._bump_customer_returns(order)
        await self.db.flush()

        await self.activity.log(
            action="return_created",
            entity_type="return",
            entity_id=record.id,
            user_id=user_id,
            details={"order_number": order.order_number, "reason": reason},
        )
        realtime.queue(self.db, "returns", "INSERT", {"id": record.id, "order_id": order.id, "return_status": record.return_status})
        return record

    async def update_return(
        self,
        return_id: uuid.UUID,
        condition: Optional[str] = None,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        inspected: bool = False,
        user_id: Optional[uuid.UUID] = None,
    ) -> Return:
        record = await self.get_return(return_id)
        if condition is not None:
            record.condition = condition
        if notes is not None:
            record.notes = notes
        if reason is not None:
            record.reason = reason
        if inspected and record.return_status == ReturnStatus.RECEIVED.value:
            record.return_status = ReturnStatus.INSPECTED.value
        record.updated_at = utcnow()
        await self.db.flush()

        realtime.queue(self.db, "returns", "UPDATE", {"id": record.id, "return_status": record.return_status})
        return record

    async def mark_claimed(
        self,
        return_id: uuid.UUID,
        claim_amount: Optional[Decimal] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Return:
        record = await self.get_return(return_id)
        if record.return_status == ReturnStatus.CLAIMED.value:
            raise ReturnProcessingError("Return already claimed", error_code="ALREADY_CLAIMED", status_code=409)

        record.return_status = ReturnStatus.CLAIMED.value
        record.claimed_at = utcnow()
        record.claim_amount = claim_amount if claim_amount is not None else record.worth
        await self.db.flush()

        await self.activity.log(
            action="return_claimed",
            entity_type="return",
            entity_id=record.id,
            user_id=user_id,
            details={"claim_amount": str(record.claim_amount)},
        )
        realtime.queue(self.db, "returns", "UPDATE", {"id": record.id, "return_status": record.return_status})
        return record

    # ==================== RECEIVE & RESTOCK ====================

    async def _resolve_product(self, item: Dict[str, Any]) -> Optional[Product]:
        product_id = item.get("product_id")
        if product_id:
            product = await self.db.get(Product, uuid.UUID(str(product_id)))
            if product:
                return product
        name = item.get("name") or item.get("item_name")
        if not name:
            return None
        result = await self.db.execute(
            select(Product).where(func.lower(Product.name) == name.strip().lower()).limit(1)
        )
        return result.scalar_one_or_none()

    async def receive_return(
        self,
        return_id: uuid.UUID,
        outlet_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Receive a return at an outlet and put every matched item back in stock.

        Items whose product cannot be resolved are skipped and counted.
        """
        record = await self.get_return(return_id)
        if record.return_status in (ReturnStatus.RECEIVED.value, ReturnStatus.RESTOCKED.value):
            raise ReturnProcessingError(
                "Return already processed",
                error_code="ALREADY_PROCESSED",
                status_code=409,
                details={"return_status": record.return_status},
            )

        order = await self.db.get(Order, record.order_id)
        if not order:
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")

        if order.order_items:
            items = [
                {"product_id": i.product_id, "name": i.item_name, "quantity": i.quantity}
                for i in order.order_items
            ]
        else:
            items = list(order.items or [])

        restocked = 0
        skipped: List[str] = []
        for item in items:
            product = await self._resolve_product(item)
            name = item.get("name") or item.get("item_name") or "Unknown item"
            if not product:
                logger.warning("Return %s: no product matches '%s', skipping restock", record.id, name)
                skipped.append(name)
                continue

            await self.inventory.process_return(
                product_id=product.id,
                outlet_id=outlet_id,
                quantity=int(item.get("quantity") or 1),
                reference_id=record.id,
                notes=f"Return for order {order.order_number}",
                user_id=user_id,
            )
            restocked += 1

        now = utcnow()
        record.return_status = ReturnStatus.RECEIVED.value
        record.received_at = now
        record.received_by = user_id
        record.restocked_outlet_id = outlet_id
        record.updated_at = now
        await self.db.flush()

        await self.activity.log(
            action="return_restocked",
            entity_type="return",
            entity_id=record.id,
            user_id=user_id,
            details={
                "order_number": order.order_number,
                "outlet_id": str(outlet_id),
                "items_restocked": restocked,
                "items_skipped": skipped,
            },
        )
        realtime.queue(self.db, "returns", "UPDATE", {"id": record.id, "return_status": record.return_status})

        return {
            "return_id": record.id,
            "items_restocked": restocked,
            "items_skipped": len(skipped),
            "skipped_items": skipped,
        }

    async def rapid_return(self, entry: str, user_id: uuid.UUID) -> Dict[str, Any]:
        """
        Scanner flow: mark a parcel as received by tracking id or order number.

        A return row is created on the fly when the order has none.

        Raises:
            ReturnProcessingError: INVALID_FORMAT, NOT_FOUND, ALREADY_RETURNED, ALREADY_RECEIVED
        """
        entry = (entry or "").strip()
        validate_scan_entry(entry)

        record: Optional[Return] = None
        order: Optional[Order] = None
        match_type = "tracking_id"

        record = (await self.db.execute(
            select(Return).where(Return.tracking_id == entry).limit(1)
        )).scalar_one_or_none()
        if record:
            order = await self.db.get(Order, record.order_id)
        else:
            order = (await self.db.execute(
                select(Order).where(order_number_clause(entry)).limit(1)
            )).scalar_one_or_none()
            if order:
                record = (await self.db.execute(
                    select(Return).where(Return.order_id == order.id).limit(1)
                )).scalar_one_or_none()
                match_type = "order_number"

        now = utcnow()
        status_service = OrderStatusService(self.db)

        if not record:
            order = (await self.db.execute(
                select(Order).where(or_(Order.tracking_id == entry, order_number_clause(entry))).limit(1)
            )).scalar_one_or_none()
            if not order:
                raise ReturnProcessingError(
                    "Order not found in database",
                    error_code="NOT_FOUND",
                    status_code=404,
                    details={"searched_entry": entry, "suggestion": "Verify the tracking ID or order number is correct."},
                )
            if order.status == OrderStatus.RETURNED.value:
                raise ReturnProcessingError(
                    "Order already returned",
                    error_code="ALREADY_RETURNED",
                    status_code=409,
                    details={"order_number": order.order_number, "customer_name": order.customer_name},
                )

            record = Return(
                order_id=order.id,
                tracking_id=order.tracking_id or entry,
                return_status=ReturnStatus.RECEIVED.value,
                worth=order.total_amount or Decimal("0"),
                reason="Scanned at warehouse",
                received_by=user_id,
                received_at=now,
            )
            self.db.add(record)
            await self._bump_customer_returns(order)
            await self.db.flush()
            match_type = "order_direct"
            auto_created = True
        else:
            if record.return_status == ReturnStatus.RECEIVED.value:
                raise ReturnProcessingError(
                    "Return already received",
                    error_code="ALREADY_RECEIVED",
                    status_code=409,
                    details={
                        "order_number": order.order_number if order else "Unknown",
                        "customer_name": order.customer_name if order else None,
                    },
                )
            record.return_status = ReturnStatus.RECEIVED.value
            record.received_at = now
            record.received_by = user_id
            auto_created = False

        if order and order.status != OrderStatus.RETURNED.value:
            # Physical receipt overrides the normal transition rules
            await status_service.update_order_status(
                order.id,
                OrderStatus.RETURNED.value,
                user_id=user_id,
                force=True,
            )

        await self.activity.log(
            action="return_received",
            entity_type="return",
            entity_id=record.id,
            user_id=user_id,
            details={
                "order_number": order.order_number if order else "Unknown",
                "customer_name": order.customer_name if order else "Unknown",
                "tracking_id": record.tracking_id,
                "match_type": match_type,
                "scanned_entry": entry,
                "auto_created": auto_created,
            },
        )
        realtime.queue(self.db, "returns", "UPDATE", {"id": record.id, "return_status": record.return_status})

        return {
            "success": True,
            "order": {
                "order_number": order.order_number if order else "Unknown",
                "customer_name": order.customer_name if order else "Unknown",
            },
            "tracking_id": record.tracking_id,
            "match_type": match_type,
            "return_id": record.id,
        }

    # ==================== QUERIES ====================

    async def get_returns(
        self,
        return_status: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tuple[Return, Order]], int]:
        filters = []
        if return_status:
            filters.append(Return.return_status == return_status)
        if search:
            filters.append(or_(
                Return.tracking_id.ilike(f"%{search}%"),
                Order.order_number.ilike(f"%{search}%"),
                Order.customer_name.ilike(f"%{search}%"),
                Order.customer_phone.ilike(f"%{search}%"),
            ))

        stmt = select(Return, Order).join(Order, Order.id == Return.order_id)
        count_stmt = select(func.count(Return.id)).join(Order, Order.id == Return.order_id)
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.order_by(Return.created_at.desc()).offset(skip).limit(limit))
        return [(r, o) for r, o in result.all()], total
