"""
Stock transfer requests between outlets.

A request is raised by store or warehouse staff, approved or rejected by a
manager, dispatched from the source outlet and received at the destination.
Dispatch takes the stock out of the source; receipt puts the counted units
into the destination and records any shortfall on the line.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, StockTransferError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow, generate_number
from app.models.notifications import NotificationType, NotificationPriority
from app.models.outlet import Outlet
from app.models.product import Product
from app.models.stock_transfer import (
    StockTransfer,
    StockTransferItem,
    StockTransferStatus,
    VarianceSeverity,
)
from app.models.user import AppRole, User
from app.services.activity_log_service import ActivityLogService
from app.services.inventory_service import InventoryService
from app.services.notification_service import NotificationService


logger = logging.getLogger(__name__)


# Roles that approve, reject and get told about new requests
TRANSFER_MANAGER_ROLES = (AppRole.SUPER_ADMIN.value, AppRole.ADMIN.value, AppRole.WAREHOUSE_MANAGER.value)
TRANSFER_ACTION_URL = "/stock-transfer"

# Shortfall value thresholds, highest first
VARIANCE_THRESHOLDS = (
    (Decimal("10000"), VarianceSeverity.CRITICAL),
    (Decimal("5000"), VarianceSeverity.HIGH),
    (Decimal("1000"), VarianceSeverity.MEDIUM),
)


def variance_severity(value: Decimal) -> VarianceSeverity:
    for threshold, severity in VARIANCE_THRESHOLDS:
        if abs(value) > threshold:
            return severity
    return VarianceSeverity.LOW


class StockTransferService:
    """Transfer request lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.inventory = InventoryService(db)
        self.activity = ActivityLogService(db)
        self.notifications = NotificationService(db)

    async def get_transfer(self, transfer_id: uuid.UUID) -> StockTransfer:
        transfer = (await self.db.execute(
            select(StockTransfer).where(StockTransfer.id == transfer_id)
        )).scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Stock transfer not found", error_code="TRANSFER_NOT_FOUND")
        return transfer

    def _require_status(self, transfer: StockTransfer, *allowed: StockTransferStatus) -> None:
        if transfer.status not in {s.value for s in allowed}:
            raise StockTransferError(
                f"Cannot change a {transfer.status} transfer",
                error_code="INVALID_TRANSFER_STATUS",
                status_code=409,
                details={
                    "transfer_number": transfer.transfer_number,
                    "current_status": transfer.status,
                    "allowed": [s.value for s in allowed],
                },
            )

    async def _outlet_name(self, outlet_id: uuid.UUID) -> str:
        outlet = await self.db.get(Outlet, outlet_id)
        return outlet.name if outlet else str(outlet_id)

    async def _notify_managers(self, transfer: StockTransfer, title: str, message: str, priority: str) -> None:
        metadata = {"transfer_id": str(transfer.id), "transfer_number": transfer.transfer_number}
        for role in TRANSFER_MANAGER_ROLES:
            await self.notifications.notify_role(
                role, NotificationType.STOCK_TRANSFER.value, title, message,
                priority=priority, action_url=TRANSFER_ACTION_URL, metadata=metadata,
            )

    async def _notify_requester(self, transfer: StockTransfer, title: str, message: str, priority: str) -> None:
        await self.notifications.create(
            user_id=transfer.requested_by,
            type=NotificationType.STOCK_TRANSFER.value,
            title=title,
            message=message,
            priority=priority,
            action_url=TRANSFER_ACTION_URL,
            metadata={"transfer_id": str(transfer.id), "transfer_number": transfer.transfer_number},
        )

    def _queue_event(self, transfer: StockTransfer, event_type: str = "UPDATE") -> None:
        realtime.queue(self.db, "stock_transfers", event_type, {
            "id": transfer.id,
            "transfer_number": transfer.transfer_number,
            "status": transfer.status,
            "from_outlet_id": transfer.from_outlet_id,
            "to_outlet_id": transfer.to_outlet_id,
        })

    # ==================== LIFECYCLE ====================

    async def create_transfer(
        self,
        from_outlet_id: uuid.UUID,
        to_outlet_id: uuid.UUID,
        items: List[Dict[str, Any]],
        user_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> StockTransfer:
        """
        Raise a transfer request.

        Lines for the same product are merged. Stock is not checked here; it is
        checked when the transfer is dispatched.
        """
        if from_outlet_id == to_outlet_id:
            raise StockTransferError("Source and destination outlets must differ", error_code="INVALID_TRANSFER")
        if not items:
            raise StockTransferError("A transfer needs at least one item", error_code="EMPTY_TRANSFER")

        for outlet_id in (from_outlet_id, to_outlet_id):
            if not await self.db.get(Outlet, outlet_id):
                raise NotFoundError("Outlet not found", error_code="OUTLET_NOT_FOUND", details={"outlet_id": str(outlet_id)})

        quantities: Dict[uuid.UUID, int] = {}
        for item in items:
            product_id = item["product_id"]
            quantities[product_id] = quantities.get(product_id, 0) + int(item["quantity"])
        found = set((await self.db.execute(
            select(Product.id).where(Product.id.in_(list(quantities)))
        )).scalars().all())
        missing = [str(p) for p in quantities if p not in found]
        if missing:
            raise NotFoundError("Product not found", error_code="PRODUCT_NOT_FOUND", details={"product_ids": missing})

        transfer = StockTransfer(
            transfer_number=generate_number("TRF"),
            from_outlet_id=from_outlet_id,
            to_outlet_id=to_outlet_id,
            status=StockTransferStatus.PENDING.value,
            notes=notes,
            requested_by=user_id,
            items=[StockTransferItem(product_id=p, quantity_requested=q) for p, q in quantities.items()],
        )
        self.db.add(transfer)
        await self.db.flush()

        from_name = await self._outlet_name(from_outlet_id)
        to_name = await self._outlet_name(to_outlet_id)
        await self.activity.log(
            "transfer_requested", "stock_transfer", transfer.id, user_id,
            {"transfer_number": transfer.transfer_number, "from": from_name, "to": to_name, "item_count": len(quantities)},
        )
        await self._notify_managers(
            transfer,
            "New Stock Transfer Request",
            f"Transfer {transfer.transfer_number} from {from_name} to {to_name} ({len(quantities)} items) needs approval",
            NotificationPriority.NORMAL.value,
        )
        self._queue_event(transfer, "INSERT")
        logger.info("Transfer %s requested: %s -> %s", transfer.transfer_number, from_name, to_name)
        return transfer

    async def approve_transfer(
        self,
        transfer_id: uuid.UUID,
        user_id: uuid.UUID,
        approved_quantities: Optional[Dict[uuid.UUID, int]] = None,
    ) -> StockTransfer:
        """
        Approve a pending request.

        ``approved_quantities`` maps item id to the approved quantity; lines
        left out are approved as requested. Approving more than requested is
        refused.
        """
        transfer = await self.get_transfer(transfer_id)
        self._require_status(transfer, StockTransferStatus.PENDING)

        approved_quantities = approved_quantities or {}
        by_id = {item.id: item for item in transfer.items}
        unknown = [str(i) for i in approved_quantities if i not in by_id]
        if unknown:
            raise StockTransferError("Unknown transfer items", error_code="INVALID_TRANSFER_ITEM", details={"item_ids": unknown})

        for item in transfer.items:
            quantity = approved_quantities.get(item.id, item.quantity_requested)
            if quantity > item.quantity_requested:
                raise StockTransferError(
                    "Approved quantity exceeds the requested quantity",
                    error_code="INVALID_APPROVED_QUANTITY",
                    details={"item_id": str(item.id), "requested": item.quantity_requested, "approved": quantity},
                )
            item.quantity_approved = quantity

        transfer.status = StockTransferStatus.APPROVED.value
        transfer.approved_by = user_id
        transfer.approved_at = utcnow()
        await self.db.flush()

        await self.activity.log("transfer_approved", "stock_transfer", transfer.id, user_id,
                                {"transfer_number": transfer.transfer_number})
        to_name = await self._outlet_name(transfer.to_outlet_id)
        await self._notify_requester(
            transfer, "Stock Transfer Approved",
            f"Transfer request {transfer.transfer_number} to {to_name} was approved",
            NotificationPriority.NORMAL.value,
        )
        self._queue_event(transfer)
        return transfer

    async def reject_transfer(self, transfer_id: uuid.UUID, reason: str, user_id: uuid.UUID) -> StockTransfer:
        transfer = await self.get_transfer(transfer_id)
        self._require_status(transfer, StockTransferStatus.PENDING)

        transfer.status = StockTransferStatus.REJECTED.value
        transfer.rejection_reason = reason
        transfer.approved_by = user_id
        transfer.approved_at = utcnow()
        await self.db.flush()

        await self.activity.log("transfer_rejected", "stock_transfer", transfer.id, user_id,
                                {"transfer_number": transfer.transfer_number, "reason": reason})
        to_name = await self._outlet_name(transfer.to_outlet_id)
        await self._notify_requester(
            transfer, "Stock Transfer Rejected",
            f"Transfer request to {to_name} was rejected. Reason: {reason}",
            NotificationPriority.HIGH.value,
        )
        self._queue_event(transfer)
        return transfer

    async def dispatch_transfer(self, transfer_id: uuid.UUID, user_id: uuid.UUID) -> StockTransfer:
        """
        Ship an approved transfer. Every line is taken out of the source outlet
        or none is.

        Raises:
            InventoryError: INSUFFICIENT_STOCK / INVENTORY_NOT_FOUND for any line
        """
        transfer = await self.get_transfer(transfer_id)
        self._require_status(transfer, StockTransferStatus.APPROVED)

        notes = f"Transfer {transfer.transfer_number}"
        shipped = 0
        async with self.db.begin_nested():
            for item in transfer.items:
                if item.quantity_to_ship <= 0:
                    continue
                await self.inventory.ship_transfer(
                    item.product_id, transfer.from_outlet_id, item.quantity_to_ship, transfer.id, notes, user_id
                )
                shipped += item.quantity_to_ship

        transfer.status = StockTransferStatus.IN_TRANSIT.value
        transfer.dispatched_by = user_id
        transfer.dispatched_at = utcnow()
        await self.db.flush()

        await self.activity.log("transfer_dispatched", "stock_transfer", transfer.id, user_id,
                                {"transfer_number": transfer.transfer_number, "units": shipped})
        from_name = await self._outlet_name(transfer.from_outlet_id)
        await self._notify_requester(
            transfer, "Stock Transfer Dispatched",
            f"Transfer {transfer.transfer_number} left {from_name} with {shipped} units",
            NotificationPriority.HIGH.value,
        )
        self._queue_event(transfer)
        logger.info("Transfer %s dispatched, %d units", transfer.transfer_number, shipped)
        return transfer

    async def receive_transfer(
        self,
        transfer_id: uuid.UUID,
        user_id: uuid.UUID,
        receipts: Optional[List[Dict[str, Any]]] = None,
    ) -> Tuple[StockTransfer, List[StockTransferItem]]:
        """
        Book the counted units into the destination outlet.

        ``receipts`` holds ``{item_id, quantity_received, variance_reason}``;
        lines left out are received in full. Returns the transfer and the
        lines with a variance.
        """
        transfer = await self.get_transfer(transfer_id)
        self._require_status(transfer, StockTransferStatus.IN_TRANSIT)

        by_id = {item.id: item for item in transfer.items}
        counted: Dict[uuid.UUID, Dict[str, Any]] = {}
        for receipt in receipts or []:
            if receipt["item_id"] not in by_id:
                raise StockTransferError(
                    "Unknown transfer item", error_code="INVALID_TRANSFER_ITEM",
                    details={"item_id": str(receipt["item_id"])},
                )
            counted[receipt["item_id"]] = receipt

        notes = f"Transfer {transfer.transfer_number}"
        variances: List[StockTransferItem] = []
        for item in transfer.items:
            expected = item.quantity_to_ship
            receipt = counted.get(item.id, {})
            received = receipt.get("quantity_received", expected)
            item.quantity_received = received
            item.variance = expected - received
            if item.variance:
                product = await self.db.get(Product, item.product_id)
                unit_cost = (product.cost if product and product.cost is not None else Decimal("0"))
                item.variance_value = Decimal(item.variance) * unit_cost
                item.variance_severity = variance_severity(item.variance_value).value
                item.variance_reason = receipt.get("variance_reason")
                variances.append(item)
            if received > 0:
                await self.inventory.receive_transfer(
                    item.product_id, transfer.to_outlet_id, received, transfer.id, notes, user_id
                )

        transfer.status = StockTransferStatus.COMPLETED.value
        transfer.received_by = user_id
        transfer.completed_at = utcnow()
        await self.db.flush()

        await self.activity.log(
            "transfer_received", "stock_transfer", transfer.id, user_id,
            {"transfer_number": transfer.transfer_number, "variance_lines": len(variances)},
        )
        to_name = await self._outlet_name(transfer.to_outlet_id)
        if variances:
            total_value = sum((v.variance_value for v in variances), Decimal("0"))
            message = (
                f"Transfer {transfer.transfer_number} received at {to_name} with "
                f"{len(variances)} variance lines worth {total_value}"
            )
            await self._notify_requester(transfer, "Transfer Variance Detected", message, NotificationPriority.HIGH.value)
            await self._notify_managers(transfer, "Transfer Variance Detected", message, NotificationPriority.HIGH.value)
            logger.warning("Transfer %s received with %d variance lines", transfer.transfer_number, len(variances))
        else:
            await self._notify_requester(
                transfer, "Stock Transfer Received",
                f"Transfer {transfer.transfer_number} was received at {to_name}",
                NotificationPriority.NORMAL.value,
            )
        self._queue_event(transfer)
        return transfer, variances

    async def cancel_transfer(self, transfer_id: uuid.UUID, user: User) -> StockTransfer:
        """
        Cancel a transfer that has not been received.

        Only the requester or a transfer manager may cancel. Stock already
        dispatched goes back to the source outlet.
        """
        transfer = await self.get_transfer(transfer_id)
        if transfer.requested_by != user.id and not user.has_role(*TRANSFER_MANAGER_ROLES):
            raise StockTransferError(
                "Only the requester or a manager can cancel this transfer",
                error_code="TRANSFER_FORBIDDEN",
                status_code=403,
            )
        self._require_status(
            transfer, StockTransferStatus.PENDING, StockTransferStatus.APPROVED, StockTransferStatus.IN_TRANSIT
        )

        if transfer.status == StockTransferStatus.IN_TRANSIT.value:
            notes = f"Transfer {transfer.transfer_number} cancelled"
            for item in transfer.items:
                if item.quantity_to_ship > 0:
                    await self.inventory.receive_transfer(
                        item.product_id, transfer.from_outlet_id, item.quantity_to_ship, transfer.id, notes, user.id
                    )

        previous = transfer.status
        transfer.status = StockTransferStatus.CANCELLED.value
        transfer.cancelled_at = utcnow()
        await self.db.flush()

        await self.activity.log("transfer_cancelled", "stock_transfer", transfer.id, user.id,
                                {"transfer_number": transfer.transfer_number, "previous_status": previous})
        self._queue_event(transfer)
        return transfer

    # ==================== QUERIES ====================

    async def get_transfers(
        self,
        status: Optional[str] = None,
        outlet_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockTransfer], int]:
        filters = []
        if status:
            filters.append(StockTransfer.status == status)
        if outlet_id:
            filters.append(or_(StockTransfer.from_outlet_id == outlet_id, StockTransfer.to_outlet_id == outlet_id))

        stmt = select(StockTransfer)
        count_stmt = select(func.count(StockTransfer.id))
        if filters:
            stmt = stmt.where(*filters)
            count_stmt = count_stmt.where(*filters)

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(
            stmt.order_by(StockTransfer.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total
