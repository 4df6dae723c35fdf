"""
Order status lifecycle manager.

Centralises every order status change:
    pending -> confirmed -> booked -> dispatched -> delivered
with side exits to cancelled and returned.

A transition stamps the matching timestamp, optionally records courier and
tracking, writes an activity log row, optionally notifies the acting user,
creates the dispatch row for courier hand-over and queues a Shopify sync for
Shopify orders. Transitions are validated against ALLOWED_TRANSITIONS; a
repeated call with the current status is a no-op.
"""
import logging
import uuid
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, OrderStatusError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow
from app.models.order import Order, OrderStatus
from app.models.dispatch import Dispatch, DispatchStatus
from app.models.notifications import NotificationType, NotificationPriority
from app.services.activity_log_service import ActivityLogService
from app.services.notification_service import NotificationService


logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[str, set] = {
    OrderStatus.PENDING.value: {
        OrderStatus.CONFIRMED.value,
        OrderStatus.BOOKED.value,
        OrderStatus.CANCELLED.value,
    },
    OrderStatus.CONFIRMED.value: {
        OrderStatus.PENDING.value,
        OrderStatus.BOOKED.value,
        OrderStatus.CANCELLED.value,
    },
    OrderStatus.BOOKED.value: {
        OrderStatus.PENDING.value,  # booking cancelled
        OrderStatus.DISPATCHED.value,
        OrderStatus.CANCELLED.value,
    },
    OrderStatus.DISPATCHED.value: {
        OrderStatus.DELIVERED.value,
        OrderStatus.RETURNED.value,
    },
    OrderStatus.DELIVERED.value: {
        OrderStatus.RETURNED.value,
    },
    OrderStatus.CANCELLED.value: {
        OrderStatus.PENDING.value,  # reopened
    },
    OrderStatus.RETURNED.value: set(),
}


STATUS_MESSAGES: Dict[str, str] = {
    OrderStatus.CONFIRMED.value: "Order has been confirmed",
    OrderStatus.DISPATCHED.value: "Order has been dispatched",
    OrderStatus.DELIVERED.value: "Order successfully delivered",
    OrderStatus.RETURNED.value: "Order has been returned",
    OrderStatus.CANCELLED.value: "Order has been cancelled",
    OrderStatus.PENDING.value: "Order moved back to pending",
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def status_message(status: str, courier: Optional[str] = None) -> str:
    if status == OrderStatus.BOOKED.value:
        return f"Order booked with {courier or 'courier'}"
    return STATUS_MESSAGES.get(status, f"Order status changed to {status}")


class OrderStatusService:
    """Applies order status transitions and their side effects."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.activity = ActivityLogService(db)
        self.notifications = NotificationService(db)

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND", details={"order_id": str(order_id)})
        return order

    async def _get_dispatch(self, order_id: uuid.UUID) -> Optional[Dispatch]:
        result = await self.db.execute(
            select(Dispatch).where(Dispatch.order_id == order_id).limit(1)
        )
        return result.scalar_one_or_none()

    # ==================== STATUS TRANSITIONS ====================

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        new_status: str,
        user_id: Optional[uuid.UUID] = None,
        courier: Optional[str] = None,
        tracking_id: Optional[str] = None,
        notes: Optional[str] = None,
        send_notification: bool = False,
        force: bool = False,
    ) -> Order:
        """
        Move an order to ``new_status``.

        Raises:
            NotFoundError: order does not exist
            OrderStatusError: unknown status or illegal transition (unless force)
        """
        valid_statuses = {s.value for s in OrderStatus}
        if new_status not in valid_statuses:
            raise OrderStatusError(
                f"Invalid status: {new_status}",
                error_code="INVALID_STATUS",
                status_code=422,
                details={"valid_statuses": sorted(valid_statuses)},
            )

        order = await self._get_order(order_id)
        old_status = order.status

        if old_status == new_status:
            logger.debug("Order %s already %s, nothing to do", order.order_number, new_status)
            return order

        if not force and not can_transition(old_status, new_status):
            raise OrderStatusError(
                f"Cannot change order status from {old_status} to {new_status}",
                error_code="INVALID_TRANSITION",
                status_code=422,
                details={
                    "current_status": old_status,
                    "requested_status": new_status,
                    "allowed": sorted(ALLOWED_TRANSITIONS.get(old_status, set())),
                },
            )

        now = utcnow()
        order.status = new_status
        order.updated_at = now

        if new_status == OrderStatus.BOOKED.value:
            order.booked_at = now
            order.booked_by = user_id
            if courier:
                order.courier = courier
            if tracking_id:
                order.tracking_id = tracking_id
        elif new_status == OrderStatus.DISPATCHED.value:
            order.dispatched_at = now
            if courier and not order.courier:
                order.courier = courier
            if tracking_id and not order.tracking_id:
                order.tracking_id = tracking_id
        elif new_status == OrderStatus.DELIVERED.value:
            order.delivered_at = now
        elif new_status == OrderStatus.RETURNED.value:
            order.returned_at = now
        elif new_status == OrderStatus.CANCELLED.value:
            order.cancelled_at = now

        if notes:
            order.notes = notes

        details: Dict[str, Any] = {
            "old_status": old_status,
            "new_status": new_status,
            "order_number": order.order_number,
            "timestamp": now.isoformat(),
        }
        if courier:
            details["courier"] = courier
        if tracking_id:
            details["tracking_id"] = tracking_id
        if notes:
            details["notes"] = notes
        if force:
            details["forced"] = True

        await self.activity.log(
            action="status_changed",
            entity_type="order",
            entity_id=order.id,
            user_id=user_id,
            details=details,
        )

        if send_notification and user_id:
            await self.notifications.create(
                user_id=user_id,
                type=NotificationType.ORDER_STATUS.value,
                title=f"Order #{order.order_number} {new_status}",
                message=status_message(new_status, courier),
                priority=(
                    NotificationPriority.HIGH.value
                    if new_status == OrderStatus.DELIVERED.value
                    else NotificationPriority.NORMAL.value
                ),
                action_url=f"/orders/{order.id}",
                metadata={"order_id": str(order.id), "status": new_status},
            )

        if new_status == OrderStatus.DISPATCHED.value and courier:
            existing = await self._get_dispatch(order.id)
            if not existing:
                self.db.add(Dispatch(
                    order_id=order.id,
                    courier=courier,
                    tracking_id=tracking_id or order.tracking_id,
                    status=DispatchStatus.PENDING.value,
                    dispatch_date=now,
                    dispatched_by=user_id,
                ))

        if order.shopify_order_id:
            from app.services.sync_queue_service import SyncQueueService
            await SyncQueueService(self.db).enqueue_order_update(order)

        await self.db.flush()

        logger.info("Order %s: %s -> %s", order.order_number, old_status, new_status)
        realtime.queue(self.db, "orders", "UPDATE", {
            "id": order.id,
            "order_number": order.order_number,
            "status": new_status,
            "old_status": old_status,
        })
        return order

    async def update_order_tracking(
        self,
        order_id: uuid.UUID,
        tracking_id: str,
        courier: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Set tracking (and courier) on an order.

        A pending or confirmed order moves to booked; an existing dispatch row
        picks up the new tracking id.
        """
        order = await self._get_order(order_id)
        old_tracking_id = order.tracking_id
        now = utcnow()

        order.tracking_id = tracking_id
        if courier:
            order.courier = courier
        order.updated_at = now

        if order.status in (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value):
            order.status = OrderStatus.BOOKED.value
            order.booked_at = now
            order.booked_by = user_id

        dispatch = await self._get_dispatch(order.id)
        if dispatch:
            dispatch.tracking_id = tracking_id
            if courier:
                dispatch.courier = courier

        await self.activity.log(
            action="tracking_updated",
            entity_type="order",
            entity_id=order.id,
            user_id=user_id,
            details={
                "old_tracking_id": old_tracking_id,
                "new_tracking_id": tracking_id,
                "courier": courier,
                "order_number": order.order_number,
            },
        )

        if order.shopify_order_id:
            from app.services.sync_queue_service import SyncQueueService
            await SyncQueueService(self.db).enqueue_order_update(order)

        await self.db.flush()
        realtime.queue(self.db, "orders", "UPDATE", {
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "tracking_id": tracking_id,
        })
        return order

    async def bulk_update_status(
        self,
        order_ids: List[uuid.UUID],
        new_status: str,
        user_id: Optional[uuid.UUID] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """Apply one status to many orders; failures are collected, not raised."""
        successful = 0
        failed = 0
        errors: List[str] = []

        for order_id in order_ids:
            try:
                await self.update_order_status(order_id, new_status, user_id=user_id, force=force)
                successful += 1
            except (NotFoundError, OrderStatusError) as e:
                failed += 1
                errors.append(f"Order {order_id}: {e.message}")

        logger.info("Bulk status update to %s: %d ok, %d failed", new_status, successful, failed)
        return {"successful": successful, "failed": failed, "errors": errors}
