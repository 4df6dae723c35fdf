"""
Automated operational alerts.

Scheduled checks for orders stuck with couriers, returns that never reached
the warehouse and low stock. Each condition keeps at most one active alert
per entity; managers are notified when an alert is first raised.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import NotFoundError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow, as_utc
from app.models.inventory import Inventory, LowStockNotification
from app.models.notifications import (
    AutomatedAlert,
    AlertSeverity,
    NotificationType,
    NotificationPriority,
)
from app.models.order import Order, OrderStatus
from app.models.outlet import Outlet
from app.models.product import Product
from app.models.return_order import Return, ReturnStatus
from app.models.user import AppRole
from app.services.activity_log_service import ActivityLogService
from app.services.notification_service import NotificationService


logger = logging.getLogger(__name__)


ALERT_ACTIVE = "active"
ALERT_RESOLVED = "resolved"


class AlertService:
    """Raise, list and resolve automated alerts."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.notifications = NotificationService(db)

    async def _active_alert(self, alert_type: str, entity_id: uuid.UUID) -> Optional[AutomatedAlert]:
        result = await self.db.execute(
            select(AutomatedAlert).where(
                AutomatedAlert.alert_type == alert_type,
                AutomatedAlert.entity_id == entity_id,
                AutomatedAlert.status == ALERT_ACTIVE,
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def _raise_alert(
        self,
        alert_type: str,
        entity_type: str,
        entity_id: uuid.UUID,
        severity: str,
        title: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> AutomatedAlert:
        alert = AutomatedAlert(
            alert_type=alert_type,
            entity_type=entity_type,
            entity_id=entity_id,
            severity=severity,
            title=title,
            message=message,
            extra_data=metadata,
            status=ALERT_ACTIVE,
        )
        self.db.add(alert)
        await self.db.flush()
        realtime.queue(self.db, "automated_alerts", "INSERT", {
            "id": alert.id,
            "alert_type": alert_type,
            "entity_id": entity_id,
            "severity": severity,
            "title": title,
        })
        return alert

    # ==================== CHECKS ====================

    async def check_stuck_orders(self) -> Dict[str, int]:
        """Dispatched orders with no delivery after STUCK_ORDER_DAYS."""
        now = utcnow()
        cutoff = now - timedelta(days=settings.STUCK_ORDER_DAYS)
        result = await self.db.execute(
            select(Order).where(
                Order.status == OrderStatus.DISPATCHED.value,
                Order.dispatched_at.isnot(None),
                Order.dispatched_at < cutoff,
            )
        )
        orders = list(result.scalars().all())

        created = 0
        for order in orders:
            if await self._active_alert(NotificationType.STUCK_ORDER.value, order.id):
                continue

            days_stuck = (now - as_utc(order.dispatched_at)).days
            severity = (
                AlertSeverity.HIGH.value
                if days_stuck > settings.STUCK_ORDER_HIGH_SEVERITY_DAYS
                else AlertSeverity.MEDIUM.value
            )
            message = (
                f"Order {order.order_number} has been dispatched for {days_stuck} days "
                f"via {order.courier or 'unknown courier'} without delivery"
            )
            metadata = {
                "order_number": order.order_number,
                "courier": order.courier,
                "tracking_id": order.tracking_id,
                "days_stuck": days_stuck,
            }
            await self._raise_alert(
                NotificationType.STUCK_ORDER.value, "order", order.id, severity,
                f"Order stuck in transit: {order.order_number}", message, metadata,
            )
            await self.notifications.notify_role(
                AppRole.DISPATCH_MANAGER.value,
                type=NotificationType.STUCK_ORDER.value,
                title=f"Stuck order {order.order_number}",
                message=message,
                priority=NotificationPriority.HIGH.value,
                action_url=f"/orders/{order.id}",
                metadata=metadata,
            )
            created += 1

        logger.info("Stuck order check: %d stuck, %d new alerts", len(orders), created)
        return {"checked": len(orders), "alerts_created": created}

    async def check_overdue_returns(self) -> Dict[str, int]:
        """Returned orders whose parcel has not been received at the warehouse."""
        now = utcnow()
        cutoff = now - timedelta(days=settings.RETURN_OVERDUE_DAYS)
        received_statuses = [
            ReturnStatus.RECEIVED.value,
            ReturnStatus.INSPECTED.value,
            ReturnStatus.RESTOCKED.value,
            ReturnStatus.CLAIMED.value,
        ]
        received_exists = (
            select(Return.id)
            .where(Return.order_id == Order.id, Return.return_status.in_(received_statuses))
            .exists()
        )
        result = await self.db.execute(
            select(Order).where(
                Order.status == OrderStatus.RETURNED.value,
                func.coalesce(Order.returned_at, Order.updated_at) < cutoff,
                ~received_exists,
            )
        )
        orders = list(result.scalars().all())

        created = 0
        for order in orders:
            if await self._active_alert(NotificationType.OVERDUE_RETURN.value, order.id):
                continue

            returned_at = as_utc(order.returned_at or order.updated_at)
            days_overdue = (now - returned_at).days
            critical = days_overdue > settings.RETURN_CRITICAL_DAYS
            message = f"Return for order {order.order_number} not received after {days_overdue} days"
            metadata = {
                "order_number": order.order_number,
                "tracking_id": order.tracking_id,
                "days_overdue": days_overdue,
            }
            await self._raise_alert(
                NotificationType.OVERDUE_RETURN.value, "order", order.id,
                AlertSeverity.CRITICAL.value if critical else AlertSeverity.HIGH.value,
                f"Overdue return: {order.order_number}", message, metadata,
            )
            await self.notifications.notify_role(
                AppRole.WAREHOUSE_MANAGER.value,
                type=NotificationType.OVERDUE_RETURN.value,
                title=f"Overdue return {order.order_number}",
                message=message,
                priority=NotificationPriority.URGENT.value if critical else NotificationPriority.HIGH.value,
                action_url=f"/returns?order={order.id}",
                metadata=metadata,
            )
            created += 1

        logger.info("Overdue return check: %d overdue, %d new alerts", len(orders), created)
        return {"checked": len(orders), "alerts_created": created}

    async def check_low_stock(self) -> Dict[str, int]:
        """Inventory at or below reorder level, throttled per product and outlet."""
        now = utcnow()
        window_start = now - timedelta(hours=settings.LOW_STOCK_NOTIFY_WINDOW_HOURS)
        result = await self.db.execute(
            select(Inventory, Product, Outlet)
            .join(Product, Product.id == Inventory.product_id)
            .join(Outlet, Outlet.id == Inventory.outlet_id)
            .where(
                Product.is_active == True,  # noqa: E712
                Inventory.available_quantity <= Product.reorder_level,
            )
        )
        rows = result.all()

        notified = 0
        for inventory, product, outlet in rows:
            recent = (await self.db.execute(
                select(LowStockNotification.id).where(
                    LowStockNotification.product_id == product.id,
                    LowStockNotification.outlet_id == outlet.id,
                    LowStockNotification.sent_at >= window_start,
                ).limit(1)
            )).scalar_one_or_none()
            if recent:
                continue

            reorder_level = product.reorder_level or settings.DEFAULT_REORDER_LEVEL
            suggested = reorder_level * 2
            self.db.add(LowStockNotification(
                product_id=product.id,
                outlet_id=outlet.id,
                current_stock=inventory.available_quantity,
                reorder_level=reorder_level,
                suggested_quantity=suggested,
                sent_at=now,
            ))

            message = (
                f"{product.name} at {outlet.name}: {inventory.available_quantity} available "
                f"(reorder level {reorder_level}, suggested reorder {suggested})"
            )
            metadata = {
                "product_id": str(product.id),
                "outlet_id": str(outlet.id),
                "sku": product.sku,
                "current_stock": inventory.available_quantity,
                "reorder_level": reorder_level,
                "suggested_quantity": suggested,
            }
            if not await self._active_alert(NotificationType.LOW_STOCK.value, inventory.id):
                await self._raise_alert(
                    NotificationType.LOW_STOCK.value, "inventory", inventory.id,
                    AlertSeverity.HIGH.value if inventory.available_quantity == 0 else AlertSeverity.MEDIUM.value,
                    f"Low stock: {product.name}", message, metadata,
                )
            await self.notifications.notify_role(
                AppRole.WAREHOUSE_MANAGER.value,
                type=NotificationType.LOW_STOCK.value,
                title=f"Low stock: {product.name}",
                message=message,
                priority=NotificationPriority.HIGH.value,
                action_url=f"/inventory?product={product.id}",
                metadata=metadata,
            )
            notified += 1

        await self.db.flush()
        logger.info("Low stock check: %d low, %d notified", len(rows), notified)
        return {"checked": len(rows), "notified": notified}

    async def run_all_checks(self) -> Dict[str, Dict[str, int]]:
        return {
            "stuck_orders": await self.check_stuck_orders(),
            "overdue_returns": await self.check_overdue_returns(),
            "low_stock": await self.check_low_stock(),
        }

    # ==================== MANAGEMENT ====================

    async def get_alerts(
        self,
        status: Optional[str] = ALERT_ACTIVE,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[AutomatedAlert], int]:
        filters = []
        if status:
            filters.append(AutomatedAlert.status == status)
        if alert_type:
            filters.append(AutomatedAlert.alert_type == alert_type)
        if severity:
            filters.append(AutomatedAlert.severity == severity)

        stmt = select(AutomatedAlert)
        count_stmt = select(func.count(AutomatedAlert.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.order_by(AutomatedAlert.created_at.desc()).offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def resolve_alert(self, alert_id: uuid.UUID, user_id: uuid.UUID) -> AutomatedAlert:
        alert = await self.db.get(AutomatedAlert, alert_id)
        if not alert:
            raise NotFoundError("Alert not found", error_code="ALERT_NOT_FOUND")
        if alert.status == ALERT_RESOLVED:
            return alert

        alert.status = ALERT_RESOLVED
        alert.resolved_at = utcnow()
        alert.resolved_by = user_id
        await ActivityLogService(self.db).log(
            "alert_resolved", "automated_alert", alert.id, user_id, {"alert_type": alert.alert_type}
        )
        await self.db.flush()
        realtime.queue(self.db, "automated_alerts", "UPDATE", {"id": alert.id, "status": ALERT_RESOLVED})
        return alert
