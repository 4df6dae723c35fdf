"""Order management: listing, manual creation, edits and summaries."""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy import select, func, and_, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ServiceError
from app.core.realtime import manager as realtime
from app.core.utils import generate_number, digits_only, utcnow
from app.models.activity_log import ActivityLog
from app.models.customer import Customer
from app.models.dispatch import Dispatch
from app.models.order import Order, OrderItem, OrderStatus
from app.models.product import Product
from app.schemas.order import OrderCreate, OrderUpdate
from app.services.activity_log_service import ActivityLogService


logger = logging.getLogger(__name__)


# Date filters apply to the timestamp that matches the status being viewed
STATUS_DATE_COLUMNS = {
    OrderStatus.PENDING.value: Order.created_at,
    OrderStatus.CONFIRMED.value: Order.created_at,
    OrderStatus.BOOKED.value: Order.booked_at,
    OrderStatus.DISPATCHED.value: Order.dispatched_at,
    OrderStatus.DELIVERED.value: Order.delivered_at,
    OrderStatus.CANCELLED.value: Order.updated_at,
    OrderStatus.RETURNED.value: Order.updated_at,
}

SORTABLE_COLUMNS = {
    "created_at", "updated_at", "order_number", "total_amount",
    "customer_name", "status", "booked_at", "dispatched_at",
}


def build_order_filters(
    status: Optional[str] = None,
    courier: Optional[str] = None,
    city: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[Any]:
    """Filter clauses shared by the order list and the CSV export."""
    filters = []
    if status:
        filters.append(Order.status == status)
    if courier:
        filters.append(func.upper(Order.courier) == courier.upper())
    if city:
        filters.append(Order.city.ilike(f"%{city}%"))
    if search:
        search_filter = f"%{search}%"
        filters.append(
            or_(
                Order.order_number.ilike(search_filter),
                Order.customer_name.ilike(search_filter),
                Order.customer_phone.ilike(search_filter),
                Order.tracking_id.ilike(search_filter),
            )
        )

    date_column = STATUS_DATE_COLUMNS.get(status, Order.created_at)
    if date_from:
        filters.append(date_column >= date_from)
    if date_to:
        filters.append(date_column <= date_to)
    return filters


class OrderService:
    """CRUD and reporting for orders."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.activity = ActivityLogService(db)

    async def get_orders(
        self,
        status: Optional[str] = None,
        courier: Optional[str] = None,
        city: Optional[str] = None,
        search: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Order], int]:
        """Get paginated orders with filters."""
        filters = build_order_filters(status, courier, city, search, date_from, date_to)

        stmt = select(Order)
        count_stmt = select(func.count(Order.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        sort_column = getattr(Order, sort_by if sort_by in SORTABLE_COLUMNS else "created_at")
        stmt = stmt.order_by(sort_column.desc() if sort_order == "desc" else sort_column.asc())

        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_order(self, order_id: uuid.UUID) -> Order:
        order = (await self.db.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")
        return order

    async def get_order_dispatch(self, order_id: uuid.UUID) -> Optional[Dispatch]:
        result = await self.db.execute(
            select(Dispatch).where(Dispatch.order_id == order_id).order_by(Dispatch.dispatch_date.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_or_create_customer(self, name: str, phone: Optional[str], email: Optional[str],
                                       address: Optional[str], city: Optional[str]) -> Optional[Customer]:
        phone = digits_only(phone)
        if not phone:
            return None
        customer = (await self.db.execute(
            select(Customer).where(Customer.phone == phone).limit(1)
        )).scalar_one_or_none()
        if not customer:
            customer = Customer(name=name, phone=phone, phone_last_5=phone[-5:], email=email, address=address, city=city)
            self.db.add(customer)
        customer.total_orders = (customer.total_orders or 0) + 1
        await self.db.flush()
        return customer

    async def create_order(
        self,
        data: OrderCreate,
        created_by: Optional[uuid.UUID] = None,
        order_number: Optional[str] = None,
        source: str = "manual",
    ) -> Order:
        """Create a manual order. Item prices default to the product price."""
        items: List[OrderItem] = []
        snapshot: List[Dict[str, Any]] = []
        subtotal = Decimal("0")

        for item_data in data.items:
            product = None
            if item_data.product_id:
                product = await self.db.get(Product, item_data.product_id)
                if not product:
                    raise NotFoundError(
                        "Product not found",
                        error_code="PRODUCT_NOT_FOUND",
                        details={"product_id": str(item_data.product_id)},
                    )
            name = item_data.item_name or (product.name if product else None)
            if not name:
                raise ServiceError("Each item needs a product or a name", error_code="INVALID_ITEM", status_code=422)

            price = item_data.price if item_data.price is not None else (product.price if product else Decimal("0"))
            subtotal += Decimal(price) * item_data.quantity
            items.append(OrderItem(
                product_id=product.id if product else None,
                item_name=name,
                sku=item_data.sku or (product.sku if product else None),
                quantity=item_data.quantity,
                price=price,
            ))
            snapshot.append({
                "name": name,
                "quantity": item_data.quantity,
                "price": str(price),
                "product_id": str(product.id) if product else None,
            })

        customer = await self._find_or_create_customer(
            data.customer_name, data.customer_phone, data.customer_email, data.customer_address, data.city
        )
        total = data.total_amount if data.total_amount is not None else subtotal + data.shipping_charges

        order = Order(
            order_number=order_number or generate_number("ORD"),
            customer_id=customer.id if customer else None,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=digits_only(data.customer_phone),
            customer_address=data.customer_address,
            city=data.city,
            total_amount=total,
            shipping_charges=data.shipping_charges,
            status=OrderStatus.PENDING.value,
            tags=list(data.tags),
            notes=data.notes,
            items=snapshot,
            order_items=items,
        )
        self.db.add(order)
        await self.db.flush()

        await self.activity.log(
            action="order_created",
            entity_type="order",
            entity_id=order.id,
            user_id=created_by,
            details={"order_number": order.order_number, "total_amount": str(total), "source": source},
        )
        logger.info("Created order %s (%s items)", order.order_number, len(items))
        realtime.queue(self.db, "orders", "INSERT", {
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
        })
        return order

    async def update_order(self, order_id: uuid.UUID, data: OrderUpdate, user_id: Optional[uuid.UUID] = None) -> Order:
        order = await self.get_order(order_id)
        update_data = data.model_dump(exclude_unset=True)
        if "customer_phone" in update_data:
            update_data["customer_phone"] = digits_only(update_data["customer_phone"])

        for field, value in update_data.items():
            setattr(order, field, value)
        order.updated_at = utcnow()

        if order.shopify_order_id and "tags" in update_data:
            from app.services.sync_queue_service import SyncQueueService
            await SyncQueueService(self.db).enqueue_order_update(order)

        await self.activity.log(
            action="order_updated",
            entity_type="order",
            entity_id=order.id,
            user_id=user_id,
            details={"fields": sorted(update_data.keys()), "order_number": order.order_number},
        )
        await self.db.flush()
        realtime.queue(self.db, "orders", "UPDATE", {"id": order.id, "order_number": order.order_number, "status": order.status})
        return order

    async def delete_order(self, order_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> None:
        order = await self.get_order(order_id)
        order_number = order.order_number
        await self.db.execute(delete(Dispatch).where(Dispatch.order_id == order.id))
        await self.db.delete(order)
        await self.activity.log(
            action="order_deleted",
            entity_type="order",
            entity_id=order_id,
            user_id=user_id,
            details={"order_number": order_number},
        )
        await self.db.flush()
        realtime.queue(self.db, "orders", "DELETE", {"id": order_id, "order_number": order_number})

    async def get_status_counts(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(Order.status, func.count(Order.id)).group_by(Order.status)
        )
        counts = {s.value: 0 for s in OrderStatus}
        for status, count in result.all():
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    async def get_order_activity(self, order_id: uuid.UUID) -> List[ActivityLog]:
        await self.get_order(order_id)
        return await self.activity.get_entity_history("order", order_id)
