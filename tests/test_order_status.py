import uuid

import pytest
from sqlalchemy import select

from app.core.errors import NotFoundError, OrderStatusError
from app.models.activity_log import ActivityLog
from app.models.dispatch import Dispatch
from app.models.notifications import Notification
from app.models.order import OrderStatus
from app.models.sync_queue import SyncQueueItem
from app.services.order_status_service import OrderStatusService, can_transition


def test_transition_table():
    assert can_transition("pending", "confirmed")
    assert can_transition("booked", "dispatched")
    assert can_transition("dispatched", "delivered")
    assert not can_transition("pending", "delivered")
    assert not can_transition("returned", "pending")


async def test_booking_stamps_courier_and_tracking(db_session, make_order, admin_user):
    order = await make_order()

    updated = await OrderStatusService(db_session).update_order_status(
        order.id, "booked", user_id=admin_user.id, courier="POSTEX", tracking_id="PX123456"
    )

    assert updated.status == "booked"
    assert updated.courier == "POSTEX"
    assert updated.tracking_id == "PX123456"
    assert updated.booked_at is not None
    assert updated.booked_by == admin_user.id

    log = (await db_session.execute(
        select(ActivityLog).where(ActivityLog.entity_id == order.id, ActivityLog.action == "status_changed")
    )).scalar_one()
    assert log.details["old_status"] == "pending"
    assert log.details["new_status"] == "booked"


async def test_illegal_transition_rejected(db_session, make_order):
    order = await make_order()

    with pytest.raises(OrderStatusError) as exc_info:
        await OrderStatusService(db_session).update_order_status(order.id, "delivered")

    assert exc_info.value.error_code == "INVALID_TRANSITION"
    assert exc_info.value.status_code == 422
    assert order.status == "pending"


async def test_force_skips_transition_check(db_session, make_order):
    order = await make_order()

    updated = await OrderStatusService(db_session).update_order_status(order.id, "delivered", force=True)

    assert updated.status == "delivered"
    assert updated.delivered_at is not None


async def test_same_status_is_noop(db_session, make_order):
    order = await make_order(status=OrderStatus.BOOKED.value)

    await OrderStatusService(db_session).update_order_status(order.id, "booked")

    logs = (await db_session.execute(select(ActivityLog).where(ActivityLog.entity_id == order.id))).scalars().all()
    assert logs == []


async def test_unknown_status(db_session, make_order):
    order = await make_order()
    with pytest.raises(OrderStatusError) as exc_info:
        await OrderStatusService(db_session).update_order_status(order.id, "shipped")
    assert exc_info.value.error_code == "INVALID_STATUS"


async def test_missing_order(db_session):
    with pytest.raises(NotFoundError):
        await OrderStatusService(db_session).update_order_status(uuid.uuid4(), "confirmed")


async def test_dispatch_creates_dispatch_row_once(db_session, make_order, admin_user):
    order = await make_order(status=OrderStatus.BOOKED.value, courier="LEOPARD", tracking_id="LP998877")
    service = OrderStatusService(db_session)

    await service.update_order_status(order.id, "dispatched", user_id=admin_user.id, courier="LEOPARD")

    dispatches = (await db_session.execute(select(Dispatch).where(Dispatch.order_id == order.id))).scalars().all()
    assert len(dispatches) == 1
    assert dispatches[0].tracking_id == "LP998877"
    assert dispatches[0].dispatched_by == admin_user.id
    assert order.dispatched_at is not None


async def test_notification_sent_to_acting_user(db_session, make_order, admin_user):
    order = await make_order(status=OrderStatus.DISPATCHED.value)

    await OrderStatusService(db_session).update_order_status(
        order.id, "delivered", user_id=admin_user.id, send_notification=True
    )

    notification = (await db_session.execute(
        select(Notification).where(Notification.user_id == admin_user.id)
    )).scalar_one()
    assert notification.type == "order_status"
    assert notification.priority == "high"
    assert notification.message == "Order successfully delivered"


async def test_shopify_order_queues_sync(db_session, make_order):
    order = await make_order(shopify_order_id="5551234", shopify_order_number="1042")

    await OrderStatusService(db_session).update_order_status(order.id, "confirmed")

    item = (await db_session.execute(select(SyncQueueItem))).scalar_one()
    assert item.entity_id == order.id
    assert item.payload["status"] == "confirmed"


async def test_tracking_update_books_pending_order(db_session, make_order):
    order = await make_order()

    updated = await OrderStatusService(db_session).update_order_tracking(order.id, "TCS-777", courier="TCS")

    assert updated.status == "booked"
    assert updated.tracking_id == "TCS-777"
    assert updated.courier == "TCS"


async def test_bulk_update_collects_failures(db_session, make_order):
    pending = await make_order()
    delivered = await make_order(status=OrderStatus.DELIVERED.value)

    result = await OrderStatusService(db_session).bulk_update_status(
        [pending.id, delivered.id, uuid.uuid4()], "confirmed"
    )

    assert result["successful"] == 1
    assert result["failed"] == 2
    assert len(result["errors"]) == 2
    assert pending.status == "confirmed"
