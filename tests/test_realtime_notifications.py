import json
import uuid

import pytest

from app.core.realtime import ConnectionManager, manager as realtime
from app.models.order import OrderStatus
from app.services.notification_service import NotificationService
from app.services.order_status_service import OrderStatusService


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


async def test_publish_respects_subscriptions():
    manager = ConnectionManager()
    orders_only = FakeSocket()
    everything = FakeSocket()
    await manager.connect(orders_only, ["orders", "not_a_table"])
    await manager.connect(everything)

    order_id = uuid.uuid4()
    delivered = await manager.publish("orders", "UPDATE", {"id": order_id, "status": "booked"})
    assert delivered == 2
    assert orders_only.sent[0]["record"] == {"id": str(order_id), "status": "booked"}
    assert orders_only.sent[0]["event"] == "UPDATE"

    assert await manager.publish("inventory", "UPDATE", {"id": 1}) == 1
    manager.subscribe(orders_only, ["inventory"])
    assert await manager.publish("inventory", "UPDATE", {"id": 1}) == 2


async def test_publish_drops_broken_clients():
    manager = ConnectionManager()
    await manager.connect(FakeSocket(fail=True))
    healthy = FakeSocket()
    await manager.connect(healthy)

    assert await manager.publish("returns", "INSERT", {"id": 1}) == 1
    assert manager.connection_count == 1
    assert await manager.publish("returns", "INSERT", {"id": 2}) == 1


async def test_notification_endpoints(client, db_session, staff_user, staff_headers, admin_user):
    service = NotificationService(db_session)
    first = await service.create(user_id=staff_user.id, type="system", title="Welcome", message="Hello")
    await service.create(user_id=staff_user.id, type="system", title="Reminder", message="Close your session")
    await service.create(user_id=admin_user.id, type="system", title="Admin only", message="Not for staff")

    res = await client.get("/api/v1/notifications", headers=staff_headers)
    assert res.status_code == 200, res.text
    assert res.json()["total"] == 2
    assert res.json()["unread_count"] == 2

    res = await client.post(f"/api/v1/notifications/{first.id}/read", headers=staff_headers)
    assert res.status_code == 200
    assert res.json()["is_read"] is True

    res = await client.get("/api/v1/notifications", params={"unread_only": True}, headers=staff_headers)
    assert res.json()["total"] == 1

    res = await client.post("/api/v1/notifications/read-all", headers=staff_headers)
    assert res.json()["message"] == "1 notifications marked as read"


async def test_cannot_read_someone_elses_notification(client, db_session, admin_user, staff_headers):
    notification = await NotificationService(db_session).create(
        user_id=admin_user.id, type="system", title="Admin only", message="Not for staff"
    )

    res = await client.post(f"/api/v1/notifications/{notification.id}/read", headers=staff_headers)

    assert res.status_code == 404


async def test_queued_events_wait_for_commit(db_session):
    manager = ConnectionManager()
    socket = FakeSocket()
    await manager.connect(socket, ["orders"])

    manager.queue(db_session, "orders", "UPDATE", {"id": 1, "status": "booked"})
    assert socket.sent == []

    await db_session.commit()
    assert await manager.publish_pending(db_session) == 1
    assert socket.sent[0]["record"] == {"id": 1, "status": "booked"}
    # nothing is sent twice
    assert await manager.publish_pending(db_session) == 0


async def test_rolled_back_savepoint_drops_its_events(db_session):
    manager = ConnectionManager()
    socket = FakeSocket()
    await manager.connect(socket)

    manager.queue(db_session, "orders", "UPDATE", {"id": 1})
    with pytest.raises(RuntimeError):
        async with db_session.begin_nested():
            manager.queue(db_session, "orders", "UPDATE", {"id": 2})
            raise RuntimeError("boom")
    async with db_session.begin_nested():
        manager.queue(db_session, "inventory", "UPDATE", {"id": 3})

    await db_session.commit()
    await manager.publish_pending(db_session)

    assert [m["record"]["id"] for m in socket.sent] == [1, 3]


async def test_rollback_drops_all_queued_events(db_session):
    manager = ConnectionManager()
    socket = FakeSocket()
    await manager.connect(socket)

    manager.queue(db_session, "returns", "INSERT", {"id": 1})
    await db_session.rollback()

    assert await manager.publish_pending(db_session) == 0
    assert socket.sent == []


async def test_failed_status_change_publishes_nothing(db_session, make_order):
    order = await make_order()
    socket = FakeSocket()
    await realtime.connect(socket, ["orders"])
    try:
        with pytest.raises(RuntimeError):
            async with db_session.begin_nested():
                await OrderStatusService(db_session).update_order_status(order.id, OrderStatus.CONFIRMED.value)
                raise RuntimeError("rolled back after the transition")
        await db_session.commit()
        await realtime.publish_pending(db_session)
        assert socket.sent == []

        await OrderStatusService(db_session).update_order_status(order.id, OrderStatus.CONFIRMED.value)
        assert socket.sent == []
        await db_session.commit()
        await realtime.publish_pending(db_session)

        assert len(socket.sent) == 1
        assert socket.sent[0]["table"] == "orders"
        assert socket.sent[0]["record"]["status"] == OrderStatus.CONFIRMED.value
    finally:
        realtime.disconnect(socket)
