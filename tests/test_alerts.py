import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.errors import NotFoundError
from app.core.utils import utcnow
from app.models.inventory import LowStockNotification
from app.models.notifications import AutomatedAlert, Notification
from app.models.order import OrderStatus
from app.models.user import AppRole
from app.services.alert_service import AlertService
from app.services.returns_service import ReturnsService


async def _alerts(db_session, alert_type):
    result = await db_session.execute(select(AutomatedAlert).where(AutomatedAlert.alert_type == alert_type))
    return list(result.scalars().all())


async def _notifications(db_session, user):
    result = await db_session.execute(select(Notification).where(Notification.user_id == user.id))
    return list(result.scalars().all())


async def test_stuck_orders_raise_one_alert_each(db_session, make_order, make_user):
    manager = await make_user(AppRole.DISPATCH_MANAGER.value)
    medium = await make_order(
        status=OrderStatus.DISPATCHED.value, courier="LEOPARD", dispatched_at=utcnow() - timedelta(days=12)
    )
    high = await make_order(
        status=OrderStatus.DISPATCHED.value, courier="TCS", dispatched_at=utcnow() - timedelta(days=20)
    )
    await make_order(status=OrderStatus.DISPATCHED.value, dispatched_at=utcnow() - timedelta(days=3))

    service = AlertService(db_session)
    result = await service.check_stuck_orders()

    assert result == {"checked": 2, "alerts_created": 2}
    severities = {a.entity_id: a.severity for a in await _alerts(db_session, "stuck_order")}
    assert severities == {medium.id: "medium", high.id: "high"}

    notifications = await _notifications(db_session, manager)
    assert len(notifications) == 2
    assert all(n.type == "stuck_order" and n.priority == "high" for n in notifications)

    again = await service.check_stuck_orders()
    assert again["alerts_created"] == 0


async def test_overdue_returns_skip_received_parcels(db_session, make_order, make_user):
    manager = await make_user(AppRole.WAREHOUSE_MANAGER.value)
    overdue = await make_order(status=OrderStatus.RETURNED.value, returned_at=utcnow() - timedelta(days=9))
    critical = await make_order(status=OrderStatus.RETURNED.value, returned_at=utcnow() - timedelta(days=20))
    received = await make_order(status=OrderStatus.RETURNED.value, returned_at=utcnow() - timedelta(days=9))
    record = await ReturnsService(db_session).create_return(received.id)
    record.return_status = "received"
    await db_session.flush()

    result = await AlertService(db_session).check_overdue_returns()

    assert result == {"checked": 2, "alerts_created": 2}
    severities = {a.entity_id: a.severity for a in await _alerts(db_session, "overdue_return")}
    assert severities == {overdue.id: "high", critical.id: "critical"}
    priorities = sorted(n.priority for n in await _notifications(db_session, manager))
    assert priorities == ["high", "urgent"]


async def test_low_stock_is_throttled(db_session, make_user, product, outlet, store, stock):
    manager = await make_user(AppRole.WAREHOUSE_MANAGER.value)
    await stock(product, outlet, 3)
    await stock(product, store, 40)

    service = AlertService(db_session)
    result = await service.check_low_stock()

    assert result == {"checked": 1, "notified": 1}
    sent = (await db_session.execute(select(LowStockNotification))).scalar_one()
    assert sent.outlet_id == outlet.id
    assert sent.current_stock == 3
    assert sent.suggested_quantity == 10
    alert = (await _alerts(db_session, "low_stock"))[0]
    assert alert.severity == "medium"
    assert alert.extra_data["sku"] == "SHIRT-BLUE-M"
    assert len(await _notifications(db_session, manager)) == 1

    again = await service.check_low_stock()
    assert again == {"checked": 1, "notified": 0}
    assert len(await _notifications(db_session, manager)) == 1


async def test_out_of_stock_is_high_severity(db_session, product, outlet, stock):
    await stock(product, outlet, 2, reserved=2)

    await AlertService(db_session).check_low_stock()

    alert = (await _alerts(db_session, "low_stock"))[0]
    assert alert.severity == "high"


async def test_resolve_alert(db_session, make_order, admin_user):
    await make_order(status=OrderStatus.DISPATCHED.value, dispatched_at=utcnow() - timedelta(days=11))
    service = AlertService(db_session)
    await service.check_stuck_orders()
    alert = (await _alerts(db_session, "stuck_order"))[0]

    resolved = await service.resolve_alert(alert.id, admin_user.id)

    assert resolved.status == "resolved"
    assert resolved.resolved_by == admin_user.id
    alerts, total = await service.get_alerts()
    assert total == 0

    with pytest.raises(NotFoundError):
        await service.resolve_alert(uuid.uuid4(), admin_user.id)


async def test_alert_endpoints(client, admin_headers, staff_headers, make_order):
    await make_order(status=OrderStatus.DISPATCHED.value, dispatched_at=utcnow() - timedelta(days=11))

    res = await client.post("/api/v1/alerts/jobs/check_stuck_orders/run", headers=staff_headers)
    assert res.status_code == 403

    res = await client.post("/api/v1/alerts/jobs/rebuild_everything/run", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["error_code"] == "JOB_NOT_FOUND"

    res = await client.get("/api/v1/alerts/jobs", headers=staff_headers)
    assert res.status_code == 200
    assert "check_low_stock" in res.json()["jobs"]
    assert "retry_failed_bookings" in res.json()["jobs"]


async def test_resolve_alert_endpoint(client, db_session, admin_headers, make_order):
    await make_order(status=OrderStatus.DISPATCHED.value, dispatched_at=utcnow() - timedelta(days=11))
    await AlertService(db_session).check_stuck_orders()

    res = await client.get("/api/v1/alerts", headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json()["total"] == 1
    alert_id = res.json()["items"][0]["id"]

    res = await client.post(f"/api/v1/alerts/{alert_id}/resolve", headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "resolved"

    res = await client.get("/api/v1/alerts", params={"status": "resolved"}, headers=admin_headers)
    assert res.json()["total"] == 1
