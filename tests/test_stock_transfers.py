from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.errors import InventoryError, StockTransferError
from app.models.inventory import Inventory, StockMovement
from app.models.notifications import Notification
from app.models.user import AppRole
from app.services.stock_transfer_service import StockTransferService, variance_severity


async def _request(db_session, product, outlet, store, requester, quantity=6):
    return await StockTransferService(db_session).create_transfer(
        outlet.id, store.id, [{"product_id": product.id, "quantity": quantity}], user_id=requester.id
    )


async def _stock_at(db_session, product, outlet):
    return (await db_session.execute(
        select(Inventory).where(Inventory.product_id == product.id, Inventory.outlet_id == outlet.id)
    )).scalar_one_or_none()


def test_variance_severity_thresholds():
    assert variance_severity(Decimal("500")).value == "low"
    assert variance_severity(Decimal("1500")).value == "medium"
    assert variance_severity(Decimal("7500")).value == "high"
    assert variance_severity(Decimal("10001")).value == "critical"
    assert variance_severity(Decimal("-7500")).value == "high"


async def test_request_merges_lines_and_notifies_managers(db_session, product, outlet, store, staff_user, manager_user):
    transfer = await StockTransferService(db_session).create_transfer(
        outlet.id,
        store.id,
        [{"product_id": product.id, "quantity": 2}, {"product_id": product.id, "quantity": 3}],
        user_id=staff_user.id,
        notes="Weekend restock",
    )

    assert transfer.status == "pending"
    assert transfer.transfer_number.startswith("TRF-")
    assert [(i.product_id, i.quantity_requested) for i in transfer.items] == [(product.id, 5)]
    notification = (await db_session.execute(select(Notification))).scalar_one()
    assert notification.user_id == manager_user.id
    assert notification.title == "New Stock Transfer Request"


async def test_request_validation(db_session, product, outlet, staff_user):
    service = StockTransferService(db_session)

    with pytest.raises(StockTransferError) as exc_info:
        await service.create_transfer(outlet.id, outlet.id, [{"product_id": product.id, "quantity": 1}], user_id=staff_user.id)
    assert exc_info.value.error_code == "INVALID_TRANSFER"

    with pytest.raises(StockTransferError) as exc_info:
        await service.create_transfer(outlet.id, product.id, [], user_id=staff_user.id)
    assert exc_info.value.error_code == "EMPTY_TRANSFER"


async def test_full_lifecycle_moves_stock(db_session, product, outlet, store, stock, staff_user, manager_user):
    source = await stock(product, outlet, 10)
    service = StockTransferService(db_session)
    transfer = await _request(db_session, product, outlet, store, staff_user)
    item = transfer.items[0]

    await service.approve_transfer(transfer.id, manager_user.id, {item.id: 4})
    assert transfer.status == "approved"
    assert item.quantity_approved == 4
    assert source.quantity == 10

    await service.dispatch_transfer(transfer.id, manager_user.id)
    assert transfer.status == "in_transit"
    assert source.quantity == 6
    assert await _stock_at(db_session, product, store) is None

    transfer, variances = await service.receive_transfer(transfer.id, staff_user.id)
    assert transfer.status == "completed"
    assert variances == []
    assert item.quantity_received == 4
    destination = await _stock_at(db_session, product, store)
    assert destination.quantity == 4

    movements = (await db_session.execute(select(StockMovement).order_by(StockMovement.quantity))).scalars().all()
    assert [(m.movement_type, m.quantity) for m in movements] == [("transfer_out", -4), ("transfer_in", 4)]
    assert {m.reference_id for m in movements} == {transfer.id}


async def test_short_receipt_records_variance(db_session, product, outlet, store, stock, staff_user, manager_user):
    product.cost = Decimal("900.00")
    await stock(product, outlet, 10)
    service = StockTransferService(db_session)
    transfer = await _request(db_session, product, outlet, store, staff_user, quantity=6)
    item = transfer.items[0]
    await service.approve_transfer(transfer.id, manager_user.id)
    await service.dispatch_transfer(transfer.id, manager_user.id)

    transfer, variances = await service.receive_transfer(
        transfer.id, staff_user.id, [{"item_id": item.id, "quantity_received": 4, "variance_reason": "Two cartons damp"}]
    )

    assert variances == [item]
    assert item.variance == 2
    assert item.variance_value == Decimal("1800.00")
    assert item.variance_severity == "medium"
    assert item.variance_reason == "Two cartons damp"
    assert (await _stock_at(db_session, product, store)).quantity == 4
    titles = {n.title for n in (await db_session.execute(select(Notification))).scalars().all()}
    assert "Transfer Variance Detected" in titles


async def test_dispatch_without_stock_changes_nothing(db_session, product, outlet, store, stock, staff_user, manager_user):
    source = await stock(product, outlet, 3)
    service = StockTransferService(db_session)
    transfer = await _request(db_session, product, outlet, store, staff_user, quantity=5)
    await service.approve_transfer(transfer.id, manager_user.id)

    with pytest.raises(InventoryError) as exc_info:
        await service.dispatch_transfer(transfer.id, manager_user.id)

    assert exc_info.value.error_code == "INSUFFICIENT_STOCK"
    await db_session.refresh(source)
    assert source.quantity == 3
    assert (await service.get_transfer(transfer.id)).status == "approved"
    assert (await db_session.execute(select(StockMovement))).scalar_one_or_none() is None


async def test_status_order_is_enforced(db_session, product, outlet, store, stock, staff_user, manager_user):
    await stock(product, outlet, 10)
    service = StockTransferService(db_session)
    transfer = await _request(db_session, product, outlet, store, staff_user)

    with pytest.raises(StockTransferError) as exc_info:
        await service.dispatch_transfer(transfer.id, manager_user.id)
    assert exc_info.value.error_code == "INVALID_TRANSFER_STATUS"
    assert exc_info.value.status_code == 409

    with pytest.raises(StockTransferError) as exc_info:
        await service.approve_transfer(transfer.id, manager_user.id, {transfer.items[0].id: 99})
    assert exc_info.value.error_code == "INVALID_APPROVED_QUANTITY"

    await service.reject_transfer(transfer.id, "Store is full", manager_user.id)
    assert transfer.status == "rejected"
    assert transfer.rejection_reason == "Store is full"
    with pytest.raises(StockTransferError):
        await service.approve_transfer(transfer.id, manager_user.id)


async def test_cancel_in_transit_returns_stock(db_session, product, outlet, store, stock, staff_user, manager_user, make_user):
    source = await stock(product, outlet, 10)
    service = StockTransferService(db_session)
    transfer = await _request(db_session, product, outlet, store, staff_user)
    await service.approve_transfer(transfer.id, manager_user.id)
    await service.dispatch_transfer(transfer.id, manager_user.id)
    assert source.quantity == 4

    outsider = await make_user(AppRole.STAFF.value)
    with pytest.raises(StockTransferError) as exc_info:
        await service.cancel_transfer(transfer.id, outsider)
    assert exc_info.value.status_code == 403

    await service.cancel_transfer(transfer.id, staff_user)

    assert transfer.status == "cancelled"
    assert source.quantity == 10
    with pytest.raises(StockTransferError) as exc_info:
        await service.cancel_transfer(transfer.id, staff_user)
    assert exc_info.value.error_code == "INVALID_TRANSFER_STATUS"


async def test_transfer_endpoints(client, product, outlet, store, stock, staff_headers, manager_headers):
    await stock(product, outlet, 8)

    res = await client.post("/api/v1/inventory/transfers", json={
        "from_outlet_id": str(outlet.id),
        "to_outlet_id": str(store.id),
        "items": [{"product_id": str(product.id), "quantity": 3}],
    }, headers=staff_headers)
    assert res.status_code == 201, res.text
    transfer_id = res.json()["id"]

    res = await client.post(f"/api/v1/inventory/transfers/{transfer_id}/approve", json={}, headers=staff_headers)
    assert res.status_code == 403

    res = await client.post(f"/api/v1/inventory/transfers/{transfer_id}/approve", json={}, headers=manager_headers)
    assert res.status_code == 200, res.text
    assert res.json()["items"][0]["quantity_approved"] == 3

    res = await client.post(f"/api/v1/inventory/transfers/{transfer_id}/dispatch", headers=manager_headers)
    assert res.json()["status"] == "in_transit"

    item_id = res.json()["items"][0]["id"]
    res = await client.post(f"/api/v1/inventory/transfers/{transfer_id}/receive", json={
        "items": [{"item_id": item_id, "quantity_received": 2, "variance_reason": "Short"}],
    }, headers=staff_headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["transfer"]["status"] == "completed"
    assert body["variance_count"] == 1
    assert body["variances"][0]["variance"] == 1

    res = await client.get("/api/v1/inventory/transfers", params={"outlet_id": str(store.id)}, headers=staff_headers)
    assert res.json()["total"] == 1
