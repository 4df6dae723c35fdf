from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.errors import ReturnProcessingError
from app.models.inventory import Inventory
from app.models.order import OrderStatus
from app.models.return_order import Return
from app.services.returns_service import ReturnsService, validate_scan_entry


@pytest.mark.parametrize("entry", ["1234", "1.23E+11", "PostEx", "tcs  "])
def test_scan_entry_rejects_garbage(entry):
    with pytest.raises(ReturnProcessingError) as exc_info:
        validate_scan_entry(entry.strip())
    assert exc_info.value.error_code == "INVALID_FORMAT"


async def test_create_return_defaults_worth_and_tracking(db_session, make_order):
    order = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="LP445566")

    record = await ReturnsService(db_session).create_return(order.id, reason="Refused")

    assert record.return_status == "pending"
    assert record.tracking_id == "LP445566"
    assert record.worth == Decimal("3000.00")

    with pytest.raises(ReturnProcessingError) as exc_info:
        await ReturnsService(db_session).create_return(order.id)
    assert exc_info.value.error_code == "RETURN_EXISTS"


async def test_receive_return_restocks_matched_items(db_session, make_order, product, outlet, admin_user):
    order = await make_order(status=OrderStatus.RETURNED.value)
    service = ReturnsService(db_session)
    record = await service.create_return(order.id)

    result = await service.receive_return(record.id, outlet.id, user_id=admin_user.id)

    assert result["items_restocked"] == 1
    assert result["items_skipped"] == 0
    inventory = (await db_session.execute(select(Inventory))).scalar_one()
    assert inventory.product_id == product.id
    assert inventory.quantity == 2
    assert record.return_status == "received"
    assert record.received_by == admin_user.id

    with pytest.raises(ReturnProcessingError) as exc_info:
        await service.receive_return(record.id, outlet.id)
    assert exc_info.value.error_code == "ALREADY_PROCESSED"


async def test_receive_return_skips_unknown_products(db_session, make_order, outlet):
    order = await make_order(status=OrderStatus.RETURNED.value)
    service = ReturnsService(db_session)
    record = await service.create_return(order.id)

    result = await service.receive_return(record.id, outlet.id)

    assert result["items_restocked"] == 0
    assert result["skipped_items"] == ["Blue Shirt"]


async def test_receive_return_matches_names_literally(db_session, make_order, product, outlet):
    wildcard = await make_order(status=OrderStatus.RETURNED.value)
    wildcard.order_items[0].item_name = "Blue_Shirt"
    exact = await make_order(status=OrderStatus.RETURNED.value)
    exact.order_items[0].item_name = "  blue SHIRT "
    await db_session.flush()
    service = ReturnsService(db_session)

    skipped = await service.receive_return((await service.create_return(wildcard.id)).id, outlet.id)
    matched = await service.receive_return((await service.create_return(exact.id)).id, outlet.id)

    assert skipped["items_restocked"] == 0
    assert skipped["skipped_items"] == ["Blue_Shirt"]
    assert matched["items_restocked"] == 1
    inventory = (await db_session.execute(select(Inventory))).scalar_one()
    assert inventory.product_id == product.id
    assert inventory.quantity == 2


async def test_rapid_return_by_tracking_creates_return(db_session, make_order, admin_user):
    order = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="PX90001234")

    result = await ReturnsService(db_session).rapid_return("PX90001234", admin_user.id)

    assert result["success"] is True
    assert result["match_type"] == "order_direct"
    assert order.status == "returned"
    record = (await db_session.execute(select(Return))).scalar_one()
    assert record.return_status == "received"


async def test_rapid_return_by_shopify_number(db_session, make_order, admin_user):
    order = await make_order(
        status=OrderStatus.DELIVERED.value, order_number="SHOP-10442", shopify_order_number="10442"
    )
    await ReturnsService(db_session).create_return(order.id)

    result = await ReturnsService(db_session).rapid_return("10442", admin_user.id)

    assert result["match_type"] == "order_number"
    assert order.status == "returned"


async def test_rapid_return_twice(db_session, make_order, admin_user):
    await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="PX90001235")
    service = ReturnsService(db_session)
    await service.rapid_return("PX90001235", admin_user.id)

    with pytest.raises(ReturnProcessingError) as exc_info:
        await service.rapid_return("PX90001235", admin_user.id)
    assert exc_info.value.error_code == "ALREADY_RECEIVED"


async def test_scan_endpoint_reports_failures_in_band(client, staff_headers):
    res = await client.post("/api/v1/returns/scan", json={"entry": "UNKNOWN-123"}, headers=staff_headers)

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"


async def test_scan_endpoint_success(client, staff_headers, make_order):
    await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="TCS55667788")

    res = await client.post("/api/v1/returns/scan", json={"entry": "TCS55667788"}, headers=staff_headers)

    assert res.status_code == 200, res.text
    assert res.json()["success"] is True
    assert res.json()["order"]["customer_name"] == "Ayesha Khan"


async def test_claim_return(db_session, make_order):
    order = await make_order(status=OrderStatus.RETURNED.value)
    service = ReturnsService(db_session)
    record = await service.create_return(order.id, worth=Decimal("1200"))

    claimed = await service.mark_claimed(record.id)

    assert claimed.return_status == "claimed"
    assert claimed.claim_amount == Decimal("1200")
    with pytest.raises(ReturnProcessingError):
        await service.mark_claimed(record.id)
