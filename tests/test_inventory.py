import pytest
from sqlalchemy import select

from app.core.errors import InventoryError, NotFoundError
from app.models.inventory import StockMovement
from app.models.sync_queue import SyncQueueItem
from app.services.inventory_service import InventoryService


async def test_reserve_and_release(db_session, product, outlet, stock):
    await stock(product, outlet, 10)
    service = InventoryService(db_session)

    inventory = await service.reserve_stock(product.id, outlet.id, 4)
    assert inventory.reserved_quantity == 4
    assert inventory.available_quantity == 6

    inventory = await service.release_stock(product.id, outlet.id, 10)
    assert inventory.reserved_quantity == 0
    assert inventory.available_quantity == 10


async def test_reserve_more_than_available(db_session, product, outlet, stock):
    await stock(product, outlet, 5, reserved=3)

    with pytest.raises(InventoryError) as exc_info:
        await InventoryService(db_session).reserve_stock(product.id, outlet.id, 3)

    assert exc_info.value.error_code == "INSUFFICIENT_STOCK"
    assert exc_info.value.details["available"] == 2


async def test_reserve_without_stock_row(db_session, product, outlet):
    with pytest.raises(NotFoundError):
        await InventoryService(db_session).reserve_stock(product.id, outlet.id, 1)


async def test_record_sale_consumes_reservation(db_session, product, outlet, stock):
    await stock(product, outlet, 10, reserved=2)

    inventory = await InventoryService(db_session).record_sale(product.id, outlet.id, 2)

    assert inventory.quantity == 8
    assert inventory.reserved_quantity == 0
    assert inventory.available_quantity == 8
    movement = (await db_session.execute(select(StockMovement))).scalar_one()
    assert movement.movement_type == "sale"
    assert movement.quantity == -2


async def test_record_sale_never_goes_below_zero(db_session, product, outlet, stock):
    inventory = await stock(product, outlet, 3)

    with pytest.raises(InventoryError) as exc_info:
        await InventoryService(db_session).record_sale(product.id, outlet.id, 4)

    assert exc_info.value.error_code == "INSUFFICIENT_STOCK"
    assert exc_info.value.details == {"requested": 4, "available": 3}
    assert inventory.quantity == 3
    assert (await db_session.execute(select(StockMovement))).scalar_one_or_none() is None


async def test_record_sale_keeps_reserved_units_when_not_releasing(db_session, product, outlet, stock):
    await stock(product, outlet, 5, reserved=3)

    with pytest.raises(InventoryError):
        await InventoryService(db_session).record_sale(product.id, outlet.id, 3, release_reserved=False)

    inventory = await InventoryService(db_session).record_sale(product.id, outlet.id, 2, release_reserved=False)
    assert inventory.quantity == 3
    assert inventory.reserved_quantity == 3
    assert inventory.available_quantity == 0


async def test_adjust_creates_row_and_blocks_negative(db_session, product, outlet):
    service = InventoryService(db_session)

    inventory = await service.adjust_stock(product.id, outlet.id, 7, reason="addition", notes="opening count")
    assert inventory.quantity == 7
    assert inventory.last_restocked_at is not None

    with pytest.raises(InventoryError) as exc_info:
        await service.adjust_stock(product.id, outlet.id, -8)
    assert exc_info.value.error_code == "NEGATIVE_STOCK"
    assert inventory.quantity == 7

    movement = (await db_session.execute(select(StockMovement))).scalar_one()
    assert movement.notes == "addition: opening count"


async def test_transfer_between_outlets(db_session, product, outlet, store, stock):
    await stock(product, outlet, 10)

    source, destination = await InventoryService(db_session).transfer_stock(product.id, outlet.id, store.id, 4)

    assert source.available_quantity == 6
    assert destination.available_quantity == 4
    movements = (await db_session.execute(select(StockMovement))).scalars().all()
    assert sorted(m.movement_type for m in movements) == ["transfer_in", "transfer_out"]
    assert movements[0].reference_id == movements[1].reference_id


async def test_transfer_to_same_outlet(db_session, product, outlet, stock):
    await stock(product, outlet, 10)
    with pytest.raises(InventoryError):
        await InventoryService(db_session).transfer_stock(product.id, outlet.id, outlet.id, 1)


async def test_linked_product_queues_shopify_sync(db_session, product, outlet, stock):
    product.shopify_inventory_item_id = "808950810"
    inventory = await stock(product, outlet, 10)

    await InventoryService(db_session).adjust_stock(product.id, outlet.id, -1)

    item = (await db_session.execute(select(SyncQueueItem))).scalar_one()
    assert item.entity_type == "inventory"
    assert item.entity_id == inventory.id
    assert item.payload == {"available_quantity": 9}


async def test_adjust_endpoint_requires_stock_manager(client, staff_headers, admin_headers, product, outlet):
    body = {"product_id": str(product.id), "outlet_id": str(outlet.id), "quantity_change": 5, "reason": "addition"}

    res = await client.post("/api/v1/inventory/adjust", json=body, headers=staff_headers)
    assert res.status_code == 403

    res = await client.post("/api/v1/inventory/adjust", json=body, headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json()["available_quantity"] == 5


async def test_availability_endpoint(client, staff_headers, product, outlet, stock):
    await stock(product, outlet, 3)

    res = await client.get(
        "/api/v1/inventory/availability",
        params={"product_id": str(product.id), "outlet_id": str(outlet.id), "quantity": 5},
        headers=staff_headers,
    )

    assert res.status_code == 200, res.text
    assert res.json() == {"available": False, "available_quantity": 3}
