import json

import httpx
import pytest
from sqlalchemy import select

from app.core.errors import ShopifyError
from app.core.security import compute_shopify_hmac, verify_shopify_hmac
from app.models.customer import Customer
from app.models.order import Order, OrderStatus
from app.models.sync_queue import ShopifySyncLog, SyncQueueItem
from app.services.shopify_service import ShopifyClient
from app.services.sync_queue_service import SyncQueueService


SECRET = "shopify-test-secret"


def _order_payload(**overrides) -> dict:
    payload = {
        "id": 820982911946154500,
        "order_number": 1042,
        "email": "ayesha@retailops.pk",
        "total_price": "3250.00",
        "tags": "vip, repeat",
        "note": "Call before delivery",
        "fulfillment_status": None,
        "customer": {"id": 115310627314723950, "first_name": "Ayesha", "last_name": "Khan", "phone": "+92 300 1234567"},
        "shipping_address": {
            "name": "Ayesha Khan",
            "address1": "House 12, Block 5",
            "address2": "Clifton",
            "city": "Karachi",
            "phone": "0300-1234567",
        },
        "shipping_lines": [{"price": "250.00"}],
        "line_items": [
            {"id": 466157049, "name": "Blue Shirt - M", "quantity": 2, "price": "1500.00", "sku": "SHIRT-BLUE-M"},
        ],
    }
    payload.update(overrides)
    return payload


def _signed(payload: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": compute_shopify_hmac(body, SECRET),
    }
    return body, headers


def test_verify_shopify_hmac():
    body = b'{"id": 1}'
    signature = compute_shopify_hmac(body, SECRET)
    assert verify_shopify_hmac(body, signature, SECRET)
    assert not verify_shopify_hmac(body + b" ", signature, SECRET)
    assert not verify_shopify_hmac(body, None, SECRET)
    assert not verify_shopify_hmac(body, signature, None)


async def test_webhook_rejects_bad_signature(client):
    body = json.dumps(_order_payload()).encode("utf-8")
    res = await client.post(
        "/api/v1/shopify/webhooks/orders/create",
        content=body,
        headers={"Content-Type": "application/json", "X-Shopify-Hmac-Sha256": "bm9wZQ=="},
    )
    assert res.status_code == 401, res.text


async def test_order_create_webhook_creates_order_and_customer(client, db_session, product):
    body, headers = _signed(_order_payload())

    res = await client.post("/api/v1/shopify/webhooks/orders/create", content=body, headers=headers)

    assert res.status_code == 200, res.text
    data = res.json()
    assert data["created"] is True
    assert data["order_number"] == "SHOP-1042"

    order = (await db_session.execute(select(Order).where(Order.order_number == "SHOP-1042"))).scalar_one()
    assert order.status == "pending"
    assert order.customer_phone == "03001234567"
    assert order.customer_address == "House 12, Block 5, Clifton"
    assert str(order.shipping_charges) == "250.00"
    assert order.tags == ["vip", "repeat"]
    assert len(order.order_items) == 1
    assert order.order_items[0].product_id == product.id

    customer = (await db_session.execute(select(Customer))).scalar_one()
    assert customer.name == "Ayesha Khan"
    assert customer.total_orders == 1


async def test_order_webhook_is_idempotent(client, db_session):
    body, headers = _signed(_order_payload())
    await client.post("/api/v1/shopify/webhooks/orders/create", content=body, headers=headers)

    body, headers = _signed(_order_payload(total_price="2999.00", tags="vip"))
    res = await client.post("/api/v1/shopify/webhooks/orders/updated", content=body, headers=headers)

    assert res.status_code == 200, res.text
    assert res.json()["created"] is False
    orders = (await db_session.execute(select(Order))).scalars().all()
    assert len(orders) == 1
    assert str(orders[0].total_amount) == "2999.00"
    assert orders[0].tags == ["vip"]


async def test_cancel_webhook_leaves_dispatched_orders(client, db_session, make_order):
    pending = await make_order(shopify_order_id="1001")
    dispatched = await make_order(status=OrderStatus.DISPATCHED.value, shopify_order_id="1002")

    for shopify_id in ("1001", "1002"):
        body, headers = _signed({"id": int(shopify_id), "cancel_reason": "customer"})
        res = await client.post("/api/v1/shopify/webhooks/orders/cancelled", content=body, headers=headers)
        assert res.status_code == 200, res.text

    assert pending.status == "cancelled"
    assert dispatched.status == "dispatched"


async def test_inventory_webhook_is_logged_not_applied(client, db_session, product):
    product.shopify_inventory_item_id = "808950810"
    await db_session.flush()

    body, headers = _signed({"inventory_item_id": 808950810, "available": 42})
    res = await client.post("/api/v1/shopify/webhooks/inventory_levels/update", content=body, headers=headers)

    assert res.status_code == 200, res.text
    assert res.json()["synced"] is True
    log = (await db_session.execute(select(ShopifySyncLog))).scalar_one()
    assert log.status == "success"
    assert log.details["available"] == 42


async def test_inventory_webhook_skips_placeholder_values(client, db_session):
    body, headers = _signed({"inventory_item_id": 1, "available": 999999999})
    res = await client.post("/api/v1/shopify/webhooks/inventory_levels/update", content=body, headers=headers)

    assert res.status_code == 200
    assert res.json()["skipped"] is True


async def test_process_queue_pushes_tracking(db_session, make_order):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"fulfillments": []})
        return httpx.Response(201, json={"fulfillment": {"id": 255858046}})

    client = ShopifyClient(
        store_url="retailops-test.myshopify.com",
        access_token="shpat_test",
        transport=httpx.MockTransport(handler),
    )
    order = await make_order(
        status=OrderStatus.BOOKED.value, shopify_order_id="450789469", tracking_id="PX123", courier="POSTEX"
    )
    service = SyncQueueService(db_session, client=client)
    await service.enqueue_order_update(order)

    result = await service.process_queue()

    assert result["processed"] == 1
    assert result["failed"] == 0
    assert requests[-1].url.path.endswith("/orders/450789469/fulfillments.json")
    assert json.loads(requests[-1].content)["fulfillment"]["tracking_number"] == "PX123"
    item = (await db_session.execute(select(SyncQueueItem))).scalar_one()
    assert item.status == "completed"
    assert order.synced_to_shopify is True


async def test_process_queue_records_failures(db_session, make_order):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    client = ShopifyClient(
        store_url="https://retailops-test.myshopify.com",
        access_token="shpat_test",
        transport=httpx.MockTransport(handler),
    )
    order = await make_order(shopify_order_id="450789470", tags=["vip"])
    service = SyncQueueService(db_session, client=client)
    await service.enqueue_order_update(order)

    result = await service.process_queue()

    assert result["failed"] == 1
    item = (await db_session.execute(select(SyncQueueItem))).scalar_one()
    assert item.status == "failed"
    assert item.retry_count == 1
    assert "500" in item.error_message
    stats = await service.get_queue_stats()
    assert stats["failed"] == 1


async def test_html_page_from_shopify_fails_the_queue_item(db_session, make_order):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>Checking your browser</html>", headers={"content-type": "text/html"})

    client = ShopifyClient(
        store_url="retailops-test.myshopify.com",
        access_token="shpat_test",
        transport=httpx.MockTransport(handler),
    )
    order = await make_order(
        status=OrderStatus.BOOKED.value, shopify_order_id="450789471", tracking_id="PX124", courier="POSTEX"
    )
    service = SyncQueueService(db_session, client=client)
    await service.enqueue_order_update(order)

    result = await service.process_queue()

    assert result["failed"] == 1
    item = (await db_session.execute(select(SyncQueueItem))).scalar_one()
    assert item.status == "failed"
    assert "non-JSON" in item.error_message
    assert order.synced_to_shopify is not True


async def test_list_body_from_shopify_is_rejected():
    client = ShopifyClient(
        store_url="retailops-test.myshopify.com",
        access_token="shpat_test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[{"id": 1}])),
    )

    with pytest.raises(ShopifyError) as exc_info:
        await client._make_request("GET", "orders.json")
    assert exc_info.value.error_code == "SHOPIFY_INVALID_RESPONSE"
