from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from app.core.errors import CourierError
from app.core.utils import utcnow
from app.models.dispatch import (
    Courier,
    CourierBookingAttempt,
    CourierBookingQueue,
    Dispatch,
)
from app.models.order import OrderStatus
from app.services.courier_clients import (
    BookingAddress,
    CourierClient,
    extract_tracking_id,
    normalize_tracking_status,
    order_ref_number,
)
from app.services.courier_service import CourierService, courier_tag, parse_scan_token


PICKUP = BookingAddress(name="Retail Ops Warehouse", phone="02134567890", address="Plot 7, SITE", city="Karachi")
DELIVERY = BookingAddress(name="Ayesha Khan", phone="03001234567", address="House 12, Block 5, Clifton", city="Karachi")


@pytest.fixture
async def courier(db_session):
    courier = Courier(
        name="Swift Logistics",
        code="SWIFT",
        booking_endpoint="https://api.swift.test/book",
        tracking_endpoint="https://api.swift.test/track/{tracking_id}",
        auth_type="api_key_header",
        auth_config={"header_name": "X-Swift-Key"},
    )
    db_session.add(courier)
    await db_session.flush()
    return courier


def _transport(*responses):
    """Replays the given responses (or raises the given exceptions) in order."""
    calls = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return httpx.MockTransport(handler), calls


async def _book(db_session, order, courier, transport):
    return await CourierService(db_session, transport=transport).book_courier(
        order_id=order.id,
        courier_id=courier.id,
        pickup_address=PICKUP,
        delivery_address=DELIVERY,
        cod_amount=3000,
    )


def test_normalize_tracking_status():
    assert normalize_tracking_status("Out for Delivery") == "out_for_delivery"
    assert normalize_tracking_status("DELIVERED") == "delivered"
    assert normalize_tracking_status("Arrived at hub") == "in_transit"
    assert normalize_tracking_status(None) == "in_transit"


def test_response_parsing_helpers():
    assert extract_tracking_id("POSTEX", {"dist": {"trackingNumber": "PX1"}}) == "PX1"
    assert extract_tracking_id("TCS", {"data": {"cn": 7788}}) == "7788"
    assert extract_tracking_id("TCS", {"status": "ok"}) is None
    assert order_ref_number("SHOP-1042") == "1042"
    assert parse_scan_token("  #PX445566\t") == "PX445566"


async def test_auth_headers_per_scheme(courier):
    headers = CourierClient(courier, api_key="k-123").build_auth_headers()
    assert headers["X-Swift-Key"] == "k-123"

    courier.auth_type = "basic_auth"
    courier.auth_config = {"username": "retailops"}
    headers = CourierClient(courier, api_key="k-123").build_auth_headers()
    assert headers["Authorization"].startswith("Basic ")

    postex = Courier(name="PostEx", code="POSTEX", auth_type="bearer_token", auth_config={})
    headers = CourierClient(postex, api_key="px-key").build_auth_headers()
    assert headers["Authorization"] == "Bearer px-key"
    assert headers["token"] == "px-key"


async def test_redirects_keep_auth_header(courier):
    transport, calls = _transport(
        httpx.Response(307, headers={"location": "https://api.swift.test/v2/book"}),
        httpx.Response(200, json={"tracking_number": "SW1", "label_url": "https://api.swift.test/l/SW1.pdf"}),
    )
    client = CourierClient(courier, api_key="k-123", transport=transport)

    headers = client.build_auth_headers()
    response = await client._request("POST", "https://api.swift.test/book", headers=headers, json={})

    assert response.status_code == 200
    assert calls[1].url.path == "/v2/book"
    assert calls[1].headers["X-Swift-Key"] == "k-123"


async def test_booking_success(db_session, make_order, courier):
    order = await make_order()
    transport, calls = _transport(httpx.Response(200, json={
        "tracking_number": "SW1001",
        "label_url": "https://api.swift.test/labels/SW1001.pdf",
    }))

    result = await _book(db_session, order, courier, transport)

    assert result["success"] is True
    assert result["tracking_id"] == "SW1001"
    assert order.status == OrderStatus.BOOKED.value
    assert order.tracking_id == "SW1001"
    assert order.courier == "SWIFT"
    assert order.tags == [courier_tag("Swift Logistics")]

    body = calls[0].content
    assert b"Ayesha Khan" in body

    dispatch = (await db_session.execute(select(Dispatch).where(Dispatch.order_id == order.id))).scalar_one()
    assert dispatch.label_url == "https://api.swift.test/labels/SW1001.pdf"
    attempt = (await db_session.execute(select(CourierBookingAttempt))).scalar_one()
    assert attempt.status == "success"


async def test_booking_without_label(db_session, make_order, courier):
    order = await make_order()
    transport, _ = _transport(httpx.Response(200, json={"tracking_number": "SW1002"}))

    result = await _book(db_session, order, courier, transport)

    assert result["success"] is False
    assert result["error_code"] == "BOOKING_NO_LABEL"
    assert "status_code" not in result
    assert order.status == OrderStatus.PENDING.value
    attempt = (await db_session.execute(select(CourierBookingAttempt))).scalar_one()
    assert attempt.status == "partial"


async def test_booking_http_error_is_not_queued(db_session, make_order, courier):
    order = await make_order()
    transport, _ = _transport(httpx.Response(400, text="invalid city"))

    result = await _book(db_session, order, courier, transport)

    assert result["success"] is False
    assert result["error_code"] == "BOOKING_API_ERROR"
    assert result["queued_for_retry"] is False
    assert result["status_code"] == 502
    assert (await db_session.execute(select(CourierBookingQueue))).scalar_one_or_none() is None


async def test_network_failure_queues_retry(db_session, make_order, courier):
    order = await make_order()
    transport, _ = _transport(httpx.ConnectError("[Errno -2] Name or service not known"))

    result = await _book(db_session, order, courier, transport)

    assert result["success"] is False
    assert result["error_code"] == "NETWORK_DNS_ERROR"
    assert result["retryable"] is True
    assert result["queued_for_retry"] is True

    item = (await db_session.execute(select(CourierBookingQueue))).scalar_one()
    assert item.status == "pending"
    assert item.retry_count == 0
    assert item.next_retry_at > utcnow()
    attempt = (await db_session.execute(select(CourierBookingAttempt))).scalar_one()
    assert attempt.status == "failed"
    assert attempt.error_code == "NETWORK_DNS_ERROR"

    # a second failure reuses the queue entry
    await _book(db_session, order, courier, transport)
    assert len((await db_session.execute(select(CourierBookingQueue))).scalars().all()) == 1


async def test_retry_queue_books_due_items(db_session, make_order, courier):
    order = await make_order()
    failing, _ = _transport(httpx.ConnectError("connection refused"))
    await _book(db_session, order, courier, failing)
    item = (await db_session.execute(select(CourierBookingQueue))).scalar_one()
    item.next_retry_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()

    ok, _ = _transport(httpx.Response(200, json={"tracking_number": "SW2001", "label_data": "JVBERi0xLjQ="}))
    result = await CourierService(db_session, transport=ok).retry_failed_bookings()

    assert result == {"processed": 1, "succeeded": 1, "failed": 0}
    assert item.status == "success"
    assert item.retry_count == 1
    assert order.status == OrderStatus.BOOKED.value
    assert order.tracking_id == "SW2001"


async def test_retry_backoff_grows(db_session, make_order, courier):
    order = await make_order()
    failing, _ = _transport(httpx.ReadTimeout("timed out"))
    await _book(db_session, order, courier, failing)
    item = (await db_session.execute(select(CourierBookingQueue))).scalar_one()
    assert item.last_error_code == "NETWORK_TIMEOUT"
    item.next_retry_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()

    result = await CourierService(db_session, transport=failing).retry_failed_bookings()

    assert result["failed"] == 1
    assert item.status == "pending"
    assert item.retry_count == 1
    delay = item.next_retry_at - utcnow()
    assert timedelta(minutes=14) < delay <= timedelta(minutes=15)


async def test_retry_gives_up_after_max_retries(db_session, make_order, courier):
    order = await make_order()
    failing, _ = _transport(httpx.ConnectError("connection refused"))
    await _book(db_session, order, courier, failing)
    item = (await db_session.execute(select(CourierBookingQueue))).scalar_one()
    item.retry_count = item.max_retries - 1
    item.next_retry_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()

    await CourierService(db_session, transport=failing).retry_failed_bookings()

    assert item.status == "failed"


async def test_inactive_courier_cannot_book(db_session, make_order, courier):
    order = await make_order()
    await CourierService(db_session).delete_courier(courier.id)
    transport, _ = _transport(httpx.Response(200, json={}))

    with pytest.raises(CourierError) as exc_info:
        await _book(db_session, order, courier, transport)
    assert exc_info.value.error_code == "COURIER_INACTIVE"


async def test_cancel_booking_returns_order_to_pending(db_session, make_order, courier):
    order = await make_order(tags=["vip"])
    transport, _ = _transport(httpx.Response(200, json={
        "tracking_number": "SW3001",
        "label_url": "https://api.swift.test/labels/SW3001.pdf",
    }))
    await _book(db_session, order, courier, transport)

    result = await CourierService(db_session, transport=transport).cancel_booking(order.id, reason="Customer changed address")

    assert result["success"] is True
    assert result["courier_result"] == {"cancelled": True, "local_only": True}
    assert order.status == OrderStatus.PENDING.value
    assert order.tracking_id is None
    assert order.courier is None
    assert order.tags == ["vip"]
    assert (await db_session.execute(select(Dispatch))).scalar_one_or_none() is None

    with pytest.raises(CourierError) as exc_info:
        await CourierService(db_session).cancel_booking(order.id)
    assert exc_info.value.error_code == "NO_BOOKING"


async def test_track_shipment_refreshes_dispatch(db_session, make_order, courier):
    order = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="SW4001", courier="SWIFT")
    db_session.add(Dispatch(order_id=order.id, courier="SWIFT", tracking_id="SW4001", status="booked"))
    await db_session.flush()
    transport, calls = _transport(httpx.Response(200, json={"status": "Out for Delivery", "location": "Lahore Hub"}))

    result = await CourierService(db_session, transport=transport).track_shipment("SW4001", "swift")

    assert calls[0].url.path == "/track/SW4001"
    assert result["status"] == "out_for_delivery"
    assert result["current_location"] == "Lahore Hub"
    dispatch = (await db_session.execute(select(Dispatch))).scalar_one()
    assert dispatch.status == "out_for_delivery"
    assert dispatch.last_tracking_update is not None


async def test_scheduled_tracking_update_marks_delivered(db_session, make_order):
    delivered = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="PX5001", courier="POSTEX")
    moving = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="PX5002", courier="POSTEX")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/PX5001"):
            return httpx.Response(200, json={"dist": {"orderStatus": "Delivered"}})
        return httpx.Response(200, json={"dist": {"orderStatus": "In Transit"}})

    result = await CourierService(db_session, transport=httpx.MockTransport(handler)).scheduled_tracking_update()

    assert result == {"checked": 2, "updated": 1, "errors": []}
    assert delivered.status == OrderStatus.DELIVERED.value
    assert moving.status == OrderStatus.DISPATCHED.value


async def test_dispatch_scan_endpoint(client, staff_headers, make_order):
    order = await make_order(status=OrderStatus.BOOKED.value, tracking_id="PX445566", courier="POSTEX")

    res = await client.post("/api/v1/couriers/dispatch/scan", json={"entry": "PX445566"}, headers=staff_headers)

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["match_type"] == "tracking_id"
    assert order.status == OrderStatus.DISPATCHED.value

    res = await client.post("/api/v1/couriers/dispatch/scan", json={"entry": "PX445566"}, headers=staff_headers)
    assert res.json()["success"] is False
    assert res.json()["error_code"] == "ALREADY_DISPATCHED"


async def test_dispatch_scan_rejects_cancelled(client, staff_headers, make_order):
    await make_order(status=OrderStatus.CANCELLED.value, order_number="ORD-77001")

    res = await client.post("/api/v1/couriers/dispatch/scan", json={"entry": "ORD-77001"}, headers=staff_headers)

    assert res.status_code == 200
    assert res.json()["error_code"] == "ORDER_CANCELLED"


async def test_create_courier_requires_admin(client, staff_headers, admin_headers):
    body = {"name": "Trax", "code": "trax", "auth_type": "token_header"}

    res = await client.post("/api/v1/couriers", json=body, headers=staff_headers)
    assert res.status_code == 403

    res = await client.post("/api/v1/couriers", json=body, headers=admin_headers)
    assert res.status_code == 201, res.text
    assert res.json()["code"] == "TRAX"

    res = await client.post("/api/v1/couriers", json=body, headers=admin_headers)
    assert res.status_code == 409


async def test_cancelled_order_is_not_sent_to_courier(db_session, make_order, courier):
    order = await make_order(status=OrderStatus.CANCELLED.value)
    transport, calls = _transport(httpx.Response(200, json={
        "tracking_number": "SW6001",
        "label_url": "https://api.swift.test/labels/SW6001.pdf",
    }))

    with pytest.raises(CourierError) as exc_info:
        await _book(db_session, order, courier, transport)

    assert exc_info.value.error_code == "ORDER_NOT_BOOKABLE"
    assert exc_info.value.status_code == 409
    assert calls == []
    assert order.status == OrderStatus.CANCELLED.value
    assert order.tracking_id is None
    assert (await db_session.execute(select(Dispatch))).scalar_one_or_none() is None


async def test_book_endpoint_rejects_delivered_order(client, staff_headers, make_order, courier):
    order = await make_order(status=OrderStatus.DELIVERED.value)
    address = {"name": "Ayesha Khan", "phone": "03001234567", "address": "House 12, Clifton", "city": "Karachi"}

    res = await client.post("/api/v1/couriers/book", headers=staff_headers, json={
        "order_id": str(order.id),
        "courier_id": str(courier.id),
        "pickup_address": address,
        "delivery_address": address,
    })

    assert res.status_code == 409
    assert res.json()["error_code"] == "ORDER_NOT_BOOKABLE"


async def test_retry_run_skips_orders_closed_since_queueing(db_session, make_order, courier):
    open_order = await make_order()
    closed_order = await make_order()
    failing, _ = _transport(httpx.ConnectError("connection refused"))
    await _book(db_session, open_order, courier, failing)
    await _book(db_session, closed_order, courier, failing)

    items = {
        i.order_id: i for i in (await db_session.execute(select(CourierBookingQueue))).scalars().all()
    }
    items[open_order.id].next_retry_at = utcnow() - timedelta(minutes=2)
    items[closed_order.id].next_retry_at = utcnow() - timedelta(minutes=1)
    closed_order.status = OrderStatus.CANCELLED.value
    await db_session.flush()

    ok, calls = _transport(httpx.Response(200, json={"tracking_number": "SW6101", "label_data": "JVBERi0xLjQ="}))
    result = await CourierService(db_session, transport=ok).retry_failed_bookings()

    assert result == {"processed": 2, "succeeded": 1, "failed": 1}
    assert len(calls) == 1
    assert open_order.status == OrderStatus.BOOKED.value
    assert closed_order.status == OrderStatus.CANCELLED.value
    assert closed_order.tracking_id is None
    assert items[closed_order.id].status == "failed"
    assert items[closed_order.id].last_error_code == "ORDER_NOT_BOOKABLE"


async def test_retry_failure_keeps_earlier_bookings_in_batch(db_session, make_order, courier):
    first = await make_order()
    second = await make_order()
    failing, _ = _transport(httpx.ConnectError("connection refused"))
    await _book(db_session, first, courier, failing)
    await _book(db_session, second, courier, failing)

    items = {
        i.order_id: i for i in (await db_session.execute(select(CourierBookingQueue))).scalars().all()
    }
    items[first.id].next_retry_at = utcnow() - timedelta(minutes=2)
    items[second.id].next_retry_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()

    mixed, _ = _transport(
        httpx.Response(200, json={"tracking_number": "SW6201", "label_data": "JVBERi0xLjQ="}),
        httpx.Response(200, text="<html>Bad Gateway</html>", headers={"content-type": "text/html"}),
    )
    result = await CourierService(db_session, transport=mixed).retry_failed_bookings()

    assert result == {"processed": 2, "succeeded": 1, "failed": 1}
    assert first.status == OrderStatus.BOOKED.value
    assert first.tracking_id == "SW6201"
    assert second.status == OrderStatus.PENDING.value
    assert items[second.id].last_error_code == "BOOKING_INVALID_RESPONSE"
    assert items[second.id].status == "failed"
    dispatches = (await db_session.execute(select(Dispatch))).scalars().all()
    assert [d.order_id for d in dispatches] == [first.id]


async def test_html_booking_response_is_a_failed_attempt(db_session, make_order, courier):
    order = await make_order()
    transport, _ = _transport(
        httpx.Response(200, text="<html><body>Service Unavailable</body></html>", headers={"content-type": "text/html"})
    )

    result = await _book(db_session, order, courier, transport)

    assert result["success"] is False
    assert result["error_code"] == "BOOKING_INVALID_RESPONSE"
    assert result["status_code"] == 502
    assert result["queued_for_retry"] is False
    assert result["details"]["content_type"] == "text/html"
    assert order.status == OrderStatus.PENDING.value
    attempt = (await db_session.execute(select(CourierBookingAttempt))).scalar_one()
    assert attempt.status == "failed"
    assert attempt.error_code == "BOOKING_INVALID_RESPONSE"
    assert (await db_session.execute(select(CourierBookingQueue))).scalar_one_or_none() is None


async def test_list_booking_response_is_rejected(db_session, make_order, courier):
    order = await make_order()
    transport, _ = _transport(httpx.Response(200, json=[{"tracking_number": "SW6301"}]))

    result = await _book(db_session, order, courier, transport)

    assert result["error_code"] == "BOOKING_INVALID_RESPONSE"
    assert order.tracking_id is None


async def test_html_tracking_response_raises(db_session, courier):
    transport, _ = _transport(httpx.Response(200, text="maintenance", headers={"content-type": "text/plain"}))

    with pytest.raises(CourierError) as exc_info:
        await CourierService(db_session, transport=transport).track_shipment("SW6401", "SWIFT")
    assert exc_info.value.error_code == "TRACKING_INVALID_RESPONSE"


async def test_bulk_book_reports_each_order(db_session, make_order, courier):
    bookable = await make_order()
    cancelled = await make_order(status=OrderStatus.CANCELLED.value)
    transport, calls = _transport(httpx.Response(200, json={
        "tracking_number": "SW6501",
        "label_url": "https://api.swift.test/labels/SW6501.pdf",
    }))

    result = await CourierService(db_session, transport=transport).bulk_book(
        [bookable.id, cancelled.id, bookable.id], courier.id
    )

    assert result["total"] == 2
    assert result["success_count"] == 1
    assert result["failed_count"] == 1
    assert result["success"] is False
    by_number = {r["order_number"]: r for r in result["results"]}
    assert by_number[bookable.order_number]["tracking_id"] == "SW6501"
    assert by_number[cancelled.order_number]["error_code"] == "ORDER_NOT_BOOKABLE"
    assert len(calls) == 1
    assert b"Ayesha Khan" in calls[0].content
    assert bookable.status == OrderStatus.BOOKED.value


async def test_bulk_book_endpoint(client, staff_headers, make_order, courier):
    order = await make_order(status=OrderStatus.RETURNED.value)
    missing = "00000000-0000-0000-0000-00000000beef"

    res = await client.post("/api/v1/couriers/bulk-book", headers=staff_headers, json={
        "order_ids": [str(order.id), missing],
        "courier_id": str(courier.id),
    })

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["total"] == 2
    errors = {r["order_id"]: r["error_code"] for r in body["results"] if not r["success"]}
    assert errors[missing] == "ORDER_NOT_FOUND"
    assert errors[str(order.id)] == "ORDER_NOT_BOOKABLE"
    assert body["failed_count"] == 2


async def test_bulk_track_uses_dispatch_courier(db_session, make_order, courier):
    order = await make_order(status=OrderStatus.DISPATCHED.value, tracking_id="SW6601", courier="SWIFT")
    db_session.add(Dispatch(order_id=order.id, courier="SWIFT", tracking_id="SW6601", status="booked"))
    await db_session.flush()
    transport, calls = _transport(httpx.Response(200, json={"status": "Delivered"}))

    result = await CourierService(db_session, transport=transport).bulk_track(["SW6601", "UNKNOWN-1"])

    assert result["total"] == 2
    assert result["successful"] == 1
    assert result["failed"] == 1
    by_id = {r["tracking_id"]: r for r in result["results"]}
    assert by_id["SW6601"]["data"]["status"] == "delivered"
    assert by_id["UNKNOWN-1"]["error_code"] == "DISPATCH_NOT_FOUND"
    assert [c.url.path for c in calls] == ["/track/SW6601"]
