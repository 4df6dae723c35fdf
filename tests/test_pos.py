from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.errors import POSError
from app.models.inventory import StockMovement
from app.schemas.pos import POSSaleRequest
from app.services.pos_service import POSService


async def _open(db_session, cashier_user, outlet, opening_cash="5000"):
    return await POSService(db_session).open_session(cashier_user.id, outlet.id, Decimal(opening_cash))


def _sale(session, product, **overrides) -> POSSaleRequest:
    data = {
        "session_id": session.id,
        "items": [{"product_id": product.id, "quantity": 2, "discount_percent": "10"}],
        "payment_method": "cash",
        "amount_paid": "3000",
    }
    data.update(overrides)
    return POSSaleRequest(**data)


async def test_one_open_session_per_cashier(db_session, cashier_user, store):
    await _open(db_session, cashier_user, store)

    with pytest.raises(POSError) as exc_info:
        await _open(db_session, cashier_user, store)
    assert exc_info.value.error_code == "SESSION_ALREADY_OPEN"


async def test_sale_totals_and_stock(db_session, cashier_user, store, product, stock):
    inventory = await stock(product, store, 10)
    session = await _open(db_session, cashier_user, store)

    sale = await POSService(db_session).process_sale(cashier_user.id, _sale(session, product, tax_rate="0.16", amount_paid="3200"))

    # 2 x 1500 = 3000, 10% off = 2700, 16% tax = 432
    assert sale.subtotal == Decimal("2700.00")
    assert sale.discount_amount == Decimal("300.00")
    assert sale.tax_amount == Decimal("432.00")
    assert sale.total_amount == Decimal("3132.00")
    assert sale.change_amount == Decimal("68.00")
    assert inventory.quantity == 8

    movement = (await db_session.execute(select(StockMovement))).scalar_one()
    assert movement.reference_id == sale.id


async def test_sale_with_insufficient_payment(db_session, cashier_user, store, product, stock):
    await stock(product, store, 10)
    session = await _open(db_session, cashier_user, store)

    with pytest.raises(POSError) as exc_info:
        await POSService(db_session).process_sale(cashier_user.id, _sale(session, product, amount_paid="100"))
    assert exc_info.value.error_code == "INSUFFICIENT_PAYMENT"


async def test_sale_with_insufficient_stock(db_session, cashier_user, store, product, stock):
    await stock(product, store, 1)
    session = await _open(db_session, cashier_user, store)

    with pytest.raises(POSError) as exc_info:
        await POSService(db_session).process_sale(cashier_user.id, _sale(session, product))
    assert exc_info.value.error_code == "INSUFFICIENT_STOCK"


async def test_split_lines_of_one_product_share_the_stock_check(db_session, cashier_user, store, product, stock):
    inventory = await stock(product, store, 5)
    session = await _open(db_session, cashier_user, store)
    request = _sale(
        session, product,
        items=[
            {"product_id": product.id, "quantity": 3},
            {"product_id": product.id, "quantity": 3},
        ],
        amount_paid="9000",
    )

    with pytest.raises(POSError) as exc_info:
        await POSService(db_session).process_sale(cashier_user.id, request)

    assert exc_info.value.error_code == "INSUFFICIENT_STOCK"
    assert exc_info.value.details["requested"] == 6
    assert exc_info.value.details["available"] == 5
    assert inventory.quantity == 5
    assert (await db_session.execute(select(StockMovement))).scalars().all() == []


async def test_expected_cash_counts_cash_only(db_session, cashier_user, store, product, stock):
    await stock(product, store, 20)
    session = await _open(db_session, cashier_user, store, opening_cash="1000")
    service = POSService(db_session)

    # cash sale: 2700
    await service.process_sale(cashier_user.id, _sale(session, product))
    # card sale is not in the drawer
    await service.process_sale(cashier_user.id, _sale(session, product, payment_method="card", amount_paid="2700"))
    # split: only the 700 cash leg lands in the drawer
    await service.process_sale(cashier_user.id, _sale(
        session, product,
        payment_method="split",
        amount_paid="2700",
        payments=[
            {"payment_method": "cash", "amount": "700"},
            {"payment_method": "card", "amount": "2000"},
        ],
    ))
    await service.record_cash_event(session.id, cashier_user.id, "cash_in", Decimal("500"))
    await service.record_cash_event(session.id, cashier_user.id, "cash_out", Decimal("200"))

    expected = await service.calculate_expected_cash(session)

    assert expected == Decimal("4700.00")


async def test_close_session_reconciles(db_session, cashier_user, store):
    session = await _open(db_session, cashier_user, store, opening_cash="1000")
    service = POSService(db_session)

    result = await service.close_session(session.id, cashier_user.id, Decimal("950"))

    assert result["expected_cash"] == Decimal("1000.00")
    assert result["cash_difference"] == Decimal("-50.00")
    assert session.status == "closed"

    with pytest.raises(POSError):
        await service.close_session(session.id, cashier_user.id, Decimal("950"))
    with pytest.raises(POSError):
        await service.record_cash_event(session.id, cashier_user.id, "cash_in", Decimal("10"))


async def test_pos_requires_cashier_role(client, staff_headers, store):
    res = await client.post(
        "/api/v1/pos/sessions/open", json={"outlet_id": str(store.id), "opening_cash": "100"}, headers=staff_headers
    )
    assert res.status_code == 403


async def test_pos_session_api(client, cashier_headers, store, product, stock):
    await stock(product, store, 5)
    headers = cashier_headers

    res = await client.post(
        "/api/v1/pos/sessions/open", json={"outlet_id": str(store.id), "opening_cash": "100"}, headers=headers
    )
    assert res.status_code == 201, res.text
    session_id = res.json()["id"]

    res = await client.post("/api/v1/pos/sales", json={
        "session_id": session_id,
        "items": [{"product_id": str(product.id), "quantity": 1}],
        "payment_method": "cash",
        "amount_paid": "2000",
    }, headers=headers)
    assert res.status_code == 201, res.text
    assert Decimal(res.json()["change_amount"]) == Decimal("500.00")

    res = await client.post(f"/api/v1/pos/sessions/{session_id}/close", json={"closing_cash": "1600"}, headers=headers)
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["expected_cash"]) == Decimal("1600.00")
    assert Decimal(res.json()["cash_difference"]) == Decimal("0.00")
