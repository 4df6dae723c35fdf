import csv
import io
from decimal import Decimal

import pytest
from openpyxl import Workbook, load_workbook
from sqlalchemy import select

from app.core.errors import ImportValidationError
from app.models.order import Order, OrderStatus
from app.services.order_import_service import (
    OrderImportService,
    normalize_phone,
    parse_items,
)


IMPORT_CSV = (
    "customer_name,customer_phone,customer_address,city,items,total_amount,courier,order_number\n"
    'Ayesha Khan,923001234567,"House 12, Clifton",Karachi,Blue Shirt x2 @1500; Cap x1 @500,3500,postex,IMP-001\n'
    "Bilal Ahmed,3211234567,Street 4 G-9,Islamabad,Cap x1,500,,\n"
    "No Phone,,Somewhere,Lahore,Cap x1,500,,\n"
    "Bad Courier,03001112223,Somewhere,Lahore,Cap x1,abc,dhl,\n"
)


@pytest.mark.parametrize("raw, expected", [
    ("+92 300 1234567", "03001234567"),
    ("923001234567", "03001234567"),
    ("3001234567", "03001234567"),
    ("0300-1234567", "03001234567"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_parse_items_text_and_json():
    assert parse_items("Blue Shirt x2 @1,500; Cap") == [
        {"name": "Blue Shirt", "quantity": 2, "price": "1500"},
        {"name": "Cap", "quantity": 1, "price": None},
    ]
    assert parse_items('[{"item_name": "Cap", "quantity": 3, "price": 500}]') == [
        {"name": "Cap", "quantity": 3, "price": 500},
    ]
    with pytest.raises(ValueError):
        parse_items('[{"item_name": "Cap", "quantity": 0}]')
    with pytest.raises(ValueError):
        parse_items("[not json")


async def test_import_reports_rows_independently(db_session):
    result = await OrderImportService(db_session).import_orders(IMPORT_CSV.encode("utf-8-sig"), "orders.csv")

    assert result["created"] == 2
    assert result["failed"] == 2
    assert result["errors"][0].startswith("Row 4:")
    assert "Customer phone is required" in result["errors"][0]
    assert result["errors"][1].startswith("Row 5:")
    assert "Total amount must be a valid number" in result["errors"][1]
    assert "Courier must be one of" in result["errors"][1]

    order = (await db_session.execute(select(Order).where(Order.order_number == "IMP-001"))).scalar_one()
    assert order.customer_phone == "03001234567"
    assert order.courier == "POSTEX"
    assert order.status == OrderStatus.PENDING.value
    assert order.total_amount == Decimal("3500")
    assert [(i.item_name, i.quantity) for i in order.order_items] == [("Blue Shirt", 2), ("Cap", 1)]

    bilal = (await db_session.execute(select(Order).where(Order.customer_name == "Bilal Ahmed"))).scalar_one()
    assert bilal.customer_phone == "03211234567"


async def test_import_rejects_taken_order_numbers(db_session, make_order):
    await make_order(order_number="IMP-001")

    result = await OrderImportService(db_session).import_orders(IMPORT_CSV.encode("utf-8"), "orders.csv")

    assert result["created"] == 1
    assert result["errors"][0] == "Row 2: Order number IMP-001 already exists"


async def test_import_requires_columns(db_session):
    with pytest.raises(ImportValidationError) as exc_info:
        await OrderImportService(db_session).import_orders(b"customer_name,city\nAyesha,Karachi\n", "orders.csv")

    assert exc_info.value.error_code == "MISSING_COLUMNS"
    assert "customer_phone" in exc_info.value.details["missing"]


async def test_import_endpoint_accepts_xlsx(client, staff_headers, db_session):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Customer Name", "Customer Phone", "Customer Address", "City", "Items", "Total Amount"])
    # numeric phone cells lose their leading zero
    sheet.append(["Sana Malik", 3451234567, "Flat 3, DHA Phase 6", "Karachi", "Kurta x1 @2500", 2500])
    buffer = io.BytesIO()
    workbook.save(buffer)

    res = await client.post(
        "/api/v1/orders/import",
        files={"file": ("orders.xlsx", buffer.getvalue(), "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        headers=staff_headers,
    )

    assert res.status_code == 200, res.text
    assert res.json()["created"] == 1
    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.customer_phone == "03451234567"


async def test_export_orders_csv(client, staff_headers, make_order):
    order = await make_order(tags=["vip", "repeat"])

    res = await client.get("/api/v1/exports/orders", headers=staff_headers)

    assert res.status_code == 200, res.text
    assert res.headers["content-type"].startswith("text/csv")
    assert 'filename="orders-export-' in res.headers["content-disposition"]
    assert res.content.startswith(b"\xef\xbb\xbf")

    rows = list(csv.reader(io.StringIO(res.content.decode("utf-8-sig"))))
    assert rows[0][:3] == ["S.No", "Order Number", "Status"]
    assert rows[1][1] == order.order_number
    assert rows[1][2] == "PENDING"
    assert "Blue Shirt x2 @1500.00" in rows[1][12]
    assert rows[1][14] == "vip, repeat"


async def test_export_orders_xlsx_filters_by_status(client, staff_headers, make_order):
    await make_order()
    delivered = await make_order(status=OrderStatus.DELIVERED.value)

    res = await client.get(
        "/api/v1/exports/orders", params={"format": "xlsx", "status": "delivered"}, headers=staff_headers
    )

    assert res.status_code == 200, res.text
    sheet = load_workbook(io.BytesIO(res.content)).active
    assert sheet.title == "Orders"
    assert sheet["A1"].value == "S.No"
    assert sheet["A1"].font.bold
    assert sheet.max_row == 2
    assert sheet["B2"].value == delivered.order_number


async def test_export_format_is_validated(client, staff_headers):
    res = await client.get("/api/v1/exports/orders", params={"format": "pdf"}, headers=staff_headers)
    assert res.status_code == 422
