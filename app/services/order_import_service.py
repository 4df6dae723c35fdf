"""
Bulk order import from CSV or Excel.

Every row is validated on its own; valid rows become pending orders and
invalid rows are reported with their spreadsheet row number (header = row 1).
"""
import csv
import io
import json
import logging
import re
import uuid
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Tuple

from openpyxl import load_workbook
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ImportValidationError, ServiceError
from app.core.utils import digits_only
from app.models.order import Order
from app.schemas.order import OrderCreate, OrderItemCreate
from app.services.order_service import OrderService


logger = logging.getLogger(__name__)


REQUIRED_COLUMNS = ["customer_name", "customer_phone", "customer_address", "city", "items", "total_amount"]
VALID_COURIERS = {"leopard", "postex", "tcs", "other"}
MAX_IMPORT_ROWS = 5000

PHONE_PATTERN = re.compile(r"^03\d{9}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# "Blue Shirt x2 @1500" -> name, quantity, optional price
ITEM_PATTERN = re.compile(r"^(?P<name>.+?)\s*[xX×]\s*(?P<qty>\d+)(?:\s*@\s*(?P<price>[\d.,]+))?$")


def normalize_phone(raw: str) -> str:
    """Local mobile format: 923001234567 / +92 300 1234567 -> 03001234567."""
    phone = digits_only(raw) or ""
    if phone.startswith("92") and len(phone) == 12:
        phone = "0" + phone[2:]
    elif phone.startswith("3") and len(phone) == 10:
        # Spreadsheets drop the leading zero from numeric cells
        phone = "0" + phone
    return phone


def parse_items(raw: str) -> List[Dict[str, Any]]:
    """
    Parse the items cell.

    Accepts ``Name x2; Other x1`` (optionally ``@price`` per item) or a JSON
    array of ``{item_name, quantity, price}`` objects.

    Raises:
        ValueError: the cell cannot be parsed
    """
    raw = raw.strip()
    if raw.startswith("["):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            raise ValueError("Items must be valid JSON format")
        if not isinstance(data, list) or not data:
            raise ValueError("Items must be a non-empty array")
        items = []
        for idx, item in enumerate(data, start=1):
            name = (item.get("item_name") or item.get("name") or "").strip() if isinstance(item, dict) else ""
            if not name:
                raise ValueError(f"Item {idx}: item_name is required")
            quantity = int(item.get("quantity") or 0)
            if quantity < 1:
                raise ValueError(f"Item {idx}: quantity must be at least 1")
            items.append({"name": name, "quantity": quantity, "price": item.get("price")})
        return items

    items = []
    for part in (p.strip() for p in raw.split(";")):
        if not part:
            continue
        match = ITEM_PATTERN.match(part)
        if match:
            price = match.group("price")
            items.append({
                "name": match.group("name").strip(),
                "quantity": int(match.group("qty")),
                "price": price.replace(",", "") if price else None,
            })
        else:
            items.append({"name": part, "quantity": 1, "price": None})
    if not items:
        raise ValueError("Items are required")
    for idx, item in enumerate(items, start=1):
        if item["quantity"] < 1:
            raise ValueError(f"Item {idx}: quantity must be at least 1")
    return items


def read_rows(content: bytes, filename: str) -> List[Dict[str, str]]:
    """Read a CSV or XLSX upload into dicts keyed by lower-cased header."""
    if filename.lower().endswith((".xlsx", ".xlsm")):
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except Exception as e:
            raise ImportValidationError(f"Failed to read Excel file: {e}", error_code="INVALID_FILE")
        sheet = workbook.active
        values = [
            ["" if cell is None else str(cell).strip() for cell in row]
            for row in sheet.iter_rows(values_only=True)
        ]
        workbook.close()
    else:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("latin-1")
        values = [[cell.strip() for cell in row] for row in csv.reader(io.StringIO(text))]

    values = [row for row in values if any(row)]
    if not values:
        raise ImportValidationError("File is empty", error_code="EMPTY_FILE")

    headers = [h.strip().lower().replace(" ", "_") for h in values[0]]
    missing = [c for c in REQUIRED_COLUMNS if c not in headers]
    if missing:
        raise ImportValidationError(
            f"Missing required columns: {', '.join(missing)}",
            error_code="MISSING_COLUMNS",
            details={"missing": missing, "required": REQUIRED_COLUMNS},
        )
    if len(values) - 1 > MAX_IMPORT_ROWS:
        raise ImportValidationError(
            f"Too many rows (max {MAX_IMPORT_ROWS})",
            error_code="TOO_MANY_ROWS",
        )

    rows = []
    for row in values[1:]:
        padded = row + [""] * (len(headers) - len(row))
        rows.append(dict(zip(headers, padded)))
    return rows


def validate_row(row: Dict[str, str]) -> Tuple[Optional[Dict[str, Any]], List[str]]:
    """Returns (cleaned data, errors)."""
    errors: List[str] = []
    data: Dict[str, Any] = {}

    for field, label in (("customer_name", "Customer name"), ("customer_address", "Customer address"), ("city", "City")):
        value = (row.get(field) or "").strip()
        if not value:
            errors.append(f"{label} is required")
        data[field] = value

    phone = normalize_phone(row.get("customer_phone") or "")
    if not phone:
        errors.append("Customer phone is required")
    elif not PHONE_PATTERN.match(phone):
        errors.append("Phone must be 11 digits starting with 03")
    data["customer_phone"] = phone

    try:
        amount = Decimal((row.get("total_amount") or "").replace(",", ""))
        if amount < 0:
            errors.append("Total amount cannot be negative")
        data["total_amount"] = amount
    except InvalidOperation:
        errors.append("Total amount must be a valid number")

    items_cell = row.get("items") or ""
    if not items_cell.strip():
        errors.append("Items are required")
    else:
        try:
            data["items"] = parse_items(items_cell)
        except (ValueError, TypeError) as e:
            errors.append(str(e))

    email = (row.get("customer_email") or "").strip()
    if email:
        if EMAIL_PATTERN.match(email):
            data["customer_email"] = email
        else:
            errors.append("Invalid email format")

    courier = (row.get("courier") or "").strip().lower()
    if courier:
        if courier in VALID_COURIERS:
            data["courier"] = courier.upper()
        else:
            errors.append(f"Courier must be one of: {', '.join(sorted(VALID_COURIERS))}")

    tags = (row.get("tags") or "").strip()
    data["tags"] = [t.strip() for t in tags.split(",") if t.strip()] if tags else []
    data["notes"] = (row.get("notes") or "").strip() or None
    data["order_number"] = (row.get("order_number") or "").strip() or None

    return (None if errors else data), errors


class OrderImportService:
    """Create orders from an uploaded spreadsheet."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orders = OrderService(db)

    async def _order_number_taken(self, order_number: str) -> bool:
        result = await self.db.execute(select(Order.id).where(Order.order_number == order_number).limit(1))
        return result.scalar_one_or_none() is not None

    async def import_orders(self, content: bytes, filename: str, user_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        rows = read_rows(content, filename)
        created = 0
        failed = 0
        errors: List[str] = []
        order_numbers: List[str] = []

        for row_number, row in enumerate(rows, start=2):
            data, row_errors = validate_row(row)
            if data and data["order_number"] and await self._order_number_taken(data["order_number"]):
                row_errors.append(f"Order number {data['order_number']} already exists")
                data = None
            if not data:
                failed += 1
                errors.append(f"Row {row_number}: {'; '.join(row_errors)}")
                continue

            try:
                payload = OrderCreate(
                    customer_name=data["customer_name"],
                    customer_phone=data["customer_phone"],
                    customer_email=data.get("customer_email"),
                    customer_address=data["customer_address"],
                    city=data["city"],
                    total_amount=data["total_amount"],
                    notes=data["notes"],
                    tags=data["tags"],
                    items=[
                        OrderItemCreate(item_name=i["name"], quantity=i["quantity"], price=i["price"])
                        for i in data["items"]
                    ],
                )
                async with self.db.begin_nested():
                    order = await self.orders.create_order(
                        payload,
                        created_by=user_id,
                        order_number=data["order_number"],
                        source="import",
                    )
                    if data.get("courier"):
                        order.courier = data["courier"]
                created += 1
                order_numbers.append(order.order_number)
            except ValidationError as e:
                failed += 1
                errors.append(f"Row {row_number}: {e.errors()[0].get('msg', 'invalid data')}")
            except (ServiceError, SQLAlchemyError) as e:
                failed += 1
                errors.append(f"Row {row_number}: {getattr(e, 'message', str(e))}")

        await self.db.flush()
        logger.info("Order import %s: %d created, %d failed", filename, created, failed)
        return {"created": created, "failed": failed, "errors": errors, "order_numbers": order_numbers}
