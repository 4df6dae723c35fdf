"""
Spreadsheet exports for orders, returns and dispatches.

CSV output is UTF-8 with a BOM so Excel opens it with the right encoding;
Excel workbooks are built with openpyxl.
"""
import csv
import io
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils import as_utc
from app.models.dispatch import Dispatch
from app.models.order import Order
from app.models.return_order import Return
from app.models.user import User
from app.services.order_service import build_order_filters


logger = logging.getLogger(__name__)


DATE_FORMAT = "%d/%m/%Y %H:%M"
EXPORT_ROW_LIMIT = 50000

# (header, column width)
ORDER_COLUMNS: List[Tuple[str, int]] = [
    ("S.No", 6), ("Order Number", 15), ("Status", 12), ("Customer Name", 25),
    ("Phone", 15), ("Email", 25), ("Address", 40), ("City", 15),
    ("Order Total", 12), ("Shipping Charges", 12), ("Courier", 12), ("Tracking ID", 18),
    ("Items", 50), ("Item Count", 10), ("Tags", 30), ("Order Date", 18),
    ("Booked At", 18), ("Dispatched At", 18), ("Delivered At", 18), ("Notes", 40),
]

RETURN_COLUMNS: List[Tuple[str, int]] = [
    ("S.No", 6), ("Tracking ID", 18), ("Order Number", 15), ("Courier", 12),
    ("Return Status", 12), ("Customer Name", 25), ("Phone", 15), ("Email", 25),
    ("Address", 40), ("City", 15), ("Order Total", 12), ("Return Worth", 12),
    ("Shipping Charges", 12), ("Order Items", 50), ("Tags", 25), ("Return Reason", 20),
    ("Condition", 15), ("Order Created", 18), ("Booked At", 18), ("Dispatched At", 18),
    ("Delivered At", 18), ("Return Created", 18), ("Received At", 18), ("Received By", 20),
    ("Order Notes", 30), ("Return Notes", 30),
]

DISPATCH_COLUMNS: List[Tuple[str, int]] = [
    ("S.No", 6), ("Tracking ID", 18), ("Order Number", 15), ("Courier", 12),
    ("Customer Name", 25), ("Phone", 15), ("Address", 40), ("City", 15),
    ("Order Total", 12), ("Order Status", 12), ("Dispatch Status", 14), ("Dispatch Date", 18),
    ("Dispatched By", 20), ("Notes", 30),
]


def format_date(value: Optional[datetime]) -> str:
    if not value:
        return ""
    return as_utc(value).strftime(DATE_FORMAT)


def format_items(order: Order, separator: str = " | ") -> str:
    """``name xQ @P`` for each line item."""
    if order.order_items:
        items = [(i.item_name, i.quantity, i.price) for i in order.order_items]
    else:
        items = [(i.get("name"), i.get("quantity"), i.get("price")) for i in (order.items or [])]
    return separator.join(f"{name} x{qty} @{price}" for name, qty, price in items)


def format_tags(tags: Optional[Sequence[str]]) -> str:
    return ", ".join(tags or [])


def to_csv(headers: Sequence[str], rows: List[List[Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8-sig")


def to_xlsx(sheet_title: str, columns: List[Tuple[str, int]], rows: List[List[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title
    sheet.append([header for header, _ in columns])
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(row)
    for index, (_, width) in enumerate(columns, start=1):
        sheet.column_dimensions[get_column_letter(index)].width = width
    sheet.freeze_panes = "A2"

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def export_filename(prefix: str, extension: str) -> str:
    return f"{prefix}-export-{datetime.now().strftime('%Y-%m-%d-%H%M')}.{extension}"


class ExportService:
    """Builds export files from the current data."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _user_names(self, user_ids: List[Optional[uuid.UUID]]) -> Dict[uuid.UUID, str]:
        ids = {uid for uid in user_ids if uid}
        if not ids:
            return {}
        result = await self.db.execute(select(User.id, User.full_name).where(User.id.in_(ids)))
        return {uid: name for uid, name in result.all()}

    # ==================== ORDERS ====================

    async def order_rows(
        self,
        status: Optional[str] = None,
        courier: Optional[str] = None,
        city: Optional[str] = None,
        search: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[List[Any]]:
        filters = build_order_filters(status, courier, city, search, date_from, date_to)
        stmt = select(Order)
        if filters:
            stmt = stmt.where(and_(*filters))
        result = await self.db.execute(stmt.order_by(Order.created_at.desc()).limit(EXPORT_ROW_LIMIT))

        rows = []
        for index, order in enumerate(result.scalars().all(), start=1):
            rows.append([
                index,
                order.order_number,
                (order.status or "").upper(),
                order.customer_name or "",
                order.customer_phone or "",
                order.customer_email or "",
                order.customer_address or "",
                order.city or "",
                float(order.total_amount or 0),
                float(order.shipping_charges or 0),
                (order.courier or "").upper(),
                order.tracking_id or "",
                format_items(order, separator="; "),
                order.item_count,
                format_tags(order.tags),
                format_date(order.created_at),
                format_date(order.booked_at),
                format_date(order.dispatched_at),
                format_date(order.delivered_at),
                order.notes or "",
            ])
        return rows

    async def export_orders_csv(self, **filters) -> bytes:
        rows = await self.order_rows(**filters)
        logger.info("Exporting %d orders to CSV", len(rows))
        return to_csv([h for h, _ in ORDER_COLUMNS], rows)

    async def export_orders_xlsx(self, **filters) -> bytes:
        rows = await self.order_rows(**filters)
        logger.info("Exporting %d orders to Excel", len(rows))
        return to_xlsx("Orders", ORDER_COLUMNS, rows)

    # ==================== RETURNS ====================

    async def return_rows(
        self,
        return_status: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[List[Any]]:
        filters = []
        if return_status:
            filters.append(Return.return_status == return_status)
        if date_from:
            filters.append(Return.created_at >= date_from)
        if date_to:
            filters.append(Return.created_at <= date_to)

        stmt = select(Return, Order).join(Order, Order.id == Return.order_id)
        if filters:
            stmt = stmt.where(and_(*filters))
        result = await self.db.execute(stmt.order_by(Return.created_at.desc()).limit(EXPORT_ROW_LIMIT))
        records = result.all()
        names = await self._user_names([r.received_by for r, _ in records])

        rows = []
        for index, (record, order) in enumerate(records, start=1):
            rows.append([
                index,
                record.tracking_id or "",
                order.order_number,
                (order.courier or "").upper(),
                (record.return_status or "").upper(),
                order.customer_name or "",
                order.customer_phone or "",
                order.customer_email or "",
                order.customer_address or "",
                order.city or "",
                float(order.total_amount or 0),
                float(record.worth or 0),
                float(order.shipping_charges or 0),
                format_items(order),
                format_tags(order.tags),
                record.reason or "",
                record.condition or "",
                format_date(order.created_at),
                format_date(order.booked_at),
                format_date(order.dispatched_at),
                format_date(order.delivered_at),
                format_date(record.created_at),
                format_date(record.received_at),
                names.get(record.received_by, ""),
                order.notes or "",
                record.notes or "",
            ])
        return rows

    async def export_returns_xlsx(self, **filters) -> bytes:
        rows = await self.return_rows(**filters)
        logger.info("Exporting %d returns to Excel", len(rows))
        return to_xlsx("Returns", RETURN_COLUMNS, rows)

    # ==================== DISPATCHES ====================

    async def dispatch_rows(
        self,
        courier: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[List[Any]]:
        filters = []
        if courier:
            filters.append(Dispatch.courier == courier.upper())
        if date_from:
            filters.append(Dispatch.dispatch_date >= date_from)
        if date_to:
            filters.append(Dispatch.dispatch_date <= date_to)

        stmt = select(Dispatch, Order).join(Order, Order.id == Dispatch.order_id)
        if filters:
            stmt = stmt.where(and_(*filters))
        result = await self.db.execute(stmt.order_by(Dispatch.dispatch_date.desc()).limit(EXPORT_ROW_LIMIT))
        records = result.all()
        names = await self._user_names([d.dispatched_by for d, _ in records])

        rows = []
        for index, (dispatch, order) in enumerate(records, start=1):
            rows.append([
                index,
                dispatch.tracking_id or "",
                order.order_number,
                (dispatch.courier or "").upper(),
                order.customer_name or "",
                order.customer_phone or "",
                order.customer_address or "",
                order.city or "",
                float(order.total_amount or 0),
                (order.status or "").upper(),
                (dispatch.status or "").upper(),
                format_date(dispatch.dispatch_date),
                names.get(dispatch.dispatched_by, ""),
                dispatch.notes or "",
            ])
        return rows

    async def export_dispatches_csv(self, **filters) -> bytes:
        rows = await self.dispatch_rows(**filters)
        logger.info("Exporting %d dispatches to CSV", len(rows))
        return to_csv([h for h, _ in DISPATCH_COLUMNS], rows)
