from typing import Optional
from datetime import datetime

from fastapi import APIRouter, Query
from fastapi.responses import Response

from app.api.deps import DB, CurrentUser
from app.models.order import OrderStatus
from app.models.return_order import ReturnStatus
from app.services.export_service import ExportService, export_filename


router = APIRouter()

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _download(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/orders")
async def export_orders(
    db: DB,
    current_user: CurrentUser,
    format: str = Query("csv", pattern="^(csv|xlsx)$"),
    status: Optional[OrderStatus] = None,
    courier: Optional[str] = None,
    city: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """Orders as CSV (default) or Excel, with the same filters as the order list."""
    filters = dict(
        status=status.value if status else None,
        courier=courier,
        city=city,
        search=search,
        date_from=date_from,
        date_to=date_to,
    )
    service = ExportService(db)
    if format == "xlsx":
        return _download(await service.export_orders_xlsx(**filters), XLSX_MEDIA_TYPE, export_filename("orders", "xlsx"))
    return _download(await service.export_orders_csv(**filters), CSV_MEDIA_TYPE, export_filename("orders", "csv"))


@router.get("/returns")
async def export_returns(
    db: DB,
    current_user: CurrentUser,
    return_status: Optional[ReturnStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    content = await ExportService(db).export_returns_xlsx(
        return_status=return_status.value if return_status else None,
        date_from=date_from,
        date_to=date_to,
    )
    return _download(content, XLSX_MEDIA_TYPE, export_filename("returns", "xlsx"))


@router.get("/dispatches")
async def export_dispatches(
    db: DB,
    current_user: CurrentUser,
    courier: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    content = await ExportService(db).export_dispatches_csv(courier=courier, date_from=date_from, date_to=date_to)
    return _download(content, CSV_MEDIA_TYPE, export_filename("dispatches", "csv"))
