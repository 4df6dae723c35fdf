"""Operational alert checks: stuck orders, overdue returns, low stock."""
import logging
from typing import Any, Dict

from app.database import get_db_session
from app.jobs.registry import job
from app.services.alert_service import AlertService

logger = logging.getLogger(__name__)


@job("check_stuck_orders")
async def check_stuck_orders() -> Dict[str, Any]:
    async with get_db_session() as session:
        return await AlertService(session).check_stuck_orders()


@job("check_overdue_returns")
async def check_overdue_returns() -> Dict[str, Any]:
    async with get_db_session() as session:
        return await AlertService(session).check_overdue_returns()


@job("check_low_stock")
async def check_low_stock() -> Dict[str, Any]:
    async with get_db_session() as session:
        return await AlertService(session).check_low_stock()
