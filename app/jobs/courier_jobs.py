"""
Courier Jobs

- Retry courier bookings that failed with a retryable error
- Pull tracking updates for dispatched orders
"""
import logging
from typing import Any, Dict

from app.database import get_db_session
from app.jobs.registry import job
from app.services.courier_service import CourierService

logger = logging.getLogger(__name__)


@job("retry_failed_bookings")
async def retry_failed_bookings() -> Dict[str, Any]:
    async with get_db_session() as session:
        return await CourierService(session).retry_failed_bookings()


@job("scheduled_tracking_update")
async def scheduled_tracking_update() -> Dict[str, Any]:
    """
    Track dispatched orders with API-enabled couriers.

    Delivered and returned parcels move the order through its lifecycle.
    """
    async with get_db_session() as session:
        return await CourierService(session).scheduled_tracking_update()
