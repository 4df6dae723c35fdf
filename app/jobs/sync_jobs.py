"""Shopify sync queue processing."""
import logging
from typing import Any, Dict

from app.database import get_db_session
from app.jobs.registry import job
from app.services.sync_queue_service import SyncQueueService

logger = logging.getLogger(__name__)


@job("process_sync_queue")
async def process_sync_queue() -> Dict[str, Any]:
    """Push pending and failed sync items to Shopify."""
    async with get_db_session() as session:
        result = await SyncQueueService(session).process_queue()
    # Per-item results are already in the sync log; keep the job summary short
    return {k: v for k, v in result.items() if k != "results"}
