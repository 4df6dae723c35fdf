"""
Shopify sync queue.

Local changes that Shopify must see (tracking numbers, tags, stock levels)
are written to sync_queue and pushed in small batches by a scheduled job.
Failed items are retried on later runs until SYNC_QUEUE_MAX_RETRIES.
"""
import logging
import uuid
from typing import Optional, Dict, Any, List

from sqlalchemy import select, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import ServiceError
from app.core.utils import utcnow
from app.models.inventory import Inventory
from app.models.order import Order
from app.models.product import Product
from app.models.sync_queue import (
    SyncQueueItem,
    ShopifySyncLog,
    SyncEntityType,
    SyncAction,
    SyncDirection,
    SyncStatus,
)
from app.services.shopify_service import ShopifyClient


logger = logging.getLogger(__name__)


class SyncQueueService:
    """Enqueue and process Shopify sync items."""

    def __init__(self, db: AsyncSession, client: Optional[ShopifyClient] = None):
        self.db = db
        self.client = client or ShopifyClient()

    # ==================== ENQUEUE ====================

    async def enqueue(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        direction: str = SyncDirection.TO_SHOPIFY.value,
    ) -> SyncQueueItem:
        """
        Queue a sync item. A pending item for the same entity and action is
        refreshed instead of duplicated.
        """
        result = await self.db.execute(
            select(SyncQueueItem).where(
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.entity_id == entity_id,
                SyncQueueItem.action == action,
                SyncQueueItem.direction == direction,
                SyncQueueItem.status == SyncStatus.PENDING.value,
            ).limit(1)
        )
        item = result.scalar_one_or_none()
        if item:
            item.payload = payload or {}
            item.updated_at = utcnow()
        else:
            item = SyncQueueItem(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                direction=direction,
                payload=payload or {},
                status=SyncStatus.PENDING.value,
                retry_count=0,
            )
            self.db.add(item)
        await self.db.flush()
        return item

    async def enqueue_order_update(self, order: Order) -> SyncQueueItem:
        return await self.enqueue(
            SyncEntityType.ORDER.value,
            order.id,
            SyncAction.UPDATE.value,
            payload={
                "status": order.status,
                "tracking_id": order.tracking_id,
                "courier": order.courier,
            },
        )

    async def enqueue_inventory_update(self, inventory: Inventory) -> SyncQueueItem:
        return await self.enqueue(
            SyncEntityType.INVENTORY.value,
            inventory.id,
            SyncAction.UPDATE.value,
            payload={"available_quantity": inventory.available_quantity},
        )

    # ==================== PROCESSING ====================

    async def _sync_order(self, item: SyncQueueItem) -> Dict[str, Any]:
        order = (await self.db.execute(select(Order).where(Order.id == item.entity_id))).scalar_one_or_none()
        if not order:
            raise ServiceError("Order not found", error_code="ORDER_NOT_FOUND", status_code=404)
        if not order.shopify_order_id:
            raise ServiceError("Order is not linked to Shopify", error_code="NOT_SHOPIFY_ORDER")

        if item.action == SyncAction.CREATE.value:
            # Orders originate in Shopify; a create is a re-pull of the remote copy
            remote = await self.client.get_order(order.shopify_order_id)
            result = {"action": "fetched", "shopify_order_id": remote.get("id")}
        elif order.tracking_id:
            fulfillment = await self.client.update_tracking(
                order.shopify_order_id,
                tracking_number=order.tracking_id,
                tracking_company=order.courier,
            )
            result = {"action": "update_tracking", "fulfillment_id": fulfillment.get("id")}
        else:
            await self.client.update_tags(order.shopify_order_id, list(order.tags or []))
            result = {"action": "update_tags"}

        order.synced_to_shopify = True
        order.last_shopify_sync = utcnow()
        return result

    async def _sync_inventory(self, item: SyncQueueItem) -> Dict[str, Any]:
        row = (await self.db.execute(
            select(Inventory, Product)
            .join(Product, Product.id == Inventory.product_id)
            .where(Inventory.id == item.entity_id)
        )).first()
        if not row:
            raise ServiceError("Inventory record not found", error_code="INVENTORY_NOT_FOUND", status_code=404)
        inventory, product = row
        if not product.shopify_inventory_item_id:
            raise ServiceError("Product is not linked to Shopify", error_code="NOT_SHOPIFY_PRODUCT")

        level = await self.client.set_inventory_level(
            product.shopify_inventory_item_id,
            inventory.available_quantity,
        )
        return {"action": "set_inventory_level", "available": level.get("available", inventory.available_quantity)}

    async def process_queue(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Push the oldest pending/failed items to Shopify.

        Returns:
            {processed, failed, total, results}
        """
        batch_size = batch_size or settings.SYNC_QUEUE_BATCH_SIZE
        sync_log = ShopifySyncLog(sync_type="sync_queue", status="running", started_at=utcnow())
        self.db.add(sync_log)

        stmt = (
            select(SyncQueueItem)
            .where(
                or_(
                    SyncQueueItem.status == SyncStatus.PENDING.value,
                    SyncQueueItem.status == SyncStatus.FAILED.value,
                ),
                SyncQueueItem.retry_count < settings.SYNC_QUEUE_MAX_RETRIES,
                SyncQueueItem.direction == SyncDirection.TO_SHOPIFY.value,
            )
            .order_by(SyncQueueItem.created_at.asc())
            .limit(batch_size)
        )
        items = list((await self.db.execute(stmt)).scalars().all())

        for item in items:
            item.status = SyncStatus.PROCESSING.value
        await self.db.flush()

        processed = 0
        failed = 0
        results: List[Dict[str, Any]] = []

        for item in items:
            try:
                if item.entity_type == SyncEntityType.ORDER.value:
                    outcome = await self._sync_order(item)
                elif item.entity_type == SyncEntityType.INVENTORY.value:
                    outcome = await self._sync_inventory(item)
                else:
                    raise ServiceError(f"Unsupported entity type: {item.entity_type}", error_code="UNSUPPORTED_ENTITY")

                item.status = SyncStatus.COMPLETED.value
                item.processed_at = utcnow()
                item.error_message = None
                processed += 1
                results.append({"id": str(item.id), "success": True, **outcome})
            except ServiceError as e:
                item.status = SyncStatus.FAILED.value
                item.retry_count = (item.retry_count or 0) + 1
                item.error_message = e.message
                failed += 1
                results.append({"id": str(item.id), "success": False, "error": e.message})
                logger.warning("Sync item %s (%s) failed: %s", item.id, item.entity_type, e.message)

        sync_log.records_processed = processed
        sync_log.records_failed = failed
        sync_log.status = "success" if failed == 0 else ("partial" if processed else "failed")
        sync_log.completed_at = utcnow()
        sync_log.details = {"total": len(items)}
        await self.db.flush()

        logger.info("Sync queue run: %d processed, %d failed of %d", processed, failed, len(items))
        return {"processed": processed, "failed": failed, "total": len(items), "results": results}

    async def get_queue_stats(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(SyncQueueItem.status, func.count(SyncQueueItem.id)).group_by(SyncQueueItem.status)
        )
        stats = {s.value: 0 for s in SyncStatus}
        for status, count in result.all():
            stats[status] = count
        return stats
