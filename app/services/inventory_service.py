"""
Outlet inventory management.

Every write keeps available_quantity = quantity - reserved_quantity, records a
stock movement, queues a realtime event and queues a Shopify stock update for
linked products.
"""
import logging
import uuid
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InventoryError, NotFoundError
from app.core.realtime import manager as realtime
from app.core.utils import utcnow
from app.models.inventory import Inventory, StockMovement, MovementType
from app.models.outlet import Outlet
from app.models.product import Product


logger = logging.getLogger(__name__)


class InventoryService:
    """Stock levels per product and outlet."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_inventory(self, product_id: uuid.UUID, outlet_id: uuid.UUID) -> Optional[Inventory]:
        result = await self.db.execute(
            select(Inventory).where(
                Inventory.product_id == product_id,
                Inventory.outlet_id == outlet_id,
            )
        )
        return result.scalar_one_or_none()

    async def _require_inventory(self, product_id: uuid.UUID, outlet_id: uuid.UUID) -> Inventory:
        inventory = await self.get_inventory(product_id, outlet_id)
        if not inventory:
            raise NotFoundError(
                "Inventory record not found",
                error_code="INVENTORY_NOT_FOUND",
                details={"product_id": str(product_id), "outlet_id": str(outlet_id)},
            )
        return inventory

    async def _get_or_create(self, product_id: uuid.UUID, outlet_id: uuid.UUID) -> Inventory:
        inventory = await self.get_inventory(product_id, outlet_id)
        if inventory:
            return inventory

        product = await self.db.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found", error_code="PRODUCT_NOT_FOUND")
        outlet = await self.db.get(Outlet, outlet_id)
        if not outlet:
            raise NotFoundError("Outlet not found", error_code="OUTLET_NOT_FOUND")

        inventory = Inventory(
            product_id=product_id,
            outlet_id=outlet_id,
            quantity=0,
            reserved_quantity=0,
            available_quantity=0,
        )
        self.db.add(inventory)
        await self.db.flush()
        return inventory

    async def _record_movement(
        self,
        inventory: Inventory,
        movement_type: str,
        quantity: int,
        reference_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> StockMovement:
        movement = StockMovement(
            product_id=inventory.product_id,
            outlet_id=inventory.outlet_id,
            movement_type=movement_type,
            quantity=quantity,
            reference_id=reference_id,
            notes=notes,
            created_by=user_id,
        )
        self.db.add(movement)
        return movement

    async def _after_write(self, inventory: Inventory) -> None:
        inventory.recompute_available()
        inventory.updated_at = utcnow()
        await self.db.flush()

        product = await self.db.get(Product, inventory.product_id)
        if product and product.shopify_inventory_item_id:
            from app.services.sync_queue_service import SyncQueueService
            await SyncQueueService(self.db).enqueue_inventory_update(inventory)

        realtime.queue(self.db, "inventory", "UPDATE", {
            "id": inventory.id,
            "product_id": inventory.product_id,
            "outlet_id": inventory.outlet_id,
            "quantity": inventory.quantity,
            "reserved_quantity": inventory.reserved_quantity,
            "available_quantity": inventory.available_quantity,
        })

    # ==================== STOCK OPERATIONS ====================

    async def check_availability(self, product_id: uuid.UUID, outlet_id: uuid.UUID, quantity: int) -> Dict[str, Any]:
        inventory = await self.get_inventory(product_id, outlet_id)
        available_quantity = inventory.available_quantity if inventory else 0
        return {
            "available": available_quantity >= quantity,
            "available_quantity": available_quantity,
        }

    async def reserve_stock(self, product_id: uuid.UUID, outlet_id: uuid.UUID, quantity: int) -> Inventory:
        inventory = await self._require_inventory(product_id, outlet_id)
        if inventory.available_quantity < quantity:
            raise InventoryError(
                "Insufficient stock available",
                error_code="INSUFFICIENT_STOCK",
                details={"requested": quantity, "available": inventory.available_quantity},
            )
        inventory.reserved_quantity = (inventory.reserved_quantity or 0) + quantity
        await self._after_write(inventory)
        return inventory

    async def release_stock(self, product_id: uuid.UUID, outlet_id: uuid.UUID, quantity: int) -> Inventory:
        inventory = await self._require_inventory(product_id, outlet_id)
        inventory.reserved_quantity = max(0, (inventory.reserved_quantity or 0) - quantity)
        await self._after_write(inventory)
        return inventory

    async def record_sale(
        self,
        product_id: uuid.UUID,
        outlet_id: uuid.UUID,
        quantity: int,
        reference_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
        release_reserved: bool = True,
    ) -> Inventory:
        """
        Deduct sold units. Reserved units are consumed first when release_reserved,
        otherwise only unreserved stock can be sold.

        Raises:
            InventoryError: INSUFFICIENT_STOCK
        """
        inventory = await self._require_inventory(product_id, outlet_id)
        sellable = inventory.quantity if release_reserved else inventory.available_quantity
        if quantity > sellable:
            raise InventoryError(
                "Insufficient stock available",
                error_code="INSUFFICIENT_STOCK",
                details={"requested": quantity, "available": sellable},
            )
        inventory.quantity = inventory.quantity - quantity
        if release_reserved:
            inventory.reserved_quantity = max(0, (inventory.reserved_quantity or 0) - quantity)
        await self._record_movement(inventory, MovementType.SALE.value, -quantity, reference_id, user_id=user_id)
        await self._after_write(inventory)
        return inventory

    async def process_return(
        self,
        product_id: uuid.UUID,
        outlet_id: uuid.UUID,
        quantity: int,
        reference_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Inventory:
        """Put returned units back on the shelf, creating the stock row if needed."""
        inventory = await self._get_or_create(product_id, outlet_id)
        inventory.quantity = inventory.quantity + quantity
        inventory.last_restocked_at = utcnow()
        await self._record_movement(inventory, MovementType.RETURN.value, quantity, reference_id, notes, user_id)
        await self._after_write(inventory)
        return inventory

    async def adjust_stock(
        self,
        product_id: uuid.UUID,
        outlet_id: uuid.UUID,
        quantity_change: int,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Inventory:
        inventory = await self._get_or_create(product_id, outlet_id)
        new_quantity = inventory.quantity + quantity_change
        if new_quantity < 0:
            raise InventoryError(
                f"Adjustment would result in negative stock ({new_quantity})",
                error_code="NEGATIVE_STOCK",
                details={"current": inventory.quantity, "change": quantity_change},
            )
        inventory.quantity = new_quantity
        if quantity_change > 0:
            inventory.last_restocked_at = utcnow()

        movement_notes = f"{reason}: {notes}" if reason and notes else (reason or notes)
        await self._record_movement(
            inventory, MovementType.ADJUSTMENT.value, quantity_change, notes=movement_notes, user_id=user_id
        )
        await self._after_write(inventory)
        return inventory

    async def transfer_stock(
        self,
        product_id: uuid.UUID,
        from_outlet_id: uuid.UUID,
        to_outlet_id: uuid.UUID,
        quantity: int,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Tuple[Inventory, Inventory]:
        if from_outlet_id == to_outlet_id:
            raise InventoryError("Source and destination outlets must differ", error_code="INVALID_TRANSFER")

        transfer_ref = uuid.uuid4()
        source = await self.ship_transfer(product_id, from_outlet_id, quantity, transfer_ref, notes, user_id)
        destination = await self.receive_transfer(product_id, to_outlet_id, quantity, transfer_ref, notes, user_id)
        return source, destination

    async def ship_transfer(
        self,
        product_id: uuid.UUID,
        outlet_id: uuid.UUID,
        quantity: int,
        reference_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Inventory:
        """Take unreserved units out of an outlet for a transfer."""
        inventory = await self._require_inventory(product_id, outlet_id)
        if inventory.available_quantity < quantity:
            raise InventoryError(
                "Insufficient stock available",
                error_code="INSUFFICIENT_STOCK",
                details={
                    "product_id": str(product_id),
                    "requested": quantity,
                    "available": inventory.available_quantity,
                },
            )
        inventory.quantity -= quantity
        await self._record_movement(inventory, MovementType.TRANSFER_OUT.value, -quantity, reference_id, notes, user_id)
        await self._after_write(inventory)
        return inventory

    async def receive_transfer(
        self,
        product_id: uuid.UUID,
        outlet_id: uuid.UUID,
        quantity: int,
        reference_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> Inventory:
        inventory = await self._get_or_create(product_id, outlet_id)
        inventory.quantity += quantity
        inventory.last_restocked_at = utcnow()
        await self._record_movement(inventory, MovementType.TRANSFER_IN.value, quantity, reference_id, notes, user_id)
        await self._after_write(inventory)
        return inventory

    # ==================== QUERIES ====================

    async def get_inventory_list(
        self,
        outlet_id: Optional[uuid.UUID] = None,
        product_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
        low_stock_only: bool = False,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tuple[Inventory, Product]], int]:
        filters = []
        if outlet_id:
            filters.append(Inventory.outlet_id == outlet_id)
        if product_id:
            filters.append(Inventory.product_id == product_id)
        if search:
            filters.append(Product.name.ilike(f"%{search}%") | Product.sku.ilike(f"%{search}%"))
        if low_stock_only:
            filters.append(Inventory.available_quantity <= Product.reorder_level)

        base = select(Inventory, Product).join(Product, Product.id == Inventory.product_id)
        count_stmt = select(func.count(Inventory.id)).join(Product, Product.id == Inventory.product_id)
        if filters:
            base = base.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(
            base.order_by(Product.name.asc()).offset(skip).limit(limit)
        )
        return [(inv, product) for inv, product in result.all()], total

    async def get_low_stock(self, outlet_id: Optional[uuid.UUID] = None) -> List[Tuple[Inventory, Product]]:
        items, _ = await self.get_inventory_list(outlet_id=outlet_id, low_stock_only=True, limit=1000)
        return items

    async def get_movements(
        self,
        product_id: Optional[uuid.UUID] = None,
        outlet_id: Optional[uuid.UUID] = None,
        movement_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockMovement], int]:
        filters = []
        if product_id:
            filters.append(StockMovement.product_id == product_id)
        if outlet_id:
            filters.append(StockMovement.outlet_id == outlet_id)
        if movement_type:
            filters.append(StockMovement.movement_type == movement_type)

        stmt = select(StockMovement)
        count_stmt = select(func.count(StockMovement.id))
        if filters:
            stmt = stmt.where(and_(*filters))
            count_stmt = count_stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(
            stmt.order_by(StockMovement.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total
