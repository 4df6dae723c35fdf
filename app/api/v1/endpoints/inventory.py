from typing import Optional, List
import uuid

from fastapi import APIRouter, Depends, Query

from app.api.deps import DB, CurrentUser, require_roles
from app.models.inventory import Inventory, MovementType
from app.models.product import Product
from app.models.stock_transfer import StockTransferStatus
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse
from app.schemas.inventory import (
    StockReserveRequest,
    StockAdjustRequest,
    StockTransferRequest,
    AvailabilityResponse,
    InventoryResponse,
    InventoryListItem,
    StockMovementResponse,
    TransferCreateRequest,
    TransferApproveRequest,
    TransferRejectRequest,
    TransferReceiveRequest,
    TransferResponse,
    TransferItemResponse,
    TransferReceiveResponse,
)
from app.services.inventory_service import InventoryService
from app.services.stock_transfer_service import StockTransferService


router = APIRouter()

stock_managers = Depends(require_roles(AppRole.ADMIN, AppRole.WAREHOUSE_MANAGER))


def _list_item(inventory: Inventory, product: Product) -> InventoryListItem:
    return InventoryListItem(
        **InventoryResponse.model_validate(inventory).model_dump(),
        product_name=product.name,
        sku=product.sku,
        reorder_level=product.reorder_level,
        is_low_stock=inventory.available_quantity <= product.reorder_level,
    )


@router.get("", response_model=PaginatedResponse[InventoryListItem])
async def list_inventory(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=500),
    outlet_id: Optional[uuid.UUID] = None,
    product_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    low_stock_only: bool = False,
):
    """Stock levels per product and outlet."""
    rows, total = await InventoryService(db).get_inventory_list(
        outlet_id=outlet_id,
        product_id=product_id,
        search=search,
        low_stock_only=low_stock_only,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[InventoryListItem].build(
        [_list_item(inv, product) for inv, product in rows], total, page, size
    )


@router.get("/low-stock", response_model=List[InventoryListItem])
async def get_low_stock(db: DB, current_user: CurrentUser, outlet_id: Optional[uuid.UUID] = None):
    rows = await InventoryService(db).get_low_stock(outlet_id)
    return [_list_item(inv, product) for inv, product in rows]


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    db: DB,
    current_user: CurrentUser,
    product_id: uuid.UUID,
    outlet_id: uuid.UUID,
    quantity: int = Query(1, ge=1),
):
    return AvailabilityResponse(**await InventoryService(db).check_availability(product_id, outlet_id, quantity))


@router.post("/reserve", response_model=InventoryResponse)
async def reserve_stock(data: StockReserveRequest, db: DB, current_user: CurrentUser):
    inventory = await InventoryService(db).reserve_stock(data.product_id, data.outlet_id, data.quantity)
    return InventoryResponse.model_validate(inventory)


@router.post("/release", response_model=InventoryResponse)
async def release_stock(data: StockReserveRequest, db: DB, current_user: CurrentUser):
    inventory = await InventoryService(db).release_stock(data.product_id, data.outlet_id, data.quantity)
    return InventoryResponse.model_validate(inventory)


@router.post("/adjust", response_model=InventoryResponse, dependencies=[stock_managers])
async def adjust_stock(data: StockAdjustRequest, db: DB, current_user: CurrentUser):
    """Manual stock correction; positive adds stock, negative removes it."""
    inventory = await InventoryService(db).adjust_stock(
        data.product_id,
        data.outlet_id,
        data.quantity_change,
        reason=data.reason.value if data.reason else None,
        notes=data.notes,
        user_id=current_user.id,
    )
    return InventoryResponse.model_validate(inventory)


@router.post("/transfer", response_model=List[InventoryResponse], dependencies=[stock_managers])
async def transfer_stock(data: StockTransferRequest, db: DB, current_user: CurrentUser):
    """Move stock between outlets. Returns the source and destination rows."""
    source, destination = await InventoryService(db).transfer_stock(
        data.product_id,
        data.from_outlet_id,
        data.to_outlet_id,
        data.quantity,
        notes=data.notes,
        user_id=current_user.id,
    )
    return [InventoryResponse.model_validate(source), InventoryResponse.model_validate(destination)]


@router.get("/movements", response_model=PaginatedResponse[StockMovementResponse])
async def list_movements(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=500),
    product_id: Optional[uuid.UUID] = None,
    outlet_id: Optional[uuid.UUID] = None,
    movement_type: Optional[MovementType] = None,
):
    movements, total = await InventoryService(db).get_movements(
        product_id=product_id,
        outlet_id=outlet_id,
        movement_type=movement_type.value if movement_type else None,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[StockMovementResponse].build(
        [StockMovementResponse.model_validate(m) for m in movements], total, page, size
    )


# ==================== TRANSFER REQUESTS ====================

@router.get("/transfers", response_model=PaginatedResponse[TransferResponse])
async def list_transfers(
    db: DB,
    current_user: CurrentUser,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    status: Optional[StockTransferStatus] = None,
    outlet_id: Optional[uuid.UUID] = Query(None, description="Matches either end of the transfer"),
):
    transfers, total = await StockTransferService(db).get_transfers(
        status=status.value if status else None,
        outlet_id=outlet_id,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[TransferResponse].build(
        [TransferResponse.model_validate(t) for t in transfers], total, page, size
    )


@router.post("/transfers", response_model=TransferResponse, status_code=201)
async def create_transfer(data: TransferCreateRequest, db: DB, current_user: CurrentUser):
    """Request stock from another outlet. Managers are notified."""
    transfer = await StockTransferService(db).create_transfer(
        data.from_outlet_id,
        data.to_outlet_id,
        [item.model_dump() for item in data.items],
        user_id=current_user.id,
        notes=data.notes,
    )
    return TransferResponse.model_validate(transfer)


@router.get("/transfers/{transfer_id}", response_model=TransferResponse)
async def get_transfer(transfer_id: uuid.UUID, db: DB, current_user: CurrentUser):
    return TransferResponse.model_validate(await StockTransferService(db).get_transfer(transfer_id))


@router.post("/transfers/{transfer_id}/approve", response_model=TransferResponse, dependencies=[stock_managers])
async def approve_transfer(transfer_id: uuid.UUID, data: TransferApproveRequest, db: DB, current_user: CurrentUser):
    transfer = await StockTransferService(db).approve_transfer(
        transfer_id,
        current_user.id,
        {item.item_id: item.quantity_approved for item in data.items},
    )
    return TransferResponse.model_validate(transfer)


@router.post("/transfers/{transfer_id}/reject", response_model=TransferResponse, dependencies=[stock_managers])
async def reject_transfer(transfer_id: uuid.UUID, data: TransferRejectRequest, db: DB, current_user: CurrentUser):
    transfer = await StockTransferService(db).reject_transfer(transfer_id, data.reason, current_user.id)
    return TransferResponse.model_validate(transfer)


@router.post("/transfers/{transfer_id}/dispatch", response_model=TransferResponse, dependencies=[stock_managers])
async def dispatch_transfer(transfer_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Take the approved quantities out of the source outlet."""
    transfer = await StockTransferService(db).dispatch_transfer(transfer_id, current_user.id)
    return TransferResponse.model_validate(transfer)


@router.post("/transfers/{transfer_id}/receive", response_model=TransferReceiveResponse)
async def receive_transfer(transfer_id: uuid.UUID, data: TransferReceiveRequest, db: DB, current_user: CurrentUser):
    """Book counted units into the destination outlet and record shortfalls."""
    transfer, variances = await StockTransferService(db).receive_transfer(
        transfer_id,
        current_user.id,
        [item.model_dump() for item in data.items],
    )
    return TransferReceiveResponse(
        transfer=TransferResponse.model_validate(transfer),
        variance_count=len(variances),
        variances=[TransferItemResponse.model_validate(v) for v in variances],
    )


@router.post("/transfers/{transfer_id}/cancel", response_model=TransferResponse)
async def cancel_transfer(transfer_id: uuid.UUID, db: DB, current_user: CurrentUser):
    """Requester or manager only. Dispatched stock returns to the source outlet."""
    transfer = await StockTransferService(db).cancel_transfer(transfer_id, current_user)
    return TransferResponse.model_validate(transfer)
