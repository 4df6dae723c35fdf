"""Products and outlets referenced by inventory, POS and orders."""
from typing import Optional, List
import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, func, or_

from app.api.deps import DB, CurrentUser, require_roles
from app.core.errors import NotFoundError, ServiceError
from app.models.outlet import Outlet
from app.models.product import Product
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse
from app.schemas.product import (
    ProductCreate,
    ProductUpdate,
    ProductResponse,
    OutletCreate,
    OutletResponse,
)
from app.services.activity_log_service import ActivityLogService


router = APIRouter()

admins = Depends(require_roles(AppRole.ADMIN, AppRole.WAREHOUSE_MANAGER))


@router.get("/products", response_model=PaginatedResponse[ProductResponse])
async def list_products(
    db: DB,
    current_user: CurrentUser,
    search: Optional[str] = None,
    active_only: bool = True,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=500),
):
    stmt = select(Product)
    count_stmt = select(func.count(Product.id))
    if active_only:
        stmt = stmt.where(Product.is_active == True)  # noqa: E712
        count_stmt = count_stmt.where(Product.is_active == True)  # noqa: E712
    if search:
        search_filter = or_(
            Product.name.ilike(f"%{search}%"),
            Product.sku.ilike(f"%{search}%"),
            Product.barcode.ilike(f"%{search}%"),
        )
        stmt = stmt.where(search_filter)
        count_stmt = count_stmt.where(search_filter)

    total = (await db.execute(count_stmt)).scalar() or 0
    result = await db.execute(stmt.order_by(Product.name.asc()).offset((page - 1) * size).limit(size))
    return PaginatedResponse[ProductResponse].build(
        [ProductResponse.model_validate(p) for p in result.scalars().all()], total, page, size
    )


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED, dependencies=[admins])
async def create_product(data: ProductCreate, db: DB, current_user: CurrentUser):
    if data.sku:
        existing = await db.execute(select(Product.id).where(Product.sku == data.sku))
        if existing.scalar_one_or_none():
            raise ServiceError(f"SKU {data.sku} already exists", error_code="SKU_EXISTS", status_code=409)

    product = Product(**data.model_dump())
    db.add(product)
    await db.flush()
    await ActivityLogService(db).log("product_created", "product", product.id, current_user.id, {"sku": product.sku})
    return ProductResponse.model_validate(product)


@router.patch("/products/{product_id}", response_model=ProductResponse, dependencies=[admins])
async def update_product(product_id: uuid.UUID, data: ProductUpdate, db: DB, current_user: CurrentUser):
    product = await db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", error_code="PRODUCT_NOT_FOUND")

    update_data = data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(product, field, value)
    await db.flush()
    await ActivityLogService(db).log(
        "product_updated", "product", product.id, current_user.id, {"fields": sorted(update_data.keys())}
    )
    return ProductResponse.model_validate(product)


@router.get("/outlets", response_model=List[OutletResponse])
async def list_outlets(db: DB, current_user: CurrentUser):
    result = await db.execute(select(Outlet).where(Outlet.is_active == True).order_by(Outlet.name))  # noqa: E712
    return [OutletResponse.model_validate(o) for o in result.scalars().all()]


@router.post(
    "/outlets",
    response_model=OutletResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(AppRole.ADMIN))],
)
async def create_outlet(data: OutletCreate, db: DB, current_user: CurrentUser):
    code = data.code.upper()
    existing = await db.execute(select(Outlet.id).where(Outlet.code == code))
    if existing.scalar_one_or_none():
        raise ServiceError(f"Outlet code {code} already exists", error_code="OUTLET_EXISTS", status_code=409)

    outlet = Outlet(**{**data.model_dump(), "code": code})
    db.add(outlet)
    await db.flush()
    return OutletResponse.model_validate(outlet)
