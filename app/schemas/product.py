from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.outlet import OutletType
from app.schemas.base import BaseResponseSchema, BaseUpdateSchema


# ==================== PRODUCT SCHEMAS ====================

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    sku: Optional[str] = Field(None, max_length=100)
    barcode: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Decimal = Field(Decimal("0"), ge=0)
    cost: Optional[Decimal] = Field(None, ge=0)
    reorder_level: int = Field(10, ge=0)
    shopify_product_id: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    shopify_inventory_item_id: Optional[str] = None


class ProductUpdate(BaseUpdateSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    cost: Optional[Decimal] = Field(None, ge=0)
    reorder_level: Optional[int] = Field(None, ge=0)
    shopify_inventory_item_id: Optional[str] = None
    is_active: Optional[bool] = None


class ProductResponse(BaseResponseSchema):
    id: uuid.UUID
    name: str
    sku: Optional[str] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    price: Decimal
    cost: Optional[Decimal] = None
    reorder_level: int
    shopify_product_id: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    shopify_inventory_item_id: Optional[str] = None
    is_active: bool
    created_at: datetime


# ==================== OUTLET SCHEMAS ====================

class OutletCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., min_length=1, max_length=30)
    outlet_type: OutletType = Field(OutletType.RETAIL, validate_default=True)
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None


class OutletResponse(BaseResponseSchema):
    id: uuid.UUID
    name: str
    code: str
    outlet_type: str
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
