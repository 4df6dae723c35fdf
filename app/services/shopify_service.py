"""
Shopify Integration Service.

Handles all Shopify interactions:
- Webhook signature verification (X-Shopify-Hmac-Sha256)
- Order/customer upsert from order webhooks
- Admin REST API: fulfillment tracking, order tags, inventory levels

API Docs: https://shopify.dev/docs/api/admin-rest
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Tuple

import httpx
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import ShopifyError, OrderStatusError
from app.core.realtime import manager as realtime
from app.core.security import verify_shopify_hmac
from app.core.utils import digits_only, utcnow
from app.models.customer import Customer
from app.models.order import Order, OrderItem, OrderStatus
from app.models.product import Product
from app.models.sync_queue import ShopifySyncLog
from app.services.activity_log_service import ActivityLogService


logger = logging.getLogger(__name__)

# Larger values are Shopify placeholders for untracked items
MAX_REASONABLE_INVENTORY = 100000


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")


def split_tags(tags: Optional[str]) -> List[str]:
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


class ShopifyClient:
    """Thin async client for the Shopify Admin REST API."""

    def __init__(
        self,
        store_url: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        store_url = (store_url or settings.SHOPIFY_STORE_URL).rstrip("/")
        if store_url and not store_url.startswith("http"):
            store_url = f"https://{store_url}"
        self.store_url = store_url
        self.access_token = access_token or settings.SHOPIFY_ACCESS_TOKEN
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.transport = transport

    @property
    def base_url(self) -> str:
        return f"{self.store_url}/admin/api/{self.api_version}"

    @property
    def is_configured(self) -> bool:
        return bool(self.store_url and self.access_token)

    async def _make_request(
        self,
        method: str,
        path: str,
        params: Dict = None,
        body: Dict = None
    ) -> Dict:
        """Make authenticated request to the Admin API."""
        if not self.is_configured:
            raise ShopifyError("Shopify credentials not configured", error_code="SHOPIFY_NOT_CONFIGURED", status_code=400)

        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(
            timeout=settings.SHOPIFY_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            try:
                response = await client.request(
                    method=method,
                    url=f"{self.base_url}/{path}",
                    headers=headers,
                    params=params,
                    json=body,
                )
            except httpx.HTTPError as e:
                raise ShopifyError(f"Shopify request failed: {e}", error_code="SHOPIFY_NETWORK_ERROR")

        if response.status_code >= 400:
            raise ShopifyError(
                f"Shopify API error ({response.status_code}): {response.text[:500]}",
                error_code=f"SHOPIFY_HTTP_{response.status_code}",
                details={"response": response.text[:1000]},
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise ShopifyError(
                "Shopify returned a non-JSON response",
                error_code="SHOPIFY_INVALID_RESPONSE",
                details={"response": response.text[:500]},
            )
        if not isinstance(data, dict):
            raise ShopifyError("Unexpected Shopify response shape", error_code="SHOPIFY_INVALID_RESPONSE")
        return data

    async def test_connection(self) -> Dict[str, Any]:
        data = await self._make_request("GET", "shop.json")
        shop = data.get("shop", {})
        return {"name": shop.get("name"), "domain": shop.get("domain"), "plan": shop.get("plan_name")}

    async def get_order(self, shopify_order_id: str) -> Dict[str, Any]:
        data = await self._make_request("GET", f"orders/{shopify_order_id}.json")
        return data.get("order", {})

    async def update_tracking(
        self,
        shopify_order_id: str,
        tracking_number: str,
        tracking_company: Optional[str] = None,
        tracking_url: Optional[str] = None,
        notify_customer: bool = False,
    ) -> Dict[str, Any]:
        """Attach tracking to the order's fulfillment, creating one if needed."""
        existing = await self._make_request("GET", f"orders/{shopify_order_id}/fulfillments.json")
        fulfillments = existing.get("fulfillments", [])

        fulfillment: Dict[str, Any] = {
            "tracking_number": tracking_number,
            "notify_customer": notify_customer,
        }
        if tracking_company:
            fulfillment["tracking_company"] = tracking_company
        if tracking_url:
            fulfillment["tracking_url"] = tracking_url

        if fulfillments:
            fulfillment_id = fulfillments[0]["id"]
            fulfillment["id"] = fulfillment_id
            data = await self._make_request(
                "PUT",
                f"orders/{shopify_order_id}/fulfillments/{fulfillment_id}.json",
                body={"fulfillment": fulfillment},
            )
        else:
            if settings.SHOPIFY_LOCATION_ID:
                fulfillment["location_id"] = settings.SHOPIFY_LOCATION_ID
            data = await self._make_request(
                "POST",
                f"orders/{shopify_order_id}/fulfillments.json",
                body={"fulfillment": fulfillment},
            )
        return data.get("fulfillment", {})

    async def update_tags(self, shopify_order_id: str, tags: List[str]) -> Dict[str, Any]:
        data = await self._make_request(
            "PUT",
            f"orders/{shopify_order_id}.json",
            body={"order": {"id": shopify_order_id, "tags": ", ".join(tags)}},
        )
        return data.get("order", {})

    async def set_inventory_level(self, inventory_item_id: str, available: int, location_id: Optional[str] = None) -> Dict[str, Any]:
        location_id = location_id or settings.SHOPIFY_LOCATION_ID
        if not location_id:
            raise ShopifyError("SHOPIFY_LOCATION_ID not configured", error_code="CONFIGURATION_REQUIRED", status_code=400)
        data = await self._make_request(
            "POST",
            "inventory_levels/set.json",
            body={
                "location_id": location_id,
                "inventory_item_id": inventory_item_id,
                "available": available,
            },
        )
        return data.get("inventory_level", {})


class ShopifyService:
    """Applies Shopify webhooks to local customers and orders."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.activity = ActivityLogService(db)

    @staticmethod
    def verify_webhook(raw_body: bytes, hmac_header: Optional[str]) -> bool:
        return verify_shopify_hmac(raw_body, hmac_header, settings.SHOPIFY_WEBHOOK_SECRET)

    # ==================== CUSTOMERS ====================

    async def upsert_customer(self, payload: Dict[str, Any]) -> Optional[Customer]:
        shopify_customer = payload.get("customer") or {}
        shopify_customer_id = shopify_customer.get("id")
        if not shopify_customer_id:
            return None

        shipping = payload.get("shipping_address") or {}
        name = (
            f"{shopify_customer.get('first_name') or ''} {shopify_customer.get('last_name') or ''}".strip()
            or shipping.get("name")
            or "Unknown"
        )
        phone = digits_only(shopify_customer.get("phone") or shipping.get("phone") or payload.get("phone"))

        result = await self.db.execute(
            select(Customer).where(Customer.shopify_customer_id == str(shopify_customer_id))
        )
        customer = result.scalar_one_or_none()
        if not customer:
            customer = Customer(shopify_customer_id=str(shopify_customer_id), name=name)
            self.db.add(customer)

        customer.name = name
        customer.email = shopify_customer.get("email") or payload.get("email") or customer.email
        if phone:
            customer.phone = phone
            customer.phone_last_5 = phone[-5:]
        if shipping.get("address1"):
            customer.address = shipping.get("address1")
            customer.city = shipping.get("city")

        await self.db.flush()
        return customer

    # ==================== ORDERS ====================

    async def _match_product(self, line_item: Dict[str, Any]) -> Optional[Product]:
        conditions = []
        if line_item.get("variant_id"):
            conditions.append(Product.shopify_variant_id == str(line_item["variant_id"]))
        if line_item.get("sku"):
            conditions.append(Product.sku == line_item["sku"])
        if not conditions:
            return None
        result = await self.db.execute(select(Product).where(or_(*conditions)).limit(1))
        return result.scalar_one_or_none()

    async def upsert_order_from_webhook(self, payload: Dict[str, Any]) -> Tuple[Order, bool]:
        """
        Create or update an order from an orders/create or orders/updated payload.

        Returns:
            (order, created)
        """
        shopify_order_id = str(payload["id"])
        customer = await self.upsert_customer(payload)
        shipping = payload.get("shipping_address") or {}

        result = await self.db.execute(select(Order).where(Order.shopify_order_id == shopify_order_id))
        order = result.scalar_one_or_none()
        created = order is None

        address = ", ".join(p for p in [shipping.get("address1"), shipping.get("address2")] if p)
        customer_name = (
            shipping.get("name")
            or (customer.name if customer else None)
            or payload.get("email")
            or "Unknown"
        )

        line_items = payload.get("line_items") or []
        items_snapshot = []
        for li in line_items:
            items_snapshot.append({
                "name": li.get("name") or li.get("title") or "Item",
                "quantity": int(li.get("quantity") or 1),
                "price": str(_to_decimal(li.get("price"))),
                "sku": li.get("sku"),
                "shopify_line_item_id": str(li["id"]) if li.get("id") else None,
            })

        if created:
            order = Order(
                shopify_order_id=shopify_order_id,
                order_number=f"SHOP-{payload.get('order_number')}",
                status=(
                    OrderStatus.DELIVERED.value
                    if payload.get("fulfillment_status") == "fulfilled"
                    else OrderStatus.PENDING.value
                ),
                customer_name=customer_name,
                order_items=[],
            )
            self.db.add(order)

        order.shopify_order_number = str(payload.get("order_number") or payload.get("name") or "")
        order.customer_id = customer.id if customer else order.customer_id
        order.customer_name = customer_name
        order.customer_email = payload.get("email") or (customer.email if customer else None)
        order.customer_phone = digits_only(shipping.get("phone") or payload.get("phone")) or (customer.phone if customer else None)
        order.customer_address = address or order.customer_address
        order.city = shipping.get("city") or order.city
        order.total_amount = _to_decimal(payload.get("total_price"))
        shipping_lines = payload.get("shipping_lines") or []
        order.shipping_charges = sum((_to_decimal(s.get("price")) for s in shipping_lines), Decimal("0"))
        order.tags = split_tags(payload.get("tags"))
        order.notes = payload.get("note")
        order.items = items_snapshot
        order.synced_to_shopify = True
        order.last_shopify_sync = utcnow()

        if created:
            for snapshot, li in zip(items_snapshot, line_items):
                product = await self._match_product(li)
                order.order_items.append(OrderItem(
                    product_id=product.id if product else None,
                    item_name=snapshot["name"],
                    sku=snapshot["sku"],
                    quantity=snapshot["quantity"],
                    price=_to_decimal(snapshot["price"]),
                    shopify_line_item_id=snapshot["shopify_line_item_id"],
                ))
            if customer:
                customer.total_orders = (customer.total_orders or 0) + 1

        await self.db.flush()

        await self.activity.log(
            action="shopify_order_created" if created else "shopify_order_updated",
            entity_type="order",
            entity_id=order.id,
            details={"shopify_order_id": shopify_order_id, "order_number": order.order_number},
        )
        realtime.queue(self.db, "orders", "INSERT" if created else "UPDATE", {
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
        })
        logger.info("Shopify order %s %s", order.order_number, "created" if created else "updated")
        return order, created

    async def cancel_order_from_webhook(self, payload: Dict[str, Any]) -> Optional[Order]:
        """Apply orders/cancelled. Orders already with the courier are left untouched."""
        from app.services.order_status_service import OrderStatusService

        result = await self.db.execute(select(Order).where(Order.shopify_order_id == str(payload["id"])))
        order = result.scalar_one_or_none()
        if not order:
            logger.info("Cancelled Shopify order %s not found locally", payload.get("id"))
            return None

        try:
            return await OrderStatusService(self.db).update_order_status(
                order.id,
                OrderStatus.CANCELLED.value,
                notes=payload.get("cancel_reason"),
            )
        except OrderStatusError as e:
            logger.warning("Ignoring Shopify cancellation for %s: %s", order.order_number, e.message)
            return order

    async def record_inventory_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Acknowledge inventory_levels/update.

        Local stock is the source of truth, so Shopify levels are only logged
        against the matching product, never applied.
        """
        inventory_item_id = str(payload.get("inventory_item_id") or "")
        available = payload.get("available") or 0
        now = utcnow()

        if available > MAX_REASONABLE_INVENTORY:
            logger.warning("Skipping inventory webhook for item %s: unreasonable value %s", inventory_item_id, available)
            self.db.add(ShopifySyncLog(
                sync_type="inventory_update_webhook",
                status="skipped",
                details={"shopify_inventory_item_id": inventory_item_id, "available": available},
                started_at=now,
                completed_at=now,
            ))
            await self.db.flush()
            return {"success": True, "skipped": True, "message": "Skipped - unreasonable inventory value"}

        product = (await self.db.execute(
            select(Product).where(Product.shopify_inventory_item_id == inventory_item_id).limit(1)
        )).scalar_one_or_none()
        if not product:
            logger.info("No product for Shopify inventory item %s", inventory_item_id)
            return {"success": True, "synced": False, "message": "Product not found"}

        self.db.add(ShopifySyncLog(
            sync_type="inventory_update_webhook",
            status="success",
            records_processed=1,
            details={
                "product_id": str(product.id),
                "sku": product.sku,
                "shopify_inventory_item_id": inventory_item_id,
                "available": available,
            },
            started_at=now,
            completed_at=now,
        ))
        await self.db.flush()
        logger.info("Shopify inventory for %s reported as %s", product.sku or product.name, available)
        return {"success": True, "synced": True, "product_id": str(product.id), "available": available}
