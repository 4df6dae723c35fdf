"""
Shopify webhooks and sync administration.

Webhook routes are unauthenticated; every request must carry a valid
X-Shopify-Hmac-Sha256 signature over the raw body.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from app.api.deps import DB, CurrentUser, require_roles
from app.models.user import AppRole
from app.services.shopify_service import ShopifyService, ShopifyClient
from app.services.sync_queue_service import SyncQueueService


logger = logging.getLogger(__name__)

router = APIRouter()

admins = Depends(require_roles(AppRole.ADMIN))


async def _verified_payload(request: Request, hmac_header: Optional[str]) -> Dict[str, Any] | JSONResponse:
    raw_body = await request.body()
    if not ShopifyService.verify_webhook(raw_body, hmac_header):
        logger.warning("Rejected Shopify webhook %s: invalid signature", request.url.path)
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})
    return payload


async def _upsert_order(request: Request, db: DB, hmac_header: Optional[str]):
    payload = await _verified_payload(request, hmac_header)
    if isinstance(payload, JSONResponse):
        return payload
    if not payload.get("id"):
        return JSONResponse(status_code=400, content={"error": "Missing order id"})

    order, created = await ShopifyService(db).upsert_order_from_webhook(payload)
    return {
        "success": True,
        "created": created,
        "order_id": str(order.id),
        "order_number": order.order_number,
    }


@router.post("/webhooks/orders/create")
async def orders_create_webhook(
    request: Request,
    db: DB,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
):
    return await _upsert_order(request, db, x_shopify_hmac_sha256)


@router.post("/webhooks/orders/updated")
async def orders_updated_webhook(
    request: Request,
    db: DB,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
):
    return await _upsert_order(request, db, x_shopify_hmac_sha256)


@router.post("/webhooks/orders/cancelled")
async def orders_cancelled_webhook(
    request: Request,
    db: DB,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
):
    """Cancel the local order; orders already with the courier are kept."""
    payload = await _verified_payload(request, x_shopify_hmac_sha256)
    if isinstance(payload, JSONResponse):
        return payload
    if not payload.get("id"):
        return JSONResponse(status_code=400, content={"error": "Missing order id"})

    order = await ShopifyService(db).cancel_order_from_webhook(payload)
    if not order:
        return {"success": True, "message": "Order not found"}
    return {"success": True, "order_id": str(order.id), "status": order.status}


@router.post("/webhooks/inventory_levels/update")
async def inventory_levels_webhook(
    request: Request,
    db: DB,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
):
    payload = await _verified_payload(request, x_shopify_hmac_sha256)
    if isinstance(payload, JSONResponse):
        return payload
    return await ShopifyService(db).record_inventory_webhook(payload)


# ==================== SYNC QUEUE ====================

@router.post("/sync-queue/process", dependencies=[admins])
async def process_sync_queue(
    db: DB,
    current_user: CurrentUser,
    batch_size: Optional[int] = Query(None, ge=1, le=100),
):
    """Push pending and failed sync items to Shopify now."""
    return await SyncQueueService(db).process_queue(batch_size)


@router.get("/sync-queue/stats")
async def get_sync_queue_stats(db: DB, current_user: CurrentUser):
    return await SyncQueueService(db).get_queue_stats()


@router.post("/test-connection", dependencies=[admins])
async def test_connection(current_user: CurrentUser):
    """Check the configured Admin API credentials against shop.json."""
    shop = await ShopifyClient().test_connection()
    return {"success": True, "shop": shop}
