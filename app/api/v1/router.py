from fastapi import APIRouter

from app.api.v1.endpoints import (
    auth,
    orders,
    catalog,
    inventory,
    returns,
    pos,
    couriers,
    shopify,
    notifications,
    activity_logs,
    alerts,
    exports,
    realtime,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Authentication ====================
api_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"]
)

# ==================== Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Catalog & Inventory ====================
api_router.include_router(
    catalog.router,
    tags=["Catalog"]
)
api_router.include_router(
    inventory.router,
    prefix="/inventory",
    tags=["Inventory"]
)

# ==================== Returns ====================
api_router.include_router(
    returns.router,
    prefix="/returns",
    tags=["Returns"]
)

# ==================== POS ====================
api_router.include_router(
    pos.router,
    prefix="/pos",
    tags=["POS"]
)

# ==================== Couriers & Dispatch ====================
api_router.include_router(
    couriers.router,
    prefix="/couriers",
    tags=["Couriers"]
)

# ==================== Shopify ====================
api_router.include_router(
    shopify.router,
    prefix="/shopify",
    tags=["Shopify"]
)

# ==================== Notifications, Activity & Alerts ====================
api_router.include_router(
    notifications.router,
    prefix="/notifications",
    tags=["Notifications"]
)
api_router.include_router(
    activity_logs.router,
    prefix="/activity-logs",
    tags=["Activity Logs"]
)
api_router.include_router(
    alerts.router,
    prefix="/alerts",
    tags=["Alerts"]
)

# ==================== Import/Export ====================
api_router.include_router(
    exports.router,
    prefix="/exports",
    tags=["Exports"]
)

# ==================== Realtime ====================
api_router.include_router(
    realtime.router,
    prefix="/realtime",
    tags=["Realtime"]
)
