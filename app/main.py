from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, func, text

from app.config import settings
from app.api.v1.router import api_router
from app.core.errors import ServiceError
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


async def auto_seed_admin():
    """Create the first admin account when the users table is empty."""
    if not (settings.FIRST_ADMIN_EMAIL and settings.FIRST_ADMIN_PASSWORD):
        return

    from app.models.user import User, AppRole
    from app.services.auth_service import AuthService

    async with async_session_factory() as session:
        user_count = (await session.execute(select(func.count(User.id)))).scalar() or 0
        if user_count:
            logger.info("Found %d existing users. Skipping admin seed.", user_count)
            return

        await AuthService(session).register_user(
            email=settings.FIRST_ADMIN_EMAIL,
            password=settings.FIRST_ADMIN_PASSWORD,
            full_name="Administrator",
            roles=[AppRole.SUPER_ADMIN.value, AppRole.ADMIN.value],
        )
        await session.commit()
        logger.info("Created admin user %s", settings.FIRST_ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables and seed the first admin
    - Start background scheduler (unless disabled)
    """
    # Startup
    logger.info("Starting %s v%s", settings.APP_NAME, settings.APP_VERSION)
    await init_db()
    await auto_seed_admin()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()
        logger.info("Background scheduler started")

    yield

    # Shutdown
    if settings.SCHEDULER_ENABLED:
        shutdown_scheduler()
    logger.info("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Authentication", "description": "JWT-based authentication with access/refresh tokens"},
    {"name": "Orders", "description": "Order lifecycle, scanners, bulk actions and import"},
    {"name": "Catalog", "description": "Products and outlets"},
    {"name": "Inventory", "description": "Stock levels, movements, reservations and transfers"},
    {"name": "Returns", "description": "Return receiving, inspection and restocking"},
    {"name": "POS", "description": "Cashier sessions, sales, refunds and drawer reconciliation"},
    {"name": "Couriers", "description": "Courier accounts, booking, tracking and dispatch"},
    {"name": "Shopify", "description": "Webhooks and outbound sync queue"},
    {"name": "Notifications", "description": "In-app notifications"},
    {"name": "Activity Logs", "description": "Audit trail of user and system actions"},
    {"name": "Alerts", "description": "Automated operational alerts and scheduled jobs"},
    {"name": "Exports", "description": "CSV and Excel exports"},
    {"name": "Realtime", "description": "WebSocket change feed"},
]

FULL_API_DESCRIPTION = """
## Retail Ops API

Order operations backend for an online and in-store retailer.

| Module | Description |
|--------|-------------|
| **Orders** | Shopify and manual orders, status machine, scanners |
| **Inventory** | Per-outlet stock with reservations and transfers |
| **Couriers** | Booking, labels, tracking and retries |
| **Returns** | Receiving, inspection and restock |
| **POS** | In-store sales with cash drawer sessions |

### Authentication

All endpoints except `/shopify/webhooks/*` and `/health` require a JWT.
Include token in Authorization header: `Bearer <token>`

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Business rule failed |
| 401 | Unauthorized - Invalid/expired token |
| 403 | Forbidden - Insufficient permissions |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Duplicate resource |
| 422 | Unprocessable Entity - Validation or invalid transition |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
    swagger_ui_parameters={
        "deepLinking": True,
        "persistAuthorization": True,
        "filter": True,
    },
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    # Error responses skip the CORS middleware
    origin = request.headers.get("origin", "")
    if origin in settings.cors_origins_list or "*" in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Business rule and integration failures raised by services."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _with_cors(request, JSONResponse(status_code=exc.status_code, content=exc.to_dict()))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled errors. The traceback is only returned in debug mode."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    error_detail = {
        "error": str(exc) or "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    return _with_cors(request, JSONResponse(status_code=500, content=error_detail))


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
    }
