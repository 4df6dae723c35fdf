# Services module
from app.services.auth_service import AuthService
from app.services.activity_log_service import ActivityLogService
from app.services.notification_service import NotificationService
from app.services.order_service import OrderService
from app.services.order_status_service import OrderStatusService
from app.services.inventory_service import InventoryService
from app.services.returns_service import ReturnsService
from app.services.pos_service import POSService
from app.services.courier_service import CourierService
from app.services.alert_service import AlertService

# Integrations
from app.services.shopify_service import ShopifyService
from app.services.sync_queue_service import SyncQueueService

# Import/Export
from app.services.export_service import ExportService
from app.services.order_import_service import OrderImportService

__all__ = [
    "AuthService",
    "ActivityLogService",
    "NotificationService",
    "OrderService",
    "OrderStatusService",
    "InventoryService",
    "ReturnsService",
    "POSService",
    "CourierService",
    "AlertService",
    # Integrations
    "ShopifyService",
    "SyncQueueService",
    # Import/Export
    "ExportService",
    "OrderImportService",
]
