# Models module
from app.models.user import User, UserRole, AppRole
from app.models.outlet import Outlet, OutletType
from app.models.product import Product
from app.models.customer import Customer
from app.models.inventory import Inventory, StockMovement, LowStockNotification, MovementType, AdjustmentReason
from app.models.order import Order, OrderItem, OrderStatus
from app.models.dispatch import (
    Courier,
    Dispatch,
    CourierBookingAttempt,
    CourierBookingQueue,
    CourierAuthType,
    DispatchStatus,
    BookingAttemptStatus,
    BookingQueueStatus,
)
from app.models.return_order import Return, ReturnStatus
from app.models.activity_log import ActivityLog
from app.models.notifications import (
    Notification,
    AutomatedAlert,
    NotificationType,
    NotificationPriority,
    AlertSeverity,
)
from app.models.sync_queue import (
    SyncQueueItem,
    ShopifySyncLog,
    SyncEntityType,
    SyncAction,
    SyncDirection,
    SyncStatus,
)
from app.models.stock_transfer import StockTransfer, StockTransferItem, StockTransferStatus, VarianceSeverity
from app.models.pos import (
    POSSession,
    POSSale,
    POSSaleItem,
    POSTransaction,
    CashDrawerEvent,
    POSSessionStatus,
    POSPaymentMethod,
    CashDrawerEventType,
)

__all__ = [
    "User", "UserRole", "AppRole",
    "Outlet", "OutletType",
    "Product",
    "Customer",
    "Inventory", "StockMovement", "LowStockNotification", "MovementType", "AdjustmentReason",
    "Order", "OrderItem", "OrderStatus",
    "Courier", "Dispatch", "CourierBookingAttempt", "CourierBookingQueue",
    "CourierAuthType", "DispatchStatus", "BookingAttemptStatus", "BookingQueueStatus",
    "Return", "ReturnStatus",
    "ActivityLog",
    "Notification", "AutomatedAlert", "NotificationType", "NotificationPriority", "AlertSeverity",
    "SyncQueueItem", "ShopifySyncLog", "SyncEntityType", "SyncAction", "SyncDirection", "SyncStatus",
    "POSSession", "POSSale", "POSSaleItem", "POSTransaction", "CashDrawerEvent",
    "POSSessionStatus", "POSPaymentMethod", "CashDrawerEventType",
    "StockTransfer", "StockTransferItem", "StockTransferStatus", "VarianceSeverity",
]
