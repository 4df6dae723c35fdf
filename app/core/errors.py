"""Service-level exceptions.

Services raise these instead of HTTPException so the same code paths can run
from request handlers and background jobs. The application exception handler
renders them as ``{"error", "error_code", "details"}`` JSON bodies.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for business rule and integration failures."""

    status_code: int = 400
    error_code: str = "SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class OrderStatusError(ServiceError):
    error_code = "ORDER_STATUS_ERROR"


class InventoryError(ServiceError):
    error_code = "INVENTORY_ERROR"


class ReturnProcessingError(ServiceError):
    error_code = "RETURN_ERROR"


class POSError(ServiceError):
    error_code = "POS_ERROR"


class CourierError(ServiceError):
    """Courier API or booking failure."""

    error_code = "COURIER_ERROR"

    RETRYABLE_CODES = {
        "NETWORK_DNS_ERROR",
        "NETWORK_ERROR",
        "NETWORK_TIMEOUT",
        "TOO_MANY_REDIRECTS",
    }

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        courier: Optional[str] = None,
    ):
        super().__init__(message, error_code, status_code, details)
        self.courier = courier

    @property
    def is_retryable(self) -> bool:
        return self.error_code in self.RETRYABLE_CODES


class ShopifyError(ServiceError):
    status_code = 502
    error_code = "SHOPIFY_ERROR"


class ImportValidationError(ServiceError):
    error_code = "IMPORT_VALIDATION_ERROR"


class StockTransferError(ServiceError):
    error_code = "TRANSFER_ERROR"
