from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # App Settings
    APP_NAME: str = "Retail Ops Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ]

    # Shopify Admin API
    SHOPIFY_STORE_URL: str = ""  # e.g. "https://my-store.myshopify.com"
    SHOPIFY_ACCESS_TOKEN: str = ""
    SHOPIFY_API_VERSION: str = "2024-01"
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_LOCATION_ID: Optional[str] = None  # Location used for inventory level updates
    SHOPIFY_TIMEOUT_SECONDS: float = 30.0

    # Courier Integration
    COURIER_BOOKING_MODE: str = "live"  # "live" or "mock"
    COURIER_TIMEOUT_SECONDS: float = 30.0
    COURIER_MAX_REDIRECTS: int = 5
    COURIER_RETRY_BACKOFF_MINUTES: list[int] = [5, 15, 60, 240, 1440]
    COURIER_QUEUE_MAX_RETRIES: int = 5
    COURIER_API_ENABLED_CODES: list[str] = ["POSTEX", "LEOPARD", "TCS"]
    # Courier API secrets, looked up as <CODE>_API_KEY (e.g. POSTEX_API_KEY)
    COURIER_API_KEYS: dict[str, str] = {}
    POSTEX_PICKUP_ADDRESS_CODE: Optional[str] = None

    # Default pickup address used by the booking retry job
    PICKUP_NAME: str = "Warehouse"
    PICKUP_PHONE: str = ""
    PICKUP_ADDRESS: str = ""
    PICKUP_CITY: str = "Karachi"

    # Background Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    SYNC_QUEUE_INTERVAL_MINUTES: int = 5
    COURIER_RETRY_INTERVAL_MINUTES: int = 5
    TRACKING_UPDATE_INTERVAL_MINUTES: int = 60
    ALERT_CHECK_INTERVAL_MINUTES: int = 60

    # Sync Queue
    SYNC_QUEUE_BATCH_SIZE: int = 10
    SYNC_QUEUE_MAX_RETRIES: int = 5

    # Alert thresholds
    STUCK_ORDER_DAYS: int = 10
    STUCK_ORDER_HIGH_SEVERITY_DAYS: int = 15
    RETURN_OVERDUE_DAYS: int = 7
    RETURN_CRITICAL_DAYS: int = 14
    LOW_STOCK_NOTIFY_WINDOW_HOURS: int = 24
    DEFAULT_REORDER_LEVEL: int = 10

    # First admin, created on startup when the users table is empty
    FIRST_ADMIN_EMAIL: Optional[str] = None
    FIRST_ADMIN_PASSWORD: Optional[str] = None

    @field_validator('CORS_ORIGINS', 'COURIER_API_ENABLED_CODES', mode='before')
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    @property
    def shopify_configured(self) -> bool:
        return bool(self.SHOPIFY_STORE_URL and self.SHOPIFY_ACCESS_TOKEN)

    def get_courier_api_key(self, courier_code: str) -> Optional[str]:
        """Resolve a courier secret stored as <CODE>_API_KEY."""
        return self.COURIER_API_KEYS.get(f"{courier_code.upper()}_API_KEY")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
