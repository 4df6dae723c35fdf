import re
import secrets
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_number(prefix: str) -> str:
    """Generate a human readable document number, e.g. ORD-20240115-4F2A."""
    date_part = utcnow().strftime("%Y%m%d")
    return f"{prefix}-{date_part}-{secrets.token_hex(2).upper()}"


def digits_only(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return re.sub(r"\D", "", value)
