"""UTC helpers shared by stores and services."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """Unix seconds (as sent by Stripe) to aware UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), timezone.utc)
