"""Timezone-aware time helpers"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop the offset (SQLite)"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def from_timestamp(seconds: Optional[int]) -> Optional[datetime]:
    """Convert a provider epoch-seconds field to an aware datetime"""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def from_isoformat(value: Optional[str]) -> Optional[datetime]:
    """Parse provider ISO-8601 timestamps, including a trailing Z"""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
