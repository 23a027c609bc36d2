"""Rate limit policy and sliding window evaluation

Counting happens against the persisted request log; this module holds the
per-category thresholds and the pure decision over window counts.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from craiverse_gateway.domain.models import RateLimitResult


@dataclass(frozen=True)
class CategoryLimits:
    """Thresholds for a route category"""

    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int


RATE_LIMITS: Dict[str, CategoryLimits] = {
    # AI endpoints - strictest
    "ai": CategoryLimits(requests_per_minute=10, requests_per_hour=100, requests_per_day=500),
    "payment": CategoryLimits(requests_per_minute=20, requests_per_hour=200, requests_per_day=1000),
    "api": CategoryLimits(requests_per_minute=60, requests_per_hour=1000, requests_per_day=10000),
    # Public pages - most permissive
    "public": CategoryLimits(requests_per_minute=120, requests_per_hour=3000, requests_per_day=50000),
}

MINUTE = timedelta(seconds=60)
HOUR = timedelta(seconds=3600)
DAY = timedelta(seconds=86400)


@dataclass
class WindowCounts:
    """Request counts strictly inside each sliding window, with the oldest entry per window"""

    minute: int
    hour: int
    day: int
    oldest_in_minute: Optional[datetime] = None
    oldest_in_hour: Optional[datetime] = None
    oldest_in_day: Optional[datetime] = None


def get_rate_limit_category(path: str) -> str:
    """Map a request path to its rate limit category"""
    if path.startswith("/api/ai") or path.startswith("/api/chat"):
        return "ai"
    if path.startswith("/api/stripe") or path.startswith("/api/paypal") or path.startswith("/api/checkout"):
        return "payment"
    if path.startswith("/api/"):
        return "api"
    return "public"


def seconds_until_clear(oldest: Optional[datetime], window: timedelta, now: datetime) -> int:
    """Seconds until the oldest entry leaves the window; never less than 1"""
    if oldest is None:
        return int(window.total_seconds())
    remaining = (oldest + window - now).total_seconds()
    return max(1, math.ceil(remaining))


def evaluate(limits: CategoryLimits, counts: WindowCounts, now: datetime) -> RateLimitResult:
    """
    Decide admission from window counts.

    Windows are checked minute, then hour, then day. A rejection reports how
    long until the window that tripped frees a slot.
    """
    if counts.minute >= limits.requests_per_minute:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_seconds=seconds_until_clear(counts.oldest_in_minute, MINUTE, now),
        )

    if counts.hour >= limits.requests_per_hour:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_seconds=seconds_until_clear(counts.oldest_in_hour, HOUR, now),
        )

    if counts.day >= limits.requests_per_day:
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_seconds=seconds_until_clear(counts.oldest_in_day, DAY, now),
        )

    return RateLimitResult(
        allowed=True,
        remaining=limits.requests_per_minute - counts.minute - 1,
        reset_seconds=int(MINUTE.total_seconds()),
    )
