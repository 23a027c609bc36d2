"""Sliding window rate limiter backed by the persisted request log"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from craiverse_gateway.config import settings
from craiverse_gateway.domain.models import RateLimitResult
from craiverse_gateway.domain.rate_limits import RATE_LIMITS, evaluate
from craiverse_gateway.infrastructure.database.repositories import RateLimitRepository
from craiverse_gateway.infrastructure.observability.metrics import rate_limit_counter
from craiverse_gateway.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-identifier admission control over minute, hour, and day windows"""

    def __init__(
        self,
        db: Session,
        fail_open: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = RateLimitRepository(db)
        self.fail_open = settings.rate_limit_fail_open if fail_open is None else fail_open
        self.retention = timedelta(hours=settings.rate_limit_retention_hours)
        self._clock = clock

    def check_rate_limit(self, identifier: str, category: str) -> RateLimitResult:
        """
        Admit or reject one request; admitted requests are logged and committed.

        On store errors the request is admitted when the policy is fail-open
        (the default), otherwise the error propagates.
        """
        limits = RATE_LIMITS[category]
        now = self._clock()

        try:
            counts = self.repo.window_counts(identifier, category, now)
            result = evaluate(limits, counts, now)
            if result.allowed:
                self.repo.record(identifier, category, now)
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            if not self.fail_open:
                raise
            logger.error(
                f"Rate limit check failed, allowing request: {e}",
                extra={"identifier": identifier, "category": category},
            )
            rate_limit_counter.labels(category=category, decision="fail_open").inc()
            return RateLimitResult(allowed=True, remaining=limits.requests_per_minute, reset_seconds=60)

        rate_limit_counter.labels(category=category, decision="allowed" if result.allowed else "rejected").inc()
        return result

    def purge_expired(self) -> int:
        """Delete log rows older than the retention window (24h); returns rows removed"""
        return self.repo.delete_older_than(self._clock() - self.retention)
