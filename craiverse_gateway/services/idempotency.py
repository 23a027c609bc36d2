"""Idempotency store for retried financial mutations"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from craiverse_gateway.config import settings
from craiverse_gateway.domain.exceptions import IdempotencyKeyReusedError, IdempotencyUnavailableError
from craiverse_gateway.domain.idempotency import REUSED_KEY_BODY
from craiverse_gateway.domain.models import CachedResponse, IdempotencyCheck
from craiverse_gateway.infrastructure.database.repositories import IdempotencyRepository
from craiverse_gateway.infrastructure.observability.metrics import idempotency_counter
from craiverse_gateway.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class IdempotencyStore:
    """Caches (status, body) per idempotency key and operation type"""

    def __init__(
        self,
        db: Session,
        ttl_hours: Optional[int] = None,
        fail_open: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = IdempotencyRepository(db)
        self.db = db
        self.ttl = timedelta(hours=ttl_hours or settings.idempotency_ttl_hours)
        self.fail_open = settings.idempotency_fail_open if fail_open is None else fail_open
        self._clock = clock

    def check(self, key: str, operation_type: str, request_hash: str) -> IdempotencyCheck:
        """
        Look up a prior response for key + operation.

        A live record with a different request hash yields a 422
        IDEMPOTENCY_KEY_REUSED response instead of a replay.

        Raises:
            IdempotencyUnavailableError: Store unreadable and policy is fail-closed
        """
        if not key:
            return IdempotencyCheck(exists=False)

        try:
            record = self.repo.get_live(key, operation_type, self._clock())
        except SQLAlchemyError as e:
            self.db.rollback()
            idempotency_counter.labels(outcome="unavailable").inc()
            if self.fail_open:
                logger.error(f"Idempotency check failed, proceeding: {e}", extra={"operation_type": operation_type})
                return IdempotencyCheck(exists=False)
            raise IdempotencyUnavailableError("Idempotency store unavailable") from e

        if record is None:
            idempotency_counter.labels(outcome="miss").inc()
            return IdempotencyCheck(exists=False)

        if record.request_hash != request_hash:
            idempotency_counter.labels(outcome="conflict").inc()
            return IdempotencyCheck(
                exists=True,
                cached_response=CachedResponse(status=IdempotencyKeyReusedError.status_code, body=dict(REUSED_KEY_BODY)),
            )

        idempotency_counter.labels(outcome="replayed").inc()
        return IdempotencyCheck(
            exists=True,
            cached_response=CachedResponse(status=record.response_status, body=record.response_body),
        )

    def store(self, key: str, operation_type: str, request_hash: str, status: int, body: Any) -> bool:
        """
        Record the response for key + operation in the caller's transaction.

        Responses with status >= 500 are not cached so the caller can retry.

        Returns:
            True when written, False when skipped or an earlier writer holds the key
        """
        if not key or status >= 500:
            return False

        now = self._clock()
        written = self.repo.insert(
            key=key,
            operation_type=operation_type,
            request_hash=request_hash,
            status=status,
            body=body,
            now=now,
            expires_at=now + self.ttl,
        )
        if not written:
            logger.warning(
                "Idempotency key stored concurrently; keeping first response",
                extra={"operation_type": operation_type},
            )
        return written

    def purge_expired(self) -> int:
        """Delete expired records; returns how many were removed"""
        return self.repo.delete_expired(self._clock())
