"""POST /api/cron/sweep - scheduled cleanup of expired idempotency and rate limit rows"""

import logging
import secrets
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from craiverse_gateway.api.schemas import SweepResponse
from craiverse_gateway.config import settings
from craiverse_gateway.infrastructure.database.session import get_db
from craiverse_gateway.services.idempotency import IdempotencyStore
from craiverse_gateway.services.rate_limiter import RateLimiter

router = APIRouter()


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Scheduler calls carry Authorization: Bearer <CRON_SECRET>"""
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/cron/sweep", response_model=SweepResponse, dependencies=[Depends(verify_cron_secret)])
def sweep(db: Session = Depends(get_db)):
    """Delete idempotency records past expiry and request log rows past retention"""
    try:
        idempotency_deleted = IdempotencyStore(db).purge_expired()
        rate_limit_deleted = RateLimiter(db).purge_expired()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Cleanup sweep failed: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    logging.info(
        "Cleanup sweep completed",
        extra={
            "step": "sweep",
            "idempotency_records_deleted": idempotency_deleted,
            "rate_limit_entries_deleted": rate_limit_deleted,
        },
    )
    return SweepResponse(
        idempotency_records_deleted=idempotency_deleted,
        rate_limit_entries_deleted=rate_limit_deleted,
    )
