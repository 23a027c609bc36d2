"""Dependency injection for FastAPI endpoints"""

import logging
from typing import Callable
from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from craiverse_gateway.domain.exceptions import RateLimitExceededError
from craiverse_gateway.domain.models import RateLimitResult
from craiverse_gateway.domain.rate_limits import get_rate_limit_category
from craiverse_gateway.infrastructure.clients.circuit_breaker import CircuitBreakerRegistry
from craiverse_gateway.infrastructure.clients.paypal import PayPalClient
from craiverse_gateway.infrastructure.clients.stripe import StripeClient
from craiverse_gateway.infrastructure.database.session import SessionLocal, get_db
from craiverse_gateway.services.rate_limiter import RateLimiter


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_client_identifier(request: Request) -> str:
    """Rate limit identity: first forwarded hop, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request session"""
    return SessionLocal


def get_circuit_breakers(request: Request) -> CircuitBreakerRegistry:
    """Process-local breaker registry owned by the application"""
    return request.app.state.circuit_breakers


def get_stripe_client(breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers)) -> StripeClient:
    """Provide Stripe client instance"""
    return StripeClient(breakers)


def get_paypal_client(breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers)) -> PayPalClient:
    """Provide PayPal client instance"""
    return PayPalClient(breakers)


def purge_rate_limit_log(session_factory: Callable[[], Session]) -> None:
    """Best-effort removal of request log rows past the retention window"""
    db = session_factory()
    try:
        deleted = RateLimiter(db).purge_expired()
        db.commit()
        if deleted:
            logging.debug(f"Purged {deleted} rate limit entries")
    except SQLAlchemyError as e:
        db.rollback()
        logging.warning(f"Rate limit cleanup failed: {e}")
    finally:
        db.close()


def enforce_rate_limit(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> RateLimitResult:
    """
    Admit the request under its path category or raise RateLimitExceededError.

    The decision is kept on request.state so middleware can emit the
    X-RateLimit-* headers.
    """
    category = get_rate_limit_category(request.url.path)
    result = RateLimiter(db).check_rate_limit(get_client_identifier(request), category)
    request.state.rate_limit = result

    if not result.allowed:
        logging.warning(
            "Rate limit exceeded",
            extra={"request_id": get_request_id(request), "category": category},
        )
        raise RateLimitExceededError(category, result.remaining, result.reset_seconds)

    background_tasks.add_task(purge_rate_limit_log, session_factory)
    return result
