"""FastAPI application factory"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from craiverse_gateway.api.middleware import MetricsMiddleware, RateLimitHeadersMiddleware, RequestIDMiddleware
from craiverse_gateway.api.routes import credits, cron, webhooks
from craiverse_gateway.domain.exceptions import RateLimitExceededError
from craiverse_gateway.infrastructure.clients.circuit_breaker import CircuitBreakerRegistry
from craiverse_gateway.infrastructure.observability.logging import setup_logging
from craiverse_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": "Too many requests. Please try again later.",
            "retry_after": exc.reset_seconds,
        },
        headers={
            "X-RateLimit-Remaining": str(exc.remaining),
            "X-RateLimit-Reset": str(exc.reset_seconds),
            "Retry-After": str(exc.reset_seconds),
        },
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="CRAIverse Gateway",
        description="Credit ledger, payment webhooks, and admission control",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # One breaker registry per process, shared by all provider clients
    app.state.circuit_breakers = CircuitBreakerRegistry()

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(credits.router, prefix="/api", tags=["credits"])
    app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
    app.include_router(cron.router, prefix="/api", tags=["cron"])

    return app


app = create_app()
