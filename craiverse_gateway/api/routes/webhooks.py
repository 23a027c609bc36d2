"""/api/webhooks - Stripe and PayPal event receivers"""

import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from craiverse_gateway.api.dependencies import get_paypal_client, get_request_id, get_stripe_client
from craiverse_gateway.api.schemas import WebhookReceipt
from craiverse_gateway.domain.exceptions import CircuitOpenError, ExternalServiceError, SignatureVerificationError
from craiverse_gateway.infrastructure.clients.paypal import VERIFICATION_HEADERS, PayPalClient
from craiverse_gateway.infrastructure.clients.stripe import StripeClient
from craiverse_gateway.infrastructure.database.session import get_db
from craiverse_gateway.infrastructure.observability.logging import log_webhook
from craiverse_gateway.infrastructure.observability.metrics import webhook_event_counter
from craiverse_gateway.services.webhooks import PayPalWebhookProcessor, StripeWebhookProcessor, WebhookProcessor

# Provider deliveries bypass the per-client rate limit
router = APIRouter()


def _reject(provider: str, event_type: str, detail: str) -> HTTPException:
    webhook_event_counter.labels(provider=provider, event_type=event_type, outcome="rejected").inc()
    return HTTPException(status_code=400, detail=detail)


async def _process(
    processor: WebhookProcessor,
    db: Session,
    request_id: str,
    event_id: str,
    event_type: str,
    data: dict,
) -> WebhookReceipt:
    """Apply a verified event and commit it together with its dedup record"""
    provider = processor.provider
    try:
        outcome = await processor.process(event_id, event_type, data)
        db.commit()

    except (CircuitOpenError, ExternalServiceError) as e:
        db.rollback()
        webhook_event_counter.labels(provider=provider, event_type=event_type, outcome="failed").inc()
        logging.error(f"{provider} unavailable while handling {event_type}: {e}", extra={"request_id": request_id})
        # Non-2xx makes the provider redeliver later
        raise HTTPException(status_code=503, detail=f"{provider} service unavailable")

    except Exception as e:
        db.rollback()
        webhook_event_counter.labels(provider=provider, event_type=event_type, outcome="failed").inc()
        logging.error(f"Webhook handler error: {e}", extra={"request_id": request_id, "event_id": event_id})
        raise HTTPException(status_code=500, detail="Webhook handler failed")

    webhook_event_counter.labels(provider=provider, event_type=event_type, outcome=outcome).inc()
    log_webhook(provider, event_id, event_type, outcome)
    return WebhookReceipt()


@router.post("/webhooks/stripe", response_model=WebhookReceipt)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """
    Receive a Stripe event.

    Flow:
    1. Verify stripe-signature against the raw body (400 on failure)
    2. Skip events already recorded for this event id
    3. Apply checkout, subscription, and invoice events to the ledger
    """
    request_id = get_request_id(request)
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise _reject("stripe", "unknown", "Missing stripe-signature header")

    try:
        event = stripe_client.construct_event(payload, signature)
    except SignatureVerificationError as e:
        logging.warning(f"Stripe webhook rejected: {e}", extra={"request_id": request_id})
        raise _reject("stripe", "unknown", "Invalid signature")

    data = (event.get("data") or {}).get("object") or {}
    return await _process(
        StripeWebhookProcessor(db, stripe_client), db, request_id, event.get("id"), event.get("type"), data
    )


@router.post("/webhooks/paypal", response_model=WebhookReceipt)
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    paypal_client: PayPalClient = Depends(get_paypal_client),
):
    """
    Receive a PayPal event.

    The transmission headers are verified through PayPal's
    verify-webhook-signature API before the event is applied.
    """
    request_id = get_request_id(request)
    if any(not request.headers.get(header) for header in VERIFICATION_HEADERS):
        raise _reject("paypal", "unknown", "Missing PayPal transmission headers")

    try:
        event = json.loads(await request.body())
    except ValueError:
        raise _reject("paypal", "unknown", "Invalid JSON payload")
    if not isinstance(event, dict):
        raise _reject("paypal", "unknown", "Invalid JSON payload")

    try:
        verified = await paypal_client.verify_webhook_signature(request.headers, event)
    except (CircuitOpenError, ExternalServiceError) as e:
        webhook_event_counter.labels(provider="paypal", event_type="unknown", outcome="failed").inc()
        logging.error(f"PayPal verification unavailable: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="paypal service unavailable")

    if not verified:
        logging.warning("PayPal webhook signature rejected", extra={"request_id": request_id})
        raise _reject("paypal", "unknown", "Invalid signature")

    # Metric labels come only from verified bodies
    event_type = event.get("event_type") or "unknown"
    return await _process(
        PayPalWebhookProcessor(db), db, request_id, event.get("id"), event_type, event.get("resource") or {}
    )
