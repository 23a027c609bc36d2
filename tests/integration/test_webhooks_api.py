"""Integration tests for the payment provider webhook endpoints"""

import json
import pytest
from prometheus_client import REGISTRY
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from craiverse_gateway.domain.exceptions import CircuitOpenError, ExternalServiceError
from craiverse_gateway.domain.rate_limits import RATE_LIMITS, CategoryLimits
from craiverse_gateway.infrastructure.database.models import CreditAccount, Subscription, WebhookEvent

pytestmark = pytest.mark.integration

STRIPE_SUBSCRIPTION = {
    "id": "sub_abc",
    "object": "subscription",
    "status": "active",
    "customer": "cus_1",
    "metadata": {"user_id": "user_stripe", "plan_id": "creator"},
    "current_period_start": 1767225600,
    "current_period_end": 1769904000,
    "cancel_at_period_end": False,
}

CHECKOUT_SESSION = {
    "id": "cs_1",
    "object": "checkout.session",
    "mode": "subscription",
    "subscription": "sub_abc",
    "customer": "cus_1",
}

PAYPAL_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "paypal-transmission-id": "b2c1-11ef",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2026-01-01T00:00:00Z",
}


def _balance(db: Session, user_id: str) -> int:
    db.expire_all()
    account = db.query(CreditAccount).filter(CreditAccount.user_id == user_id).first()
    return account.balance + account.bonus_balance if account else 0


@patch("craiverse_gateway.infrastructure.clients.stripe.StripeClient.retrieve_subscription")
async def test_stripe_checkout_grants_credits(
    mock_retrieve: AsyncMock,
    client: TestClient,
    db: Session,
    signed_stripe_event,
):
    """Test a signed checkout.session.completed activates the subscription"""
    mock_retrieve.return_value = dict(STRIPE_SUBSCRIPTION)
    payload, headers = signed_stripe_event("evt_1", "checkout.session.completed", CHECKOUT_SESSION)

    response = client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert _balance(db, "user_stripe") == 1000
    assert db.query(Subscription).one().status == "active"


@patch("craiverse_gateway.infrastructure.clients.stripe.StripeClient.retrieve_subscription")
async def test_stripe_redelivery_is_acknowledged_once(
    mock_retrieve: AsyncMock,
    client: TestClient,
    db: Session,
    signed_stripe_event,
):
    """Test a redelivered event returns 200 without granting twice"""
    mock_retrieve.return_value = dict(STRIPE_SUBSCRIPTION)
    payload, headers = signed_stripe_event("evt_1", "checkout.session.completed", CHECKOUT_SESSION)

    assert client.post("/api/webhooks/stripe", content=payload, headers=headers).status_code == 200
    assert client.post("/api/webhooks/stripe", content=payload, headers=headers).status_code == 200

    assert _balance(db, "user_stripe") == 1000
    assert db.query(WebhookEvent).count() == 1


def test_stripe_missing_signature(client: TestClient):
    """Test deliveries without stripe-signature are rejected"""
    response = client.post("/api/webhooks/stripe", content=json.dumps({"id": "evt_1"}))
    assert response.status_code == 400


def test_stripe_invalid_signature(client: TestClient, db: Session):
    """Test forged deliveries are rejected and not recorded"""
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": CHECKOUT_SESSION}})

    response = client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": "t=1700000000,v1=deadbeef"},
    )

    assert response.status_code == 400
    assert db.query(WebhookEvent).count() == 0


@patch("craiverse_gateway.infrastructure.clients.stripe.StripeClient.retrieve_subscription")
async def test_stripe_outage_returns_503_for_redelivery(
    mock_retrieve: AsyncMock,
    client: TestClient,
    db: Session,
    signed_stripe_event,
):
    """Test a provider outage rolls back so the retried delivery is applied"""
    mock_retrieve.side_effect = CircuitOpenError("stripe")
    payload, headers = signed_stripe_event("evt_2", "checkout.session.completed", CHECKOUT_SESSION)

    response = client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 503
    assert db.query(WebhookEvent).count() == 0

    mock_retrieve.side_effect = None
    mock_retrieve.return_value = dict(STRIPE_SUBSCRIPTION)
    assert client.post("/api/webhooks/stripe", content=payload, headers=headers).status_code == 200
    assert _balance(db, "user_stripe") == 1000


async def test_stripe_unhandled_event_acknowledged(client: TestClient, signed_stripe_event):
    """Test event types without a handler still return 200"""
    payload, headers = signed_stripe_event("evt_3", "customer.created", {"id": "cus_1"})

    response = client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 200


@patch("craiverse_gateway.infrastructure.clients.paypal.PayPalClient.verify_webhook_signature")
async def test_paypal_order_grants_credits(mock_verify: AsyncMock, client: TestClient, db: Session):
    """Test a verified PAYMENT.CAPTURE.COMPLETED grants the package"""
    mock_verify.return_value = True
    event = {
        "id": "WH-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": "ORDER-1", "custom_id": "user_paypal:CREDIT_PRO"},
    }

    response = client.post("/api/webhooks/paypal", content=json.dumps(event), headers=PAYPAL_HEADERS)

    assert response.status_code == 200
    assert _balance(db, "user_paypal") == 1150
    mock_verify.assert_awaited_once()


@patch("craiverse_gateway.infrastructure.clients.paypal.PayPalClient.verify_webhook_signature")
async def test_paypal_failed_verification(mock_verify: AsyncMock, client: TestClient, db: Session):
    """Test deliveries PayPal does not vouch for are rejected"""
    mock_verify.return_value = False
    event = {"id": "WH-2", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"custom_id": "u:CREDIT_PRO"}}

    response = client.post("/api/webhooks/paypal", content=json.dumps(event), headers=PAYPAL_HEADERS)

    assert response.status_code == 400
    assert _balance(db, "u") == 0


def test_paypal_missing_headers(client: TestClient):
    """Test deliveries without transmission headers are rejected"""
    response = client.post("/api/webhooks/paypal", content=json.dumps({"id": "WH-3"}))
    assert response.status_code == 400


def test_paypal_invalid_json(client: TestClient):
    """Test malformed bodies are rejected before verification"""
    response = client.post("/api/webhooks/paypal", content="{not json", headers=PAYPAL_HEADERS)
    assert response.status_code == 400


@patch("craiverse_gateway.infrastructure.clients.paypal.PayPalClient.verify_webhook_signature")
async def test_paypal_verification_unavailable(mock_verify: AsyncMock, client: TestClient):
    """Test a PayPal outage during verification asks for redelivery"""
    mock_verify.side_effect = ExternalServiceError("PayPal API timeout after 10.0s")
    event = {"id": "WH-4", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}

    response = client.post("/api/webhooks/paypal", content=json.dumps(event), headers=PAYPAL_HEADERS)

    assert response.status_code == 503


def test_stripe_non_utf8_body_rejected(client: TestClient, db: Session):
    """Test undecodable Stripe bodies answer 400"""
    response = client.post(
        "/api/webhooks/stripe",
        content=b"\xff\xfe{",
        headers={"stripe-signature": "t=1700000000,v1=deadbeef"},
    )

    assert response.status_code == 400
    assert db.query(WebhookEvent).count() == 0


@patch("craiverse_gateway.infrastructure.clients.paypal.PayPalClient.verify_webhook_signature")
async def test_paypal_rejection_does_not_label_metrics_with_body(mock_verify: AsyncMock, client: TestClient):
    """Test event types from unverified bodies are not used as metric labels"""
    mock_verify.return_value = False
    event = {"id": "WH-5", "event_type": "FORGED.TYPE.5", "resource": {}}

    response = client.post("/api/webhooks/paypal", content=json.dumps(event), headers=PAYPAL_HEADERS)

    assert response.status_code == 400
    labels = {"provider": "paypal", "event_type": "FORGED.TYPE.5", "outcome": "rejected"}
    assert REGISTRY.get_sample_value("craiverse_webhook_events_total", labels) is None


async def test_webhooks_are_not_rate_limited(client: TestClient, monkeypatch, signed_stripe_event):
    """Test a burst of provider deliveries is not throttled per client"""
    monkeypatch.setitem(RATE_LIMITS, "api", CategoryLimits(requests_per_minute=1, requests_per_hour=100, requests_per_day=100))

    for i in range(3):
        payload, headers = signed_stripe_event(f"evt_burst_{i}", "customer.created", {"id": "cus_1"})
        assert client.post("/api/webhooks/stripe", content=payload, headers=headers).status_code == 200
