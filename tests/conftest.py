"""Pytest fixtures for testing"""

import hashlib
import hmac
import json
import time
import pytest
from typing import Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from craiverse_gateway.api.main import create_app
from craiverse_gateway.api.dependencies import get_session_factory
from craiverse_gateway.config import settings
from craiverse_gateway.infrastructure.database.models import Base
from craiverse_gateway.infrastructure.database.session import get_db
from craiverse_gateway.services.ledger import CreditLedger


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron_test_secret"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic secrets and fast retries for every test"""
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(settings, "stripe_webhook_secret", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "paypal_webhook_id", "WH-TEST")
    monkeypatch.setattr(settings, "cron_secret", CRON_SECRET)
    monkeypatch.setattr(settings, "retry_backoff_base", 0.0)
    return settings


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db: Session) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    return TestClient(app)


@pytest.fixture
def funded_user(db: Session) -> str:
    """User holding 100 purchased credits"""
    CreditLedger(db).add("user_funded", 100, source="test_seed")
    db.commit()
    return "user_funded"


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a stripe-signature header the way Stripe signs deliveries"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: dict) -> str:
    """Serialized Stripe event envelope"""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    )


@pytest.fixture
def signed_stripe_event():
    """Factory returning (payload, headers) for a correctly signed Stripe delivery"""

    def _build(event_id: str, event_type: str, obj: dict):
        payload = stripe_event(event_id, event_type, obj)
        return payload, {"stripe-signature": stripe_signature(payload), "content-type": "application/json"}

    return _build
