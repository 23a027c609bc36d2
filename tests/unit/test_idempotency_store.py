"""Unit tests for the idempotency store"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from craiverse_gateway.domain.exceptions import IdempotencyUnavailableError
from craiverse_gateway.domain.idempotency import CREDIT_DEDUCT, CREDIT_REFUND, REUSED_KEY_BODY, generate_request_hash
from craiverse_gateway.infrastructure.database.models import IdempotencyRecord
from craiverse_gateway.infrastructure.database.repositories import IdempotencyRepository
from craiverse_gateway.services.idempotency import IdempotencyStore


class SyntheticClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: int) -> None:
        self.now += timedelta(hours=hours)


@pytest.fixture
def clock() -> SyntheticClock:
    return SyntheticClock()


@pytest.fixture
def store(db: Session, clock: SyntheticClock) -> IdempotencyStore:
    return IdempotencyStore(db, ttl_hours=24, fail_open=False, clock=clock)


REQUEST = {"action": "deduct", "userId": "u1", "amount": 10}
RESPONSE = {"success": True, "balance": 90}


def test_request_hash_ignores_key_order():
    """Test equal bodies hash equally regardless of key order"""
    reordered = {"amount": 10, "userId": "u1", "action": "deduct"}
    assert generate_request_hash(REQUEST) == generate_request_hash(reordered)
    assert generate_request_hash(REQUEST) != generate_request_hash({**REQUEST, "amount": 11})


def test_miss_for_unknown_key(store: IdempotencyStore):
    """Test unseen keys report no cached response"""
    result = store.check("key-1", CREDIT_DEDUCT, generate_request_hash(REQUEST))

    assert result.exists is False
    assert result.cached_response is None


def test_replays_stored_response(db: Session, store: IdempotencyStore):
    """Test the same key and body return the stored status and body"""
    request_hash = generate_request_hash(REQUEST)
    assert store.store("key-1", CREDIT_DEDUCT, request_hash, 200, RESPONSE) is True
    db.commit()

    result = store.check("key-1", CREDIT_DEDUCT, request_hash)

    assert result.exists is True
    assert result.cached_response.status == 200
    assert result.cached_response.body == RESPONSE


def test_conflict_for_different_body(db: Session, store: IdempotencyStore):
    """Test reusing a key with another body yields 422 IDEMPOTENCY_KEY_REUSED"""
    store.store("key-1", CREDIT_DEDUCT, generate_request_hash(REQUEST), 200, RESPONSE)
    db.commit()

    result = store.check("key-1", CREDIT_DEDUCT, generate_request_hash({**REQUEST, "amount": 20}))

    assert result.exists is True
    assert result.cached_response.status == 422
    assert result.cached_response.body == REUSED_KEY_BODY


def test_keys_are_scoped_by_operation(db: Session, store: IdempotencyStore):
    """Test the same key under another operation type is independent"""
    store.store("key-1", CREDIT_DEDUCT, generate_request_hash(REQUEST), 200, RESPONSE)
    db.commit()

    assert store.check("key-1", CREDIT_REFUND, generate_request_hash(REQUEST)).exists is False


def test_server_errors_are_not_cached(db: Session, store: IdempotencyStore):
    """Test 5xx responses stay retryable"""
    assert store.store("key-1", CREDIT_DEDUCT, generate_request_hash(REQUEST), 503, {"error": "down"}) is False
    db.commit()

    assert db.query(IdempotencyRecord).count() == 0


def test_first_writer_wins(db: Session, store: IdempotencyStore):
    """Test a second store for a live key keeps the original response"""
    request_hash = generate_request_hash(REQUEST)
    assert store.store("key-1", CREDIT_DEDUCT, request_hash, 200, RESPONSE) is True
    assert store.store("key-1", CREDIT_DEDUCT, request_hash, 402, {"error": "late"}) is False
    db.commit()

    assert store.check("key-1", CREDIT_DEDUCT, request_hash).cached_response.body == RESPONSE


def test_expired_records_are_ignored_and_replaced(db: Session, store: IdempotencyStore, clock: SyntheticClock):
    """Test records past their TTL behave as unseen and can be rewritten"""
    request_hash = generate_request_hash(REQUEST)
    store.store("key-1", CREDIT_DEDUCT, request_hash, 200, RESPONSE)
    db.commit()

    clock.advance(25)

    assert store.check("key-1", CREDIT_DEDUCT, request_hash).exists is False
    assert store.store("key-1", CREDIT_DEDUCT, request_hash, 402, {"error": "Insufficient credits"}) is True
    db.commit()
    assert store.check("key-1", CREDIT_DEDUCT, request_hash).cached_response.status == 402


def test_purge_expired(db: Session, store: IdempotencyStore, clock: SyntheticClock):
    """Test the sweep removes only expired records"""
    store.store("old", CREDIT_DEDUCT, "h1", 200, RESPONSE)
    db.commit()
    clock.advance(25)
    store.store("new", CREDIT_DEDUCT, "h2", 200, RESPONSE)
    db.commit()

    assert store.purge_expired() == 1
    db.commit()
    assert [r.idempotency_key for r in db.query(IdempotencyRecord).all()] == ["new"]


def test_fails_closed_by_default(db: Session, clock: SyntheticClock):
    """Test an unreadable store raises instead of risking a double charge"""
    store = IdempotencyStore(db, clock=clock)
    error = OperationalError("SELECT", {}, Exception("connection refused"))

    with patch.object(IdempotencyRepository, "get_live", side_effect=error):
        with pytest.raises(IdempotencyUnavailableError):
            store.check("key-1", CREDIT_DEDUCT, "h1")


def test_fail_open_proceeds(db: Session, clock: SyntheticClock):
    """Test the fail-open policy treats an unreadable store as a miss"""
    store = IdempotencyStore(db, fail_open=True, clock=clock)
    error = OperationalError("SELECT", {}, Exception("connection refused"))

    with patch.object(IdempotencyRepository, "get_live", side_effect=error):
        assert store.check("key-1", CREDIT_DEDUCT, "h1").exists is False
