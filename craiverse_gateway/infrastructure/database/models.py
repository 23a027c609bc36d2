"""SQLAlchemy ORM models for the credit ledger, admission control, and billing state"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    Text,
    JSON,
    CheckConstraint,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from craiverse_gateway.utils.time_utils import utcnow

Base = declarative_base()


class CreditAccount(Base):
    """Current balance projection for a user's credits"""

    __tablename__ = "credit_account"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_account_balance_non_negative"),
        CheckConstraint("bonus_balance >= 0", name="ck_credit_account_bonus_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    balance = Column(BigInteger, nullable=False, default=0)
    bonus_balance = Column(BigInteger, nullable=False, default=0)
    lifetime_earned = Column(BigInteger, nullable=False, default=0)
    lifetime_spent = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CreditTransaction(Base):
    """Append-only ledger row, one per balance mutation"""

    __tablename__ = "credit_transaction"
    __table_args__ = (
        # One refund (or deduction) per operation per user
        UniqueConstraint("user_id", "type", "operation_id", name="uq_credit_transaction_operation"),
        Index("ix_credit_transaction_user_created", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    type = Column(String(16), nullable=False)  # purchase | deduction | refund | renewal
    source_app = Column(Text, nullable=True)
    source_action = Column(Text, nullable=True)
    operation_id = Column(Text, nullable=True)
    reference_id = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class IdempotencyRecord(Base):
    """Cached response for a mutating request keyed by caller-supplied token"""

    __tablename__ = "idempotency_record"
    __table_args__ = (
        UniqueConstraint("idempotency_key", "operation_type", name="uq_idempotency_key_operation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(Text, nullable=False)
    operation_type = Column(Text, nullable=False)
    request_hash = Column(String(64), nullable=False)
    response_status = Column(Integer, nullable=False)
    response_body = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class RateLimitEntry(Base):
    """One admitted request, windowed by query"""

    __tablename__ = "rate_limit_entry"
    __table_args__ = (
        Index("ix_rate_limit_entry_identifier_timestamp", "identifier", "timestamp"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(Text, nullable=False)
    category = Column(String(16), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)


class Subscription(Base):
    """Provider subscription mirrored from webhooks"""

    __tablename__ = "subscription"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    provider = Column(String(16), nullable=False)  # stripe | paypal
    provider_subscription_id = Column(Text, nullable=False, unique=True)
    provider_customer_id = Column(Text, nullable=True)
    plan_id = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="active")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    credits_per_month = Column(Integer, nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookEvent(Base):
    """Provider event already handled; guards against redelivery"""

    __tablename__ = "webhook_event"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String(16), nullable=False)
    event_id = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Notification(Base):
    """User-facing notification raised by billing activity"""

    __tablename__ = "notification"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    source_app = Column(Text, nullable=False, default="craiverse")
    source_type = Column(Text, nullable=True)
    source_id = Column(Text, nullable=True)
    action_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
