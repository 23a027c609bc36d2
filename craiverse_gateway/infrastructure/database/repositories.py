"""Data access layer for ledger, admission control, and billing entities"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import case, delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from craiverse_gateway.domain.models import SubscriptionUpdate
from craiverse_gateway.domain.rate_limits import DAY, HOUR, MINUTE, WindowCounts
from craiverse_gateway.infrastructure.database.models import (
    CreditAccount,
    CreditTransaction,
    IdempotencyRecord,
    Notification,
    RateLimitEntry,
    Subscription,
    WebhookEvent,
)
from craiverse_gateway.utils.time_utils import as_utc, utcnow


def insert_ignore(db: Session, model, values: Dict[str, Any], index_elements: Sequence[str]) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Returns:
        True when the row was inserted, False when a conflicting row already existed
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    result = db.execute(stmt.on_conflict_do_nothing(index_elements=list(index_elements)))
    return result.rowcount == 1


class CreditLedgerRepository:
    """Repository for credit accounts and their transaction log

    Every balance change is a single conditional UPDATE ... RETURNING; no
    method reads a balance and writes it back in a second round trip.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, user_id: str) -> Optional[CreditAccount]:
        return (
            self.db.query(CreditAccount)
            .filter(CreditAccount.user_id == user_id)
            .first()
        )

    def get_spendable_balance(self, user_id: str) -> int:
        """balance + bonus_balance, 0 when the account does not exist yet"""
        spendable = (
            self.db.query(CreditAccount.balance + CreditAccount.bonus_balance)
            .filter(CreditAccount.user_id == user_id)
            .scalar()
        )
        return int(spendable or 0)

    def ensure_account(self, user_id: str) -> None:
        """Create the account row on first use; concurrent creators race harmlessly"""
        insert_ignore(
            self.db,
            CreditAccount,
            {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "balance": 0,
                "bonus_balance": 0,
                "lifetime_earned": 0,
                "lifetime_spent": 0,
            },
            index_elements=["user_id"],
        )

    def debit(self, user_id: str, amount: int) -> Optional[int]:
        """
        Spend bonus credits first, then the main balance.

        Returns:
            Spendable balance after the debit, or None when the account cannot cover it
        """
        from_bonus = case(
            (CreditAccount.bonus_balance >= amount, amount),
            else_=CreditAccount.bonus_balance,
        )
        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,
                CreditAccount.balance + CreditAccount.bonus_balance >= amount,
            )
            .values(
                bonus_balance=CreditAccount.bonus_balance - from_bonus,
                balance=CreditAccount.balance - (amount - from_bonus),
                lifetime_spent=CreditAccount.lifetime_spent + amount,
                updated_at=utcnow(),
            )
            .returning(CreditAccount.balance, CreditAccount.bonus_balance)
            .execution_options(synchronize_session=False)
        )
        row = self.db.execute(stmt).first()
        if row is None:
            return None
        return int(row.balance + row.bonus_balance)

    def credit(self, user_id: str, amount: int, bonus: int = 0) -> int:
        """Add purchased/granted credits; returns spendable balance after"""
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(
                balance=CreditAccount.balance + amount,
                bonus_balance=CreditAccount.bonus_balance + bonus,
                lifetime_earned=CreditAccount.lifetime_earned + amount + bonus,
                updated_at=utcnow(),
            )
            .returning(CreditAccount.balance, CreditAccount.bonus_balance)
            .execution_options(synchronize_session=False)
        )
        row = self.db.execute(stmt).one()
        return int(row.balance + row.bonus_balance)

    def restore(self, user_id: str, amount: int) -> int:
        """Return refunded credits; lifetime_spent is reduced but never below zero"""
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(
                balance=CreditAccount.balance + amount,
                lifetime_spent=case(
                    (CreditAccount.lifetime_spent >= amount, CreditAccount.lifetime_spent - amount),
                    else_=0,
                ),
                updated_at=utcnow(),
            )
            .returning(CreditAccount.balance, CreditAccount.bonus_balance)
            .execution_options(synchronize_session=False)
        )
        row = self.db.execute(stmt).one()
        return int(row.balance + row.bonus_balance)

    def has_operation(self, user_id: str, tx_type: str, operation_id: str) -> bool:
        return (
            self.db.query(CreditTransaction.id)
            .filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == tx_type,
                CreditTransaction.operation_id == operation_id,
            )
            .first()
            is not None
        )

    def has_reference(self, user_id: str, tx_type: str, reference_id: str) -> bool:
        return (
            self.db.query(CreditTransaction.id)
            .filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == tx_type,
                CreditTransaction.reference_id == reference_id,
            )
            .first()
            is not None
        )

    def append_transaction(
        self,
        user_id: str,
        amount: int,
        balance_after: int,
        tx_type: str,
        source_app: Optional[str] = None,
        source_action: Optional[str] = None,
        operation_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> CreditTransaction:
        """Append a ledger row (flushes so unique violations surface here)"""
        tx = CreditTransaction(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            type=tx_type,
            source_app=source_app,
            source_action=source_action,
            operation_id=operation_id,
            reference_id=reference_id,
            reason=reason,
        )
        self.db.add(tx)
        self.db.flush()
        return tx

    def get_transactions_by_user(self, user_id: str, limit: int = 20) -> List[CreditTransaction]:
        """Fetch recent ledger rows for a user"""
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
            .all()
        )

    def sum_transactions(self, user_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(CreditTransaction.amount), 0))
            .filter(CreditTransaction.user_id == user_id)
            .scalar()
        )
        return int(total)


class IdempotencyRepository:
    """Repository for cached idempotent responses"""

    def __init__(self, db: Session):
        self.db = db

    def get_live(self, key: str, operation_type: str, now: datetime) -> Optional[IdempotencyRecord]:
        """Fetch an unexpired record for key + operation"""
        return (
            self.db.query(IdempotencyRecord)
            .filter(
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.operation_type == operation_type,
                IdempotencyRecord.expires_at > now,
            )
            .first()
        )

    def insert(
        self,
        key: str,
        operation_type: str,
        request_hash: str,
        status: int,
        body: Any,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """Write a record unless one is already live; the first writer wins"""
        # An expired record still holds the unique slot until the sweep runs
        self.db.execute(
            delete(IdempotencyRecord)
            .where(
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.operation_type == operation_type,
                IdempotencyRecord.expires_at <= now,
            )
            .execution_options(synchronize_session=False)
        )
        return insert_ignore(
            self.db,
            IdempotencyRecord,
            {
                "id": uuid.uuid4(),
                "idempotency_key": key,
                "operation_type": operation_type,
                "request_hash": request_hash,
                "response_status": status,
                "response_body": body,
                "created_at": now,
                "expires_at": expires_at,
            },
            index_elements=["idempotency_key", "operation_type"],
        )

    def delete_expired(self, now: datetime) -> int:
        result = self.db.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class RateLimitRepository:
    """Repository for the admitted-request log"""

    def __init__(self, db: Session):
        self.db = db

    def window_counts(self, identifier: str, category: str, now: datetime) -> WindowCounts:
        """Count entries strictly newer than each window start, in one query"""
        minute_start = now - MINUTE
        hour_start = now - HOUR
        day_start = now - DAY
        in_minute = RateLimitEntry.timestamp > minute_start
        in_hour = RateLimitEntry.timestamp > hour_start

        row = (
            self.db.query(
                func.count(case((in_minute, 1))),
                func.min(case((in_minute, RateLimitEntry.timestamp))),
                func.count(case((in_hour, 1))),
                func.min(case((in_hour, RateLimitEntry.timestamp))),
                func.count(RateLimitEntry.id),
                func.min(RateLimitEntry.timestamp),
            )
            .filter(
                RateLimitEntry.identifier == identifier,
                RateLimitEntry.category == category,
                RateLimitEntry.timestamp > day_start,
            )
            .one()
        )
        return WindowCounts(
            minute=int(row[0]),
            oldest_in_minute=as_utc(row[1]),
            hour=int(row[2]),
            oldest_in_hour=as_utc(row[3]),
            day=int(row[4]),
            oldest_in_day=as_utc(row[5]),
        )

    def record(self, identifier: str, category: str, now: datetime) -> None:
        self.db.add(RateLimitEntry(identifier=identifier, category=category, timestamp=now))
        self.db.flush()

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.db.execute(
            delete(RateLimitEntry)
            .where(RateLimitEntry.timestamp <= cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class SubscriptionRepository:
    """Repository for provider subscriptions"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .first()
        )

    def upsert(self, data: SubscriptionUpdate, status: str) -> Tuple[Subscription, bool]:
        """
        Create or refresh a subscription keyed by provider subscription id.

        Returns:
            (row, created)
        """
        sub = self.get_by_provider_id(data.provider_subscription_id)
        created = sub is None
        if created:
            sub = Subscription(
                provider=data.provider,
                provider_subscription_id=data.provider_subscription_id,
                user_id=data.user_id,
            )
            self.db.add(sub)

        sub.status = status
        sub.updated_at = utcnow()
        for field in (
            "user_id",
            "plan_id",
            "provider_customer_id",
            "current_period_start",
            "current_period_end",
            "credits_per_month",
        ):
            value = getattr(data, field)
            if value is not None:
                setattr(sub, field, value)
        sub.cancel_at_period_end = data.cancel_at_period_end

        self.db.flush()
        return sub, created

    def set_status(self, sub: Subscription, status: str, canceled_at: Optional[datetime] = None) -> None:
        sub.status = status
        sub.updated_at = utcnow()
        if canceled_at is not None:
            sub.canceled_at = canceled_at
        self.db.flush()


class WebhookEventRepository:
    """Repository for handled provider events"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, provider: str, event_id: str, event_type: str) -> bool:
        """Record an event; False when it was already handled"""
        return insert_ignore(
            self.db,
            WebhookEvent,
            {
                "id": uuid.uuid4(),
                "provider": provider,
                "event_id": event_id,
                "event_type": event_type,
            },
            index_elements=["provider", "event_id"],
        )


class NotificationRepository:
    """Repository for user-facing notifications"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            source_app="craiverse",
            source_type=source_type,
            source_id=source_id,
            action_url=action_url,
        )
        self.db.add(notification)
        self.db.flush()
        return notification
