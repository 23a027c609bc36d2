"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class CreditCheck:
    """Outcome of a read-only balance check"""

    has_enough: bool
    balance: int
    required: int


@dataclass
class LedgerEntry:
    """Result of a committed ledger mutation"""

    transaction_id: str
    user_id: str
    amount: int  # signed
    balance_after: int
    type: str  # purchase | deduction | refund | renewal


@dataclass
class CachedResponse:
    """HTTP status and JSON body stored under an idempotency key"""

    status: int
    body: Any


@dataclass
class IdempotencyCheck:
    """Lookup result for an idempotency key"""

    exists: bool
    cached_response: Optional[CachedResponse] = None


@dataclass
class RateLimitResult:
    """Admission decision from the rate limiter"""

    allowed: bool
    remaining: int
    reset_seconds: int


@dataclass
class SubscriptionUpdate:
    """Provider-neutral view of a subscription carried by a webhook"""

    provider: str
    provider_subscription_id: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[Any] = None
    current_period_end: Optional[Any] = None
    cancel_at_period_end: bool = False
    credits_per_month: Optional[int] = None
