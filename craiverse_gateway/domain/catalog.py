"""Credit grants attached to provider plans and packages"""

from dataclasses import dataclass
from typing import Dict

DEFAULT_PLAN_CREDITS = 1000

# Stripe subscription plans (subscription metadata plan_id -> monthly credits)
STRIPE_PLAN_CREDITS: Dict[str, int] = {
    "creator": 1000,
    "pro": 5000,
}


@dataclass(frozen=True)
class CreditPackage:
    """One-off credit purchase"""

    credits: int
    bonus: int
    name: str


@dataclass(frozen=True)
class SubscriptionPlan:
    """Recurring plan sold through PayPal"""

    plan: str
    credits_per_month: int


PAYPAL_CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "CREDIT_STARTER": CreditPackage(credits=100, bonus=0, name="Starter"),
    "CREDIT_POPULAR": CreditPackage(credits=500, bonus=50, name="Popular"),
    "CREDIT_PRO": CreditPackage(credits=1000, bonus=150, name="Pro"),
    "CREDIT_ENTERPRISE": CreditPackage(credits=5000, bonus=1000, name="Enterprise"),
}

PAYPAL_SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    "PLAN_STARTER": SubscriptionPlan(plan="starter", credits_per_month=200),
    "PLAN_PRO": SubscriptionPlan(plan="pro", credits_per_month=1000),
    "PLAN_ENTERPRISE": SubscriptionPlan(plan="enterprise", credits_per_month=5000),
}


def stripe_plan_credits(plan_id: str) -> int:
    return STRIPE_PLAN_CREDITS.get(plan_id, DEFAULT_PLAN_CREDITS)
