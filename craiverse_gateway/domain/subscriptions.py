"""Subscription lifecycle: none -> active -> (past_due <-> active) -> canceled"""

from typing import Dict, FrozenSet, Optional

from craiverse_gateway.domain.exceptions import InvalidTransitionError

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"

# None is the state before the first webhook creates the row
TRANSITIONS: Dict[Optional[str], FrozenSet[str]] = {
    None: frozenset({ACTIVE}),
    ACTIVE: frozenset({PAST_DUE, CANCELED}),
    PAST_DUE: frozenset({ACTIVE, CANCELED}),
    CANCELED: frozenset(),
}

# Stripe reports a richer status set than the local lifecycle
STRIPE_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PAST_DUE,
    "unpaid": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
}


def can_transition(current: Optional[str], target: str) -> bool:
    """Whether moving from current to target is allowed (re-applying the current state is)"""
    if current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def transition(current: Optional[str], target: str) -> str:
    """
    Return the status after applying target.

    Raises:
        InvalidTransitionError: When the lifecycle does not allow the move
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move subscription from {current or 'none'} to {target}")
    return target


def normalize_stripe_status(status: Optional[str]) -> Optional[str]:
    """Map a Stripe subscription status onto the local lifecycle; None when it has no local meaning"""
    if status is None:
        return None
    return STRIPE_STATUS_MAP.get(status)
