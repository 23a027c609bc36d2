"""Unit tests for the subscription lifecycle and plan catalog"""

import pytest
from craiverse_gateway.domain import subscriptions as lifecycle
from craiverse_gateway.domain.catalog import DEFAULT_PLAN_CREDITS, PAYPAL_CREDIT_PACKAGES, stripe_plan_credits
from craiverse_gateway.domain.exceptions import InvalidTransitionError


@pytest.mark.parametrize(
    "current,target",
    [
        (None, "active"),
        ("active", "past_due"),
        ("active", "canceled"),
        ("past_due", "active"),
        ("past_due", "canceled"),
        ("active", "active"),
    ],
)
def test_allowed_transitions(current, target):
    """Test the moves the lifecycle permits"""
    assert lifecycle.can_transition(current, target) is True
    assert lifecycle.transition(current, target) == target


@pytest.mark.parametrize(
    "current,target",
    [
        ("canceled", "active"),
        ("canceled", "past_due"),
        (None, "canceled"),
        (None, "past_due"),
    ],
)
def test_rejected_transitions(current, target):
    """Test canceled is terminal and rows start active"""
    assert lifecycle.can_transition(current, target) is False
    with pytest.raises(InvalidTransitionError):
        lifecycle.transition(current, target)


@pytest.mark.parametrize(
    "stripe_status,expected",
    [
        ("active", "active"),
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("canceled", "canceled"),
        ("incomplete", None),
        (None, None),
    ],
)
def test_normalize_stripe_status(stripe_status, expected):
    """Test Stripe statuses fold onto the local lifecycle"""
    assert lifecycle.normalize_stripe_status(stripe_status) == expected


def test_stripe_plan_credits():
    """Test known plans map to their grant and unknown plans use the default"""
    assert stripe_plan_credits("creator") == 1000
    assert stripe_plan_credits("pro") == 5000
    assert stripe_plan_credits("legacy") == DEFAULT_PLAN_CREDITS


def test_paypal_packages_carry_bonus():
    """Test larger PayPal packages include bonus credits"""
    assert PAYPAL_CREDIT_PACKAGES["CREDIT_STARTER"].bonus == 0
    assert PAYPAL_CREDIT_PACKAGES["CREDIT_POPULAR"].credits == 500
    assert PAYPAL_CREDIT_PACKAGES["CREDIT_POPULAR"].bonus == 50
