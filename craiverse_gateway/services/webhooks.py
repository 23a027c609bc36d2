"""Provider webhook processing: map Stripe and PayPal events onto ledger and subscription state

Processors flush inside the caller's transaction. Each event id is recorded
alongside its mutations, so a redelivered event is acknowledged without being
applied twice.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from sqlalchemy.orm import Session

from craiverse_gateway.domain import subscriptions as lifecycle
from craiverse_gateway.domain.catalog import (
    PAYPAL_CREDIT_PACKAGES,
    PAYPAL_SUBSCRIPTION_PLANS,
    stripe_plan_credits,
)
from craiverse_gateway.domain.exceptions import InvalidTransitionError
from craiverse_gateway.domain.models import SubscriptionUpdate
from craiverse_gateway.infrastructure.clients.stripe import StripeClient
from craiverse_gateway.infrastructure.database.models import Subscription
from craiverse_gateway.infrastructure.database.repositories import (
    NotificationRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)
from craiverse_gateway.services.ledger import CreditLedger
from craiverse_gateway.utils.time_utils import from_isoformat, from_timestamp, utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"


class WebhookProcessor:
    """Shared plumbing for provider processors"""

    provider = ""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = CreditLedger(db)
        self.subscriptions = SubscriptionRepository(db)
        self.events = WebhookEventRepository(db)
        self.notifications = NotificationRepository(db)

    def handlers(self) -> Dict[str, Handler]:
        raise NotImplementedError

    async def process(self, event_id: str, event_type: str, data: Dict[str, Any]) -> str:
        """
        Apply one verified event.

        Returns:
            processed | duplicate | ignored
        """
        if not self.events.record(self.provider, event_id, event_type):
            logger.info("Duplicate webhook delivery", extra={"provider": self.provider, "event_id": event_id})
            return DUPLICATE

        handler = self.handlers().get(event_type)
        if handler is None:
            logger.info(f"Unhandled {self.provider} event: {event_type}")
            return IGNORED

        await handler(data)
        return PROCESSED

    def _move(self, sub: Subscription, target: str) -> bool:
        """Apply a lifecycle transition; invalid moves are logged and skipped"""
        try:
            status = lifecycle.transition(sub.status, target)
        except InvalidTransitionError as e:
            logger.warning(
                f"Ignoring subscription transition: {e}",
                extra={"provider": self.provider, "subscription_id": sub.provider_subscription_id},
            )
            return False
        if sub.status != status:
            canceled_at = utcnow() if status == lifecycle.CANCELED else None
            self.subscriptions.set_status(sub, status, canceled_at=canceled_at)
        return True

    def _upsert_active(self, data: SubscriptionUpdate) -> Optional[Subscription]:
        existing = self.subscriptions.get_by_provider_id(data.provider_subscription_id)
        current = existing.status if existing is not None else None
        if not lifecycle.can_transition(current, lifecycle.ACTIVE):
            logger.warning(
                "Ignoring activation of closed subscription",
                extra={"provider": self.provider, "subscription_id": data.provider_subscription_id},
            )
            return None
        sub, _ = self.subscriptions.upsert(data, lifecycle.ACTIVE)
        return sub

    def _notify_canceled(self, sub: Subscription, message: str) -> None:
        self.notifications.create(
            user_id=sub.user_id,
            type="subscription_canceled",
            title="Subscription Canceled",
            message=message,
            source_type="subscription",
            source_id=sub.provider_subscription_id,
        )

    def _notify_payment_failed(self, sub: Subscription, message: str) -> None:
        self.notifications.create(
            user_id=sub.user_id,
            type="payment_failed",
            title="Payment Failed",
            message=message,
            source_type="subscription",
            source_id=sub.provider_subscription_id,
            action_url="/settings/billing",
        )


def _stripe_periods(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """Period bounds live on the subscription in older API versions, on its items in newer ones"""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return {"current_period_start": from_timestamp(start), "current_period_end": from_timestamp(end)}


def _stripe_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id or as the expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeWebhookProcessor(WebhookProcessor):
    """Maps Stripe subscription and invoice events"""

    provider = "stripe"

    def __init__(self, db: Session, client: StripeClient):
        super().__init__(db)
        self.client = client

    def handlers(self) -> Dict[str, Handler]:
        return {
            "checkout.session.completed": self.on_checkout_completed,
            "customer.subscription.updated": self.on_subscription_updated,
            "customer.subscription.deleted": self.on_subscription_deleted,
            "invoice.payment_succeeded": self.on_invoice_paid,
            "invoice.payment_failed": self.on_invoice_failed,
        }

    async def on_checkout_completed(self, session: Dict[str, Any]) -> None:
        subscription_id = _stripe_id(session.get("subscription"))
        if session.get("mode") != "subscription" or not subscription_id:
            return

        subscription = await self.client.retrieve_subscription(subscription_id)
        metadata = subscription.get("metadata") or {}
        user_id = metadata.get("user_id")
        plan_id = metadata.get("plan_id")
        if not user_id or not plan_id:
            logger.warning("Stripe subscription missing user/plan metadata", extra={"subscription_id": subscription_id})
            return

        credits = stripe_plan_credits(plan_id)
        sub = self._upsert_active(
            SubscriptionUpdate(
                provider=self.provider,
                provider_subscription_id=subscription_id,
                user_id=user_id,
                plan_id=plan_id,
                provider_customer_id=_stripe_id(session.get("customer")),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
                credits_per_month=credits,
                **_stripe_periods(subscription),
            )
        )
        if sub is None:
            return

        self.ledger.add(user_id, credits, source="stripe_checkout", reference_id=subscription_id)
        logger.info(f"Subscription created for user {user_id}, plan: {plan_id}")

    async def on_subscription_updated(self, subscription: Dict[str, Any]) -> None:
        sub = self.subscriptions.get_by_provider_id(subscription["id"])
        if sub is None:
            logger.info("Update for unknown Stripe subscription", extra={"subscription_id": subscription["id"]})
            return

        target = lifecycle.normalize_stripe_status(subscription.get("status"))
        if target is not None:
            self._move(sub, target)

        periods = _stripe_periods(subscription)
        if periods["current_period_start"] is not None:
            sub.current_period_start = periods["current_period_start"]
            sub.current_period_end = periods["current_period_end"]
        sub.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        self.db.flush()

    async def on_subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        sub = self.subscriptions.get_by_provider_id(subscription["id"])
        if sub is None or sub.status == lifecycle.CANCELED:
            return

        if self._move(sub, lifecycle.CANCELED):
            self._notify_canceled(sub, "Your subscription has been canceled.")
            logger.info(f"Subscription canceled for user {sub.user_id}")

    async def on_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        if invoice.get("billing_reason") != "subscription_cycle":
            return

        subscription_id = _stripe_id(invoice.get("subscription")) or _stripe_id(
            ((invoice.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        if not subscription_id:
            return

        sub = self.subscriptions.get_by_provider_id(subscription_id)
        if sub is not None:
            user_id, plan_id = sub.user_id, sub.plan_id
        else:
            metadata = (await self.client.retrieve_subscription(subscription_id)).get("metadata") or {}
            user_id, plan_id = metadata.get("user_id"), metadata.get("plan_id")
        if not user_id or not plan_id:
            return

        if sub is not None and sub.status == lifecycle.CANCELED:
            logger.warning("Renewal invoice for canceled subscription", extra={"subscription_id": subscription_id})
            return
        if sub is not None:
            self._move(sub, lifecycle.ACTIVE)

        credits = stripe_plan_credits(plan_id)
        self.ledger.add(user_id, credits, source="subscription_renewal", reference_id=invoice.get("id"))
        logger.info(f"Monthly credits refreshed for user {user_id}: {credits}")

    async def on_invoice_failed(self, invoice: Dict[str, Any]) -> None:
        logger.error(f"Payment failed for invoice {invoice.get('id')}")
        subscription_id = _stripe_id(invoice.get("subscription"))
        sub = self.subscriptions.get_by_provider_id(subscription_id) if subscription_id else None
        if sub is None:
            return

        if sub.status != lifecycle.PAST_DUE and self._move(sub, lifecycle.PAST_DUE):
            self._notify_payment_failed(sub, "Your subscription payment failed. Please update your payment method.")


class PayPalWebhookProcessor(WebhookProcessor):
    """Maps PayPal order, subscription, and sale events"""

    provider = "paypal"

    def handlers(self) -> Dict[str, Handler]:
        return {
            "CHECKOUT.ORDER.APPROVED": self.on_payment_completed,
            "PAYMENT.CAPTURE.COMPLETED": self.on_payment_completed,
            "BILLING.SUBSCRIPTION.ACTIVATED": self.on_subscription_activated,
            "BILLING.SUBSCRIPTION.CANCELLED": self.on_subscription_cancelled,
            "BILLING.SUBSCRIPTION.SUSPENDED": self.on_subscription_cancelled,
            "PAYMENT.SALE.COMPLETED": self.on_sale_completed,
            "PAYMENT.SALE.DENIED": self.on_payment_failed,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self.on_payment_failed,
        }

    async def on_payment_completed(self, resource: Dict[str, Any]) -> None:
        # ORDER.APPROVED carries the order itself, CAPTURE.COMPLETED a capture pointing at it
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = related_ids.get("order_id") or resource.get("id")
        units = resource.get("purchase_units") or [{}]
        custom_id = units[0].get("custom_id") or resource.get("custom_id")
        if not custom_id:
            logger.error("No custom_id in PayPal order", extra={"order_id": order_id})
            return

        # custom_id format: "user_id:package_id"
        user_id, _, package_id = custom_id.partition(":")
        package = PAYPAL_CREDIT_PACKAGES.get(package_id)
        if not user_id or package is None:
            logger.error(f"Unknown package: {package_id}", extra={"order_id": order_id})
            return

        if order_id and self.ledger.has_purchase(user_id, order_id):
            logger.info("PayPal order already credited", extra={"order_id": order_id})
            return

        self.ledger.add(user_id, package.credits, source="paypal_checkout", reference_id=order_id, bonus=package.bonus)

    async def on_subscription_activated(self, resource: Dict[str, Any]) -> None:
        user_id = resource.get("custom_id")
        plan = PAYPAL_SUBSCRIPTION_PLANS.get(resource.get("plan_id"))
        if not user_id or plan is None:
            return

        start = from_isoformat(resource.get("start_time"))
        next_billing = from_isoformat((resource.get("billing_info") or {}).get("next_billing_time")) or start
        sub = self._upsert_active(
            SubscriptionUpdate(
                provider=self.provider,
                provider_subscription_id=resource["id"],
                user_id=user_id,
                plan_id=plan.plan,
                current_period_start=start,
                current_period_end=next_billing,
                credits_per_month=plan.credits_per_month,
            )
        )
        if sub is None:
            return

        self.ledger.add(user_id, plan.credits_per_month, source="subscription_activation", reference_id=resource["id"])

    async def on_subscription_cancelled(self, resource: Dict[str, Any]) -> None:
        sub = self.subscriptions.get_by_provider_id(resource.get("id"))
        if sub is None or sub.status == lifecycle.CANCELED:
            return

        if self._move(sub, lifecycle.CANCELED):
            self._notify_canceled(sub, "Your PayPal subscription has been canceled.")

    async def on_sale_completed(self, resource: Dict[str, Any]) -> None:
        subscription_id = resource.get("billing_agreement_id")
        sub = self.subscriptions.get_by_provider_id(subscription_id) if subscription_id else None
        if sub is None or not sub.credits_per_month:
            return
        if sub.status == lifecycle.CANCELED:
            logger.warning("Sale for canceled PayPal subscription", extra={"subscription_id": subscription_id})
            return

        self._move(sub, lifecycle.ACTIVE)
        self.ledger.add(sub.user_id, sub.credits_per_month, source="subscription_renewal", reference_id=resource.get("id"))

    async def on_payment_failed(self, resource: Dict[str, Any]) -> None:
        subscription_id = resource.get("billing_agreement_id") or resource.get("id")
        sub = self.subscriptions.get_by_provider_id(subscription_id) if subscription_id else None
        if sub is None:
            return

        if sub.status != lifecycle.PAST_DUE and self._move(sub, lifecycle.PAST_DUE):
            self._notify_payment_failed(sub, "Your PayPal subscription payment failed. Please check your PayPal account.")
