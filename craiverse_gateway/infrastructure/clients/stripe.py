"""Stripe SDK wrapper for webhook verification and subscription lookups"""

import asyncio
import json
from typing import Any, Dict

import stripe

from craiverse_gateway.config import settings
from craiverse_gateway.domain.exceptions import ExternalServiceError, SignatureVerificationError
from craiverse_gateway.infrastructure.clients.circuit_breaker import CircuitBreakerRegistry
from craiverse_gateway.infrastructure.observability.metrics import external_call_histogram

SERVICE_NAME = "stripe"


class StripeClient:
    """Client for Stripe webhooks and the subscriptions API"""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        api_key: str | None = None,
        webhook_secret: str | None = None,
    ):
        self.breakers = breakers
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.max_retries = settings.external_max_retries

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify the stripe-signature header and decode the event.

        Raises:
            SignatureVerificationError: Bad signature, stale timestamp, or malformed payload
        """
        try:
            payload_text = payload.decode("utf-8")
            stripe.Webhook.construct_event(payload=payload_text, sig_header=signature, secret=self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError("Invalid Stripe signature") from e
        except ValueError as e:
            raise SignatureVerificationError("Invalid Stripe payload") from e

        # Work with the raw JSON so handlers only see plain dicts
        return json.loads(payload_text)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription through the circuit breaker.

        Raises:
            CircuitOpenError: When Stripe has been failing recently
            ExternalServiceError: On API errors after retries
        """

        async def _call() -> Dict[str, Any]:
            with external_call_histogram.labels(service=SERVICE_NAME).time():
                subscription = await asyncio.to_thread(
                    stripe.Subscription.retrieve, subscription_id, api_key=self.api_key
                )
            return subscription.to_dict()

        try:
            return await self.breakers.with_retry(_call, SERVICE_NAME, max_retries=self.max_retries)
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe API error: {e}") from e
