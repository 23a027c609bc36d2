"""PayPal REST client for webhook signature verification"""

import httpx
from typing import Any, Dict, Mapping

from craiverse_gateway.config import settings
from craiverse_gateway.domain.exceptions import ExternalServiceError
from craiverse_gateway.infrastructure.clients.circuit_breaker import CircuitBreakerRegistry
from craiverse_gateway.infrastructure.observability.metrics import external_call_histogram

SERVICE_NAME = "paypal"

# Transmission headers PayPal sends with every webhook delivery
VERIFICATION_HEADERS = {
    "paypal-auth-algo": "auth_algo",
    "paypal-cert-url": "cert_url",
    "paypal-transmission-id": "transmission_id",
    "paypal-transmission-sig": "transmission_sig",
    "paypal-transmission-time": "transmission_time",
}


class PayPalClient:
    """Client for the PayPal notifications API"""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        webhook_id: str | None = None,
        timeout: float | None = None,
    ):
        self.breakers = breakers
        self.base_url = base_url or settings.paypal_api_base
        self.client_id = client_id or settings.paypal_client_id
        self.client_secret = client_secret or settings.paypal_client_secret
        self.webhook_id = webhook_id or settings.paypal_webhook_id
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.external_max_retries

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """
        Ask PayPal whether a delivery's transmission signature is genuine.

        Returns:
            True only when PayPal reports verification_status == SUCCESS

        Raises:
            CircuitOpenError: When PayPal has been failing recently
            ExternalServiceError: On timeout or HTTP errors after retries
        """
        payload = {field: headers.get(header) for header, field in VERIFICATION_HEADERS.items()}
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = event

        async def _call() -> Dict[str, Any]:
            with external_call_histogram.labels(service=SERVICE_NAME).time():
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    token = await self._get_access_token(client)
                    response = await client.post(
                        f"{self.base_url}/v1/notifications/verify-webhook-signature",
                        json=payload,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                    response.raise_for_status()
                    return response.json()

        try:
            result = await self.breakers.with_retry(_call, SERVICE_NAME, max_retries=self.max_retries)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(f"PayPal API timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(f"PayPal API error: {e.response.status_code}") from e
        except (httpx.RequestError, KeyError, ValueError) as e:
            raise ExternalServiceError(f"PayPal API unavailable: {e}") from e

        return result.get("verification_status") == "SUCCESS"

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        """OAuth2 client-credentials token"""
        response = await client.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        response.raise_for_status()
        return response.json()["access_token"]
