"""Per-service circuit breaker with exponential backoff retries

State is process-local: each instance of the gateway tracks failures of its
own outbound calls. The registry is created per application and injected into
clients, so tests build independent instances.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from craiverse_gateway.config import settings
from craiverse_gateway.domain.exceptions import CircuitOpenError
from craiverse_gateway.infrastructure.observability.metrics import record_circuit_state

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    """Breaker bookkeeping for one downstream service"""

    service_name: str
    state: str = CLOSED
    failures: int = 0
    last_failure_at: float = 0.0
    next_attempt_at: float = 0.0
    half_open_calls: int = 0


class CircuitBreakerRegistry:
    """Circuit breakers keyed by service name"""

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        half_open_max_calls: Optional[int] = None,
        backoff_base: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.failure_threshold = failure_threshold or settings.circuit_failure_threshold
        self.recovery_timeout = (
            recovery_timeout if recovery_timeout is not None else settings.circuit_recovery_timeout_seconds
        )
        self.half_open_max_calls = half_open_max_calls or settings.circuit_half_open_max_calls
        self.backoff_base = backoff_base if backoff_base is not None else settings.retry_backoff_base
        self._clock = clock
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreakerState] = {}

    def get(self, service: str) -> CircuitBreakerState:
        """Breaker for a service, created CLOSED on first reference"""
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreakerState(service_name=service)
            self._breakers[service] = breaker
        return breaker

    def can_make_request(self, service: str) -> bool:
        breaker = self.get(service)

        if breaker.state == CLOSED:
            return True

        if breaker.state == OPEN:
            if self._clock() < breaker.next_attempt_at:
                return False
            self._set_state(breaker, HALF_OPEN)
            breaker.half_open_calls = 1
            return True

        # HALF_OPEN: only a bounded number of trial requests until one resolves
        if breaker.half_open_calls < self.half_open_max_calls:
            breaker.half_open_calls += 1
            return True
        return False

    def record_success(self, service: str) -> None:
        breaker = self.get(service)
        breaker.failures = 0
        breaker.half_open_calls = 0
        if breaker.state != CLOSED:
            logger.info("Circuit breaker closed", extra={"service": service})
        self._set_state(breaker, CLOSED)

    def record_failure(self, service: str) -> None:
        breaker = self.get(service)
        breaker.failures += 1
        breaker.last_failure_at = self._clock()

        if breaker.state == HALF_OPEN or breaker.failures >= self.failure_threshold:
            breaker.next_attempt_at = breaker.last_failure_at + self.recovery_timeout
            breaker.half_open_calls = 0
            if breaker.state != OPEN:
                logger.warning(
                    "Circuit breaker OPEN",
                    extra={"service": service, "failures": breaker.failures},
                )
            self._set_state(breaker, OPEN)

    def release_trial(self, service: str) -> None:
        """Give back a HALF_OPEN trial slot whose call ended without an outcome"""
        breaker = self.get(service)
        if breaker.state == HALF_OPEN and breaker.half_open_calls > 0:
            breaker.half_open_calls -= 1

    def backoff_delay(self, attempt: int) -> float:
        """2^attempt * base + jitter in [0, base)"""
        return (2 ** attempt) * self.backoff_base + random.uniform(0, self.backoff_base)

    async def with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        service: str,
        max_retries: int = 3,
    ) -> T:
        """
        Call fn, retrying failures with exponential backoff plus jitter.

        Raises:
            CircuitOpenError: When the breaker blocks an attempt
            Exception: The last error once all attempts failed
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")

        last_error: Optional[BaseException] = None

        for attempt in range(max_retries):
            if not self.can_make_request(service):
                raise CircuitOpenError(service) from last_error

            try:
                result = await fn()
            except Exception as e:
                last_error = e
                self.record_failure(service)
                logger.warning(
                    f"Call to {service} failed: {e}",
                    extra={"service": service, "attempt": attempt + 1},
                )
                if attempt < max_retries - 1:
                    await self._sleep(self.backoff_delay(attempt))
                continue
            except BaseException:
                # Cancelled mid-call
                self.release_trial(service)
                raise

            self.record_success(service)
            return result

        raise last_error

    def _set_state(self, breaker: CircuitBreakerState, state: str) -> None:
        breaker.state = state
        record_circuit_state(breaker.service_name, state)
