"""Prometheus metrics for monitoring the ledger, admission control, and provider integrations"""

from prometheus_client import Counter, Histogram, Gauge

# Ledger metrics
ledger_operation_counter = Counter(
    "craiverse_ledger_operations_total",
    "Credit ledger operations",
    ["action", "outcome"],  # check|deduct|add|refund x ok|insufficient|duplicate|invalid|error
)

credits_moved_counter = Counter(
    "craiverse_credits_moved_total",
    "Credits moved through the ledger",
    ["direction"],  # in | out
)

# Admission control
rate_limit_counter = Counter(
    "craiverse_rate_limit_decisions_total",
    "Rate limit decisions",
    ["category", "decision"],  # allowed | rejected | fail_open
)

idempotency_counter = Counter(
    "craiverse_idempotency_total",
    "Idempotency store lookups",
    ["outcome"],  # miss | replayed | conflict | unavailable
)

# Provider integrations
webhook_event_counter = Counter(
    "craiverse_webhook_events_total",
    "Inbound provider webhook events",
    ["provider", "event_type", "outcome"],  # processed | duplicate | rejected | failed
)

external_call_histogram = Histogram(
    "craiverse_external_call_seconds",
    "Outbound call latency to third-party services",
    ["service"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

circuit_state_gauge = Gauge(
    "craiverse_circuit_state",
    "Circuit breaker state per service (0=closed, 1=half_open, 2=open)",
    ["service"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)

CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


def record_ledger_operation(action: str, outcome: str, amount: int = 0) -> None:
    """Record a ledger outcome and the credit volume it moved"""
    ledger_operation_counter.labels(action=action, outcome=outcome).inc()

    if outcome != "ok" or amount <= 0:
        return
    if action == "deduct":
        credits_moved_counter.labels(direction="out").inc(amount)
    elif action in ("add", "refund"):
        credits_moved_counter.labels(direction="in").inc(amount)


def record_circuit_state(service: str, state: str) -> None:
    circuit_state_gauge.labels(service=service).set(CIRCUIT_STATE_VALUES[state])
