"""Request fingerprinting for idempotent mutations"""

import hashlib
import json
from typing import Any

from craiverse_gateway.domain.exceptions import IdempotencyKeyReusedError

# Operation types scoping idempotency keys
CREDIT_ADD = "credit.add"
CREDIT_DEDUCT = "credit.deduct"
CREDIT_REFUND = "credit.refund"

REUSED_KEY_BODY = {
    "error": "Idempotency key already used with different request parameters",
    "code": IdempotencyKeyReusedError.code,
}


def generate_request_hash(body: Any) -> str:
    """SHA-256 of the canonical JSON form of a request body (keys sorted, compact separators)"""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
