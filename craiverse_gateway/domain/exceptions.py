"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class LedgerError(DomainException):
    """Ledger operation rejected; carries the HTTP status and error code surfaced to callers"""

    status_code = 400
    code = "LEDGER_ERROR"

    def to_body(self) -> dict:
        return {"error": str(self), "code": self.code}


class InvalidRequestError(LedgerError):
    """Ledger call is missing a required field"""

    code = "INVALID_REQUEST"


class InvalidAmountError(InvalidRequestError):
    """Credit amount is not a positive integer"""

    code = "INVALID_AMOUNT"


class InsufficientCreditsError(LedgerError):
    """Spendable balance is lower than the amount requested"""

    status_code = 402
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, balance: int, required: int):
        super().__init__("Insufficient credits")
        self.balance = balance
        self.required = required

    def to_body(self) -> dict:
        return {**super().to_body(), "balance": self.balance, "required": self.required}


class AlreadyRefundedError(LedgerError):
    """A refund was already recorded for this operation"""

    status_code = 409
    code = "ALREADY_REFUNDED"


class DuplicateOperationError(LedgerError):
    """A deduction was already recorded for this operation"""

    status_code = 409
    code = "DUPLICATE_OPERATION"


class IdempotencyKeyReusedError(DomainException):
    """Idempotency key was already used with a different request body"""

    status_code = 422
    code = "IDEMPOTENCY_KEY_REUSED"


class IdempotencyUnavailableError(DomainException):
    """Idempotency store could not be read and the policy is fail-closed"""

    pass


class RateLimitExceededError(DomainException):
    """Identifier exhausted its window for the route category"""

    def __init__(self, category: str, remaining: int, reset_seconds: int):
        super().__init__(f"Rate limit exceeded for category {category}")
        self.category = category
        self.remaining = remaining
        self.reset_seconds = reset_seconds


class CircuitOpenError(DomainException):
    """Circuit breaker is open for a dependent service"""

    def __init__(self, service: str):
        super().__init__(f"Circuit breaker open for {service}")
        self.service = service


class ExternalServiceError(DomainException):
    """Third-party API returned an error or is unavailable"""

    pass


class SignatureVerificationError(DomainException):
    """Webhook payload failed provider signature verification"""

    pass


class InvalidTransitionError(DomainException):
    """Subscription status change is not allowed by the lifecycle"""

    pass
