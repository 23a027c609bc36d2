"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional


class CreditActionRequest(BaseModel):
    """Request body for POST /api/credits"""

    model_config = ConfigDict(populate_by_name=True)

    action: Literal["check", "deduct", "add", "refund"]
    user_id: str = Field(..., min_length=1, alias="userId", description="User identifier")
    amount: int = Field(..., description="Credits to check, deduct, add, or refund; must be positive")
    app_id: Optional[str] = Field(None, alias="appId", description="Calling application")
    operation_id: Optional[str] = Field(None, alias="operationId", description="Operation being charged or refunded")
    reason: Optional[str] = None
    source: Optional[str] = Field(None, description="Grant source for add, e.g. subscription_renewal")
    reference_id: Optional[str] = Field(None, alias="referenceId", description="External reference for add")


class BalanceResponse(BaseModel):
    """Response for GET /api/credits"""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    balance: int
    bonus_balance: int = Field(..., alias="bonusBalance")
    lifetime_earned: int
    lifetime_spent: int


class TransactionItem(BaseModel):
    """Single ledger row"""

    id: str
    amount: int
    balance_after: int
    type: str
    source_app: Optional[str] = None
    source_action: Optional[str] = None
    operation_id: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: str


class TransactionHistoryResponse(BaseModel):
    """Response for GET /api/credits/transactions"""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    transactions: List[TransactionItem]


class WebhookReceipt(BaseModel):
    """Acknowledgement returned to payment providers"""

    received: bool = True


class SweepResponse(BaseModel):
    """Response for POST /api/cron/sweep"""

    idempotency_records_deleted: int
    rate_limit_entries_deleted: int
