"""Credit ledger: balance checks, deductions, grants, and refunds

Methods flush but never commit; the calling handler owns the unit of work so
that the mutation and its idempotency record commit together.
"""

import logging
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from craiverse_gateway.domain.exceptions import (
    AlreadyRefundedError,
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidRequestError,
)
from craiverse_gateway.domain.models import CreditCheck, LedgerEntry
from craiverse_gateway.infrastructure.database.models import CreditAccount, CreditTransaction
from craiverse_gateway.infrastructure.database.repositories import (
    CreditLedgerRepository,
    NotificationRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_APP_ID = "craiverse"


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")


class CreditLedger:
    """Balance and transaction log for platform credits"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CreditLedgerRepository(db)
        self.notifications = NotificationRepository(db)

    def get_account(self, user_id: str) -> Optional[CreditAccount]:
        return self.repo.get_account(user_id)

    def list_transactions(self, user_id: str, limit: int = 20) -> List[CreditTransaction]:
        return self.repo.get_transactions_by_user(user_id, limit=limit)

    def has_purchase(self, user_id: str, reference_id: str) -> bool:
        """Whether a grant was already recorded for this external reference"""
        return self.repo.has_reference(user_id, "purchase", reference_id)

    def check(self, user_id: str, amount: int) -> CreditCheck:
        """Read-only: does the user hold at least amount spendable credits"""
        _validate_amount(amount)
        balance = self.repo.get_spendable_balance(user_id)
        return CreditCheck(has_enough=balance >= amount, balance=balance, required=amount)

    def deduct(
        self,
        user_id: str,
        amount: int,
        app_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Spend credits with a single conditional update.

        Raises:
            InvalidAmountError: amount is not a positive integer
            InsufficientCreditsError: spendable balance < amount (nothing changes)
            DuplicateOperationError: operation_id already deducted for this user
        """
        _validate_amount(amount)

        if operation_id and self.repo.has_operation(user_id, "deduction", operation_id):
            raise DuplicateOperationError(f"Operation {operation_id} was already deducted")

        balance_after = self.repo.debit(user_id, amount)
        if balance_after is None:
            raise InsufficientCreditsError(
                balance=self.repo.get_spendable_balance(user_id),
                required=amount,
            )

        try:
            tx = self.repo.append_transaction(
                user_id=user_id,
                amount=-amount,
                balance_after=balance_after,
                tx_type="deduction",
                source_app=app_id or DEFAULT_APP_ID,
                source_action="deduct",
                operation_id=operation_id,
                reason=reason,
            )
        except IntegrityError as e:
            # Lost a race with a concurrent deduct for the same operation
            self.db.rollback()
            raise DuplicateOperationError(f"Operation {operation_id} was already deducted") from e

        return self._entry(tx)

    def add(
        self,
        user_id: str,
        amount: int,
        source: str,
        reference_id: Optional[str] = None,
        bonus: int = 0,
    ) -> LedgerEntry:
        """Grant credits (purchase, subscription, renewal) and notify the user"""
        _validate_amount(amount)
        if bonus < 0:
            raise InvalidAmountError("Bonus must not be negative")

        self.repo.ensure_account(user_id)
        balance_after = self.repo.credit(user_id, amount, bonus=bonus)

        total = amount + bonus
        reason = f"Purchased {amount} credits" + (f" + {bonus} bonus" if bonus > 0 else "")
        tx = self.repo.append_transaction(
            user_id=user_id,
            amount=total,
            balance_after=balance_after,
            tx_type="purchase",
            source_app=DEFAULT_APP_ID,
            source_action=source,
            reference_id=reference_id,
            reason=reason,
        )

        self.notifications.create(
            user_id=user_id,
            type="credits_added",
            title="Credits Added!",
            message=f"{total} credits have been added to your account.",
            source_type="payment",
            source_id=reference_id,
        )
        return self._entry(tx)

    def refund(
        self,
        user_id: str,
        amount: int,
        operation_id: str,
        reason: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Return credits for a failed operation, at most once per operation_id.

        Raises:
            InvalidAmountError: amount is not a positive integer
            AlreadyRefundedError: a refund row already exists for operation_id
        """
        _validate_amount(amount)
        if not operation_id:
            raise InvalidRequestError("operationId is required for refunds")

        if self.repo.has_operation(user_id, "refund", operation_id):
            raise AlreadyRefundedError(f"Operation {operation_id} was already refunded")

        self.repo.ensure_account(user_id)
        balance_after = self.repo.restore(user_id, amount)

        try:
            tx = self.repo.append_transaction(
                user_id=user_id,
                amount=amount,
                balance_after=balance_after,
                tx_type="refund",
                source_app=app_id or DEFAULT_APP_ID,
                source_action="refund",
                operation_id=operation_id,
                reason=f"Refund: {reason}" if reason else "Refund",
            )
        except IntegrityError as e:
            self.db.rollback()
            raise AlreadyRefundedError(f"Operation {operation_id} was already refunded") from e

        logger.info("Credits refunded", extra={"user_id": user_id, "operation_id": operation_id, "amount": amount})
        return self._entry(tx)

    @staticmethod
    def _entry(tx: CreditTransaction) -> LedgerEntry:
        return LedgerEntry(
            transaction_id=str(tx.id),
            user_id=tx.user_id,
            amount=tx.amount,
            balance_after=tx.balance_after,
            type=tx.type,
        )
