"""/api/credits - balance reads and ledger mutations"""

import time
import logging
from typing import Any, Dict, Optional, Tuple
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from craiverse_gateway.api.dependencies import enforce_rate_limit, get_request_id
from craiverse_gateway.api.schemas import (
    BalanceResponse,
    CreditActionRequest,
    TransactionHistoryResponse,
    TransactionItem,
)
from craiverse_gateway.domain import idempotency
from craiverse_gateway.domain.exceptions import IdempotencyUnavailableError, LedgerError
from craiverse_gateway.domain.models import CachedResponse, IdempotencyCheck
from craiverse_gateway.infrastructure.database.session import get_db
from craiverse_gateway.infrastructure.observability.logging import log_ledger_operation
from craiverse_gateway.infrastructure.observability.metrics import record_ledger_operation
from craiverse_gateway.services.idempotency import IdempotencyStore
from craiverse_gateway.services.ledger import CreditLedger

router = APIRouter(dependencies=[Depends(enforce_rate_limit)])

OPERATION_TYPES = {
    "deduct": idempotency.CREDIT_DEDUCT,
    "add": idempotency.CREDIT_ADD,
    "refund": idempotency.CREDIT_REFUND,
}

OUTCOMES = {
    "INSUFFICIENT_CREDITS": "insufficient",
    "ALREADY_REFUNDED": "duplicate",
    "DUPLICATE_OPERATION": "duplicate",
}


def _require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=400, detail="userId required")
    return user_id


@router.get("/credits", response_model=BalanceResponse)
def get_balance(
    user_id: Optional[str] = Query(None, alias="userId", description="User identifier"),
    db: Session = Depends(get_db),
):
    """
    Current balance for a user.

    Users without an account yet read as zero.
    """
    user_id = _require_user_id(user_id)
    account = CreditLedger(db).get_account(user_id)

    if account is None:
        return BalanceResponse(user_id=user_id, balance=0, bonus_balance=0, lifetime_earned=0, lifetime_spent=0)

    return BalanceResponse(
        user_id=user_id,
        balance=account.balance,
        bonus_balance=account.bonus_balance,
        lifetime_earned=account.lifetime_earned,
        lifetime_spent=account.lifetime_spent,
    )


@router.get("/credits/transactions", response_model=TransactionHistoryResponse)
def get_transactions(
    user_id: Optional[str] = Query(None, alias="userId", description="User identifier"),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Recent ledger rows for a user, newest first"""
    user_id = _require_user_id(user_id)
    transactions = CreditLedger(db).list_transactions(user_id, limit=limit)

    items = [
        TransactionItem(
            id=str(tx.id),
            amount=tx.amount,
            balance_after=tx.balance_after,
            type=tx.type,
            source_app=tx.source_app,
            source_action=tx.source_action,
            operation_id=tx.operation_id,
            reference_id=tx.reference_id,
            reason=tx.reason,
            created_at=tx.created_at.isoformat(),
        )
        for tx in transactions
    ]

    return TransactionHistoryResponse(user_id=user_id, transactions=items)


def _execute(ledger: CreditLedger, body: CreditActionRequest) -> Tuple[int, Dict[str, Any]]:
    """Run one ledger action and render it as (status, JSON body)"""
    if body.action == "check":
        result = ledger.check(body.user_id, body.amount)
        return 200, {"hasEnough": result.has_enough, "balance": result.balance, "required": result.required}

    if body.action == "deduct":
        entry = ledger.deduct(
            body.user_id,
            body.amount,
            app_id=body.app_id,
            operation_id=body.operation_id,
            reason=body.reason,
        )
        return 200, {
            "success": True,
            "transactionId": entry.transaction_id,
            "deducted": body.amount,
            "balance": entry.balance_after,
        }

    if body.action == "add":
        entry = ledger.add(
            body.user_id,
            body.amount,
            source=body.source or "manual",
            reference_id=body.reference_id,
        )
        return 200, {
            "success": True,
            "transactionId": entry.transaction_id,
            "added": body.amount,
            "balance": entry.balance_after,
        }

    entry = ledger.refund(
        body.user_id,
        body.amount,
        operation_id=body.operation_id,
        reason=body.reason,
        app_id=body.app_id,
    )
    return 200, {
        "success": True,
        "transactionId": entry.transaction_id,
        "refunded": body.amount,
        "balance": entry.balance_after,
        "reason": body.reason,
    }


def _lookup(
    store: IdempotencyStore,
    idempotency_key: str,
    operation_type: str,
    request_hash: str,
    request_id: str,
) -> IdempotencyCheck:
    try:
        return store.check(idempotency_key, operation_type, request_hash)
    except IdempotencyUnavailableError as e:
        logging.error(f"Idempotency store unavailable: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Service temporarily unavailable, please try again later")


def _replay(
    cached: CachedResponse,
    idempotency_key: str,
    request_id: str,
    body: CreditActionRequest,
    start_time: float,
) -> JSONResponse:
    """Answer with the response recorded under the idempotency key"""
    headers = {"Idempotency-Key": idempotency_key}
    if cached.body != idempotency.REUSED_KEY_BODY:
        headers["Idempotency-Replayed"] = "true"
    log_ledger_operation(
        request_id, body.user_id, body.action, cached.status,
        (time.time() - start_time) * 1000, replayed=True,
    )
    return JSONResponse(content=cached.body, status_code=cached.status, headers=headers)


@router.post("/credits")
def post_credits(
    body: CreditActionRequest,
    request: Request,
    db: Session = Depends(get_db),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Check, deduct, add, or refund credits.

    Flow for mutating actions:
    1. Replay the cached response when Idempotency-Key was seen with this body
    2. Run the ledger action (402 insufficient, 409 duplicate)
    3. Store the response under the key in the same transaction as the mutation;
       when a concurrent request stored it first, roll back and replay that one
    4. Commit and return, echoing Idempotency-Key
    """
    start_time = time.time()
    request_id = get_request_id(request)
    ledger = CreditLedger(db)
    store = IdempotencyStore(db)

    operation_type = OPERATION_TYPES.get(body.action)
    use_key = bool(idempotency_key) and operation_type is not None
    request_hash = idempotency.generate_request_hash(body.model_dump(by_alias=True, exclude_none=True))

    if use_key:
        existing = _lookup(store, idempotency_key, operation_type, request_hash, request_id)
        if existing.exists:
            return _replay(existing.cached_response, idempotency_key, request_id, body, start_time)

    try:
        try:
            status_code, payload = _execute(ledger, body)
            outcome = "ok"
        except LedgerError as e:
            # Nothing from a rejected action may reach the commit below
            db.rollback()
            status_code, payload = e.status_code, e.to_body()
            outcome = OUTCOMES.get(e.code, "invalid")

        if use_key and not store.store(idempotency_key, operation_type, request_hash, status_code, payload):
            # Another request with this key committed first: undo ours and answer with its response
            db.rollback()
            winner = _lookup(store, idempotency_key, operation_type, request_hash, request_id)
            if not winner.exists:
                raise HTTPException(status_code=409, detail="Request with this Idempotency-Key is in progress")
            return _replay(winner.cached_response, idempotency_key, request_id, body, start_time)
        db.commit()

    except SQLAlchemyError as e:
        db.rollback()
        record_ledger_operation(body.action, "error")
        logging.error(f"Ledger database error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    record_ledger_operation(body.action, outcome, body.amount)
    log_ledger_operation(
        request_id, body.user_id, body.action, status_code,
        (time.time() - start_time) * 1000, balance=payload.get("balance"),
    )

    headers = {"Idempotency-Key": idempotency_key} if use_key else None
    return JSONResponse(content=payload, status_code=status_code, headers=headers)
