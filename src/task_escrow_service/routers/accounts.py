"""Ledger account endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import read_body
from task_escrow_service.schemas import (
    AccountResponse,
    CreditRequest,
    OpenAccountRequest,
    SetLevelRequest,
    TransactionListResponse,
    TransactionResponse,
)
from task_escrow_service.services.ledger import EscrowLedger

router = APIRouter()


def _ledger() -> EscrowLedger:
    state = get_app_state()
    if state.ledger is None:
        msg = "EscrowLedger not initialized"
        raise RuntimeError(msg)
    return state.ledger


@router.post("/accounts", status_code=201, response_model=AccountResponse)
async def open_account(request: Request) -> AccountResponse:
    """Open a ledger account, optionally with a starting balance."""
    body = await read_body(await request.body(), OpenAccountRequest)
    account = _ledger().open_account(body.account_id, body.level, body.initial_balance)
    return AccountResponse.from_account(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str) -> AccountResponse:
    return AccountResponse.from_account(_ledger().require_account(account_id))


@router.get("/accounts/{account_id}/transactions", response_model=TransactionListResponse)
async def get_transactions(
    account_id: str,
    limit: int | None = Query(default=None, ge=1, le=1000),
    offset: int | None = Query(default=None, ge=0),
) -> TransactionListResponse:
    """Transaction history, oldest first."""
    transactions = _ledger().get_transactions(account_id, limit=limit, offset=offset)
    return TransactionListResponse(
        account_id=account_id,
        transactions=[TransactionResponse.from_transaction(tx) for tx in transactions],
    )


@router.post("/accounts/{account_id}/credit", response_model=TransactionResponse)
async def credit_account(account_id: str, request: Request) -> TransactionResponse:
    """Deposit funds into an account."""
    body = await read_body(await request.body(), CreditRequest)
    tx = _ledger().credit(account_id, body.amount, body.reason)
    return TransactionResponse.from_transaction(tx)


@router.put("/accounts/{account_id}/level", response_model=AccountResponse)
async def set_level(account_id: str, request: Request) -> AccountResponse:
    body = await read_body(await request.body(), SetLevelRequest)
    return AccountResponse.from_account(_ledger().set_level(account_id, body.level))
