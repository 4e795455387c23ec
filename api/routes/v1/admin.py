"""
api/routes/v1/admin.py -- Account provisioning and credit management.

Routes:
  POST   /admin/accounts                              -- create account, return raw license key once
  PATCH  /admin/accounts/{account_id}                 -- change account status
  POST   /admin/accounts/{account_id}/credits         -- grant credits
  GET    /admin/accounts/{account_id}/transactions    -- transaction journal, newest first

Every route requires the X-Admin-Token header (see api/dependencies.py).
With ADMIN_TOKEN unset the whole router answers 403.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from accounts.keys import display_prefix, generate_license_key, hash_license_key
from accounts.models import Account
from accounts.store import AccountStore
from api.dependencies import require_admin_token
from api.models import (
    AccountCreate,
    AccountCreateResponse,
    AccountResponse,
    AccountStatusUpdate,
    BalanceResponse,
    CreditGrant,
    TransactionRow,
)
from ledger.ledger import CreditLedger

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_token)])


def _get_account_or_404(store: AccountStore, account_id: int) -> Account:
    account = store.get_by_id(account_id)
    if account is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"Account {account_id} not found."},
        )
    return account


@router.post("/accounts", response_model=AccountCreateResponse, status_code=201)
def create_account(request: Request, body: AccountCreate) -> AccountCreateResponse:
    """Provision a new account.

    The raw license key appears in this response only. The database keeps
    its HMAC hash and a display prefix.
    """
    store: AccountStore = request.app.state.account_store
    raw_key = generate_license_key()
    account_id = store.create_account(
        Account(
            email=body.email.lower(),
            license_hash=hash_license_key(raw_key),
            license_prefix=display_prefix(raw_key),
            credit_balance=body.credits,
        )
    )
    created = store.get_by_id(account_id)
    return AccountCreateResponse(**AccountResponse.from_account(created).model_dump(), license_key=raw_key)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account_status(request: Request, account_id: int, body: AccountStatusUpdate) -> AccountResponse:
    """Activate, deactivate, or suspend an account. Inactive accounts fail authentication."""
    store: AccountStore = request.app.state.account_store
    _get_account_or_404(store, account_id)
    store.set_status(account_id, body.status)
    return AccountResponse.from_account(store.get_by_id(account_id))


@router.post("/accounts/{account_id}/credits", response_model=BalanceResponse)
def grant_credits(request: Request, account_id: int, body: CreditGrant) -> BalanceResponse:
    ledger: CreditLedger = request.app.state.ledger
    _get_account_or_404(request.app.state.account_store, account_id)
    settlement = ledger.grant(account_id, body.credits)
    return BalanceResponse(
        account_id=account_id,
        credit_balance=settlement.balance,
        total_credits_used=settlement.total_used,
    )


@router.get("/accounts/{account_id}/transactions", response_model=list[TransactionRow])
def list_transactions(
    request: Request,
    account_id: int,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[TransactionRow]:
    ledger: CreditLedger = request.app.state.ledger
    _get_account_or_404(request.app.state.account_store, account_id)
    return [TransactionRow.from_transaction(t) for t in ledger.history(account_id, limit)]
