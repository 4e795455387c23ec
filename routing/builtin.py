"""
routing/builtin.py -- Free management handlers served in-process.

AccountHandler answers status/credit/license questions from the account the
session guard just admitted; it never writes. LedgerHandler returns the
caller's transaction journal. Every view either handler serves is in
ledger/pricing.py FREE_ACTIONS, so none of them holds a reservation. Any
other user_* name is priced normally and answered with a failure, which
refunds it.
"""

from __future__ import annotations

from typing import Any

from ledger.ledger import CreditLedger
from routing.handlers import AccountContext, CategoryHandler, HandlerResult

MAX_HISTORY_LIMIT = 200


def _user_view(context: AccountContext) -> dict[str, Any]:
    account = context.account
    return {
        "email": account.email,
        "license_prefix": account.license_prefix,
        "status": account.status,
        "credits_remaining": account.credit_balance,
        "total_credits_used": account.total_credits_used,
        "created_at": account.created_at,
        "last_login_at": account.last_login_at,
    }


class AccountHandler(CategoryHandler):
    """Read-only account views: status, credits, license verification."""

    def handle(self, action, payload, context):
        if action in ("status", "check_status", "getUserInfo", "user_info"):
            return HandlerResult.ok(user=_user_view(context))
        if action in ("getCredits", "user_credits"):
            return HandlerResult.ok(credits=context.account.credit_balance)
        if action in ("verifyLicenseKey", "user_verify"):
            return HandlerResult.ok(message="License key verified", user=_user_view(context))
        if action == "user_has_credits":
            required = payload.get("required", 1)
            if isinstance(required, bool) or not isinstance(required, int) or required < 0:
                return HandlerResult.failed("required must be a non-negative integer")
            balance = context.account.credit_balance
            return HandlerResult.ok(
                has_credits=balance >= required,
                current_credits=balance,
                required_credits=required,
            )
        return HandlerResult.failed(f"Unsupported account action: {action[:100]}")


class LedgerHandler(CategoryHandler):
    """Journal history for the calling account, newest first."""

    def __init__(self, ledger: CreditLedger) -> None:
        self.ledger = ledger

    def handle(self, action, payload, context):
        try:
            limit = int(payload.get("limit", 50))
        except (TypeError, ValueError):
            return HandlerResult.failed("limit must be an integer")
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        transactions = self.ledger.history(context.account.id, limit)
        return HandlerResult.ok(
            transactions=[
                {
                    "id": t.id,
                    "action": t.action_name,
                    "cost": t.credit_cost,
                    "status": t.status,
                    "error": t.error_message,
                    "created_at": t.created_at,
                    "completed_at": t.completed_at,
                }
                for t in transactions
            ]
        )
