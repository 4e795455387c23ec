"""
ledger/ledger.py -- CreditLedger: price, reserve, and settle credit usage.

Two-phase metering:

    reservation = ledger.authorize(account, action, payload)   # balance debited
    ... run the handler ...
    ledger.complete(reservation.transaction_id, result)         # counted as used
      or
    ledger.fail(reservation.transaction_id, "timeout")          # refunded

Guarantees (enforced by LedgerStore's conditional statements):
  - credit_balance never goes negative.
  - total_credits_used equals the sum of costs of completed transactions;
    it only moves at complete(), never at authorize().
  - Each reservation is completed or failed exactly once. A second attempt
    raises LedgerConflictError and changes nothing.

Reservations whose handler never reported back are failed and refunded by
expire_stale(), driven from the API lifespan.

Layer rule: no imports from api/, gateway/, routing/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from accounts.models import Account
from core.errors import InsufficientCreditsError, LedgerConflictError, TransactionNotFoundError
from ledger.models import Reservation, Settlement, Transaction
from ledger.pricing import CostPolicy
from ledger.store import LedgerStore

logger = logging.getLogger("licensegate.ledger")


class CreditLedger:
    def __init__(self, store: LedgerStore, policy: CostPolicy) -> None:
        self.store = store
        self.policy = policy

    def resolve_cost(self, action: str, payload: Optional[dict[str, Any]] = None) -> int:
        return self.policy.resolve_cost(action, payload)

    def authorize(
        self,
        account: Account,
        action: str,
        payload: Optional[dict[str, Any]] = None,
        cost: Optional[int] = None,
    ) -> Reservation:
        """Reserve the action's cost against the account.

        cost defaults to resolve_cost(action). Raises InsufficientCreditsError
        if the balance does not cover it. Free actions are not journalled and
        return a Reservation with no transaction id.
        """
        if cost is None:
            cost = self.resolve_cost(action, payload)
        if cost <= 0:
            return Reservation(transaction_id=None, cost=0, balance_after=account.credit_balance)

        txn = Transaction(
            account_id=account.id,
            action_name=action,
            credit_cost=cost,
            request_snapshot=payload,
        )
        balance_after = self.store.reserve(txn)
        if balance_after is None:
            current = self.store.get_balance(account.id)
            remaining = current.balance if current else account.credit_balance
            logger.info(
                "License %s: %s needs %d credits, %d remaining",
                account.license_prefix,
                action,
                cost,
                remaining,
            )
            raise InsufficientCreditsError(cost, remaining)

        logger.debug("Reserved %d credits for %s (%s)", cost, action, txn.id)
        return Reservation(transaction_id=txn.id, cost=cost, balance_after=balance_after)

    def complete(self, transaction_id: str, result: Optional[dict[str, Any]] = None) -> Settlement:
        settlement = self.store.settle(transaction_id, "completed", response_snapshot=result)
        if settlement is None:
            self._raise_unsettleable(transaction_id)
        logger.debug("Completed %s", transaction_id)
        return settlement

    def fail(self, transaction_id: str, error_message: str) -> Settlement:
        """Mark the reservation failed and refund its cost."""
        settlement = self.store.settle(transaction_id, "failed", error_message=error_message)
        if settlement is None:
            self._raise_unsettleable(transaction_id)
        logger.info("Refunded %s: %s", transaction_id, error_message)
        return settlement

    def grant(self, account_id: int, credits: int) -> Settlement:
        """Top up an account. credits must be positive."""
        if credits <= 0:
            raise ValueError("credits must be a positive integer")
        settlement = self.store.grant(account_id, credits)
        if settlement is None:
            raise LookupError(f"Account {account_id} does not exist")
        logger.info("Granted %d credits to account %d (balance %d)", credits, account_id, settlement.balance)
        return settlement

    def history(self, account_id: int, limit: int = 50) -> list[Transaction]:
        return self.store.list_for_account(account_id, limit)

    def expire_stale(self, max_age_seconds: int) -> int:
        """Fail and refund reservations older than max_age_seconds.

        Returns the number of reservations expired. A reservation settled by
        its request while the sweep runs is skipped.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
        expired = 0
        for transaction_id in self.store.reserved_before(cutoff):
            try:
                self.fail(transaction_id, "Reservation expired before the handler reported back.")
            except LedgerConflictError:
                continue
            expired += 1
        if expired:
            logger.warning("Expired %d stale reservation(s)", expired)
        return expired

    def _raise_unsettleable(self, transaction_id: str) -> None:
        existing = self.store.get_transaction(transaction_id)
        if existing is None:
            raise TransactionNotFoundError(transaction_id)
        raise LedgerConflictError(transaction_id, existing.status)
