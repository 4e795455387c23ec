"""
ledger/store.py -- SQLAlchemy Core persistence for credit movements.

Pattern: Repository + Data Mapper. LedgerStore owns the transactions table
and every write to the balance columns of the accounts table;
_row_to_transaction is the mapper.

Atomicity:
  Every balance change is a single conditional UPDATE inside engine.begin(),
  never a read followed by a write:

    reserve  UPDATE accounts SET credit_balance = credit_balance - :cost
             WHERE id = :id AND credit_balance >= :cost
             + INSERT the reserved transaction, same database transaction
    settle   UPDATE transactions SET status = :new WHERE id = :id AND status = 'reserved'
             + on completed: total_credits_used += cost
             + on failed:    credit_balance += cost (the refund)

  A second settle of the same transaction matches zero rows, so a
  transaction is counted or refunded at most once even under concurrent
  callers. Each transaction starts with its write statement so SQLite takes
  the write lock before reading.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, gateway/, routing/, or cache/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Index, Integer, String, Table, Text, select

from accounts.store import accounts_table
from core.database import Database, metadata
from ledger.models import Settlement, Transaction

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

transactions_table = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),  # txn_<32 hex>
    Column("account_id", Integer, nullable=False),
    Column("action_name", String(255), nullable=False),
    Column("credit_cost", Integer, nullable=False),
    Column("status", String(20), nullable=False),
    Column("request_snapshot", Text),  # JSON
    Column("response_snapshot", Text),  # JSON
    Column("error_message", Text),
    Column("created_at", String(32), nullable=False),
    Column("completed_at", String(32)),
    Index("ix_transactions_account_created", "account_id", "created_at"),
    Index("ix_transactions_status_created", "status", "created_at"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Optional[dict[str, Any]]) -> Optional[str]:
    # default=str keeps odd handler output (datetimes, Decimals) from failing the settle.
    return json.dumps(value, default=str) if value is not None else None


def _counters(conn, account_id: int) -> Settlement:
    row = conn.execute(
        select(accounts_table.c.credit_balance, accounts_table.c.total_credits_used).where(
            accounts_table.c.id == account_id
        )
    ).fetchone()
    return Settlement(balance=row.credit_balance, total_used=row.total_credits_used)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LedgerStore:
    """Repository for Transactions and account balance movements.

    Usage:
        store = LedgerStore(db)
        balance = store.reserve(Transaction(account_id=1, action_name="workflow:stage2", credit_cost=10))
        settlement = store.settle(txn_id, "completed", response_snapshot={...})
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.engine = db.engine
        metadata.create_all(self.engine, tables=[accounts_table, transactions_table])

    def reserve(self, txn: Transaction) -> Optional[int]:
        """Debit txn.credit_cost and journal txn as reserved.

        Returns the balance after the debit, or None if the account does not
        have enough credits (nothing is written in that case).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts_table.update()
                .where((accounts_table.c.id == txn.account_id) & (accounts_table.c.credit_balance >= txn.credit_cost))
                .values(credit_balance=accounts_table.c.credit_balance - txn.credit_cost)
            )
            if result.rowcount == 0:
                return None
            conn.execute(
                transactions_table.insert().values(
                    id=txn.id,
                    account_id=txn.account_id,
                    action_name=txn.action_name,
                    credit_cost=txn.credit_cost,
                    status="reserved",
                    request_snapshot=_dumps(txn.request_snapshot),
                    created_at=txn.created_at or _now_iso(),
                )
            )
            return _counters(conn, txn.account_id).balance

    def settle(
        self,
        transaction_id: str,
        status: str,
        response_snapshot: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Settlement]:
        """Move a reserved transaction to completed or failed.

        completed adds the cost to total_credits_used; failed refunds it to
        credit_balance. Returns the account counters afterwards, or None if
        the transaction does not exist or is no longer reserved.
        """
        if status not in ("completed", "failed"):
            raise ValueError(f"Cannot settle a transaction as {status!r}")
        with self.engine.begin() as conn:
            result = conn.execute(
                transactions_table.update()
                .where((transactions_table.c.id == transaction_id) & (transactions_table.c.status == "reserved"))
                .values(
                    status=status,
                    response_snapshot=_dumps(response_snapshot),
                    error_message=error_message,
                    completed_at=_now_iso(),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(
                select(transactions_table.c.account_id, transactions_table.c.credit_cost).where(
                    transactions_table.c.id == transaction_id
                )
            ).fetchone()
            if status == "completed":
                values = {"total_credits_used": accounts_table.c.total_credits_used + row.credit_cost}
            else:
                values = {"credit_balance": accounts_table.c.credit_balance + row.credit_cost}
            conn.execute(accounts_table.update().where(accounts_table.c.id == row.account_id).values(**values))
            return _counters(conn, row.account_id)

    def grant(self, account_id: int, credits: int) -> Optional[Settlement]:
        """Add credits to an account. Returns None if the account does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(credit_balance=accounts_table.c.credit_balance + credits)
            )
            if result.rowcount == 0:
                return None
            return _counters(conn, account_id)

    def get_balance(self, account_id: int) -> Optional[Settlement]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(accounts_table.c.id).where(accounts_table.c.id == account_id)
            ).fetchone()
            if row is None:
                return None
            return _counters(conn, account_id)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self.engine.connect() as conn:
            row = conn.execute(
                transactions_table.select().where(transactions_table.c.id == transaction_id)
            ).fetchone()
        return _row_to_transaction(row) if row is not None else None

    def list_for_account(self, account_id: int, limit: int = 50) -> list[Transaction]:
        """Return the account's journal, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                transactions_table.select()
                .where(transactions_table.c.account_id == account_id)
                .order_by(transactions_table.c.created_at.desc(), transactions_table.c.id)
                .limit(limit)
            ).fetchall()
        return [_row_to_transaction(r) for r in rows]

    def reserved_before(self, cutoff_iso: str) -> list[str]:
        """Return ids of reservations created before cutoff_iso, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(transactions_table.c.id)
                .where((transactions_table.c.status == "reserved") & (transactions_table.c.created_at < cutoff_iso))
                .order_by(transactions_table.c.created_at)
            ).fetchall()
        return [r.id for r in rows]


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        action_name=row.action_name,
        credit_cost=row.credit_cost,
        status=row.status,
        request_snapshot=json.loads(row.request_snapshot) if row.request_snapshot else None,
        response_snapshot=json.loads(row.response_snapshot) if row.response_snapshot else None,
        error_message=row.error_message,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )
