"""
ledger/models.py -- Domain dataclasses for the credit journal.

Transaction lifecycle:
    reserved -> completed   (handler succeeded; cost counted as used)
    reserved -> failed      (handler failed or reservation expired; cost refunded)

Each transition happens at most once. Transactions are never deleted; the
journal is the audit trail.

Layer rule: no imports from api/, gateway/, routing/, or cache/.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any

TRANSACTION_STATUSES = ("reserved", "completed", "failed")


def new_transaction_id() -> str:
    """Return a fresh id in the format txn_<32 hex chars>."""
    return f"txn_{secrets.token_hex(16)}"


@dataclass
class Transaction:
    account_id: int
    action_name: str
    credit_cost: int
    status: str = "reserved"  # "reserved" | "completed" | "failed"
    id: str = field(default_factory=new_transaction_id)
    request_snapshot: dict[str, Any] | None = None
    response_snapshot: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


@dataclass(frozen=True)
class Reservation:
    """Result of a successful authorize(): credits are held for transaction_id."""

    transaction_id: str | None  # None for free actions
    cost: int
    balance_after: int


@dataclass(frozen=True)
class Settlement:
    """Account balance counters after complete(), fail(), or grant()."""

    balance: int
    total_used: int
