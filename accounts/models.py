"""
accounts/models.py -- Domain dataclass for license-key accounts.

Pattern: Data class (pure data container, zero logic). The store does the
persistence work; SessionGuard and CreditLedger do the business rules.

Layer rule: no imports from api/, gateway/, ledger/, routing/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass

ACCOUNT_STATUSES = ("active", "inactive", "suspended")


@dataclass
class Account:
    """A customer account identified by a long-lived license key.

    Security design:
    - license_hash is HMAC-SHA256(SECRET_KEY, raw_key). The raw key is
      returned once at provisioning and never persisted.
    - license_prefix (first 12 chars of the raw key) is kept for display and
      log lines so operators can tell keys apart without seeing them.

    Mutation ownership:
    - SessionGuard writes last_login_at, active_session_identity,
      session_started_at, and (once) bound_identity.
    - CreditLedger writes credit_balance and total_credits_used.

    Timestamps are ISO 8601 UTC strings, set by the store.
    """

    email: str
    license_hash: str
    license_prefix: str
    status: str = "active"  # "active" | "inactive" | "suspended"
    credit_balance: int = 0
    total_credits_used: int = 0
    id: int | None = None
    created_at: str | None = None
    last_login_at: str | None = None
    active_session_identity: str | None = None  # caller IP holding the session
    session_started_at: str | None = None
    bound_identity: str | None = None  # set once under the permanent-binding policy

    @property
    def is_active(self) -> bool:
        return self.status == "active"
