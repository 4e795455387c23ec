"""
accounts/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. SessionGuard and route code never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Accounts are looked up by license_hash (UNIQUE index), never by raw key.

Concurrency:
  Session fields are last-writer-wins: two logins racing on one license may
  overwrite each other's session metadata, which is acceptable for an
  advisory exclusivity control. bind_identity() is the exception -- it is a
  conditional set-once UPDATE so two first-time callers cannot both bind.

  Balance columns are owned by ledger/store.py, which updates them with
  conditional statements inside its own transactions. This store only
  writes them at creation time.

Layer rule: no imports from api/, gateway/, ledger/, routing/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, Integer, String, Table, Text

from accounts.models import Account
from core.database import Database, metadata

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

accounts_table = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("license_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("license_prefix", String(12), nullable=False),  # display only
    Column("status", String(20), nullable=False, server_default="active"),
    Column("credit_balance", Integer, nullable=False, server_default="0"),
    Column("total_credits_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("active_session_identity", String(255)),
    Column("session_started_at", String(32)),
    Column("bound_identity", Text),
    # Backstop for the ledger's conditional debit.
    CheckConstraint("credit_balance >= 0", name="ck_accounts_balance_non_negative"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        db = Database("sqlite:///licensegate.db")
        store = AccountStore(db)
        account_id = store.create_account(Account(email=..., license_hash=..., license_prefix=...))
        account = store.get_by_license_hash(hash_license_key(raw_key))
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.engine = db.engine
        metadata.create_all(self.engine, tables=[accounts_table])

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the license hash already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts_table.insert().values(
                    email=account.email,
                    license_hash=account.license_hash,
                    license_prefix=account.license_prefix,
                    status=account.status,
                    credit_balance=account.credit_balance,
                    total_credits_used=account.total_credits_used,
                    created_at=account.created_at or _now_iso(),
                    bound_identity=account.bound_identity,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_license_hash(self, license_hash: str) -> Account | None:
        """Look up an account by license hash regardless of status. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                accounts_table.select().where(accounts_table.c.license_hash == license_hash)
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(accounts_table.select().where(accounts_table.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def claim_session(self, account_id: int, identity: str, started_at: str) -> None:
        """Record identity as the active session holder and stamp last_login_at.

        Unconditional (last-writer-wins). SessionGuard decides whether the
        caller may claim before calling this.
        """
        with self.engine.begin() as conn:
            conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(active_session_identity=identity, session_started_at=started_at, last_login_at=started_at)
            )

    def bind_identity(self, account_id: int, identity: str) -> bool:
        """Set bound_identity if and only if it is still unset.

        Returns True if this call performed the binding, False if the account
        was already bound (possibly by a concurrent request).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts_table.update()
                .where((accounts_table.c.id == account_id) & (accounts_table.c.bound_identity.is_(None)))
                .values(bound_identity=identity)
            )
        return result.rowcount > 0

    def set_status(self, account_id: int, status: str) -> bool:
        """Change the account status. Returns True if a row was updated."""
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts_table.update().where(accounts_table.c.id == account_id).values(status=status)
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        license_hash=row.license_hash,
        license_prefix=row.license_prefix,
        status=row.status,
        credit_balance=row.credit_balance,
        total_credits_used=row.total_credits_used,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
        active_session_identity=row.active_session_identity,
        session_started_at=row.session_started_at,
        bound_identity=row.bound_identity,
    )
