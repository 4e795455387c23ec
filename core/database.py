"""
core/database.py -- Explicitly owned SQLAlchemy engine shared by the stores.

AccountStore and LedgerStore both operate on the same database: an
authorization debits the accounts table and inserts into the transactions
table inside one database transaction. They therefore share one Engine
(one connection pool) instead of each opening their own.

The Database object is created once in the API lifespan (or in a test
fixture), injected into both stores, and disposed at shutdown. Nothing in
this package holds it in a module-level global.

Usage:
    db = Database("sqlite:///licensegate.db")
    accounts = AccountStore(db)
    ledger = LedgerStore(db)
    ...
    db.close()
"""

from __future__ import annotations

import logging

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.engine import Engine

logger = logging.getLogger("licensegate.database")

# Tables from accounts/store.py and ledger/store.py register here; each store
# creates its own tables on construction.
metadata = MetaData()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and a busy timeout for concurrent writers.

    WAL lets readers proceed during writes. busy_timeout makes a second
    writer wait for the lock instead of failing immediately with
    "database is locked". Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA busy_timeout=5000")
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class Database:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in a thread pool; connections cross threads.
            connect_args["check_same_thread"] = False
        self.url = db_url
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self.engine.dispose()
