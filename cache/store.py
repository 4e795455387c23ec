"""
cache/store.py -- SQLite-backed TTL cache for downstream fetch results.

Stores successful fetcher responses so identical requests inside the TTL do
not hit the downstream service again. Every row carries its own expires_at;
get() ignores and deletes expired rows, and purge_expired() removes them in
bulk. The gateway calls purge_expired() opportunistically (roughly one
request in a hundred, as a background task) instead of running a scheduler.

Cache failures never fail a request: callers treat a miss and an error the
same way.

Usage:
    cache = ResultCache("licensegate_cache.db", ttl=3600)
    data = cache.get(key)        # dict or None
    cache.set(key, data)
    cache.purge_expired()        # returns rows removed
"""

import hashlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger("licensegate.cache")

_DEFAULT_TTL = 60 * 60  # 1 hour in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS result_cache (
    cache_key   TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def make_key(*parts: Any) -> str:
    """Stable cache key for an action and its payload (sha256 of canonical JSON)."""
    raw = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ResultCache:
    def __init__(self, db_path: Union[str, Path] = ":memory:", ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        # One connection shared by threadpool workers; the lock serialises use.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[dict]:
        """Return cached data for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, expires_at FROM result_cache WHERE cache_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            data, expires_at = row
            if time.time() >= expires_at:
                self._conn.execute("DELETE FROM result_cache WHERE cache_key = ?", (key,))
                self._conn.commit()
                return None
        return json.loads(data)

    def set(self, key: str, data: dict, ttl: Optional[int] = None) -> None:
        """Store data for key, replacing any existing entry."""
        expires_at = time.time() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO result_cache (cache_key, data, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(data, default=str), expires_at),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM result_cache WHERE expires_at <= ?", (time.time(),))
            self._conn.commit()
        if cursor.rowcount:
            logger.info("Purged %d expired cache entries", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
