"""
tests/conftest.py -- Shared test fixtures for licensegate.

This module provides:
  - db / account_store / ledger_store / ledger: isolated in-memory stores
  - make_account: factory that provisions an account and returns its raw key
  - FakeHandler: scripted CategoryHandler for router and gateway tests
  - api_client: TestClient wired to in-memory stores via a patched lifespan
  - admin_headers: X-Admin-Token header matching ADMIN_TOKEN

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and ADMIN_TOKEN must be set before any core import so get_settings()
auto-generates the secrets in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any

# CRITICAL: Set before any core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token-0123456789")

import pytest
from fastapi.testclient import TestClient

from accounts.keys import display_prefix, generate_license_key, hash_license_key
from accounts.models import Account
from accounts.store import AccountStore
from api.limiter import limiter
from api.main import app, attach_services, stop_task
from cache.store import ResultCache
from core.config import get_settings
from core.database import Database
from ledger.ledger import CreditLedger
from ledger.pricing import CostPolicy
from ledger.store import LedgerStore
from routing.handlers import CategoryHandler, HandlerResult

ADMIN_HEADERS = {"X-Admin-Token": os.environ["ADMIN_TOKEN"]}


def memory_db_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database(memory_db_url("test_db"))
    yield database
    database.close()


@pytest.fixture
def account_store(db: Database) -> AccountStore:
    return AccountStore(db)


@pytest.fixture
def ledger_store(db: Database) -> LedgerStore:
    return LedgerStore(db)


@pytest.fixture
def ledger(ledger_store: LedgerStore) -> CreditLedger:
    settings = get_settings()
    return CreditLedger(ledger_store, CostPolicy(settings.credit_costs, default_cost=settings.default_credit_cost))


def provision(store: AccountStore, email: str = "user@example.com", credits: int = 0, **fields: Any):
    """Create an account and return (account, raw_license_key)."""
    raw_key = generate_license_key()
    account_id = store.create_account(
        Account(
            email=email,
            license_hash=hash_license_key(raw_key),
            license_prefix=display_prefix(raw_key),
            credit_balance=credits,
            **fields,
        )
    )
    return store.get_by_id(account_id), raw_key


@pytest.fixture
def make_account(account_store: AccountStore):
    """Factory fixture: make_account(email=..., credits=...) -> (Account, raw_key)."""

    def _make(email: str = "user@example.com", credits: int = 0, **fields: Any):
        return provision(account_store, email=email, credits=credits, **fields)

    return _make


# ---------------------------------------------------------------------------
# Fake handler
# ---------------------------------------------------------------------------


class FakeHandler(CategoryHandler):
    """Returns a scripted result (or raises) and records every call."""

    def __init__(self, result: HandlerResult | None = None, raises: Exception | None = None) -> None:
        self.result = result or HandlerResult.ok(done=True)
        self.raises = raises
        self.calls: list[tuple[str, dict, Any]] = []

    def handle(self, action, payload, context):
        self.calls.append((action, payload, context))
        if self.raises is not None:
            raise self.raises
        return self.result


@pytest.fixture
def make_handler():
    """Factory fixture: make_handler(result=None, raises=None) -> FakeHandler."""
    return FakeHandler


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database, cache: ResultCache):
    """Return an async context manager that replaces the real lifespan.

    Wires the services exactly as production does, but on isolated
    in-memory stores. The sweep_task is a long-sleeping coroutine so
    shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, get_settings(), db, cache)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        await stop_task(app.state.sweep_task)

    return test_lifespan


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return dict(ADMIN_HEADERS)


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient for API integration tests.

    One client (and one set of in-memory stores) per test module. The
    rate-limit counters are reset so earlier modules cannot exhaust them.
    """
    database = Database(memory_db_url("test_api"))
    cache = ResultCache(":memory:")
    app.router.lifespan_context = _patch_lifespan(database, cache)
    limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client

    cache.close()
    database.close()
