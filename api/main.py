"""
api/main.py -- FastAPI application entry point for licensegate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (database, stores, ledger, router, gateway,
reservation sweep task) and shutdown (cancel sweep task, close cache and
database) symmetrically.

Error bodies: every error, whatever raised it, is rendered as
    {"success": false, "error": "...", "code": "...", "details": {...}?}
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from accounts.session import SessionGuard, build_policy
from accounts.store import AccountStore
from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.gateway import router as gateway_router
from cache.store import ResultCache
from core.config import Settings, get_settings
from core.database import Database
from core.errors import GatewayError
from core.signing import RequestVerifier
from gateway.orchestrator import Gateway
from ledger.ledger import CreditLedger
from ledger.pricing import CostPolicy
from ledger.store import LedgerStore
from routing.builtin import AccountHandler, LedgerHandler
from routing.proxy import HttpProxyHandler, build_session
from routing.router import DEFAULT_RULES, ActionRouter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("licensegate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_router(settings: Settings, ledger: CreditLedger, cache: ResultCache | None) -> ActionRouter:
    """Register built-in handlers plus one HTTP proxy per configured category.

    Categories in the routing table without a HANDLER_URLS entry stay
    unregistered; their actions answer 404 unknown_action.
    """
    router = ActionRouter(DEFAULT_RULES, {"account": AccountHandler(), "ledger": LedgerHandler(ledger)})
    known = {rule.category for rule in DEFAULT_RULES}
    session = build_session()
    for category, url in settings.handler_urls.items():
        if category not in known:
            logger.warning("Ignoring handler URL for unknown category %r", category)
            continue
        router.register(
            category,
            HttpProxyHandler(
                category,
                url,
                timeout=settings.handler_timeout_seconds,
                session=session,
                cache=cache if category == "fetcher" else None,
            ),
        )
    return router


def attach_services(app: FastAPI, settings: Settings, db: Database, cache: ResultCache | None) -> None:
    """Build every service from settings and store it on app.state.

    Shared by the real lifespan and the test lifespan so both wire the
    gateway the same way.
    """
    app.state.db = db
    app.state.cache = cache
    app.state.account_store = AccountStore(db)
    app.state.ledger = CreditLedger(
        LedgerStore(db),
        CostPolicy(settings.credit_costs, default_cost=settings.default_credit_cost),
    )
    guard = SessionGuard(
        app.state.account_store,
        build_policy(settings.session_policy, settings.session_timeout_seconds),
        secret=settings.secret_key,
    )
    verifier = RequestVerifier(
        settings.hmac_secret,
        window=settings.timestamp_window,
        allow_unsigned=settings.allow_unsigned,
    )
    app.state.gateway = Gateway(
        verifier,
        guard,
        app.state.ledger,
        build_router(settings, app.state.ledger, cache),
        cache=cache,
        purge_probability=settings.cache_purge_probability,
    )


# ---------------------------------------------------------------------------
# Background reservation sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, max_age_seconds: int, interval_seconds: int) -> None:
    """Fail and refund reservations whose handler never reported back.

    Runs as a background asyncio task started in lifespan startup. The ledger
    call is blocking SQL, so it runs in a worker thread. A failed sweep is
    logged and retried on the next tick. CancelledError from task.cancel()
    during shutdown ends the loop; a sweep already running in its worker
    thread is waited for first, so the engine is never disposed under it.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        sweep = asyncio.ensure_future(asyncio.to_thread(app.state.ledger.expire_stale, max_age_seconds))
        try:
            await asyncio.shield(sweep)
        except asyncio.CancelledError:
            await asyncio.wait([sweep])
            if not sweep.cancelled() and sweep.exception() is not None:
                logger.error("Reservation sweep failed during shutdown", exc_info=sweep.exception())
            raise
        except Exception:
            logger.exception("Reservation sweep failed")


async def stop_task(task: asyncio.Task) -> None:
    """Cancel task and wait until it has finished unwinding."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are resolved first so a missing secret stops the
    process before any database file is created.
    """
    settings = get_settings()
    logger.info("licensegate API starting up (session_policy=%s)", settings.session_policy)
    db = Database(settings.database_url)
    cache = ResultCache(settings.cache_db_path, ttl=settings.cache_ttl_seconds)
    attach_services(app, settings, db, cache)
    logger.info(
        "Gateway ready (%d downstream categories configured, unsigned requests %s)",
        len(settings.handler_urls),
        "allowed" if settings.allow_unsigned else "rejected",
    )
    app.state.sweep_task = asyncio.create_task(
        _sweep_loop(app, settings.reservation_ttl_seconds, settings.reservation_sweep_seconds)
    )

    yield

    # Shutdown
    await stop_task(app.state.sweep_task)
    cache.close()
    db.close()
    logger.info("licensegate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="licensegate",
    description="License-key gateway: request signing, session arbitration, credit metering, and action routing.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "X-Admin-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
# Bodies are never logged: they carry license keys.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(gateway_router, prefix="/api/v1", tags=["Gateway"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render any GatewayError with its own status code and machine code."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error="Too many requests.",
            code="rate_limited",
            details={"limit": str(exc.detail)},
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 for invalid admin bodies and query params.

    A body that is not JSON at all is reported as 400 payload_malformed, the
    same as any other unreadable gateway request.
    """
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="Request body is not valid JSON.", code="payload_malformed").model_dump(
                exclude_none=True
            ),
        )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="Request validation failed.",
            code="validation_error",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in errors]},
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route code raises HTTPException with detail={"code": ..., "message": ...}.
    Plain string details get a generic http_<status> code.
    """
    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code", f"http_{exc.status_code}"))
        message = str(exc.detail.get("message", ""))
    else:
        code, message = f"http_{exc.status_code}", str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=message, code=code).model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response
    body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="An unexpected error occurred.", code="internal_error").model_dump(
            exclude_none=True
        ),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness plus a database round-trip check."""
    db: Database = request.app.state.db
    database = "ok" if db.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
