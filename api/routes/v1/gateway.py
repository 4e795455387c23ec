"""
api/routes/v1/gateway.py -- The single metered entry point.

Routes:
  POST /gateway   -- signed envelope or unsigned request -> action result

The handler is a plain def, so FastAPI runs it in the threadpool and the
ledger writes finish even if the client disconnects mid-request. Every
failure is a GatewayError raised by the orchestrator and rendered by the
handler in api/main.py; this module never builds error bodies.

Rate limits are applied via slowapi. The @limiter.limit() decorator must sit
ABOVE @router.post so that slowapi can attach the limit string to the
function object before FastAPI wraps it.
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request

from api.dependencies import caller_identity
from api.limiter import gateway_limit, limiter
from api.models import ErrorResponse, GatewayResponse
from gateway.orchestrator import Gateway

router = APIRouter()


@limiter.limit(gateway_limit)
@router.post(
    "/gateway",
    responses={
        200: {"model": GatewayResponse},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def post_gateway(
    request: Request,
    background_tasks: BackgroundTasks,
    body: Any = Body(default=None),
    identity: str = Depends(caller_identity),
) -> dict[str, Any]:
    """Authenticate, meter, and dispatch one action.

    Body is either {"payload", "signature", "timestamp"} or, when unsigned
    requests are allowed, {"license", "action", "payload", "identity"}.
    Paid actions return a "credits" block with the cost and the balance
    after settlement.
    """
    gateway: Gateway = request.app.state.gateway
    result = gateway.process(body, identity)
    # Runs after the response is sent; expired cache rows are housekeeping.
    background_tasks.add_task(gateway.maybe_purge_cache)
    return result
