"""
api/dependencies.py -- FastAPI Depends() helpers for the licensegate API.

caller_identity() derives the identity SessionGuard arbitrates on (the
client IP). require_admin_token() guards the provisioning routes.

Layer rule: may import from fastapi and core/ only.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from core.config import get_settings


def caller_identity(request: Request) -> str:
    """Return the caller's IP address.

    With TRUST_FORWARDED_FOR enabled the first X-Forwarded-For entry wins,
    which is only safe behind a proxy that overwrites the header.
    """
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def require_admin_token(request: Request) -> None:
    """Require a valid X-Admin-Token header. Raises HTTP 403 otherwise.

    An empty ADMIN_TOKEN disables the admin surface entirely. The header is
    compared in constant time.

    Use as a FastAPI dependency:
        router = APIRouter(dependencies=[Depends(require_admin_token)])
    """
    expected = get_settings().admin_token
    supplied = request.headers.get("X-Admin-Token", "")
    if not expected or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
