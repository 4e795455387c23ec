"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/gateway.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Counters are per process. Behind several workers the effective limit is the
configured limit times the worker count.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def gateway_limit() -> str:
    """Rate limit string for the gateway route, read from GATEWAY_RATE_LIMIT."""
    return get_settings().gateway_rate_limit
