"""
routing/proxy.py -- Generic HTTP handler for externally hosted categories.

Search, generative text, page performance, domain rank, workflow,
competitor, project, content, and fetcher actions are served by separate
services. The gateway only forwards them:

    POST {base_url}
    {"action": "...", "payload": {...}, "account": {"id": 1, "email": "..."}}

and expects a JSON object back. {"success": false, "error": "..."} or any
non-2xx status is a handler failure; everything else is success and becomes
the response data. Network errors are logged here and reported as a generic
failure so hostnames and stack traces never reach the caller.

Every call carries its own timeout. Redirects are capped the same way as any
other outbound session in this codebase.

Optional caching: with a ResultCache attached (the fetcher category),
successful responses are cached per (category, action, payload) and served
from the cache until they expire.
"""

import logging
from typing import Any, Optional

import requests

from cache.store import ResultCache, make_key
from routing.handlers import AccountContext, CategoryHandler, HandlerResult

logger = logging.getLogger("licensegate.proxy")


def build_session() -> requests.Session:
    session = requests.Session()
    # Downstreams are known internal services; 3 hops is generous.
    session.max_redirects = 3
    return session


class HttpProxyHandler(CategoryHandler):
    """Forward actions for one category to a downstream HTTP service.

    Usage:
        handler = HttpProxyHandler("search", "http://search-proxy:8080/run", timeout=10)
        result = handler.handle("search_keywords", {"q": "..."}, context)
    """

    def __init__(
        self,
        category: str,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self.category = category
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or build_session()
        self.cache = cache

    def handle(self, action: str, payload: dict[str, Any], context: AccountContext) -> HandlerResult:
        cache_key = make_key(self.category, action, payload) if self.cache is not None else None
        if cache_key is not None:
            cached = self._cache_get(cache_key)
            if cached is not None:
                logger.debug("Cache hit for %s %.100s", self.category, action)
                return HandlerResult(success=True, data={**cached, "cached": True})

        body = {
            "action": action,
            "payload": payload,
            "account": {"id": context.account.id, "email": context.account.email},
        }
        try:
            resp = self.session.post(self.base_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("%s handler request failed for %.100s: %s", self.category, action, e)
            return HandlerResult.failed(f"The {self.category} service is unavailable.")

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.ok:
            logger.warning("%s handler returned HTTP %d for %.100s", self.category, resp.status_code, action)
            error = data.get("error") if isinstance(data, dict) else None
            # Structured errors ({"message": ..., "code": ...}) are flattened to text.
            return HandlerResult.failed(
                str(error) if error else f"The {self.category} service returned HTTP {resp.status_code}."
            )
        if not isinstance(data, dict):
            logger.warning("%s handler returned a non-object body for %.100s", self.category, action)
            return HandlerResult.failed(f"The {self.category} service returned an invalid response.")
        if data.get("success") is False:
            return HandlerResult.failed(str(data.get("error") or "Downstream handler reported failure."))

        data.pop("success", None)
        if cache_key is not None:
            self._cache_set(cache_key, data)
        return HandlerResult(success=True, data=data)

    def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("Cache read failed: %s", e)
            return None

    def _cache_set(self, key: str, data: dict) -> None:
        try:
            self.cache.set(key, data)
        except Exception as e:
            logger.warning("Cache write failed: %s", e)
