"""
gateway/orchestrator.py -- One request through the gateway, start to finish.

    open envelope -> extract fields -> authenticate -> price -> resolve route
        -> reserve credits -> dispatch -> complete or fail

Ordering rules:
  - Nothing is written before authentication succeeds. Envelope and field
    errors, and every AuthenticationError, leave no trace in the database.
  - The route is resolved before credits are reserved, so an unknown action
    never holds a reservation.
  - Once a reservation exists, every path out of dispatch settles it:
    success completes it; a reported failure or an exception fails it, which
    refunds the cost. A reservation the sweep already expired stays refunded
    and the result is returned without a "credits" block.
  - payload.licenseKey is dropped before journalling and dispatch.

Free actions (cost 0) skip the ledger entirely and their response carries no
"credits" block.

Request fields (after the envelope is opened):
    action    required, non-empty string
    payload   optional object, default {}
    license   required; management clients may send payload.licenseKey instead
    identity  optional asserted identity; payload.userEmail is accepted too

Layer rule: gateway/ may import from core/, accounts/, ledger/, routing/, and
cache/. It does NOT import from api/.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any, Optional

from accounts.session import SessionGuard
from cache.store import ResultCache
from core.errors import (
    DownstreamError,
    InternalError,
    LedgerConflictError,
    PayloadMalformedError,
    ValidationError,
)
from core.signing import RequestVerifier
from ledger.ledger import CreditLedger
from routing.handlers import AccountContext
from routing.router import ActionRouter

logger = logging.getLogger("licensegate.gateway")


def _extract(data: dict[str, Any]) -> tuple[str, dict[str, Any], str, Optional[str]]:
    action = data.get("action")
    if not isinstance(action, str) or not action:
        raise ValidationError("Missing required field: action.")

    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise PayloadMalformedError("Field 'payload' must be an object.")

    license_key = data.get("license") or payload.get("licenseKey")
    if not isinstance(license_key, str) or not license_key:
        raise ValidationError("Missing required field: license.")

    identity = data.get("identity") or payload.get("userEmail")
    if identity is not None and not isinstance(identity, str):
        raise ValidationError("Field 'identity' must be a string.")

    return action, payload, license_key, identity


class Gateway:
    """Composes verifier, session guard, ledger, and router per request.

    Usage:
        gateway = Gateway(verifier, guard, ledger, router, cache=cache)
        body = gateway.process(request_json, caller_identity="203.0.113.7")
    """

    def __init__(
        self,
        verifier: RequestVerifier,
        session_guard: SessionGuard,
        ledger: CreditLedger,
        router: ActionRouter,
        cache: Optional[ResultCache] = None,
        purge_probability: float = 0.01,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.verifier = verifier
        self.session_guard = session_guard
        self.ledger = ledger
        self.router = router
        self.cache = cache
        self.purge_probability = purge_probability
        self._rng = rng

    def process(self, body: Any, caller_identity: str) -> dict[str, Any]:
        """Run one request. Returns the success body or raises a GatewayError."""
        request = self.verifier.open(body)
        action, payload, license_key, identity = _extract(request.data)

        account = self.session_guard.authenticate(license_key, caller_identity, identity)
        cost = self.ledger.resolve_cost(action, payload)
        self.router.resolve(action)

        # Neither the journal nor a downstream service may see the raw license key.
        forwarded = {k: v for k, v in payload.items() if k != "licenseKey"}

        transaction_id = None
        if cost > 0:
            reservation = self.ledger.authorize(account, action, forwarded, cost=cost)
            transaction_id = reservation.transaction_id

        context = AccountContext(
            account=account,
            cost=cost,
            transaction_id=transaction_id,
            caller_identity=caller_identity,
        )
        try:
            result = self.router.dispatch(action, forwarded, context)
        except Exception as e:
            logger.exception("Handler for %.100s raised (license %s)", action, account.license_prefix)
            if transaction_id is not None:
                self._refund(transaction_id, f"Handler raised {type(e).__name__}")
            raise InternalError() from e

        if not result.success:
            error = str(result.error) if result.error else "The handler reported a failure."
            logger.info("Handler for %.100s failed (license %s): %s", action, account.license_prefix, error)
            details: dict[str, Any] = {"action": action[:100]}
            if transaction_id is not None:
                self._refund(transaction_id, error)
                details["refunded"] = cost
            raise DownstreamError(error, details)

        response: dict[str, Any] = dict(result.data)
        response["success"] = True
        if transaction_id is not None:
            try:
                settlement = self.ledger.complete(transaction_id, result.data)
            except LedgerConflictError as e:
                # Expired and refunded by the sweep while the handler ran.
                logger.warning(
                    "Transaction %s was %s before completion; returning result without charge",
                    transaction_id,
                    e.status,
                )
                return response
            response["credits"] = {
                "cost": cost,
                "remaining": settlement.balance,
                "used": settlement.total_used,
            }
        return response

    def maybe_purge_cache(self) -> int:
        """Purge expired cache rows with probability purge_probability.

        Runs after the response has been sent. Failures are logged and
        dropped; they never affect a request. Returns rows removed.
        """
        if self.cache is None or self._rng() >= self.purge_probability:
            return 0
        try:
            return self.cache.purge_expired()
        except Exception:
            logger.warning("Opportunistic cache purge failed", exc_info=True)
            return 0

    def _refund(self, transaction_id: str, reason: str) -> None:
        try:
            self.ledger.fail(transaction_id, reason)
        except LedgerConflictError:
            # Already settled, e.g. expired by the reservation sweep.
            logger.warning("Transaction %s was already settled; no refund issued", transaction_id)
