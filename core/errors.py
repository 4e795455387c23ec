"""
core/errors.py -- Exception taxonomy for the gateway.

Every error a caller can see is a GatewayError subclass carrying a stable
machine-readable code, a human message, optional details, and the HTTP status
the API layer maps it to. api/main.py registers a single handler for
GatewayError, so route code never builds error responses by hand.

Messages must be safe to return to callers: no stack traces, credentials,
license keys, or SQL. InternalError always uses a generic message; the real
cause is logged where it is caught.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration (e.g. missing signing secret)."""


class GatewayError(Exception):
    """Base class for every error surfaced to gateway callers."""

    status_code: int = 500
    code: str = "gateway_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ---------------------------------------------------------------------------
# 400 -- malformed input
# ---------------------------------------------------------------------------


class ValidationError(GatewayError):
    status_code = 400
    code = "validation_error"


class SignatureInvalidError(ValidationError):
    code = "signature_invalid"


class TimestampExpiredError(ValidationError):
    code = "timestamp_expired"


class PayloadMalformedError(ValidationError):
    code = "payload_malformed"


# ---------------------------------------------------------------------------
# 401 -- authentication and session arbitration
# ---------------------------------------------------------------------------


class AuthenticationError(GatewayError):
    status_code = 401
    code = "authentication_failed"


class InvalidLicenseError(AuthenticationError):
    code = "invalid_license"

    def __init__(self) -> None:
        super().__init__("Invalid or inactive license key.")


class SessionActiveError(AuthenticationError):
    """The license is held by another caller whose session has not timed out."""

    code = "session_active"

    def __init__(self, active_since: str, session_timeout: int) -> None:
        super().__init__(
            "License key is currently in use by another session.",
            {"active_since": active_since, "session_timeout": session_timeout},
        )
        self.active_since = active_since
        self.session_timeout = session_timeout


class AccountMismatchError(AuthenticationError):
    """The asserted identity does not match the account's permanent binding."""

    code = "account_mismatch"

    def __init__(self, bound_to: Optional[str]) -> None:
        message = (
            "An identity is required to bind this license key."
            if bound_to is None
            else "License key is bound to a different identity."
        )
        super().__init__(message, {"bound_to": bound_to})
        self.bound_to = bound_to


# ---------------------------------------------------------------------------
# 402 -- metering
# ---------------------------------------------------------------------------


class PaymentRequiredError(GatewayError):
    status_code = 402
    code = "payment_required"


class InsufficientCreditsError(PaymentRequiredError):
    code = "insufficient_credits"

    def __init__(self, needed: int, remaining: int) -> None:
        super().__init__(
            "Insufficient credits.",
            {"credits_needed": needed, "credits_remaining": remaining},
        )
        self.needed = needed
        self.remaining = remaining


# ---------------------------------------------------------------------------
# 404 / 409 -- routing and ledger state
# ---------------------------------------------------------------------------


class UnknownActionError(GatewayError):
    status_code = 404
    code = "unknown_action"

    def __init__(self, action: str) -> None:
        # Truncated so a hostile caller cannot echo arbitrary payloads back.
        super().__init__(f"Unknown action: {action[:100]}")
        self.action = action


class LedgerError(GatewayError):
    code = "ledger_error"


class TransactionNotFoundError(LedgerError):
    status_code = 404
    code = "transaction_not_found"

    def __init__(self, transaction_id: str) -> None:
        super().__init__("Transaction not found.", {"transaction_id": transaction_id})


class LedgerConflictError(LedgerError):
    """Complete/Fail on a transaction that already left the reserved state."""

    status_code = 409
    code = "transaction_finalized"

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            "Transaction has already been finalized.",
            {"transaction_id": transaction_id, "status": status},
        )
        self.status = status


# ---------------------------------------------------------------------------
# 5xx -- internal and downstream faults
# ---------------------------------------------------------------------------


class InternalError(GatewayError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An unexpected error occurred.", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, details)


class DownstreamError(InternalError):
    """A category handler reported failure; the reservation has been refunded."""

    status_code = 502
    code = "downstream_failed"
