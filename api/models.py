"""
API request and response models for licensegate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API
layer. They are intentionally separate from the dataclasses in
accounts/models.py and ledger/models.py, which own the internal domain
representation. Route handlers map between the two.

The gateway endpoint itself takes a free-form JSON body (signed envelope or
unsigned request) and is validated by core/signing.py and the gateway, not
by a Pydantic model: its error codes are part of the wire contract and must
not turn into FastAPI's generic 422.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from accounts.models import Account
from ledger.models import Transaction

# Shape check only; addresses are never mailed.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Error body returned on every 4xx/5xx response.

    Same shape as GatewayError.to_dict() so clients parse one schema.
    """

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str
    code: str
    details: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class CreditsBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    cost: int
    remaining: int
    used: int


class GatewayResponse(BaseModel):
    """Success body for POST /api/v1/gateway.

    Handler data is merged into the top level, so extra fields are allowed.
    credits is present only for paid actions.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    success: bool = True
    credits: Optional[CreditsBlock] = None


# ---------------------------------------------------------------------------
# Admin -- request models
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/admin/accounts."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    credits: int = Field(default=0, ge=0, le=10_000_000)


class AccountStatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/admin/accounts/{account_id}."""

    status: Literal["active", "inactive", "suspended"]


class CreditGrant(BaseModel):
    """Request body for POST /api/v1/admin/accounts/{account_id}/credits."""

    credits: int = Field(gt=0, le=10_000_000)


# ---------------------------------------------------------------------------
# Admin -- response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Account summary. Never includes the license hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    license_prefix: str
    status: str
    credit_balance: int
    total_credits_used: int
    created_at: Optional[str]
    last_login_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            license_prefix=account.license_prefix,
            status=account.status,
            credit_balance=account.credit_balance,
            total_credits_used=account.total_credits_used,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class AccountCreateResponse(AccountResponse):
    """Returned once at provisioning. license_key is never retrievable again."""

    license_key: str


class BalanceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    credit_balance: int
    total_credits_used: int


class TransactionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    action_name: str
    credit_cost: int
    status: str
    error_message: Optional[str]
    created_at: Optional[str]
    completed_at: Optional[str]

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionRow":
        return cls(
            id=txn.id,
            action_name=txn.action_name,
            credit_cost=txn.credit_cost,
            status=txn.status,
            error_message=txn.error_message,
            created_at=txn.created_at,
            completed_at=txn.completed_at,
        )
