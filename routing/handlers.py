"""
routing/handlers.py -- The category handler contract.

A handler serves every action the router assigns to its category. It is
invoked at most once per request and reports its outcome as a HandlerResult
instead of raising: success=False means "the work did not happen", and the
gateway refunds the reservation. An exception escaping handle() is treated
the same way but surfaced to the caller as a generic internal error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from accounts.models import Account


@dataclass(frozen=True)
class HandlerResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **data: Any) -> "HandlerResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: Any) -> "HandlerResult":
        return cls(success=False, error=str(error))


@dataclass(frozen=True)
class AccountContext:
    """What a handler may know about the caller: the admitted account and
    the credits reserved for this request."""

    account: Account
    cost: int = 0
    transaction_id: Optional[str] = None
    caller_identity: Optional[str] = None


class CategoryHandler(ABC):
    @abstractmethod
    def handle(self, action: str, payload: dict[str, Any], context: AccountContext) -> HandlerResult: ...
