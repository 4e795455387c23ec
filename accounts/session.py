"""
accounts/session.py -- License authentication and session arbitration.

SessionGuard.authenticate() resolves a license key to an active Account and
then asks the configured SessionPolicy whether this caller may use it now.
Exactly one policy is active per deployment (Settings.session_policy):

  ip_exclusive (default)
      One caller identity (normally the client IP) holds the license at a
      time. A different identity is rejected with SessionActiveError until
      the holder has been idle for session_timeout seconds, after which the
      session is reassigned. A caller asserting the account's own email is
      treated as the same user on a new network and is let through.

      States per license:
        Unbound                  -> HeldFresh(caller)      first call
        HeldFresh(same)          -> HeldFresh(same)        refresh started_at
        HeldFresh(other), fresh  -> rejected               no change
        HeldFresh(other), stale  -> HeldFresh(caller)      reassignment

  permanent_binding
      The first asserted identity is bound to the account forever. Later
      calls must assert the same identity; the caller IP is irrelevant.

Side effects: every successful authenticate() writes the session fields and
last_login_at, including calls made only to read status. Failures write
nothing.

Layer rule: no imports from api/, gateway/, ledger/, routing/, or cache/.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from accounts.keys import hash_license_key
from accounts.models import Account
from accounts.store import AccountStore
from core.errors import AccountMismatchError, InvalidLicenseError, SessionActiveError

logger = logging.getLogger("licensegate.session")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # Naive timestamps are treated as UTC.
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _normalize_identity(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class SessionPolicy(ABC):
    """Decides whether a caller may use an account right now.

    admit() either raises an AuthenticationError subclass without touching
    the store, or records the session and returns the updated Account.
    """

    name: str = ""

    @abstractmethod
    def admit(
        self,
        store: AccountStore,
        account: Account,
        caller_identity: str,
        asserted_identity: Optional[str],
        now: datetime,
    ) -> Account: ...

    @staticmethod
    def _record(store: AccountStore, account: Account, caller_identity: str, now: datetime) -> Account:
        now_iso = now.isoformat()
        store.claim_session(account.id, caller_identity, now_iso)
        return replace(
            account,
            active_session_identity=caller_identity,
            session_started_at=now_iso,
            last_login_at=now_iso,
        )


class IpExclusivityPolicy(SessionPolicy):
    name = "ip_exclusive"

    def __init__(self, session_timeout: int = 1800) -> None:
        self.session_timeout = session_timeout

    def admit(self, store, account, caller_identity, asserted_identity, now):
        holder = account.active_session_identity
        same_user = asserted_identity is not None and asserted_identity == _normalize_identity(account.email)

        if holder and holder != caller_identity:
            started = _parse_iso(account.session_started_at)
            # An unparseable start time cannot prove the session is fresh.
            age = (now - started).total_seconds() if started else float("inf")
            if same_user:
                logger.info(
                    "License %s: account owner moved from %s to %s -- allowed",
                    account.license_prefix,
                    holder,
                    caller_identity,
                )
            elif age < self.session_timeout:
                logger.warning(
                    "SECURITY: license %s attempted by %s while session held by %s (age=%.0fs)",
                    account.license_prefix,
                    caller_identity,
                    holder,
                    age,
                )
                raise SessionActiveError(account.session_started_at or "", self.session_timeout)
            else:
                logger.info(
                    "License %s: session from %s expired after %.0fs, reassigning to %s",
                    account.license_prefix,
                    holder,
                    age,
                    caller_identity,
                )
        return self._record(store, account, caller_identity, now)


class PermanentBindingPolicy(SessionPolicy):
    name = "permanent_binding"

    def admit(self, store, account, caller_identity, asserted_identity, now):
        bound = account.bound_identity
        if bound is None:
            if asserted_identity is None:
                raise AccountMismatchError(None)
            if store.bind_identity(account.id, asserted_identity):
                logger.info("License %s bound to %s", account.license_prefix, asserted_identity)
                bound = asserted_identity
            else:
                # Lost the race to a concurrent first call; honour its binding.
                current = store.get_by_id(account.id)
                bound = current.bound_identity if current else None
            account = replace(account, bound_identity=bound)

        if bound != asserted_identity:
            logger.warning(
                "SECURITY: license %s bound to %s, asserted %s from %s",
                account.license_prefix,
                bound,
                asserted_identity,
                caller_identity,
            )
            raise AccountMismatchError(bound)
        return self._record(store, account, caller_identity, now)


def build_policy(name: str, session_timeout: int = 1800) -> SessionPolicy:
    """Return the policy selected by Settings.session_policy."""
    if name == IpExclusivityPolicy.name:
        return IpExclusivityPolicy(session_timeout)
    if name == PermanentBindingPolicy.name:
        return PermanentBindingPolicy()
    raise ValueError(f"Unknown session policy: {name!r}")


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class SessionGuard:
    """Authenticates license keys and applies the session policy.

    Usage:
        guard = SessionGuard(store, IpExclusivityPolicy(1800))
        account = guard.authenticate(raw_key, caller_identity="203.0.113.7")
    """

    def __init__(
        self,
        store: AccountStore,
        policy: SessionPolicy,
        secret: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policy = policy
        self._secret = secret
        self._clock = clock

    def authenticate(
        self,
        license_key: str,
        caller_identity: str,
        asserted_identity: Optional[str] = None,
    ) -> Account:
        """Return the admitted Account or raise an AuthenticationError subclass."""
        if not license_key:
            raise InvalidLicenseError()
        account = self.store.get_by_license_hash(hash_license_key(license_key, self._secret))
        if account is None or not account.is_active:
            raise InvalidLicenseError()

        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return self.policy.admit(
            self.store,
            account,
            caller_identity,
            _normalize_identity(asserted_identity),
            now,
        )
