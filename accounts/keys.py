"""
accounts/keys.py -- License key generation and hashing.

License keys are long random secrets, so they are stored as
HMAC-SHA256(SECRET_KEY, raw_key) rather than with a slow password hash. The
hash is deterministic, which lets the store find an account with one indexed
lookup instead of scanning every key.

Layer rule: no imports from api/, gateway/, ledger/, routing/, or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from core.config import get_settings

LICENSE_PREFIX = "lg_"
DISPLAY_PREFIX_LENGTH = 12


def generate_license_key() -> str:
    """Generate a new license key in the format: lg_<64 hex chars> (256 bits)."""
    return f"{LICENSE_PREFIX}{secrets.token_hex(32)}"


def hash_license_key(raw_key: str, secret: str | None = None) -> str:
    """Return HMAC-SHA256(secret, raw_key) as hex.

    secret defaults to Settings.secret_key. An attacker holding a copy of the
    database cannot test candidate keys without also knowing the secret.
    """
    key = (secret or get_settings().secret_key).encode("utf-8")
    return hmac.new(key, raw_key.encode("utf-8"), hashlib.sha256).hexdigest()


def display_prefix(raw_key: str) -> str:
    return raw_key[:DISPLAY_PREFIX_LENGTH]
