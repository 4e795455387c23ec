"""
core/signing.py -- Request envelope signing and verification.

Wire format (signed mode):
    {"payload": base64(json(data)), "signature": hex, "timestamp": unix_seconds}

    signature = HMAC-SHA256(secret, str(timestamp) + payload)

The signature covers the timestamp, so a captured envelope cannot be replayed
with a fresh timestamp. The timestamp window is checked in both directions
(|now - timestamp| <= window): a client whose clock runs ahead is rejected
the same way as a stale replay.

Unsigned mode: a body with neither signature nor timestamp is accepted as
raw data when allow_unsigned is set. This is the backward-compatible path for
older clients. It is logged on its own logger ("licensegate.signing.unsigned")
and flagged on the returned VerifiedRequest so it never blends into verified
traffic.

RequestVerifier is pure apart from logging: no I/O, no shared state. The
clock is injectable so tests can move time without sleeping.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from core.errors import (
    ConfigurationError,
    PayloadMalformedError,
    SignatureInvalidError,
    TimestampExpiredError,
)

logger = logging.getLogger("licensegate.signing")
unsigned_logger = logging.getLogger("licensegate.signing.unsigned")

ENVELOPE_FIELDS = ("payload", "signature", "timestamp")


@dataclass(frozen=True)
class SignedEnvelope:
    payload: str
    signature: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"payload": self.payload, "signature": self.signature, "timestamp": self.timestamp}


@dataclass(frozen=True)
class VerifiedRequest:
    """Decoded request body plus whether it arrived signed."""

    data: dict[str, Any]
    signed: bool


class RequestVerifier:
    """HMAC-SHA256 signer/verifier for request envelopes.

    Usage:
        verifier = RequestVerifier(secret, window=60)
        envelope = verifier.sign({"license": "...", "action": "status"})
        data = verifier.verify(envelope)
    """

    def __init__(
        self,
        secret: str,
        window: int = 60,
        allow_unsigned: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("HMAC secret is not configured.")
        self._secret = secret.encode("utf-8")
        self.window = window
        self.allow_unsigned = allow_unsigned
        self._clock = clock

    def _mac(self, timestamp: str, payload: str) -> str:
        return hmac.new(self._secret, (timestamp + payload).encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, data: Any) -> SignedEnvelope:
        """Serialize, encode, and sign data with the current timestamp."""
        timestamp = int(self._clock())
        encoded = base64.b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8")).decode("ascii")
        return SignedEnvelope(payload=encoded, signature=self._mac(str(timestamp), encoded), timestamp=timestamp)

    def verify(self, envelope: SignedEnvelope | dict[str, Any]) -> Any:
        """Return the decoded data or raise a ValidationError subclass.

        Check order: field types, signature, timestamp window, decode. The
        signature is checked before the window so a tampered envelope is
        always reported as tampered, whatever its timestamp.
        """
        if isinstance(envelope, SignedEnvelope):
            payload, signature, timestamp = envelope.payload, envelope.signature, envelope.timestamp
        else:
            payload = envelope.get("payload")
            signature = envelope.get("signature")
            timestamp = envelope.get("timestamp")

        if not isinstance(payload, str) or not isinstance(signature, str):
            raise PayloadMalformedError("Envelope payload and signature must be strings.")
        # bool is an int subclass; a JSON true is not a timestamp.
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, str)):
            raise PayloadMalformedError("Envelope timestamp must be unix seconds.")
        try:
            ts_value = int(timestamp)
        except ValueError:
            raise PayloadMalformedError("Envelope timestamp must be unix seconds.") from None

        # The MAC input uses the timestamp exactly as the client sent it.
        expected = self._mac(str(timestamp), payload)
        # Compared as bytes: compare_digest rejects non-ASCII str arguments.
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            logger.warning("Rejected envelope with invalid signature (timestamp=%s)", ts_value)
            raise SignatureInvalidError("Invalid request signature.")

        skew = abs(self._clock() - ts_value)
        if skew > self.window:
            logger.warning("Rejected envelope outside timestamp window (skew=%.0fs, window=%ds)", skew, self.window)
            raise TimestampExpiredError(
                f"Request timestamp outside valid window (+/-{self.window}s).",
                {"window": self.window},
            )

        try:
            raw = base64.b64decode(payload, validate=True)
            return json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise PayloadMalformedError("Envelope payload is not base64-encoded JSON.") from None

    def open(self, body: Any) -> VerifiedRequest:
        """Accept either a signed envelope or (if allowed) a raw unsigned body."""
        if not isinstance(body, dict):
            raise PayloadMalformedError("Request body must be a JSON object.")

        # "payload" alone is an ordinary unsigned request field; signature or
        # timestamp is what marks a body as an envelope.
        is_envelope = "signature" in body or "timestamp" in body
        if is_envelope and all(f in body for f in ENVELOPE_FIELDS):
            data = self.verify(body)
            if not isinstance(data, dict):
                raise PayloadMalformedError("Envelope payload must decode to a JSON object.")
            return VerifiedRequest(data=data, signed=True)

        if is_envelope:
            raise PayloadMalformedError(
                "Incomplete signed envelope.",
                {"missing": [f for f in ENVELOPE_FIELDS if f not in body]},
            )
        if not self.allow_unsigned:
            raise SignatureInvalidError("Unsigned requests are not accepted.")

        unsigned_logger.warning("Accepted unsigned request (action=%r)", str(body.get("action", ""))[:100])
        return VerifiedRequest(data=body, signed=False)
