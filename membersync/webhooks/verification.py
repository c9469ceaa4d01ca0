"""Stripe webhook signature verification — constant-time HMAC over the raw body.

Security contract:
- The signature covers the exact transport bytes. Verification runs on the
  body as received (base64 envelopes decoded first), never on re-serialized JSON
- Missing secret -> ConfigurationError (deployment defect, 500), checked first
- Missing/malformed/mismatched signature -> VerificationError (400)
- All comparisons use hmac.compare_digest()
- Timestamp tolerance: 300s by default to prevent replay
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from membersync.errors import ConfigurationError, PayloadError, VerificationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class Notification:
    """A verified Stripe event."""

    kind: str
    payload: dict[str, Any]
    event_id: str = ""

    @property
    def data_object(self) -> dict[str, Any]:
        """The event's data.object, or {} when absent."""
        data = self.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}


def decode_body(body: bytes | str | None, *, is_base64_encoded: bool = False) -> bytes:
    """Return the original transport bytes of a request body."""
    if body is None:
        return b""
    if is_base64_encoded:
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PayloadError("Body is not valid base64") from e
    if isinstance(body, bytes):
        return body
    return body.encode("utf-8")


def _parse_signature_header(signature_header: str) -> tuple[int, list[str]]:
    """Parse t=timestamp,v1=sig1,v1=sig2,... into (timestamp, [v1 sigs])."""
    timestamp_str = None
    v1_sigs: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp_str = value
        elif key == "v1":
            v1_sigs.append(value)

    if not timestamp_str:
        raise VerificationError("Signature header has no timestamp")
    try:
        timestamp = int(timestamp_str)
    except (ValueError, TypeError) as e:
        raise VerificationError("Signature timestamp is not an integer") from e
    if not v1_sigs:
        raise VerificationError("Signature header has no v1 signature")
    return timestamp, v1_sigs


def compute_signature(body: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 hex of '<timestamp>.<body>' (Stripe's v1 scheme)."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a Stripe-Signature header against the raw body. Raises on failure."""
    if not secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
    if not signature_header:
        raise VerificationError("Missing Stripe-Signature header")

    timestamp, v1_sigs = _parse_signature_header(signature_header)

    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp too old/future: %s", timestamp)
        raise VerificationError("Signature timestamp outside tolerance")

    expected = compute_signature(body, secret, timestamp).encode("ascii")
    # Compare against all v1 signatures (secret rotation sends several).
    # Bytes on both sides: compare_digest rejects non-ASCII str with TypeError
    if not any(
        hmac.compare_digest(expected, sig.encode("utf-8", "surrogateescape")) for sig in v1_sigs
    ):
        raise VerificationError("No signature matches the expected signature")


def construct_event(
    body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> Notification:
    """Verify the body, then parse it into a Notification."""
    verify_signature(body, signature_header, secret, tolerance=tolerance, now=now)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadError("Body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise PayloadError("Event body is not a JSON object")

    kind = payload.get("type")
    if not isinstance(kind, str) or not kind:
        raise PayloadError("Event has no type")

    return Notification(kind=kind, payload=payload, event_id=str(payload.get("id") or ""))
