"""Verification of signed payment gateway webhooks.

The gateway signs each delivery with a ``Payment-Signature`` header of the
form ``t=<unix seconds>,v1=<hex>``, where the hex value is the HMAC-SHA256 of
``"<t>.<raw body>"`` keyed with the shared webhook secret. Several ``v1``
entries may be present while a secret is being rotated.
"""

import hashlib
import hmac
import json
import time
from typing import Optional

from .domain import PaymentEvent

SIGNATURE_HEADER = "Payment-Signature"
DEFAULT_TOLERANCE_SECS = 300


class SignatureVerificationError(Exception):
    pass


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str):
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("Invalid timestamp in signature header")
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECS,
    now: Optional[float] = None,
) -> None:
    """Check that ``payload`` was signed with ``secret`` recently.

    Args:
        payload: Raw request body, exactly as received.
        header: Value of the ``Payment-Signature`` header.
        secret: Shared webhook secret.
        tolerance: Maximum age of the signature, in seconds.
        now: Current Unix time; defaults to ``time.time()``.

    Raises:
        SignatureVerificationError: Missing or malformed header, stale
            timestamp, or no matching signature.
    """
    if not header:
        raise SignatureVerificationError("Missing signature header")
    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        raise SignatureVerificationError("Malformed signature header")
    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        raise SignatureVerificationError("Signature timestamp outside the tolerance window")
    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureVerificationError("No signature matches the payload")


def construct_event(payload: bytes, header: Optional[str], secret: str, **kwargs) -> PaymentEvent:
    """Verify a delivery and parse it into a ``PaymentEvent``.

    Raises:
        SignatureVerificationError: If the signature does not verify.
        ValueError: If the verified body is not a gateway event.
    """
    verify_signature(payload, header, secret, **kwargs)
    try:
        data = json.loads(payload.decode("utf-8"))
        obj = (data.get("data") or {}).get("object") or {}
        return PaymentEvent(
            event_id=data["id"],
            event_type=data["type"],
            intent_id=obj.get("id"),
            metadata=dict(obj.get("metadata") or {}),
        )
    except (KeyError, AttributeError, TypeError, UnicodeDecodeError) as e:
        raise ValueError(f"Not a payment event: {e}") from e
