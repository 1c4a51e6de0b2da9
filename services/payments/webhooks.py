"""Signed webhook events for payment intents.

Events follow the familiar card-gateway envelope::

    {"id": "evt_...", "type": "payment_intent.succeeded",
     "created": 1700000000, "data": {"object": {...intent...}}}

and are delivered as a POST to ``WEBHOOK_URL`` with a
``Payment-Signature: t=<unix seconds>,v1=<hex>`` header, where the hex value
is the HMAC-SHA256 of ``"<t>.<raw body>"`` keyed with ``WEBHOOK_SECRET``.
Delivery is retried with exponential backoff on transport errors and 5xx
responses; a delivery that finally fails is logged and dropped, the merchant
is expected to reconcile.
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Optional

import httpx

WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
WEBHOOK_BACKOFF_BASE = float(os.getenv("WEBHOOK_BACKOFF_BASE", "0.5"))
WEBHOOK_TIMEOUT_SECS = float(os.getenv("WEBHOOK_TIMEOUT_SECS", "5"))

SIGNATURE_HEADER = "Payment-Signature"
SUCCEEDED_EVENT = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"

logger = logging.getLogger("payments.webhooks")


def sign(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build the signature header value for a raw payload.

    Args:
        payload: Exact bytes that will be sent as the request body.
        secret: Shared webhook secret.
        timestamp: Unix seconds; defaults to now.

    Returns:
        str: Header value ``t=<timestamp>,v1=<hex digest>``.
    """
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def build_event(event_type: str, intent: dict) -> dict:
    return {
        "id": f"evt_{secrets.token_hex(12)}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": intent},
    }


def deliver(event: dict, url: Optional[str] = None, secret: Optional[str] = None) -> bool:
    """POST a signed event to the merchant, retrying transient failures.

    Args:
        event: Event envelope from ``build_event``.
        url: Override for ``WEBHOOK_URL``.
        secret: Override for ``WEBHOOK_SECRET``.

    Returns:
        bool: True once the merchant answered 2xx, False when no endpoint is
            configured or every attempt failed.
    """
    url = url or WEBHOOK_URL
    secret = secret or WEBHOOK_SECRET
    if not url or not secret:
        logger.warning("webhook endpoint not configured; event dropped", extra={"event_id": event["id"]})
        return False

    body = json.dumps(event, separators=(",", ":")).encode("utf-8")
    with httpx.Client(timeout=WEBHOOK_TIMEOUT_SECS) as client:
        for attempt in range(1, WEBHOOK_MAX_ATTEMPTS + 1):
            headers = {"Content-Type": "application/json", SIGNATURE_HEADER: sign(body, secret)}
            try:
                resp = client.post(url, content=body, headers=headers)
                if 200 <= resp.status_code < 300:
                    logger.info(
                        "webhook delivered",
                        extra={"event_id": event["id"], "type": event["type"], "attempt": attempt},
                    )
                    return True
                if resp.status_code < 500:
                    # The merchant rejected the event; retrying will not help.
                    logger.error(
                        "webhook rejected",
                        extra={"event_id": event["id"], "status": resp.status_code},
                    )
                    return False
                error = f"HTTP {resp.status_code}"
            except httpx.RequestError as e:
                error = str(e)

            logger.warning(
                "webhook delivery failed",
                extra={"event_id": event["id"], "attempt": attempt, "error": error},
            )
            if attempt < WEBHOOK_MAX_ATTEMPTS:
                time.sleep(WEBHOOK_BACKOFF_BASE * (2 ** (attempt - 1)))

    logger.error("webhook delivery abandoned", extra={"event_id": event["id"], "type": event["type"]})
    return False
