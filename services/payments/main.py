"""Payments service API built with FastAPI.

This module exposes a small card gateway: merchants create payment intents
(optionally idempotent), the paying browser confirms an intent with a card
number, and every confirmation is reported back to the merchant through a
signed webhook. Validation is performed with Pydantic models, while
persistence is delegated to the SQLAlchemy-backed ``repo.PaymentsRepo``.
"""

import uuid
import logging
import time
from typing import Annotated, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from . import webhooks
from .repo import (
    IdempotencyKey,
    IntentAlreadySucceeded,
    IntentNotFound,
    PaymentsRepo,
    canonical_hash,
    engine,
    get_session,
    init_db,
)

app = FastAPI(title="Payments Service")

Currency = constr(pattern=r"^[A-Za-z]{3}$")

# Test cards that are always declined, with the decline code they produce.
DECLINED_CARDS = {
    "4000000000000002": "card_declined",
    "4000000000009995": "insufficient_funds",
}


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


class CreateIntentRequest(BaseModel):
    """Request body for intent creation.

    Attributes:
        amount: Positive amount in minor currency units (cents).
        currency: Three-letter ISO currency code (e.g., ZAR, zar).
        metadata: Merchant key/value pairs echoed on every webhook.
        description: Optional statement description.
    """
    amount: int = Field(gt=0)
    currency: Currency
    metadata: Dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = Field(default=None, max_length=255)


class ConfirmRequest(BaseModel):
    card_number: constr(pattern=r"^[0-9 ]{12,23}$")

    def normalized(self) -> str:
        return self.card_number.replace(" ", "")


def _create(req: CreateIntentRequest) -> dict:
    return PaymentsRepo().create_intent(
        amount=req.amount,
        currency=req.currency,
        metadata=req.metadata,
        description=req.description,
    )


@app.get("/health")
def health():
    """Liveness/health check endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.post("/payment_intents")
def create_payment_intent(
    req: CreateIntentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a payment intent with optional idempotency.

    When an ``Idempotency-Key`` header is provided, duplicate requests with
    the same payload create at most one intent. The first request creates the
    intent and persists the association with the key; retries with the same
    key and identical payload return the same intent. If the key is reused
    with a different payload, the endpoint responds with HTTP 409.

    Args:
        req: Validated body with amount, currency, metadata and description.
        idempotency_key: Optional idempotency key provided via the
            ``Idempotency-Key`` header.

    Returns:
        dict: The intent, including ``id`` and ``client_secret``.

    Raises:
        HTTPException: With status code 409 when the idempotency key is
            reused with a different payload; 500 when the key lookup fails
            unexpectedly.
    """
    if not idempotency_key:
        return _create(req)

    payload_hash = canonical_hash(req.model_dump())
    with get_session() as s:
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec.intent_id:
                intent = PaymentsRepo().get_intent(rec.intent_id)
                if intent:
                    return intent
            # Key recorded but no intent yet: create it now

        intent = _create(req)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.intent_id = intent["id"]
        s.commit()

    logger.info(
        "payment intent created",
        extra={"intent_id": intent["id"], "amount": intent["amount"], "currency": intent["currency"]},
    )
    return intent


@app.get("/payment_intents/{intent_id}")
def get_payment_intent(intent_id: str):
    intent = PaymentsRepo().get_intent(intent_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return intent


@app.post("/payment_intents/{intent_id}/confirm")
def confirm_payment_intent(intent_id: str, req: ConfirmRequest, background_tasks: BackgroundTasks):
    """Confirm an intent with a card.

    The outcome is also sent to the merchant as a signed webhook after the
    response has been written, so a slow merchant never blocks the payer.

    Returns:
        dict: The succeeded intent. Declined cards answer 402 with the decline
            code and the intent, which stays confirmable.

    Raises:
        HTTPException: 404 for an unknown intent, 409 when it already
            succeeded.
    """
    decline_code = DECLINED_CARDS.get(req.normalized())
    try:
        intent = PaymentsRepo().record_attempt(intent_id, decline_code)
    except IntentNotFound:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    except IntentAlreadySucceeded:
        raise HTTPException(status_code=409, detail="ALREADY_SUCCEEDED")

    event_type = webhooks.FAILED_EVENT if decline_code else webhooks.SUCCEEDED_EVENT
    event = webhooks.build_event(event_type, intent)
    background_tasks.add_task(webhooks.deliver, event)
    logger.info(
        "payment confirmation",
        extra={"intent_id": intent_id, "event_id": event["id"], "type": event_type, "decline_code": decline_code},
    )

    if decline_code:
        return JSONResponse(
            status_code=402,
            content={"error": {"code": decline_code, "type": "card_error"}, "payment_intent": intent},
        )
    return intent


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
