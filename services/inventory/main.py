"""Inventory service API built with FastAPI.

This module exposes the stock ledger over HTTP: availability per product,
bulk availability checks, and the reserve / release / commit operations the
order lifecycle drives, plus admin-only stock edits. Validation is performed
with Pydantic models, while persistence and the concurrency guarantees live
in the SQLAlchemy-backed ``InventoryRepo``.
"""

import hmac
import logging
import os
import time
import uuid
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr, field_validator
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import text

from .repo import (
    InsufficientStock,
    InventoryRepo,
    OperationKeyConflict,
    RecordNotFound,
    StockBelowReserved,
    StockLine,
    engine,
    init_db,
)

app = FastAPI(title="Inventory Service")

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


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


class Line(BaseModel):
    """A quantity of one product size.

    Attributes:
        product_id: Catalog product identifier.
        size: Shoe size; numbers are accepted and stored as strings.
        quantity: Positive number of units.
        product_name: Optional display name echoed back in shortfalls.
    """
    product_id: ProductId
    size: str = Field(min_length=1, max_length=8)
    quantity: int = Field(gt=0)
    product_name: Optional[str] = None

    @field_validator("size", mode="before")
    @classmethod
    def size_as_string(cls, v):
        return str(v) if isinstance(v, (int, float)) else v

    def to_stock_line(self) -> StockLine:
        return StockLine(self.product_id, self.size, self.quantity, self.product_name)


class LinesRequest(BaseModel):
    items: List[Line]

    def stock_lines(self) -> List[StockLine]:
        return [it.to_stock_line() for it in self.items]


class StockLevelUpdate(BaseModel):
    stock_level: int = Field(ge=0)


class StockUpdateItem(BaseModel):
    id: str
    stock_level: int = Field(ge=0)


class BulkStockUpdate(BaseModel):
    updates: List[StockUpdateItem]


class AvailabilityResponse(BaseModel):
    available: bool
    unavailable_items: List[dict]


class ReserveResponse(BaseModel):
    """Response body for the reserve endpoint.

    Attributes:
        reserved: Whether the reservation succeeded for all items.
        detail: Optional error code when reservation fails.
    """
    reserved: bool
    detail: str | None = None


IdempotencyKeyHeader = Annotated[Optional[str], Header(alias="Idempotency-Key", max_length=200)]


def _key_conflict(key: str) -> HTTPException:
    logger.warning("idempotency key reused for another mutation", extra={"idempotency_key": key})
    return HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")


def require_admin(
    x_admin_token: Annotated[Optional[str], Header(alias="X-Admin-Token")] = None,
) -> None:
    """Reject the call unless it carries the configured admin token.

    An unset ``ADMIN_API_TOKEN`` denies every admin call.

    Raises:
        HTTPException: 403 with ``ADMIN_REQUIRED``.
    """
    if not ADMIN_API_TOKEN or not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), ADMIN_API_TOKEN.encode()
    ):
        raise HTTPException(status_code=403, detail="ADMIN_REQUIRED")


@app.get("/health")
def health():
    """Liveness/health check endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.get("/inventory/{product_id}")
def product_inventory(product_id: ProductId):
    """Current counters for every size of a product."""
    return {"inventory": InventoryRepo().list_for_product(product_id)}


@app.post("/inventory/check", response_model=AvailabilityResponse)
def check(req: LinesRequest):
    """Report the lines that exceed the units available. No side effects."""
    result = InventoryRepo().check_availability(req.stock_lines())
    return AvailabilityResponse(
        available=result.available,
        unavailable_items=[s.to_dict() for s in result.unavailable_items],
    )


@app.post("/inventory/reserve", response_model=ReserveResponse)
def reserve(req: LinesRequest, idempotency_key: IdempotencyKeyHeader = None):
    """Reserve stock for a cart.

    The repository reserves every line in one transaction with conditional
    updates, so concurrent carts can never reserve more than is available.
    A retry carrying the ``Idempotency-Key`` of an applied reservation gets
    the same answer without reserving again.

    Raises:
        HTTPException: 422 with the unavailable lines when any line falls
            short; 409 when the key was used for another mutation.
    """
    try:
        InventoryRepo().reserve(req.stock_lines(), operation_key=idempotency_key)
    except OperationKeyConflict:
        raise _key_conflict(idempotency_key)
    except InsufficientStock as e:
        logger.info(
            "reservation rejected",
            extra={"shortfalls": [s.to_dict() for s in e.shortfalls]},
        )
        raise HTTPException(
            status_code=422,
            detail={
                "reserved": False,
                "detail": "INSUFFICIENT_STOCK",
                "unavailable_items": [s.to_dict() for s in e.shortfalls],
            },
        )
    return ReserveResponse(reserved=True)


@app.post("/inventory/release")
def release(req: LinesRequest, idempotency_key: IdempotencyKeyHeader = None):
    """Return reserved units to the available pool, once per ``Idempotency-Key``."""
    try:
        touched = InventoryRepo().release(req.stock_lines(), operation_key=idempotency_key)
    except OperationKeyConflict:
        raise _key_conflict(idempotency_key)
    return {"ok": True, "records": touched}


@app.post("/inventory/commit")
def commit(req: LinesRequest, idempotency_key: IdempotencyKeyHeader = None):
    """Remove paid-for units from stock and clear their reservation.

    Applied once per ``Idempotency-Key``; a retried commit returns
    ``records: 0``.
    """
    try:
        touched = InventoryRepo().commit(req.stock_lines(), operation_key=idempotency_key)
    except OperationKeyConflict:
        raise _key_conflict(idempotency_key)
    return {"ok": True, "records": touched}


@app.patch("/inventory/{record_id}", dependencies=[Depends(require_admin)])
def set_stock_level(record_id: str, req: StockLevelUpdate):
    """Admin edit of the units owned for one record.

    Raises:
        HTTPException: 404 for an unknown record, 400 when the new level is
            below the units currently reserved.
    """
    try:
        record = InventoryRepo().set_stock_level(record_id, req.stock_level)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    except StockBelowReserved as e:
        raise HTTPException(status_code=400, detail={"detail": "BELOW_RESERVED", "reserved": e.reserved})
    logger.info("stock level set", extra={"record_id": record_id, "stock_level": req.stock_level})
    return record


@app.patch("/inventory", dependencies=[Depends(require_admin)])
def bulk_set_stock_levels(req: BulkStockUpdate):
    """Admin edit of several records at once; all or nothing."""
    try:
        records = InventoryRepo().bulk_set_stock_levels(
            (u.id, u.stock_level) for u in req.updates
        )
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail={"detail": "NOT_FOUND", "id": str(e)})
    except StockBelowReserved as e:
        raise HTTPException(
            status_code=400,
            detail={"detail": "BELOW_RESERVED", "id": e.record_id, "reserved": e.reserved},
        )
    return {"ok": True, "inventory": records}


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
