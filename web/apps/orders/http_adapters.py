"""HTTP clients for the inventory service and the payment gateway.

Both clients implement the domain ports on top of ``httpx`` and share one
calling convention:

- every request carries the ``X-Request-ID`` of the inbound request (read
  from the ContextVar the gateway middleware sets), plus ``X-Circuit-State``
  and ``X-Retry-Count`` for the downstream logs;
- transport errors and 5xx answers are retried with exponential backoff;
- each downstream service has its own circuit breaker, so a dead ledger
  fails checkouts fast instead of tying up workers for the full timeout.

Answers the caller must interpret (an inventory 422, a gateway 402/409) are
returned as is and count as healthy calls. Everything else that goes wrong
reaches the domain as ``InventoryUnavailable`` or ``GatewayUnavailable``.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    Availability,
    GatewayUnavailable,
    InventoryPort,
    InventoryUnavailable,
    OutOfStock,
    PaymentIntent,
    PaymentsPort,
    Shortfall,
    StockLine,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


class CircuitOpen(RuntimeError):
    pass


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-service circuit breaker.

    ``fail_threshold`` consecutive failed calls open the circuit. After
    ``reset_timeout`` seconds it lets a single trial call through; that call's
    outcome closes or reopens it. Safe to share between threads.
    """

    def __init__(
        self,
        name: str,
        fail_threshold: int,
        reset_timeout: float,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock or time.monotonic
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._clock() - self._opened_at >= self.reset_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
            return self._state

    @contextmanager
    def guard(self):
        """Admit one call, yielding the state it was admitted in.

        Raises:
            CircuitOpen: The circuit is open, or its single trial call is already
                in flight.
        """
        with self._lock:
            state = self.state
            if state == CircuitState.OPEN:
                raise CircuitOpen(f"CIRCUIT_OPEN:{self.name}")
            if state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpen(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._trial_in_flight = True
        try:
            yield state
        finally:
            with self._lock:
                self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED and self._failures >= self.fail_threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False


_inventory_cb = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_payments_cb = CircuitBreaker(
    "payments",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts a call gets and how long to wait between them."""

    max_attempts: int
    backoff_base: float
    max_sleep: float

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
            backoff_base=getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
            max_sleep=getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failed try (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.max_sleep)


def _request_headers(extra: Optional[dict] = None) -> dict:
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retryable(resp: Optional[httpx.Response]) -> bool:
    """Transport errors (no response) and 5xx are worth another try."""
    return resp is None or resp.status_code >= 500


def _send(
    breaker: CircuitBreaker,
    url: str,
    payload: dict,
    timeout: float,
    extra_headers: Optional[dict] = None,
    accept: Iterable[int] = (),
) -> httpx.Response:
    """POST ``payload`` as JSON through ``breaker`` with retries.

    Args:
        breaker: Circuit breaker of the target service.
        url: Absolute endpoint URL.
        payload: JSON body.
        timeout: Per-attempt timeout in seconds.
        extra_headers: Headers added to the correlation headers.
        accept: Non-2xx statuses handed back to the caller as answers.

    Returns:
        httpx.Response: A 2xx response or one whose status is in ``accept``.

    Raises:
        CircuitOpen: The breaker refused the call.
        httpx.HTTPError: Transport error or 5xx after the last attempt, or
            any other non-2xx status.
    """
    policy = RetryPolicy.from_settings()
    accepted = set(accept)
    with breaker.guard() as state:
        headers = _request_headers({**(extra_headers or {}), "X-Circuit-State": state.value})
        with httpx.Client(timeout=timeout) as client:
            for attempt in range(1, policy.max_attempts + 1):
                headers["X-Retry-Count"] = str(attempt - 1)
                resp, error = None, None
                try:
                    resp = client.post(url, json=payload, headers=headers)
                except httpx.RequestError as e:
                    error = e
                if resp is not None and (resp.is_success or resp.status_code in accepted):
                    breaker.record_success()
                    return resp
                if not _retryable(resp):
                    resp.raise_for_status()
                if attempt < policy.max_attempts:
                    time.sleep(policy.delay(attempt))
            breaker.record_failure()
            if error is not None:
                raise error
            resp.raise_for_status()


def _new_key(op: str) -> str:
    return f"{op}-{uuid.uuid4().hex}"


def _line_payload(lines: List[StockLine]) -> dict:
    items = []
    for line in lines:
        item = line.to_dict()
        if line.product_name:
            item["product_name"] = line.product_name
        items.append(item)
    return {"items": items}


def _shortfalls(items: list) -> List[Shortfall]:
    return [
        Shortfall(
            product_id=it["product_id"],
            size=str(it["size"]),
            requested=int(it["requested"]),
            available=int(it["available"]),
            product_name=it.get("product_name"),
        )
        for it in items
    ]


class HttpInventoryClient(InventoryPort):
    """``InventoryPort`` backed by the inventory service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(
        self, op: str, lines: List[StockLine], accept=(), operation_key: Optional[str] = None
    ) -> httpx.Response:
        # retries of a mutation reuse its key so the ledger applies it once
        headers = {"Idempotency-Key": operation_key} if operation_key else None
        try:
            return _send(
                _inventory_cb,
                f"{self.base_url}/{op}",
                _line_payload(lines),
                self.timeout,
                extra_headers=headers,
                accept=accept,
            )
        except (httpx.HTTPError, CircuitOpen) as e:
            raise InventoryUnavailable(f"inventory {op} failed: {e}") from e

    def check_availability(self, lines: List[StockLine]) -> Availability:
        data = self._call("check", lines).json()
        return Availability(
            available=bool(data.get("available", False)),
            unavailable_items=_shortfalls(data.get("unavailable_items", [])),
        )

    def reserve(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        """Reserve stock for the given lines.

        Args:
            lines: Lines to reserve.
            operation_key: Sent as ``Idempotency-Key``; a random key is used
                when the caller has none.

        Raises:
            OutOfStock: The ledger answered 422 with the lines it refused.
            InventoryUnavailable: The ledger could not be reached.
        """
        resp = self._call("reserve", lines, accept=(422,), operation_key=operation_key or _new_key("reserve"))
        if resp.status_code == 422:
            detail = resp.json().get("detail") or {}
            items = detail.get("unavailable_items", []) if isinstance(detail, dict) else []
            raise OutOfStock(_shortfalls(items))

    def release(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        self._call("release", lines, operation_key=operation_key or _new_key("release"))

    def commit(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        self._call("commit", lines, operation_key=operation_key or _new_key("commit"))


class HttpPaymentsClient(PaymentsPort):
    """``PaymentsPort`` backed by the payment gateway service.

    The gateway counts as configured as soon as a base URL is set.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url if base_url is not None else settings.PAYMENTS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Open a payment intent.

        Args:
            amount: Amount in minor units (cents), positive integer.
            currency: Three-letter ISO currency code.
            metadata: String key/values echoed on the gateway's webhooks.
            description: Statement description.
            idempotency_key: Sent as ``Idempotency-Key`` so retries reuse the
                same intent.

        Raises:
            GatewayUnavailable: The gateway could not be reached or refused
                the request.
        """
        payload = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "description": description,
        }
        extra = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = _send(
                _payments_cb,
                f"{self.base_url}/payment_intents",
                payload,
                self.timeout,
                extra_headers=extra,
                accept=(402, 409),
            )
        except (httpx.HTTPError, CircuitOpen) as e:
            raise GatewayUnavailable(f"payment gateway unavailable: {e}") from e
        if resp.status_code in (402, 409):
            raise GatewayUnavailable(f"payment gateway refused the intent ({resp.status_code})")

        data = resp.json()
        return PaymentIntent(
            id=data["id"],
            client_secret=data["client_secret"],
            amount=data.get("amount", amount),
            currency=data.get("currency", currency),
            status=data.get("status", "requires_payment_method"),
        )
