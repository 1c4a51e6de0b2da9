"""In-process stub adapters for the orders domain ports.

These stubs implement ``InventoryPort`` and ``PaymentsPort`` without any
network calls. They are intended for unit tests and local development
where deterministic behavior is useful and the inventory and payments
services are not running.

``InventoryStub`` is a real ledger kept in memory: it enforces the same
counters and all-or-nothing reservations as the inventory service, with one
lock per product size. Locks for a cart are always taken in sorted key order
so two carts sharing sizes cannot deadlock.
Mutations given an ``operation_key`` are applied at most once per key.
"""

import secrets
import threading
from contextlib import ExitStack
from typing import Dict, Iterable, List, Optional, Tuple

from .domain import (
    Availability,
    InventoryPort,
    OutOfStock,
    PaymentIntent,
    PaymentsPort,
    Shortfall,
    StockLine,
)


def _merge(lines: Iterable[StockLine]) -> List[StockLine]:
    merged: Dict[Tuple[str, str], StockLine] = {}
    for line in lines:
        key = (line.product_id, str(line.size))
        prev = merged.get(key)
        if prev is None:
            merged[key] = StockLine(line.product_id, str(line.size), line.quantity, line.product_name)
        else:
            merged[key] = StockLine(
                line.product_id, prev.size, prev.quantity + line.quantity,
                prev.product_name or line.product_name,
            )
    return list(merged.values())


class InventoryStub(InventoryPort):
    """In-memory implementation of ``InventoryPort``.

    Args:
        strict: When True a line without a record is a shortfall with zero
            units available; otherwise it is treated as available and skipped.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self._records: Dict[Tuple[str, str], Dict[str, int]] = {}
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._applied: set = set()

    def reset(self) -> None:
        with self._registry_lock:
            self._records.clear()
            self._locks.clear()
            self._applied.clear()

    def _seen(self, operation_key: Optional[str]) -> bool:
        with self._registry_lock:
            return operation_key is not None and operation_key in self._applied

    def _remember(self, operation_key: Optional[str]) -> None:
        if operation_key is not None:
            with self._registry_lock:
                self._applied.add(operation_key)

    def set_stock(self, product_id: str, size, stock_level: int, reserved: int = 0) -> None:
        key = (product_id, str(size))
        with self._registry_lock:
            self._records[key] = {
                "stock_level": stock_level,
                "reserved": reserved,
                "available": stock_level - reserved,
            }
            self._locks.setdefault(key, threading.Lock())

    def record(self, product_id: str, size) -> Optional[dict]:
        rec = self._records.get((product_id, str(size)))
        return dict(rec) if rec else None

    def _locked(self, lines: List[StockLine]) -> ExitStack:
        stack = ExitStack()
        with self._registry_lock:
            locks = [
                self._locks[key]
                for key in sorted({(line.product_id, line.size) for line in lines})
                if key in self._locks
            ]
        for lock in locks:
            stack.enter_context(lock)
        return stack

    def _shortfalls(self, lines: List[StockLine]) -> List[Shortfall]:
        out = []
        for line in lines:
            rec = self._records.get((line.product_id, line.size))
            if rec is None:
                if self.strict:
                    out.append(Shortfall(line.product_id, line.size, line.quantity, 0, line.product_name))
                continue
            if rec["available"] < line.quantity:
                out.append(
                    Shortfall(line.product_id, line.size, line.quantity, rec["available"], line.product_name)
                )
        return out

    def check_availability(self, lines: List[StockLine]) -> Availability:
        lines = _merge(lines)
        with self._locked(lines):
            shortfalls = self._shortfalls(lines)
        return Availability(available=not shortfalls, unavailable_items=shortfalls)

    def reserve(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        """Reserve every line or none of them.

        A refused reservation does not use up ``operation_key``.

        Raises:
            OutOfStock: With the lines that fall short.
        """
        lines = _merge(lines)
        with self._locked(lines):
            if self._seen(operation_key):
                return
            shortfalls = self._shortfalls(lines)
            if shortfalls:
                raise OutOfStock(shortfalls)
            for line in lines:
                rec = self._records.get((line.product_id, line.size))
                if rec is None:
                    continue
                rec["reserved"] += line.quantity
                rec["available"] -= line.quantity
            self._remember(operation_key)

    def release(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        lines = _merge(lines)
        with self._locked(lines):
            if self._seen(operation_key):
                return
            for line in lines:
                rec = self._records.get((line.product_id, line.size))
                if rec is None:
                    continue
                rec["reserved"] = max(0, rec["reserved"] - line.quantity)
                rec["available"] = rec["stock_level"] - rec["reserved"]
            self._remember(operation_key)

    def commit(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        lines = _merge(lines)
        with self._locked(lines):
            if self._seen(operation_key):
                return
            for line in lines:
                rec = self._records.get((line.product_id, line.size))
                if rec is None:
                    continue
                rec["stock_level"] = max(0, rec["stock_level"] - line.quantity)
                rec["reserved"] = max(0, rec["reserved"] - line.quantity)
                rec["available"] = rec["stock_level"] - rec["reserved"]
            self._remember(operation_key)


class PaymentsStub(PaymentsPort):
    """Stub implementation of ``PaymentsPort``.

    Creates intents locally with gateway-shaped ids and secrets. Intents are
    kept on the instance so tests can inspect the amount and metadata sent.
    """

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.intents: Dict[str, dict] = {}
        self._by_key: Dict[str, str] = {}

    def reset(self) -> None:
        self.configured = True
        self.intents.clear()
        self._by_key.clear()

    def is_configured(self) -> bool:
        return self.configured

    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        if idempotency_key and idempotency_key in self._by_key:
            data = self.intents[self._by_key[idempotency_key]]
        else:
            intent_id = f"pi_{secrets.token_hex(12)}"
            data = {
                "id": intent_id,
                "client_secret": f"{intent_id}_secret_{secrets.token_urlsafe(12)}",
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "description": description,
            }
            self.intents[intent_id] = data
            if idempotency_key:
                self._by_key[idempotency_key] = intent_id
        return PaymentIntent(data["id"], data["client_secret"], data["amount"], data["currency"])


# Shared by every request in the process so stock persists across checkouts.
ledger = InventoryStub()
payments = PaymentsStub()
