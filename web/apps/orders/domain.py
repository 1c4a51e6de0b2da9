"""Domain models, ports and service for orders.

This module contains simple dataclasses used as DTOs for checkouts and
orders, protocol definitions (ports) for the external dependencies (stock
ledger, payment gateway, notifier, order store), and the domain service that
drives an order through its lifecycle:

- checkout: validate, check stock, persist the order, reserve stock and open
  a payment intent, compensating completed steps when a later one fails;
- payment webhooks: confirm or fail the payment, then commit or release the
  reserved stock exactly once per order;
- admin status changes with customer notifications;
- periodic sweeps that free stock held by abandoned or stalled checkouts.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger("orders")


# ---- Enums ----
class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    """Fulfilment status of an order, as shown to the customer."""

    PLACED = "placed"
    PAYMENT_CONFIRMED = "payment-confirmed"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CheckoutStage(str, Enum):
    """How far the checkout got. Persisted after every completed step."""

    CREATED = "created"
    RESERVED = "reserved"
    INTENT_CREATED = "intent_created"
    COMPENSATED = "compensated"


class InventoryState(str, Enum):
    """What the order currently holds in the stock ledger."""

    NONE = "none"
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class DeliveryMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"


class PaymentMethod(str, Enum):
    CARD = "card"
    EFT = "eft"
    COD = "cod"


# Delivery prices in whole rand.
DELIVERY_COSTS = {DeliveryMethod.STANDARD: 100, DeliveryMethod.EXPRESS: 180}
CURRENCY = "ZAR"
GATEWAY_CURRENCY = "zar"
ORDER_NUMBER_PREFIX = "ST-"

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

# Statuses a late payment may still confirm.
OPEN_ORDER_STATUSES = [s for s in OrderStatus if s != OrderStatus.CANCELLED]


# ---- Errors ----
class OrderError(Exception):
    """Base class for business errors raised by the order service.

    Attributes:
        code: Stable machine-readable error code returned to API clients.
    """

    code = "ORDER_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"


class OutOfStock(OrderError):
    """Raised when one or more cart lines exceed the stock that can be sold."""

    code = "OUT_OF_STOCK"

    def __init__(self, shortfalls: List["Shortfall"]):
        self.shortfalls = list(shortfalls)
        super().__init__("Some items are out of stock")


class GatewayUnavailable(OrderError):
    code = "GATEWAY_UNAVAILABLE"


class InventoryUnavailable(OrderError):
    code = "INVENTORY_UNAVAILABLE"


class OrderNotFound(OrderError):
    code = "NOT_FOUND"


class PartialFailureInconsistency(OrderError):
    """A checkout failed after the order was written.

    Completed steps have been compensated (or left for the reconciliation
    sweep when a compensation failed too).

    Attributes:
        order_id: The order the checkout had created.
        stage: Last checkout stage that completed.
        cause: The original exception.
    """

    code = "PARTIAL_FAILURE"

    def __init__(self, order_id, stage: str, cause: Exception):
        self.order_id = order_id
        self.stage = stage
        self.cause = cause
        super().__init__(f"checkout for order {order_id} failed after stage {stage}: {cause}")


class DuplicateOrderNumber(Exception):
    pass


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class StockLine:
    """A quantity of one product size, as the stock ledger sees it."""

    product_id: str
    size: str
    quantity: int
    product_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "size": self.size, "quantity": self.quantity}


@dataclass(frozen=True)
class Shortfall:
    product_id: str
    size: str
    requested: int
    available: int
    product_name: Optional[str] = None


@dataclass
class Availability:
    available: bool
    unavailable_items: List[Shortfall] = field(default_factory=list)


@dataclass(frozen=True)
class CartLine:
    """A single line of the shopping cart.

    Attributes:
        product_id: Catalog product identifier.
        product_name: Display name, snapshotted on the order.
        brand: Brand name, snapshotted on the order.
        size: Shoe size as a string.
        quantity: Units requested (positive).
        price: Unit price in whole rand at checkout time.
        image_url: First product image, for emails and order pages.
    """

    product_id: str
    product_name: str
    brand: str
    size: str
    quantity: int
    price: int
    image_url: Optional[str] = None

    @property
    def line_total(self) -> int:
        return self.price * self.quantity

    def stock_line(self) -> StockLine:
        return StockLine(self.product_id, self.size, self.quantity, self.product_name)


@dataclass(frozen=True)
class CustomerInfo:
    full_name: str
    email: str
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    delivery_method: DeliveryMethod = DeliveryMethod.STANDARD
    payment_method: PaymentMethod = PaymentMethod.CARD
    user_id: Optional[str] = None


@dataclass
class Checkout:
    cart: List[CartLine]
    customer: CustomerInfo


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier (UUID), or None if not yet saved.
        order_number: Human-facing number (``ST-`` + 8 digits).
        customer: Contact and delivery details.
        items: Snapshot of the cart lines at checkout.
        subtotal: Sum of the line totals, whole rand.
        delivery_cost: Price of the delivery method, whole rand.
        total: ``subtotal + delivery_cost``.
        currency: ISO currency code.
        payment_status: Gateway payment outcome.
        order_status: Fulfilment status.
        checkout_stage: Progress of the checkout steps.
        inventory_state: What the order holds in the ledger.
        payment_intent_id: Gateway intent, once created.
        refund_required: Paid, but the stock could not be committed or the
            order was already cancelled.
    """

    id: Optional[object]
    order_number: str
    customer: CustomerInfo
    items: List[CartLine]
    subtotal: int
    delivery_cost: int
    total: int
    currency: str = CURRENCY
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PLACED
    checkout_stage: CheckoutStage = CheckoutStage.CREATED
    inventory_state: InventoryState = InventoryState.NONE
    refund_required: bool = False
    payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def stock_lines(self) -> List[StockLine]:
        return [it.stock_line() for it in self.items]


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str
    amount: int
    currency: str
    status: str = "requires_payment_method"


@dataclass(frozen=True)
class PaymentEvent:
    """A verified webhook event from the payment gateway.

    Attributes:
        event_id: Gateway event id, unique per delivery of the same event.
        event_type: e.g. ``payment_intent.succeeded``.
        intent_id: The payment intent the event is about.
        metadata: Metadata attached to the intent at checkout.
    """

    event_id: str
    event_type: str
    intent_id: Optional[str]
    metadata: dict = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id") or None

    def stock_lines(self) -> List[StockLine]:
        """Lines recorded in the intent metadata at checkout.

        Raises:
            ValueError: If ``order_items`` is present but malformed.
        """
        raw = self.metadata.get("order_items")
        if not raw:
            return []
        items = json.loads(raw) if isinstance(raw, str) else raw
        return [
            StockLine(str(it["product_id"]), str(it["size"]), int(it["quantity"]))
            for it in items
        ]


@dataclass(frozen=True)
class CheckoutResult:
    client_secret: str
    order_id: object
    order_number: str


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: Optional[str] = None


@dataclass
class SweepReport:
    expired: list = field(default_factory=list)
    compensated: list = field(default_factory=list)


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the stock ledger operations used by the domain."""

    def check_availability(self, lines: List[StockLine]) -> Availability:
        """Report the lines that exceed the available units. No side effects.

        Raises:
            InventoryUnavailable: If the ledger cannot be reached.
        """
        raise NotImplementedError()

    def reserve(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        """Reserve every line or none of them.

        Mutations carry an optional ``operation_key``; the ledger applies a
        key at most once, so a call repeated after a lost reply is a no-op.

        Raises:
            OutOfStock: If any line cannot be reserved in full.
            InventoryUnavailable: If the ledger cannot be reached.
        """
        raise NotImplementedError()

    def release(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        raise NotImplementedError()

    def commit(self, lines: List[StockLine], operation_key: Optional[str] = None) -> None:
        raise NotImplementedError()


class PaymentsPort(Protocol):
    """Port describing the payment gateway used by the domain."""

    def is_configured(self) -> bool:
        raise NotImplementedError()

    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Open a payment intent for ``amount`` minor units.

        Raises:
            GatewayUnavailable: If the gateway cannot be reached or refuses.
        """
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Port for customer notifications. Implementations never raise."""

    def send_order_confirmation(self, order: Order) -> NotificationResult:
        raise NotImplementedError()

    def send_shipping_notification(self, order: Order) -> NotificationResult:
        raise NotImplementedError()

    def send_delivery_confirmation(self, order: Order) -> NotificationResult:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port for order persistence.

    ``transition`` is the primitive the lifecycle relies on for exactly-once
    effects: it applies ``changes`` only while every field in ``expect`` still
    holds one of the listed values, and reports whether it did.
    """

    def create(self, order: Order) -> Order: ...

    def get(self, order_id) -> Order: ...

    def get_by_number(self, order_number: str) -> Order: ...

    def list(self, page: int, page_size: int) -> Tuple[int, List[Order]]: ...

    def update(self, order_id, **changes) -> bool: ...

    def transition(self, order_id, expect: dict, **changes) -> bool: ...

    def find_abandoned(self, cutoff: datetime) -> List[Order]: ...

    def find_stalled(self, cutoff: datetime) -> List[Order]: ...

    def record_event(self, event: PaymentEvent) -> bool: ...

    def finish_event(self, event_id: str, outcome: str) -> None: ...


# ---- Helpers ----
def make_order_number(now_ms: int) -> str:
    """``ST-`` followed by the last 8 digits of a millisecond timestamp."""
    return f"{ORDER_NUMBER_PREFIX}{now_ms % 100_000_000:08d}"


def ledger_key(order_id, action: str, *scope) -> str:
    """Idempotency key of one ledger mutation made for an order."""
    return "-".join(["order", str(order_id), action, *(str(s) for s in scope)])


def calculate_totals(cart: List[CartLine], delivery_method: DeliveryMethod) -> Tuple[int, int, int]:
    """Return ``(subtotal, delivery_cost, total)`` in whole rand."""
    subtotal = sum(line.line_total for line in cart)
    delivery_cost = DELIVERY_COSTS[DeliveryMethod(delivery_method)]
    return subtotal, delivery_cost, subtotal + delivery_cost


class _Compensations:
    """Undo actions for completed checkout steps, run newest first."""

    def __init__(self):
        self._steps: List[Tuple[str, Callable[[], None]]] = []

    def add(self, name: str, undo: Callable[[], None]) -> None:
        self._steps.append((name, undo))

    def run(self, order_id) -> bool:
        """Run every recorded undo action.

        Returns:
            bool: True when all of them succeeded.
        """
        ok = True
        for name, undo in reversed(self._steps):
            try:
                undo()
            except Exception:
                ok = False
                logger.exception("compensation failed", extra={"order_id": str(order_id), "step": name})
        return ok


# ---- Domain service ----
class OrderService:
    """Domain service responsible for the order lifecycle.

    It coordinates the ports but does not know how they are implemented:
    the ledger may be the inventory service or an in-process stub, the store
    is the Django ORM repository in production.
    """

    ORDER_NUMBER_ATTEMPTS = 5

    def __init__(
        self,
        inventory: InventoryPort,
        payments: PaymentsPort,
        notifier: NotifierPort,
        orders: OrderStorePort,
        clock: Callable[[], float] = time.time,
        reservation_ttl: timedelta = timedelta(minutes=30),
    ):
        """Initialize the service with required dependencies.

        Args:
            inventory: Stock ledger.
            payments: Payment gateway.
            notifier: Customer notifications.
            orders: Order store.
            clock: Returns the current Unix time in seconds.
            reservation_ttl: Age after which an unpaid checkout releases its
                stock.
        """
        self.inventory = inventory
        self.payments = payments
        self.notifier = notifier
        self.orders = orders
        self.clock = clock
        self.reservation_ttl = reservation_ttl

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    # -- checkout --

    def _validate(self, checkout: Checkout) -> None:
        if not checkout.cart:
            raise ValidationError("Cart is empty")
        if not checkout.customer.full_name.strip() or not checkout.customer.email.strip():
            raise ValidationError("Customer name and email are required")
        for line in checkout.cart:
            if line.quantity <= 0:
                raise ValidationError(f"Invalid quantity for {line.product_id}")
            if line.price < 0:
                raise ValidationError(f"Invalid price for {line.product_id}")

    def _persist_new_order(self, checkout: Checkout) -> Order:
        subtotal, delivery_cost, total = calculate_totals(
            checkout.cart, checkout.customer.delivery_method
        )
        now_ms = int(self.clock() * 1000)
        for attempt in range(self.ORDER_NUMBER_ATTEMPTS):
            order = Order(
                id=None,
                order_number=make_order_number(now_ms + attempt),
                customer=checkout.customer,
                items=list(checkout.cart),
                subtotal=subtotal,
                delivery_cost=delivery_cost,
                total=total,
            )
            try:
                return self.orders.create(order)
            except DuplicateOrderNumber:
                logger.warning("order number taken, retrying", extra={"order_number": order.order_number})
        raise DuplicateOrderNumber(f"no free order number after {self.ORDER_NUMBER_ATTEMPTS} attempts")

    @staticmethod
    def _intent_metadata(order: Order) -> dict:
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "order_items": json.dumps(
                [line.to_dict() for line in order.stock_lines()], separators=(",", ":")
            ),
        }

    def create_order(self, checkout: Checkout) -> CheckoutResult:
        """Create an order and open its payment intent.

        Nothing is written unless the cart validates, the gateway is
        configured and every line is available. After the order is written,
        each further step records how to undo itself; if a later step fails
        the recorded undo actions run newest first and the order is cancelled.

        Args:
            checkout: Cart and customer details.

        Returns:
            CheckoutResult: Client secret for the browser, order id and number.

        Raises:
            ValidationError: Empty cart or missing customer name/email.
            GatewayUnavailable: The payment gateway is not configured.
            InventoryUnavailable: The ledger could not be reached for the
                availability check.
            OutOfStock: Some lines exceed the available units, including a
                reservation race lost after the check.
            PartialFailureInconsistency: A step failed after the order was
                written.
        """
        self._validate(checkout)
        if not self.payments.is_configured():
            raise GatewayUnavailable("Payment gateway is not configured")

        lines = [line.stock_line() for line in checkout.cart]
        availability = self.inventory.check_availability(lines)
        if not availability.available:
            raise OutOfStock(availability.unavailable_items)

        order = self._persist_new_order(checkout)
        log_ctx = {"order_id": str(order.id), "order_number": order.order_number}
        compensations = _Compensations()
        stage = CheckoutStage.CREATED
        reserved = False
        try:
            self.inventory.reserve(lines, operation_key=ledger_key(order.id, "reserve"))
            reserved = True
            compensations.add(
                "release_stock",
                lambda: self.inventory.release(lines, operation_key=ledger_key(order.id, "release")),
            )
            self.orders.update(
                order.id,
                checkout_stage=CheckoutStage.RESERVED,
                inventory_state=InventoryState.RESERVED,
            )
            stage = CheckoutStage.RESERVED

            intent = self.payments.create_intent(
                amount=order.total * 100,
                currency=GATEWAY_CURRENCY,
                metadata=self._intent_metadata(order),
                description=f"Order {order.order_number}",
                idempotency_key=f"order-{order.id}",
            )
            self.orders.update(
                order.id,
                payment_intent_id=intent.id,
                checkout_stage=CheckoutStage.INTENT_CREATED,
            )
        except Exception as exc:
            logger.error(
                "checkout failed after order was written",
                extra={**log_ctx, "stage": stage.value, "error": repr(exc)},
            )
            if compensations.run(order.id):
                self.orders.update(
                    order.id,
                    payment_status=PaymentStatus.FAILED,
                    order_status=OrderStatus.CANCELLED,
                    checkout_stage=CheckoutStage.COMPENSATED,
                    inventory_state=InventoryState.RELEASED if reserved else InventoryState.NONE,
                )
            if isinstance(exc, OutOfStock):
                raise
            raise PartialFailureInconsistency(order.id, stage.value, exc) from exc

        logger.info("checkout created", extra={**log_ctx, "payment_intent_id": intent.id, "total": order.total})
        return CheckoutResult(intent.client_secret, order.id, order.order_number)

    # -- payment webhooks --

    def _event_lines(self, event: PaymentEvent, order: Order) -> List[StockLine]:
        try:
            lines = event.stock_lines()
        except (ValueError, KeyError, TypeError):
            logger.warning("malformed order_items in intent metadata", extra={"event_id": event.event_id})
            lines = []
        return lines or order.stock_lines()

    def handle_payment_succeeded(self, event: PaymentEvent) -> bool:
        """Confirm the payment and commit the order's stock.

        Both effects are guarded by conditional updates, so a redelivered
        event neither commits stock twice nor sends a second email. An order
        whose reservation was released (an earlier failed attempt) reserves
        again before committing. When that stock is gone, or the order was
        already cancelled, the payment is recorded and the order is flagged
        for a refund instead.

        Returns:
            bool: True when this call confirmed the payment.

        Raises:
            OrderNotFound: If the metadata does not reference a known order.
        """
        order = self.orders.get(event.order_id)
        unpaid = [PaymentStatus.PENDING, PaymentStatus.FAILED]
        confirmed = self.orders.transition(
            order.id,
            {"payment_status": unpaid, "order_status": OPEN_ORDER_STATUSES},
            payment_status=PaymentStatus.SUCCEEDED,
            order_status=OrderStatus.PAYMENT_CONFIRMED,
            payment_intent_id=event.intent_id,
        )
        if not confirmed:
            if self.orders.transition(
                order.id,
                {"payment_status": unpaid, "order_status": [OrderStatus.CANCELLED]},
                payment_status=PaymentStatus.SUCCEEDED,
                payment_intent_id=event.intent_id,
                refund_required=True,
            ):
                logger.error(
                    "payment succeeded for a cancelled order, refund required",
                    extra={"order_id": str(order.id), "event_id": event.event_id},
                )
                return False
            order = self.orders.get(order.id)
            if order.payment_status != PaymentStatus.SUCCEEDED or order.refund_required:
                return False
        try:
            self._commit_paid_stock(order, self._event_lines(event, order))
        except OutOfStock as exc:
            self.orders.update(order.id, order_status=OrderStatus.CANCELLED, refund_required=True)
            logger.error(
                "paid order could not be fulfilled, refund required",
                extra={
                    "order_id": str(order.id),
                    "event_id": event.event_id,
                    "error": str(PartialFailureInconsistency(order.id, "commit", exc)),
                },
            )
            return confirmed
        finally:
            order = self.orders.get(order.id)
            if confirmed and not order.refund_required:
                logger.info("payment confirmed", extra={"order_id": str(order.id), "event_id": event.event_id})
                self._notify("send_order_confirmation", order)
        return confirmed

    def _commit_paid_stock(self, order: Order, lines: List[StockLine]) -> None:
        """Move the order's stock to ``committed``, reserving it first if needed.

        A paid order reserves again at most once: afterwards it holds the
        reservation until commit, or it is cancelled.

        Raises:
            OutOfStock: The released stock was sold in the meantime.
        """
        previous = order.inventory_state
        if previous == InventoryState.COMMITTED or not self.orders.transition(
            order.id, {"inventory_state": [previous]}, inventory_state=InventoryState.COMMITTED
        ):
            return
        held = previous
        try:
            if previous != InventoryState.RESERVED:
                self.inventory.reserve(lines, operation_key=ledger_key(order.id, "reserve", "again"))
                held = InventoryState.RESERVED
            self.inventory.commit(lines, operation_key=ledger_key(order.id, "commit"))
        except Exception:
            self.orders.update(order.id, inventory_state=held)
            raise

    def handle_payment_failed(self, event: PaymentEvent) -> bool:
        """Record a failed payment and release the reserved stock.

        The order stays ``placed`` so the customer can retry on the same
        intent. Failure events for an already paid order are ignored.

        Returns:
            bool: True when the failure was recorded.

        Raises:
            OrderNotFound: If the metadata does not reference a known order.
        """
        order = self.orders.get(event.order_id)
        if not self.orders.transition(
            order.id,
            {"payment_status": [PaymentStatus.PENDING, PaymentStatus.FAILED]},
            payment_status=PaymentStatus.FAILED,
            payment_intent_id=event.intent_id,
        ):
            logger.warning(
                "payment failure ignored for a settled order",
                extra={"order_id": str(order.id), "event_id": event.event_id},
            )
            return False
        if self.orders.transition(
            order.id,
            {"inventory_state": [InventoryState.RESERVED]},
            inventory_state=InventoryState.RELEASED,
        ):
            try:
                self.inventory.release(
                    self._event_lines(event, order),
                    operation_key=ledger_key(order.id, "release", event.event_id),
                )
            except Exception:
                self.orders.update(order.id, inventory_state=InventoryState.RESERVED)
                raise
        logger.info("payment failed", extra={"order_id": str(order.id), "event_id": event.event_id})
        return True

    def handle_event(self, event: PaymentEvent) -> str:
        """Dispatch a webhook event by type, at most once per event id.

        Returns:
            str: ``processed``, ``duplicate`` or ``ignored``.
        """
        handlers = {
            PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            PAYMENT_FAILED: self.handle_payment_failed,
        }
        handler = handlers.get(event.event_type)
        if handler is None:
            logger.info("webhook event ignored", extra={"event_id": event.event_id, "type": event.event_type})
            return "ignored"
        if not event.order_id:
            logger.warning("webhook event without order id", extra={"event_id": event.event_id})
            return "ignored"
        if not self.orders.record_event(event):
            logger.info("duplicate webhook event", extra={"event_id": event.event_id})
            return "duplicate"
        try:
            handler(event)
        except Exception:
            self.orders.finish_event(event.event_id, "error")
            raise
        self.orders.finish_event(event.event_id, "processed")
        return "processed"

    # -- admin --

    def set_order_status(self, order_id, status: str) -> Order:
        """Set the fulfilment status; any status may follow any other.

        ``shipped`` and ``delivered`` notify the customer. ``cancelled``
        releases stock the order still holds and fails a pending payment; a
        paid order is flagged for a refund.

        Raises:
            ValidationError: Unknown status.
            OrderNotFound: Unknown order.
            InventoryUnavailable: The reservation of an order being cancelled
                could not be released; its status is left unchanged.
        """
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")
        if new_status == OrderStatus.CANCELLED:
            self._cancel(self.orders.get(order_id))
        elif not self.orders.update(order_id, order_status=new_status):
            raise OrderNotFound(str(order_id))
        order = self.orders.get(order_id)
        logger.info("order status changed", extra={"order_id": str(order_id), "order_status": new_status.value})
        if new_status == OrderStatus.SHIPPED:
            self._notify("send_shipping_notification", order)
        elif new_status == OrderStatus.DELIVERED:
            self._notify("send_delivery_confirmation", order)
        return order

    def _cancel(self, order: Order) -> None:
        if not self._release_held_stock(order):
            raise InventoryUnavailable(f"could not release stock held by order {order.id}")
        self.orders.transition(
            order.id, {"payment_status": [PaymentStatus.PENDING]}, payment_status=PaymentStatus.FAILED
        )
        self.orders.transition(
            order.id, {"payment_status": [PaymentStatus.SUCCEEDED]}, refund_required=True
        )
        self.orders.update(order.id, order_status=OrderStatus.CANCELLED)

    # -- sweeps --

    def release_expired_reservations(self, now: Optional[datetime] = None) -> list:
        """Cancel unpaid orders older than the reservation TTL.

        Stock still reserved by such an order is released. An order whose
        payment succeeds concurrently is left alone.

        Returns:
            list: Ids of the cancelled orders.
        """
        cutoff = (now or self.now()) - self.reservation_ttl
        cancelled = []
        for order in self.orders.find_abandoned(cutoff):
            if not self.orders.transition(
                order.id,
                {
                    "payment_status": [PaymentStatus.PENDING, PaymentStatus.FAILED],
                    "order_status": [OrderStatus.PLACED],
                },
                payment_status=PaymentStatus.FAILED,
                order_status=OrderStatus.CANCELLED,
            ):
                continue
            self._release_held_stock(order)
            cancelled.append(order.id)
            logger.info("expired reservation released", extra={"order_id": str(order.id)})
        return cancelled

    def reconcile_stalled_checkouts(self, now: Optional[datetime] = None) -> list:
        """Compensate checkouts that stopped before the intent was created.

        Stock is only released when the order recorded the reservation; an
        order stuck at ``created`` is cancelled without touching the ledger.

        Returns:
            list: Ids of the compensated orders.
        """
        cutoff = (now or self.now()) - self.reservation_ttl
        compensated = []
        for order in self.orders.find_stalled(cutoff):
            if not self._release_held_stock(order):
                continue
            self.orders.update(
                order.id,
                payment_status=PaymentStatus.FAILED,
                order_status=OrderStatus.CANCELLED,
                checkout_stage=CheckoutStage.COMPENSATED,
            )
            compensated.append(order.id)
            logger.warning(
                "stalled checkout compensated",
                extra={"order_id": str(order.id), "stage": order.checkout_stage.value},
            )
        return compensated

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.now()
        return SweepReport(
            expired=self.release_expired_reservations(now),
            compensated=self.reconcile_stalled_checkouts(now),
        )

    def _release_held_stock(self, order: Order) -> bool:
        """Release the order's reservation if it still holds one.

        Returns:
            bool: False when the ledger refused; the order is left reserved
                for the next sweep.
        """
        if not self.orders.transition(
            order.id,
            {"inventory_state": [InventoryState.RESERVED]},
            inventory_state=InventoryState.RELEASED,
        ):
            return True
        try:
            self.inventory.release(order.stock_lines(), operation_key=ledger_key(order.id, "release"))
        except Exception:
            self.orders.update(order.id, inventory_state=InventoryState.RESERVED)
            logger.exception("stock release failed", extra={"order_id": str(order.id)})
            return False
        return True

    # -- reads --

    def get_order(self, order_id) -> Order:
        return self.orders.get(order_id)

    def track(self, order_number: str) -> Order:
        return self.orders.get_by_number(order_number)

    def list_orders(self, page: int = 1, page_size: int = 20) -> Tuple[int, List[Order]]:
        return self.orders.list(page, page_size)

    def _notify(self, kind: str, order: Order) -> NotificationResult:
        try:
            result = getattr(self.notifier, kind)(order)
        except Exception as exc:
            logger.exception("notifier raised", extra={"order_id": str(order.id), "kind": kind})
            return NotificationResult(False, str(exc))
        if not result.success:
            logger.warning(
                "notification not sent",
                extra={"order_id": str(order.id), "kind": kind, "error": result.error},
            )
        return result
