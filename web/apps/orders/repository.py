"""Repository layer for persisting orders.

This module implements the domain's ``OrderStorePort`` on top of the Django
ORM. It keeps a thin interface that speaks domain dataclasses so the
domain layer is not coupled to Django ORM details. State changes that must
happen at most once (payment confirmation, stock commit/release) go through
``transition``, a single filtered ``UPDATE`` whose row count tells the caller
whether it won.
"""

from enum import Enum
from typing import List, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.paginator import Paginator
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import (
    CartLine,
    CheckoutStage,
    CustomerInfo,
    DeliveryMethod,
    DuplicateOrderNumber,
    InventoryState,
    Order,
    OrderNotFound,
    OrderStatus,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
)
from .models import OrderItemModel, OrderModel, WebhookEventModel


def _db_value(value):
    return value.value if isinstance(value, Enum) else value


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        order_number=obj.order_number,
        customer=CustomerInfo(
            full_name=obj.customer_name,
            email=obj.customer_email,
            phone=obj.customer_phone,
            address=obj.delivery_address,
            city=obj.delivery_city,
            postal_code=obj.delivery_postal_code,
            delivery_method=DeliveryMethod(obj.delivery_method),
            payment_method=PaymentMethod(obj.payment_method),
            user_id=obj.user_id,
        ),
        items=[
            CartLine(
                product_id=it.product_id,
                product_name=it.product_name,
                brand=it.brand,
                size=it.size,
                quantity=it.quantity,
                price=it.price,
                image_url=it.image_url,
            )
            for it in obj.items.all()
        ],
        subtotal=obj.subtotal,
        delivery_cost=obj.delivery_cost,
        total=obj.total,
        currency=obj.currency,
        payment_status=PaymentStatus(obj.payment_status),
        order_status=OrderStatus(obj.order_status),
        checkout_stage=CheckoutStage(obj.checkout_stage),
        inventory_state=InventoryState(obj.inventory_state),
        refund_required=obj.refund_required,
        payment_intent_id=obj.payment_intent_id,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM."""

    def _queryset(self):
        return OrderModel.objects.prefetch_related("items")

    def create(self, order: Order) -> Order:
        """Persist a new order and its item snapshots in one transaction.

        Args:
            order: Domain ``Order`` without an id.

        Returns:
            Order: The stored order, with its generated id and timestamps.

        Raises:
            DuplicateOrderNumber: If the order number is already taken.
        """
        c = order.customer
        try:
            with transaction.atomic():
                obj = OrderModel(
                    order_number=order.order_number,
                    user_id=c.user_id,
                    customer_name=c.full_name,
                    customer_email=c.email,
                    customer_phone=c.phone,
                    delivery_address=c.address,
                    delivery_city=c.city,
                    delivery_postal_code=c.postal_code,
                    delivery_method=_db_value(c.delivery_method),
                    payment_method=_db_value(c.payment_method),
                    subtotal=order.subtotal,
                    delivery_cost=order.delivery_cost,
                    total=order.total,
                    currency=order.currency,
                    payment_status=_db_value(order.payment_status),
                    order_status=_db_value(order.order_status),
                    checkout_stage=_db_value(order.checkout_stage),
                    inventory_state=_db_value(order.inventory_state),
                )
                obj.save()
                OrderItemModel.objects.bulk_create([
                    OrderItemModel(
                        order=obj,
                        product_id=it.product_id,
                        product_name=it.product_name,
                        brand=it.brand,
                        size=it.size,
                        quantity=it.quantity,
                        price=it.price,
                        image_url=it.image_url,
                    )
                    for it in order.items
                ])
        except IntegrityError:
            if OrderModel.objects.filter(order_number=order.order_number).exists():
                raise DuplicateOrderNumber(order.order_number)
            raise
        return self.get(obj.id)

    def get(self, order_id) -> Order:
        if order_id is None:
            raise OrderNotFound("None")
        try:
            return _to_domain(self._queryset().get(id=order_id))
        except (OrderModel.DoesNotExist, DjangoValidationError, ValueError):
            raise OrderNotFound(str(order_id))

    def get_by_number(self, order_number: str) -> Order:
        try:
            return _to_domain(self._queryset().get(order_number=order_number))
        except OrderModel.DoesNotExist:
            raise OrderNotFound(order_number)

    def list(self, page: int, page_size: int) -> Tuple[int, List[Order]]:
        p = Paginator(self._queryset().order_by("-created_at", "-internal_id"), page_size)
        page_obj = p.get_page(page)
        return p.count, [_to_domain(o) for o in page_obj.object_list]

    def update(self, order_id, **changes) -> bool:
        """Apply ``changes`` unconditionally.

        Returns:
            bool: False if no such order exists.
        """
        return self.transition(order_id, {}, **changes)

    def transition(self, order_id, expect: dict, **changes) -> bool:
        """Apply ``changes`` only while the order matches ``expect``.

        Args:
            order_id: Order to update.
            expect: ``{field: [allowed values]}``; every field must currently
                hold one of its allowed values.
            **changes: New field values.

        Returns:
            bool: True when the row was updated by this call.
        """
        qs = OrderModel.objects.filter(id=order_id)
        for field_name, allowed in expect.items():
            qs = qs.filter(**{f"{field_name}__in": [_db_value(v) for v in allowed]})
        values = {k: _db_value(v) for k, v in changes.items()}
        # queryset.update() bypasses auto_now
        values["updated_at"] = timezone.now()
        return qs.update(**values) == 1

    def find_abandoned(self, cutoff) -> List[Order]:
        """Unpaid orders whose payment intent was created before ``cutoff``."""
        qs = self._queryset().filter(
            checkout_stage=CheckoutStage.INTENT_CREATED.value,
            order_status=OrderStatus.PLACED.value,
            payment_status__in=[PaymentStatus.PENDING.value, PaymentStatus.FAILED.value],
            created_at__lt=cutoff,
        )
        return [_to_domain(o) for o in qs]

    def find_stalled(self, cutoff) -> List[Order]:
        """Orders whose checkout stopped before the payment intent existed."""
        qs = self._queryset().filter(
            checkout_stage__in=[CheckoutStage.CREATED.value, CheckoutStage.RESERVED.value],
            created_at__lt=cutoff,
        ).exclude(order_status=OrderStatus.CANCELLED.value)
        return [_to_domain(o) for o in qs]

    def record_event(self, event: PaymentEvent) -> bool:
        """Claim a webhook event for processing.

        Returns:
            bool: True when the event is new, or a previous attempt at it
                ended in error; False for a redelivery of a handled event.
        """
        try:
            with transaction.atomic():
                WebhookEventModel.objects.create(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payment_intent_id=event.intent_id,
                    order_id=event.order_id,
                )
            return True
        except IntegrityError:
            retried = WebhookEventModel.objects.filter(
                event_id=event.event_id, outcome=WebhookEventModel.Outcome.ERROR
            ).update(outcome=WebhookEventModel.Outcome.PROCESSING)
            return retried == 1

    def finish_event(self, event_id: str, outcome: str) -> None:
        WebhookEventModel.objects.filter(event_id=event_id).update(outcome=outcome)
