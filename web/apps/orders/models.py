import uuid
from django.db import models, transaction


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=16, unique=True)
    user_id = models.CharField(max_length=64, null=True, blank=True)

    class DeliveryMethod(models.TextChoices):
        STANDARD = "standard"
        EXPRESS = "express"

    class PaymentMethod(models.TextChoices):
        CARD = "card"
        EFT = "eft"
        COD = "cod"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        SUCCEEDED = "succeeded"
        FAILED = "failed"
        REFUNDED = "refunded"

    class OrderStatus(models.TextChoices):
        PLACED = "placed"
        PAYMENT_CONFIRMED = "payment-confirmed"
        PREPARING = "preparing"
        SHIPPED = "shipped"
        OUT_FOR_DELIVERY = "out-for-delivery"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class CheckoutStage(models.TextChoices):
        CREATED = "created"
        RESERVED = "reserved"
        INTENT_CREATED = "intent_created"
        COMPENSATED = "compensated"

    class InventoryState(models.TextChoices):
        NONE = "none"
        RESERVED = "reserved"
        COMMITTED = "committed"
        RELEASED = "released"

    customer_name = models.CharField(max_length=200)
    customer_email = models.EmailField(max_length=254)
    customer_phone = models.CharField(max_length=32, blank=True, default="")
    delivery_address = models.CharField(max_length=255, blank=True, default="")
    delivery_city = models.CharField(max_length=100, blank=True, default="")
    delivery_postal_code = models.CharField(max_length=16, blank=True, default="")
    delivery_method = models.CharField(max_length=16, choices=DeliveryMethod.choices, default=DeliveryMethod.STANDARD)
    payment_method = models.CharField(max_length=8, choices=PaymentMethod.choices, default=PaymentMethod.CARD)

    # Whole rand
    subtotal = models.PositiveIntegerField(default=0)
    delivery_cost = models.PositiveIntegerField(default=0)
    total = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="ZAR")

    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_intent_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    order_status = models.CharField(max_length=32, choices=OrderStatus.choices, default=OrderStatus.PLACED)
    checkout_stage = models.CharField(max_length=16, choices=CheckoutStage.choices, default=CheckoutStage.CREATED)
    inventory_state = models.CharField(max_length=16, choices=InventoryState.choices, default=InventoryState.NONE)
    # Paid, but the order cannot be fulfilled
    refund_required = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class OrderItemModel(models.Model):
    """Snapshot of a cart line at checkout. Never updated afterwards."""

    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.CASCADE)
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=200)
    brand = models.CharField(max_length=100, blank=True, default="")
    size = models.CharField(max_length=8)
    quantity = models.PositiveIntegerField()
    price = models.PositiveIntegerField()
    image_url = models.URLField(max_length=500, null=True, blank=True)

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class WebhookEventModel(models.Model):
    """Gateway webhook events already seen, used to ignore redeliveries."""

    class Outcome(models.TextChoices):
        PROCESSING = "processing"
        PROCESSED = "processed"
        ERROR = "error"

    event_id = models.CharField(max_length=100, unique=True)
    event_type = models.CharField(max_length=100)
    payment_intent_id = models.CharField(max_length=64, null=True, blank=True)
    order_id = models.CharField(max_length=64, null=True, blank=True)
    outcome = models.CharField(max_length=16, choices=Outcome.choices, default=Outcome.PROCESSING)
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "payment_webhook_events"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
