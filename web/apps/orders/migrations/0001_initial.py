import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("internal_id", models.BigIntegerField(editable=False, null=True, unique=True)),
                ("order_number", models.CharField(max_length=16, unique=True)),
                ("user_id", models.CharField(blank=True, max_length=64, null=True)),
                ("customer_name", models.CharField(max_length=200)),
                ("customer_email", models.EmailField(max_length=254)),
                ("customer_phone", models.CharField(blank=True, default="", max_length=32)),
                ("delivery_address", models.CharField(blank=True, default="", max_length=255)),
                ("delivery_city", models.CharField(blank=True, default="", max_length=100)),
                ("delivery_postal_code", models.CharField(blank=True, default="", max_length=16)),
                (
                    "delivery_method",
                    models.CharField(
                        choices=[("standard", "Standard"), ("express", "Express")],
                        default="standard",
                        max_length=16,
                    ),
                ),
                (
                    "payment_method",
                    models.CharField(
                        choices=[("card", "Card"), ("eft", "Eft"), ("cod", "Cod")],
                        default="card",
                        max_length=8,
                    ),
                ),
                ("subtotal", models.PositiveIntegerField(default=0)),
                ("delivery_cost", models.PositiveIntegerField(default=0)),
                ("total", models.PositiveIntegerField(default=0)),
                ("currency", models.CharField(default="ZAR", max_length=3)),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("payment_intent_id", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                (
                    "order_status",
                    models.CharField(
                        choices=[
                            ("placed", "Placed"),
                            ("payment-confirmed", "Payment Confirmed"),
                            ("preparing", "Preparing"),
                            ("shipped", "Shipped"),
                            ("out-for-delivery", "Out For Delivery"),
                            ("delivered", "Delivered"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="placed",
                        max_length=32,
                    ),
                ),
                (
                    "checkout_stage",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("reserved", "Reserved"),
                            ("intent_created", "Intent Created"),
                            ("compensated", "Compensated"),
                        ],
                        default="created",
                        max_length=16,
                    ),
                ),
                (
                    "inventory_state",
                    models.CharField(
                        choices=[
                            ("none", "None"),
                            ("reserved", "Reserved"),
                            ("committed", "Committed"),
                            ("released", "Released"),
                        ],
                        default="none",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "orders",
                "ordering": ["-internal_id"],
            },
        ),
        migrations.CreateModel(
            name="OrderItemModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_id", models.CharField(max_length=64)),
                ("product_name", models.CharField(max_length=200)),
                ("brand", models.CharField(blank=True, default="", max_length=100)),
                ("size", models.CharField(max_length=8)),
                ("quantity", models.PositiveIntegerField()),
                ("price", models.PositiveIntegerField()),
                ("image_url", models.URLField(blank=True, max_length=500, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="orders.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "order_items",
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEventModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_id", models.CharField(max_length=100, unique=True)),
                ("event_type", models.CharField(max_length=100)),
                ("payment_intent_id", models.CharField(blank=True, max_length=64, null=True)),
                ("order_id", models.CharField(blank=True, max_length=64, null=True)),
                (
                    "outcome",
                    models.CharField(
                        choices=[("processing", "Processing"), ("processed", "Processed"), ("error", "Error")],
                        default="processing",
                        max_length=16,
                    ),
                ),
                ("received_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "payment_webhook_events",
            },
        ),
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(max_length=200, unique=True)),
                ("request_hash", models.CharField(max_length=64)),
                ("response_status", models.PositiveSmallIntegerField(default=0)),
                ("response_body", models.JSONField(default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to="orders.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "idempotency_keys",
            },
        ),
    ]
