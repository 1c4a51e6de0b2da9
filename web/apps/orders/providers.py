"""Service provider helpers for wiring OrderService with ports.

``get_order_service`` returns an ``OrderService`` backed by the Django ORM
repository and the email notifier. Stock and payments go through the HTTP
adapter clients when ``settings.USE_HTTP_ADAPTERS`` is truthy, and through
the shared in-process ledger and payments stub otherwise (tests and local
development without the services running).
"""

from datetime import timedelta

from django.conf import settings

from . import adapters
from .domain import OrderService
from .http_adapters import HttpInventoryClient, HttpPaymentsClient
from .notifier import EmailNotifier
from .repository import OrderRepository


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service instance with appropriate ports.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        inventory, payments = HttpInventoryClient(), HttpPaymentsClient()
    else:
        inventory, payments = adapters.ledger, adapters.payments

    return OrderService(
        inventory=inventory,
        payments=payments,
        notifier=EmailNotifier(),
        orders=OrderRepository(),
        reservation_ttl=timedelta(minutes=getattr(settings, "RESERVATION_TTL_MINUTES", 30)),
    )
