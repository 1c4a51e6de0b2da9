"""Transactional customer emails.

``EmailNotifier`` implements ``NotifierPort`` with Django's mail API. Every
send returns a ``NotificationResult`` and never raises: a lost email must not
undo a payment confirmation or a status change.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail

from .domain import NotificationResult, NotifierPort, Order

logger = logging.getLogger("orders.notifier")

SMTP_BACKEND = "django.core.mail.backends.smtp.EmailBackend"


def _money(amount: int) -> str:
    return f"R{amount}"


def _item_lines(order: Order) -> str:
    return "\n".join(
        f"  {it.quantity} x {it.product_name} ({it.brand}, size {it.size})  {_money(it.price * it.quantity)}"
        for it in order.items
    )


def _address(order: Order) -> str:
    c = order.customer
    parts = [c.address, c.city, c.postal_code]
    return ", ".join(p for p in parts if p)


def order_confirmation_text(order: Order) -> str:
    c = order.customer
    return (
        f"Hi {c.full_name},\n\n"
        f"Thank you for your order. We have received your payment for order {order.order_number}.\n\n"
        f"{_item_lines(order)}\n\n"
        f"Subtotal: {_money(order.subtotal)}\n"
        f"Delivery ({c.delivery_method.value}): {_money(order.delivery_cost)}\n"
        f"Total: {_money(order.total)}\n\n"
        f"Delivering to: {_address(order)}\n\n"
        f"Track your order with number {order.order_number}.\n"
    )


def shipping_notification_text(order: Order) -> str:
    return (
        f"Hi {order.customer.full_name},\n\n"
        f"Good news: order {order.order_number} has shipped and is on its way to "
        f"{_address(order)}.\n\n"
        f"Track your order with number {order.order_number}.\n"
    )


def delivery_confirmation_text(order: Order) -> str:
    return (
        f"Hi {order.customer.full_name},\n\n"
        f"Order {order.order_number} has been delivered. Enjoy your new sneakers!\n"
    )


class EmailNotifier(NotifierPort):
    """Send plain-text order emails from ``EMAIL_FROM``."""

    def __init__(self, from_email: str | None = None):
        self.from_email = from_email or getattr(settings, "EMAIL_FROM", "noreply@soultouch.za")

    def is_configured(self) -> bool:
        if settings.EMAIL_BACKEND != SMTP_BACKEND:
            return True
        return bool(settings.EMAIL_HOST_USER and settings.EMAIL_HOST_PASSWORD)

    def _send(self, kind: str, order: Order, subject: str, body: str) -> NotificationResult:
        if not self.is_configured():
            logger.warning("email not configured", extra={"kind": kind, "order_id": str(order.id)})
            return NotificationResult(False, "Email not configured")
        try:
            send_mail(subject, body, self.from_email, [order.customer.email], fail_silently=False)
        except Exception as e:
            logger.exception("email send failed", extra={"kind": kind, "order_id": str(order.id)})
            return NotificationResult(False, str(e))
        logger.info("email sent", extra={"kind": kind, "order_id": str(order.id)})
        return NotificationResult(True)

    def send_order_confirmation(self, order: Order) -> NotificationResult:
        return self._send(
            "order_confirmation", order,
            f"Order Confirmation - {order.order_number}",
            order_confirmation_text(order),
        )

    def send_shipping_notification(self, order: Order) -> NotificationResult:
        return self._send(
            "shipping_notification", order,
            f"Your Order Has Shipped - {order.order_number}",
            shipping_notification_text(order),
        )

    def send_delivery_confirmation(self, order: Order) -> NotificationResult:
        return self._send(
            "delivery_confirmation", order,
            f"Order Delivered - {order.order_number}",
            delivery_confirmation_text(order),
        )
