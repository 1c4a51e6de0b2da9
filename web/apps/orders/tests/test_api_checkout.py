import pytest
from django.core import mail

from apps.orders import adapters
from apps.orders.domain import GatewayUnavailable
from apps.orders.models import OrderModel, WebhookEventModel

CHECKOUT_URL = "/api/checkout/create-payment-intent"


def _checkout(client, payload, **headers):
    return client.post(CHECKOUT_URL, data=payload, content_type="application/json", **headers)


@pytest.mark.django_db
def test_checkout_returns_client_secret_and_stores_order(client, checkout_payload):
    adapters.ledger.set_stock("air-max-90", "9", 3)

    r = _checkout(client, checkout_payload)

    assert r.status_code == 200
    body = r.json()
    assert set(body) == {"clientSecret", "orderId", "orderNumber"}
    order = OrderModel.objects.get(id=body["orderId"])
    assert order.order_number == body["orderNumber"]
    assert (order.subtotal, order.delivery_cost, order.total) == (2799, 100, 2899)
    assert order.payment_status == "pending"
    assert order.order_status == "placed"
    assert order.customer_email == "thandi@example.com"
    [item] = order.items.all()
    assert (item.product_id, item.size, item.quantity, item.price) == ("air-max-90", "9", 1, 2799)
    assert item.image_url == "https://cdn.example.com/am90.jpg"

    intent = adapters.payments.intents[order.payment_intent_id]
    assert intent["amount"] == 289900
    assert intent["client_secret"] == body["clientSecret"]
    assert adapters.ledger.record("air-max-90", "9") == {"stock_level": 3, "reserved": 1, "available": 2}


@pytest.mark.django_db
def test_express_delivery_costs_more(client, checkout_payload):
    checkout_payload["customerInfo"]["delivery"] = "express"
    r = _checkout(client, checkout_payload)
    assert r.status_code == 200
    assert OrderModel.objects.get(id=r.json()["orderId"]).total == 2979


@pytest.mark.django_db
def test_checkout_out_of_stock_lists_unavailable_items(client, checkout_payload):
    adapters.ledger.set_stock("air-max-90", "9", 1)
    checkout_payload["cart"][0]["quantity"] = 2

    r = _checkout(client, checkout_payload)

    assert r.status_code == 400
    body = r.json()
    assert body["detail"] == "OUT_OF_STOCK"
    assert body["unavailableItems"] == [
        {"productId": "air-max-90", "productName": "Air Max 90", "size": "9", "requested": 2, "available": 1}
    ]
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p.update(cart=[]),
        lambda p: p["cart"][0].update(quantity=0),
        lambda p: p["customerInfo"].update(email="not-an-email"),
        lambda p: p["customerInfo"].update(fullName=""),
        lambda p: p["customerInfo"].update(delivery="drone"),
        lambda p: p.pop("customerInfo"),
    ],
)
def test_checkout_validation_errors(client, checkout_payload, mutate):
    mutate(checkout_payload)
    r = _checkout(client, checkout_payload)
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_checkout_without_gateway_returns_503(client, checkout_payload):
    adapters.payments.configured = False
    r = _checkout(client, checkout_payload)
    assert r.status_code == 503
    assert r.json()["detail"] == "GATEWAY_UNAVAILABLE"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_checkout_partial_failure_returns_502_with_order_id(client, checkout_payload, monkeypatch):
    adapters.ledger.set_stock("air-max-90", "9", 3)

    def create_intent(**kwargs):
        raise GatewayUnavailable("timeout")

    monkeypatch.setattr(adapters.payments, "create_intent", create_intent)
    r = _checkout(client, checkout_payload)

    assert r.status_code == 502
    body = r.json()
    assert body["detail"] == "PARTIAL_FAILURE"
    order = OrderModel.objects.get(id=body["orderId"])
    assert order.order_status == "cancelled"
    assert adapters.ledger.record("air-max-90", "9")["reserved"] == 0


@pytest.mark.django_db
def test_paid_checkout_commits_stock_and_sends_one_email(client, checkout_payload, make_event, post_webhook):
    adapters.ledger.set_stock("air-max-90", "9", 3)
    body = _checkout(client, checkout_payload).json()
    order = OrderModel.objects.get(id=body["orderId"])
    metadata = adapters.payments.intents[order.payment_intent_id]["metadata"]
    event = make_event("evt_100", "payment_intent.succeeded", order.payment_intent_id, metadata)

    r = post_webhook(event)
    again = post_webhook(event)

    assert r.status_code == 200 and r.json() == {"received": True}
    assert again.status_code == 200
    order.refresh_from_db()
    assert order.payment_status == "succeeded"
    assert order.order_status == "payment-confirmed"
    assert order.inventory_state == "committed"
    assert adapters.ledger.record("air-max-90", "9") == {"stock_level": 2, "reserved": 0, "available": 2}
    assert WebhookEventModel.objects.get(event_id="evt_100").outcome == "processed"

    assert len(mail.outbox) == 1
    msg = mail.outbox[0]
    assert msg.subject == f"Order Confirmation - {order.order_number}"
    assert msg.to == ["thandi@example.com"]
    assert msg.from_email == "noreply@soultouch.za"
    assert "R2899" in msg.body


@pytest.mark.django_db
def test_failed_payment_webhook_releases_stock(client, checkout_payload, make_event, post_webhook):
    adapters.ledger.set_stock("air-max-90", "9", 3)
    body = _checkout(client, checkout_payload).json()
    order = OrderModel.objects.get(id=body["orderId"])
    metadata = adapters.payments.intents[order.payment_intent_id]["metadata"]

    r = post_webhook(make_event("evt_200", "payment_intent.payment_failed", order.payment_intent_id, metadata))

    assert r.status_code == 200
    order.refresh_from_db()
    assert order.payment_status == "failed"
    assert order.inventory_state == "released"
    assert adapters.ledger.record("air-max-90", "9") == {"stock_level": 3, "reserved": 0, "available": 3}
    assert mail.outbox == []


@pytest.mark.django_db
def test_webhook_rejects_bad_signature(make_event, post_webhook):
    r = post_webhook(make_event("evt_1", "payment_intent.succeeded", "pi_1", {}), secret="whsec_wrong")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_SIGNATURE"
    assert WebhookEventModel.objects.count() == 0


@pytest.mark.django_db
def test_webhook_rejects_stale_signature(make_event, post_webhook):
    r = post_webhook(make_event("evt_1", "payment_intent.succeeded", "pi_1", {}), timestamp=1_000_000)
    assert r.status_code == 400


@pytest.mark.django_db
def test_webhook_without_secret_is_unavailable(settings, make_event, post_webhook):
    settings.PAYMENT_WEBHOOK_SECRET = ""
    r = post_webhook(make_event("evt_1", "payment_intent.succeeded", "pi_1", {}))
    assert r.status_code == 503


@pytest.mark.django_db
def test_webhook_for_unknown_order_is_acknowledged(make_event, post_webhook):
    metadata = {"order_id": "00000000-0000-0000-0000-000000000000"}
    r = post_webhook(make_event("evt_404", "payment_intent.succeeded", "pi_1", metadata))
    assert r.status_code == 200
    assert WebhookEventModel.objects.get(event_id="evt_404").outcome == "error"


@pytest.mark.django_db
def test_unhandled_event_type_is_acknowledged(make_event, post_webhook):
    r = post_webhook(make_event("evt_300", "charge.refunded", "pi_1", {}))
    assert r.status_code == 200
    assert WebhookEventModel.objects.count() == 0
