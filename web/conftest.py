import json
import time

import pytest

WEBHOOK_SECRET = "whsec_test"
ADMIN_TOKEN = "admin-test-token"


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    from django.core.cache import cache

    from apps.orders import adapters
    from apps.orders.http_adapters import _inventory_cb, _payments_cb

    settings.USE_HTTP_ADAPTERS = False
    settings.ADMIN_API_TOKEN = ADMIN_TOKEN
    settings.PAYMENT_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    adapters.ledger.reset()
    adapters.payments.reset()
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    _inventory_cb.reset()
    _payments_cb.reset()
    # throttle counters live in the cache
    cache.clear()
    yield
    adapters.ledger.reset()
    adapters.payments.reset()


@pytest.fixture
def admin_headers():
    return {"HTTP_X_ADMIN_TOKEN": ADMIN_TOKEN}


@pytest.fixture
def checkout_payload():
    """One pair of size 9 sneakers at R2799, standard delivery."""
    return {
        "cart": [
            {
                "id": "air-max-90",
                "name": "Air Max 90",
                "brand": "Nike",
                "size": 9,
                "quantity": 1,
                "price": 2799,
                "images": ["https://cdn.example.com/am90.jpg"],
            }
        ],
        "customerInfo": {
            "fullName": "Thandi Nkosi",
            "email": "thandi@example.com",
            "phone": "0821234567",
            "address": "12 Long Street",
            "city": "Cape Town",
            "postalCode": "8001",
            "delivery": "standard",
            "payment": "card",
        },
    }


@pytest.fixture
def make_event():
    def _make(event_id, event_type, intent_id, metadata):
        return {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"id": intent_id, "metadata": metadata}},
        }

    return _make


@pytest.fixture
def post_webhook(client):
    """POST a correctly signed webhook delivery."""

    from apps.orders.webhooks import SIGNATURE_HEADER, compute_signature

    def _post(event, secret=WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(event).encode("utf-8")
        ts = int(time.time()) if timestamp is None else timestamp
        header = f"t={ts},v1={compute_signature(body, secret, ts)}"
        return client.post(
            "/api/webhooks/payment",
            data=body,
            content_type="application/json",
            headers={SIGNATURE_HEADER: header},
        )

    return _post
