"""Unit tests for HTTP adapters to inventory and payments services.

These tests verify that the HTTP clients map success, business refusals and
network errors to domain results by monkeypatching ``httpx.Client.post``.
"""

import httpx
import pytest

from apps.orders.domain import (
    GatewayUnavailable,
    InventoryUnavailable,
    OutOfStock,
    StockLine,
)
from apps.orders.http_adapters import HttpInventoryClient, HttpPaymentsClient

LINES = [StockLine("air-max-90", "9", 2, "Air Max 90")]


def _resp(status_code, url, json_data=None):
    return httpx.Response(status_code, json=json_data or {}, request=httpx.Request("POST", url))


@pytest.fixture
def calls(monkeypatch):
    """Record posted requests and answer from a queue of responses."""
    state = {"requests": [], "responses": []}

    def fake_post(self, url, json=None, headers=None, **kw):
        state["requests"].append({"url": url, "json": json, "headers": dict(headers or {})})
        status_code, body = state["responses"].pop(0) if state["responses"] else (200, {})
        if isinstance(status_code, Exception):
            raise status_code
        return _resp(status_code, url, body)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    return state


def test_inventory_check_maps_unavailable_items(calls):
    calls["responses"].append((200, {
        "available": False,
        "unavailable_items": [
            {"product_id": "air-max-90", "size": "9", "requested": 2, "available": 1, "product_name": "Air Max 90"}
        ],
    }))

    result = HttpInventoryClient(base_url="http://inventory:9001/inventory").check_availability(LINES)

    assert result.available is False
    [shortfall] = result.unavailable_items
    assert (shortfall.product_id, shortfall.requested, shortfall.available) == ("air-max-90", 2, 1)
    req = calls["requests"][0]
    assert req["url"] == "http://inventory:9001/inventory/check"
    assert req["json"] == {
        "items": [{"product_id": "air-max-90", "size": "9", "quantity": 2, "product_name": "Air Max 90"}]
    }


def test_inventory_reserve_ok(calls):
    calls["responses"].append((200, {"reserved": True}))
    HttpInventoryClient(base_url="http://inventory:9001/inventory").reserve(LINES)
    assert calls["requests"][0]["url"].endswith("/reserve")


def test_inventory_reserve_422_raises_out_of_stock(calls):
    calls["responses"].append((422, {"detail": {"unavailable_items": [
        {"product_id": "air-max-90", "size": "9", "requested": 2, "available": 0}
    ]}}))
    with pytest.raises(OutOfStock) as e:
        HttpInventoryClient(base_url="http://inventory:9001/inventory").reserve(LINES)
    assert e.value.shortfalls[0].available == 0


def test_inventory_network_error_is_unavailable(calls):
    calls["responses"].extend([(httpx.ConnectError("boom"), None)] * 3)
    with pytest.raises(InventoryUnavailable):
        HttpInventoryClient(base_url="http://inventory:9001/inventory").release(LINES)


def test_inventory_commit_retry_after_lost_reply_reuses_its_key(calls):
    # the ledger applied the first commit but the reply never arrived
    calls["responses"].extend([(httpx.ReadTimeout("slow"), None), (200, {"ok": True, "records": 1})])

    HttpInventoryClient(base_url="http://inventory:9001/inventory").commit(LINES, operation_key="order-o1-commit")

    first, second = calls["requests"]
    assert first["headers"]["Idempotency-Key"] == second["headers"]["Idempotency-Key"] == "order-o1-commit"
    assert (first["headers"]["X-Retry-Count"], second["headers"]["X-Retry-Count"]) == ("0", "1")


def test_inventory_mutations_without_key_get_one_per_call(calls):
    calls["responses"].extend([(500, {}), (200, {"ok": True}), (200, {"ok": True})])
    client = HttpInventoryClient(base_url="http://inventory:9001/inventory")

    client.release(LINES)
    client.release(LINES)

    keys = [r["headers"]["Idempotency-Key"] for r in calls["requests"]]
    assert len(keys) == 3
    assert keys[0] == keys[1] != keys[2]
    assert keys[0].startswith("release-")


def test_payments_create_intent_sends_idempotency_key(calls):
    calls["responses"].append((200, {
        "id": "pi_1", "client_secret": "pi_1_secret_x", "amount": 289900, "currency": "zar",
        "status": "requires_payment_method",
    }))

    intent = HttpPaymentsClient(base_url="http://payments:9002").create_intent(
        amount=289900, currency="zar", metadata={"order_id": "o1"}, idempotency_key="order-o1"
    )

    assert (intent.id, intent.client_secret, intent.amount) == ("pi_1", "pi_1_secret_x", 289900)
    req = calls["requests"][0]
    assert req["url"] == "http://payments:9002/payment_intents"
    assert req["headers"]["Idempotency-Key"] == "order-o1"
    assert req["json"]["metadata"] == {"order_id": "o1"}


def test_payments_network_error_is_gateway_unavailable(calls):
    calls["responses"].extend([(httpx.ConnectError("boom"), None)] * 3)
    with pytest.raises(GatewayUnavailable):
        HttpPaymentsClient(base_url="http://payments:9002").create_intent(100, "zar", {})


def test_payments_unconfigured_without_base_url():
    assert HttpPaymentsClient(base_url="").is_configured() is False
    assert HttpPaymentsClient(base_url="http://payments:9002").is_configured() is True
