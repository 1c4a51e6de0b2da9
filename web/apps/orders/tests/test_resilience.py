import httpx
import pytest

from apps.orders.domain import GatewayUnavailable, InventoryUnavailable, StockLine
from apps.orders.http_adapters import (
    CircuitBreaker,
    CircuitOpen,
    CircuitState,
    HttpInventoryClient,
    HttpPaymentsClient,
    RetryPolicy,
    _inventory_cb,
)

LINES = [StockLine("air-max-90", "9", 1)]


def _resp(status_code, url, json_data=None):
    return httpx.Response(status_code, json=json_data or {}, request=httpx.Request("POST", url))


def test_inventory_retries_on_5xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0, "headers": []}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        calls["headers"].append(dict(headers))
        if calls["n"] == 1:
            return _resp(500, url)
        return _resp(200, url, {"reserved": True})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    HttpInventoryClient(base_url="http://x").reserve(LINES)
    assert calls["n"] == 2
    assert [h["X-Retry-Count"] for h in calls["headers"]] == ["0", "1"]
    assert calls["headers"][0]["X-Circuit-State"] == "CLOSED"
    assert _inventory_cb.state == CircuitState.CLOSED


def test_inventory_gives_up_after_max_retries(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 2
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return _resp(503, url)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    with pytest.raises(InventoryUnavailable):
        HttpInventoryClient(base_url="http://x").commit(LINES)
    assert calls["n"] == 2


def test_client_errors_are_not_retried(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return _resp(400, url)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    with pytest.raises(InventoryUnavailable):
        HttpInventoryClient(base_url="http://x").release(LINES)
    assert calls["n"] == 1


def test_payments_no_retry_on_402(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return _resp(402, url, {"error": {"code": "card_declined"}})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    with pytest.raises(GatewayUnavailable):
        HttpPaymentsClient(base_url="http://x").create_intent(100, "zar", {})
    assert calls["n"] == 1


def test_request_id_is_propagated(monkeypatch):
    from gateway.middleware import REQUEST_ID_CTX

    seen = {}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        seen.update(headers)
        return _resp(200, url, {"available": True, "unavailable_items": []})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    token = REQUEST_ID_CTX.set("req-123")
    try:
        HttpInventoryClient(base_url="http://x").check_availability(LINES)
    finally:
        REQUEST_ID_CTX.reset(token)
    assert seen["X-Request-ID"] == "req-123"


def test_retry_delay_grows_and_is_capped():
    policy = RetryPolicy(max_attempts=5, backoff_base=0.1, max_sleep=0.3)
    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]


def test_circuit_opens_after_threshold_and_half_opens():
    clock = {"now": 100.0}
    cb = CircuitBreaker("test", fail_threshold=2, reset_timeout=10, clock=lambda: clock["now"])

    cb.record_failure()
    assert cb.state == CircuitState.CLOSED
    cb.record_failure()
    assert cb.state == CircuitState.OPEN
    with pytest.raises(CircuitOpen):
        with cb.guard():
            pass

    clock["now"] += 10
    with cb.guard() as state:
        assert state == CircuitState.HALF_OPEN
        # only one trial call at a time
        with pytest.raises(CircuitOpen):
            with cb.guard():
                pass
        cb.record_success()
    assert cb.state == CircuitState.CLOSED


def test_failed_trial_call_reopens_the_circuit():
    clock = {"now": 0.0}
    cb = CircuitBreaker("test", fail_threshold=1, reset_timeout=5, clock=lambda: clock["now"])
    cb.record_failure()
    clock["now"] = 5.0

    with cb.guard():
        cb.record_failure()

    assert cb.state == CircuitState.OPEN


def test_open_circuit_short_circuits_calls(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kwargs):
        raise AssertionError("no request expected while the circuit is open")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    for _ in range(_inventory_cb.fail_threshold):
        _inventory_cb.record_failure()

    with pytest.raises(InventoryUnavailable):
        HttpInventoryClient(base_url="http://x").reserve(LINES)
