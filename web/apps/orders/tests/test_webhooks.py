"""Unit tests for webhook signature verification and event parsing."""

import json

import pytest

from apps.orders.webhooks import (
    SignatureVerificationError,
    compute_signature,
    construct_event,
    verify_signature,
)

SECRET = "whsec_unit"
NOW = 1_700_000_000


def _header(payload, secret=SECRET, ts=NOW):
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def test_valid_signature_passes():
    payload = b'{"id":"evt_1"}'
    verify_signature(payload, _header(payload), SECRET, now=NOW + 10)


def test_any_matching_v1_entry_passes():
    payload = b'{"id":"evt_1"}'
    header = f"t={NOW},v1=deadbeef,v1={compute_signature(payload, SECRET, NOW)}"
    verify_signature(payload, header, SECRET, now=NOW)


@pytest.mark.parametrize(
    "header",
    [None, "", "v1=abc", "t=notanumber,v1=abc", f"t={NOW}"],
)
def test_missing_or_malformed_header_is_rejected(header):
    with pytest.raises(SignatureVerificationError):
        verify_signature(b"{}", header, SECRET, now=NOW)


def test_tampered_body_is_rejected():
    header = _header(b'{"amount":100}')
    with pytest.raises(SignatureVerificationError):
        verify_signature(b'{"amount":1}', header, SECRET, now=NOW)


def test_old_timestamp_is_rejected():
    payload = b"{}"
    with pytest.raises(SignatureVerificationError):
        verify_signature(payload, _header(payload), SECRET, tolerance=300, now=NOW + 301)


def test_construct_event_reads_intent_and_metadata():
    payload = json.dumps({
        "id": "evt_9",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_9", "metadata": {
            "order_id": "abc",
            "order_items": '[{"product_id":"p1","size":"8","quantity":2}]',
        }}},
    }).encode()

    event = construct_event(payload, _header(payload), SECRET, now=NOW)

    assert event.event_id == "evt_9"
    assert event.intent_id == "pi_9"
    assert event.order_id == "abc"
    [line] = event.stock_lines()
    assert (line.product_id, line.size, line.quantity) == ("p1", "8", 2)


@pytest.mark.parametrize("payload", [b"[]", b'{"type":"x"}', b"not json"])
def test_construct_event_rejects_non_events(payload):
    with pytest.raises(ValueError):
        construct_event(payload, _header(payload), SECRET, now=NOW)
