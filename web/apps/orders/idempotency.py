"""Checkout ``Idempotency-Key`` records.

A browser that retries a checkout with the same key must not create a second
order or payment intent. The first request claims the key; its final answer
is stored with the key and replayed to every retry with the same body. A
retry with a different body is a conflict. Answers to transient failures are
not stored, so the key can be retried once the dependency recovers.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


class IdempotencyConflict(Exception):
    """The key was already used for a different request body."""


def request_hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash of a checkout body.

    The body is serialized with sorted keys and compact separators, so two
    retries that differ only in key order hash the same.

    Args:
        payload: Parsed JSON body of the checkout request.

    Returns:
        str: Hex-encoded SHA-256 digest.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def is_complete(rec: IdempotencyKey) -> bool:
    """True once the first request stored its answer."""
    return bool(rec.response_status)


@transaction.atomic
def claim(key: str, payload: dict):
    """Claim ``key`` for this request, or find the request that holds it.

    Behavior:
        - New key: a placeholder row is inserted and ``(False, rec)`` returned;
          the caller runs the checkout and calls ``finalize`` or ``discard``.
        - Known key, same body: ``(True, rec)``; ``is_complete(rec)`` tells a
          stored answer from a first attempt still in flight.
        - Known key, different body: ``IdempotencyConflict``.

    The insert runs in a savepoint so a duplicate key only rolls back that
    block; the existing row is then read with ``SELECT ... FOR UPDATE``.

    Args:
        key: Client-provided idempotency key.
        payload: Parsed request body.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is True
            when an earlier request already claimed the key.

    Raises:
        IdempotencyConflict: The key was claimed with a different body.
    """
    digest = request_hash(payload)
    try:
        with transaction.atomic():
            return False, IdempotencyKey.objects.create(
                key=key, request_hash=digest, response_status=0, response_body={}
            )
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != digest:
            raise IdempotencyConflict(key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the answer that retries with the same key will replay.

    Args:
        rec: The record returned by ``claim``.
        status_code: HTTP status of the answer.
        body: JSON body of the answer.
        order_id: Order created by the request, if any; linked to the key so
            support can find the order a client retried.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def discard(rec: IdempotencyKey):
    """Forget a key whose request failed for a transient reason.

    The next retry with the key then runs the checkout again instead of
    replaying a 5xx.

    Args:
        rec: The record returned by ``claim``.
    """
    IdempotencyKey.objects.filter(pk=rec.pk).delete()
