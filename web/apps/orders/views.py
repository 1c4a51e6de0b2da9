"""HTTP views for the orders app.

This module contains the DRF API views of the storefront backend. Views are
kept intentionally small: they validate requests (via Pydantic), map to
domain DTOs, delegate to the domain service, and translate domain errors
into HTTP responses.

The views obtain a configured ``OrderService`` from
``providers.get_order_service()``, which returns HTTP adapter-backed ports
(``HttpInventoryClient``, ``HttpPaymentsClient``) or in-process stubs
depending on runtime settings. This allows tests and local development to
swap implementations without changing view logic.

Idempotency: when an ``Idempotency-Key`` header is provided, the checkout
endpoint ensures idempotent processing. The first request creates a record
and, upon completion, stores the response. Subsequent retries with the same
payload replay the stored response. If the same key is reused with a
different payload, the endpoint returns HTTP 409 (conflict).
"""

import logging

from django.conf import settings
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import (
    GatewayUnavailable,
    InventoryUnavailable,
    OrderError,
    OrderNotFound,
    OutOfStock,
    PartialFailureInconsistency,
    ValidationError,
)
from .idempotency import IdempotencyConflict, claim, discard, finalize, is_complete
from .permissions import HasAdminToken
from .schemas import CheckoutDTO, OrderReadDTO, OrderStatusDTO, OrderTrackDTO
from .webhooks import SIGNATURE_HEADER, SignatureVerificationError, construct_event

logger = logging.getLogger("orders")
webhook_logger = logging.getLogger("orders.webhooks")

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    OutOfStock: status.HTTP_400_BAD_REQUEST,
    OrderNotFound: status.HTTP_404_NOT_FOUND,
    PartialFailureInconsistency: status.HTTP_502_BAD_GATEWAY,
    GatewayUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    InventoryUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(exc: OrderError) -> Response:
    """Map a domain error to its HTTP status and JSON body."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    body = {"detail": exc.code, "error": str(exc)}
    if isinstance(exc, OutOfStock):
        body["unavailableItems"] = [
            {
                "productId": s.product_id,
                "productName": s.product_name,
                "size": s.size,
                "requested": s.requested,
                "available": s.available,
            }
            for s in exc.shortfalls
        ]
    elif isinstance(exc, PartialFailureInconsistency):
        body["error"] = "Checkout could not be completed, please try again"
        body["orderId"] = str(exc.order_id)
    return Response(body, status=status_code)


def _validation_error(e: PydanticValidationError) -> Response:
    return Response(
        {
            "detail": ValidationError.code,
            "error": "Invalid request",
            "errors": e.errors(include_url=False, include_context=False, include_input=False),
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module.

    This view returns a minimal JSON payload used by liveness/health
    checks and by automated smoke-tests.
    """

    def get(self, request):
        return Response({"ok": True})


class CheckoutView(APIView):
    """Create an order and its payment intent.

    Validates the cart and customer details, lets the domain service check
    stock, write the order, reserve stock and open the intent, and returns
    the client secret the browser confirms the card with.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        """Handle the checkout.

        Args:
            request (Request): DRF request with JSON body and optional
                ``Idempotency-Key`` header.

        Returns:
            Response: One of the following responses.
            - 200 with {clientSecret, orderId, orderNumber}.
            - 200/4xx replayed from the first attempt when the same
              idempotency key and payload are retried.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the same key is
              reused with a different payload.
            - 400 with VALIDATION_ERROR or OUT_OF_STOCK (with
              unavailableItems).
            - 502 with PARTIAL_FAILURE when a step failed after the order was
              written.
            - 503 with GATEWAY_UNAVAILABLE or INVENTORY_UNAVAILABLE before
              any write.
        """
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CheckoutDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _validation_error(e)

        rec = None
        if idem_key:
            try:
                existing, rec = claim(idem_key, request.data)
            except IdempotencyConflict:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not is_complete(rec):
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        service = providers.get_order_service()
        try:
            result = service.create_order(dto.to_domain())
        except OrderError as e:
            resp = error_response(e)
            if rec:
                if resp.status_code >= 500:
                    discard(rec)
                else:
                    finalize(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            if rec:
                discard(rec)
            raise

        body = {
            "clientSecret": result.client_secret,
            "orderId": str(result.order_id),
            "orderNumber": result.order_number,
        }
        if rec:
            finalize(rec, status.HTTP_200_OK, body, order_id=result.order_id)
        return Response(body, status=status.HTTP_200_OK)


class PaymentWebhookView(APIView):
    """Receive signed payment gateway events.

    The signature is verified against the raw body. Once verified the event
    is always acknowledged with 200, even if processing fails, so the gateway
    does not retry events the service has already recorded; processing
    failures are logged and the event stays retryable.
    """

    authentication_classes = []
    permission_classes = []
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "webhooks"

    def post(self, request):
        secret = getattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
        if not secret:
            webhook_logger.error("webhook secret not configured")
            return Response({"detail": "WEBHOOK_NOT_CONFIGURED"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        payload = request.body
        try:
            event = construct_event(
                payload,
                request.headers.get(SIGNATURE_HEADER),
                secret,
                tolerance=getattr(settings, "PAYMENT_WEBHOOK_TOLERANCE_SECS", 300),
            )
        except SignatureVerificationError as e:
            webhook_logger.warning("webhook signature rejected", extra={"reason": str(e)})
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_400_BAD_REQUEST)
        except ValueError as e:
            webhook_logger.warning("webhook payload rejected", extra={"reason": str(e)})
            return Response({"detail": "INVALID_PAYLOAD"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            outcome = providers.get_order_service().handle_event(event)
            webhook_logger.info(
                "webhook handled",
                extra={"event_id": event.event_id, "type": event.event_type, "outcome": outcome},
            )
        except Exception:
            webhook_logger.exception(
                "webhook processing failed",
                extra={"event_id": event.event_id, "type": event.event_type},
            )
        return Response({"received": True}, status=status.HTTP_200_OK)


class OrdersCollectionView(APIView):
    """Paginated list of orders, newest first. Admin only."""

    permission_classes = [HasAdminToken]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        try:
            page = max(1, int(request.GET.get("page", 1)))
            page_size = min(100, max(1, int(request.GET.get("page_size", 20))))
        except ValueError:
            return Response(
                {"detail": ValidationError.code, "error": "page and page_size must be integers"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        count, orders = providers.get_order_service().list_orders(page, page_size)
        return Response(
            {
                "count": count,
                "page": page,
                "page_size": page_size,
                "results": [
                    OrderReadDTO.from_domain(o).model_dump(mode="json", by_alias=True) for o in orders
                ],
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get_order(oid)
        except OrderNotFound:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json", by_alias=True), status=200)


class TrackOrderView(APIView):
    """Public order tracking by order number."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_track"

    def get(self, request, order_number: str):
        try:
            order = providers.get_order_service().track(order_number.strip().upper())
        except OrderNotFound:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderTrackDTO.from_domain(order).model_dump(mode="json", by_alias=True), status=200)


class OrderStatusView(APIView):
    """Admin update of an order's fulfilment status."""

    permission_classes = [HasAdminToken]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def patch(self, request, oid):
        try:
            dto = OrderStatusDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _validation_error(e)
        try:
            order = providers.get_order_service().set_order_status(oid, dto.order_status)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json", by_alias=True), status=200)
