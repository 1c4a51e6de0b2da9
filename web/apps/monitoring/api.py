import logging

from django.conf import settings
from django.db import connection
from django.db.utils import DatabaseError
from django.http import JsonResponse

logger = logging.getLogger("orders")


def health_view(_request):
    """Liveness check covering the orders database and payment configuration.

    The gateway and webhook secrets are reported but only the database
    decides the status code.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.exception("health check: database unavailable")

    components = {
        "db": {"ok": db_ok},
        "payments": {"configured": bool(getattr(settings, "PAYMENTS_BASE_URL", "")) or not settings.USE_HTTP_ADAPTERS},
        "webhooks": {"configured": bool(getattr(settings, "PAYMENT_WEBHOOK_SECRET", ""))},
    }
    return JsonResponse(
        {"ok": db_ok, "components": components},
        status=200 if db_ok else 503,
    )
