"""Logging filters that add request context to log records.

``RequestIdFilter`` copies the request id that ``RequestIdMiddleware`` keeps
in a ContextVar onto every record, so the JSON formatter can emit it next to
the message. Install it on the handlers in ``LOGGING``; log calls in the
order service and the adapters then correlate with the inbound request
without passing the id around.
"""

from logging import Filter, LogRecord
from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` to every record.

    Records emitted outside a request (management commands, the expiry sweep)
    get ``"-"`` so ``%(request_id)s`` always resolves. A ``request_id``
    passed explicitly through ``extra`` is left alone.
    """

    def filter(self, record: LogRecord) -> bool:
        """Populate ``record.request_id`` unless the caller already set it.

        Args:
            record: The log record to enrich.

        Returns:
            bool: Always True; the filter never drops records.
        """
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
