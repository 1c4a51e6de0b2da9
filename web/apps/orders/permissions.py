import hmac

from django.conf import settings
from rest_framework.permissions import BasePermission


class HasAdminToken(BasePermission):
    """Allow the call only with ``X-Admin-Token`` equal to ``ADMIN_API_TOKEN``.

    An unset token denies every call.
    """

    message = "ADMIN_REQUIRED"

    def has_permission(self, request, view):
        expected = getattr(settings, "ADMIN_API_TOKEN", "")
        supplied = request.headers.get("X-Admin-Token", "")
        if not expected or not supplied:
            return False
        return hmac.compare_digest(supplied.encode(), expected.encode())
