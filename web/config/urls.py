from django.urls import include, path

from apps.monitoring.api import health_view

urlpatterns = [
    path("api/", include("apps.orders.urls")),
    path("api/health/", health_view, name="health"),
]
