from django.urls import path
from .views import (
    CheckoutView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    PaymentWebhookView,
    RetrieveOrderView,
    TrackOrderView,
)
app_name = "orders"

urlpatterns = [
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),
    path("orders/track/<str:order_number>/", TrackOrderView.as_view(), name="orders-track"),
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/status", OrderStatusView.as_view(), name="orders-status"),
    path("checkout/create-payment-intent", CheckoutView.as_view(), name="checkout"),
    path("webhooks/payment", PaymentWebhookView.as_view(), name="payment-webhook"),
]
