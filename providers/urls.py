from django.urls import path

from . import views

app_name = "providers"

urlpatterns = [
    path("telnyx/", views.telnyx_webhook, name="telnyx"),
    path("resend/", views.resend_webhook, name="resend"),
    path("shopify/orders/", views.shopify_order_webhook, name="shopify-orders"),
]
