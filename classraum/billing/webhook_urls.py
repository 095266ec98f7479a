"""
Gateway webhook route (under /api/v1/billing/).

Point the Stripe dashboard's webhook endpoint at /api/v1/billing/webhook/.
"""

from django.urls import path

from classraum.billing.api_views import GatewayWebhookView

app_name = "billing"

urlpatterns = [
    path("webhook/", GatewayWebhookView.as_view(), name="webhook"),
]
