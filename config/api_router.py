"""
Public API router.

Subscription management endpoints are used by academy managers from the
dashboard. The gateway webhook lives under billing/ and authenticates by
signature rather than by session or token.
"""

from django.urls import include, path

app_name = "api"
urlpatterns = [
    path("subscription/", include("classraum.billing.urls")),
    path("billing/", include("classraum.billing.webhook_urls")),
]
