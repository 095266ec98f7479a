"""
URL configuration for the subscription API.

Routes (under /api/v1/subscription/):
- plans/                    - Plan catalog with add-on pricing (GET)
- subscribe/                - Start or restart a subscription (POST)
- status/                   - Subscription, usage and limit check (GET)
- add-ons/                  - Current add-ons (GET), change (POST), remove all (DELETE)
- add-ons/preview/          - Price an add-on change without saving (POST)
- change-plan/              - Upgrade or schedule a downgrade (POST)
- change-plan/cancel/       - Cancel a scheduled change (POST)
- cancel/                   - Turn off auto-renew (POST)
- update-payment-method/    - Store a new billing key (POST)
- billing-key/start/        - Open the hosted card registration page (POST)
- billing-key/complete/     - Finish card registration (POST)
- invoices/                 - Charge history, newest first (GET)
"""

from django.urls import path

from classraum.billing.api_views import AddOnsPreviewView
from classraum.billing.api_views import AddOnsView
from classraum.billing.api_views import BillingKeyCompleteView
from classraum.billing.api_views import BillingKeyStartView
from classraum.billing.api_views import CancelPlanChangeView
from classraum.billing.api_views import CancelSubscriptionView
from classraum.billing.api_views import ChargeHistoryView
from classraum.billing.api_views import ChangePlanView
from classraum.billing.api_views import PlansView
from classraum.billing.api_views import SubscribeView
from classraum.billing.api_views import SubscriptionStatusView
from classraum.billing.api_views import UpdatePaymentMethodView

app_name = "subscription"

urlpatterns = [
    path("plans/", PlansView.as_view(), name="plans"),
    path("subscribe/", SubscribeView.as_view(), name="subscribe"),
    path("status/", SubscriptionStatusView.as_view(), name="status"),
    path("add-ons/", AddOnsView.as_view(), name="add-ons"),
    path("add-ons/preview/", AddOnsPreviewView.as_view(), name="add-ons-preview"),
    path("change-plan/", ChangePlanView.as_view(), name="change-plan"),
    path(
        "change-plan/cancel/",
        CancelPlanChangeView.as_view(),
        name="change-plan-cancel",
    ),
    path("cancel/", CancelSubscriptionView.as_view(), name="cancel"),
    path(
        "update-payment-method/",
        UpdatePaymentMethodView.as_view(),
        name="update-payment-method",
    ),
    path(
        "billing-key/start/",
        BillingKeyStartView.as_view(),
        name="billing-key-start",
    ),
    path(
        "billing-key/complete/",
        BillingKeyCompleteView.as_view(),
        name="billing-key-complete",
    ),
    path("invoices/", ChargeHistoryView.as_view(), name="invoices"),
]
