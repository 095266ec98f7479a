"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Subscription: view academy subscriptions (limits, add-ons, pending change)
- SubscriptionChange: the audit log, read-only
- GatewayEvent: processed webhooks, read-only

Subscriptions are edited through SubscriptionService, not the admin, so that
amounts and limits stay consistent with the catalog.
"""

from django.contrib import admin

from classraum.billing.models import GatewayEvent
from classraum.billing.models import Subscription
from classraum.billing.models import SubscriptionChange


class SubscriptionChangeInline(admin.TabularInline):
    model = SubscriptionChange
    extra = 0
    can_delete = False
    fields = [
        "created",
        "change_type",
        "old_tier",
        "new_tier",
        "old_monthly_amount",
        "new_monthly_amount",
        "proration_amount",
        "scheduled_at",
    ]
    readonly_fields = fields
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for academy subscriptions."""

    list_display = [
        "academy",
        "tier",
        "status",
        "billing_cycle",
        "monthly_amount",
        "auto_renew",
        "next_billing_date",
        "pending_tier",
    ]
    list_filter = ["status", "tier", "billing_cycle", "auto_renew"]
    search_fields = ["academy__name", "gateway_customer_id"]
    raw_id_fields = ["academy"]
    readonly_fields = [
        "monthly_amount",
        "total_user_limit",
        "storage_limit_gb",
        "classroom_limit",
        "additional_students",
        "additional_teachers",
        "additional_storage_gb",
        "pending_tier",
        "pending_monthly_amount",
        "pending_change_effective_date",
        "billing_key",
        "billing_key_issued_at",
        "created",
        "modified",
    ]
    inlines = [SubscriptionChangeInline]

    fieldsets = [
        (None, {"fields": ["academy", "tier", "status", "billing_cycle"]}),
        (
            "Limits",
            {"fields": ["total_user_limit", "storage_limit_gb", "classroom_limit"]},
        ),
        (
            "Add-ons",
            {
                "fields": [
                    "additional_students",
                    "additional_teachers",
                    "additional_storage_gb",
                    "monthly_amount",
                ],
            },
        ),
        (
            "Billing Period",
            {
                "fields": [
                    "trial_ends_at",
                    "current_period_start",
                    "current_period_end",
                    "next_billing_date",
                    "last_payment_date",
                    "auto_renew",
                    "canceled_at",
                    "cancel_reason",
                ],
            },
        ),
        (
            "Scheduled Change",
            {
                "fields": [
                    "pending_tier",
                    "pending_monthly_amount",
                    "pending_change_effective_date",
                ],
            },
        ),
        (
            "Stripe",
            {
                "fields": [
                    "gateway_customer_id",
                    "billing_key",
                    "billing_key_issued_at",
                ],
            },
        ),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]


@admin.register(SubscriptionChange)
class SubscriptionChangeAdmin(admin.ModelAdmin):
    """Admin for the subscription audit log."""

    list_display = [
        "subscription",
        "change_type",
        "old_tier",
        "new_tier",
        "new_monthly_amount",
        "effective_immediately",
        "created",
    ]
    list_filter = ["change_type", "created"]
    search_fields = ["subscription__academy__name", "notes"]
    readonly_fields = [f.name for f in SubscriptionChange._meta.fields]  # noqa: SLF001


@admin.register(GatewayEvent)
class GatewayEventAdmin(admin.ModelAdmin):
    """Admin for processed gateway webhooks."""

    list_display = ["event_id", "event_type", "outcome", "amount", "processed_at"]
    list_filter = ["event_type", "outcome"]
    search_fields = ["event_id", "subscription__academy__name"]
    readonly_fields = [f.name for f in GatewayEvent._meta.fields]  # noqa: SLF001
