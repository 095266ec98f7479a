"""
Billing models for academy subscriptions.

Key design decisions:
- The plan catalog is static code (catalog.py), not a table. Subscription
  stores the tier code plus the limits and amount that were in force when it
  was last changed.
- Subscription is 1:1 with Academy and is never deleted. Cancellation and
  resubscription reuse the same row.
- Add-on quantities live on the Subscription. ``monthly_amount`` and the
  limits are always recomputable from tier + add-ons.
- At most one scheduled change (a downgrade) is pending at a time.

Relationship: Academy ──1:1── Subscription ──1:N── SubscriptionChange
                                            ──1:N── GatewayEvent
"""

from __future__ import annotations

from django.db import models
from model_utils.models import TimeStampedModel

from classraum.billing.constants import BillingCycle
from classraum.billing.constants import ChangeType
from classraum.billing.constants import GatewayOutcome
from classraum.billing.constants import PlanTier
from classraum.billing.constants import SubscriptionStatus
from classraum.billing.pricing import AddOnState


class Subscription(TimeStampedModel):
    """
    Billing subscription for an academy.

    Limits of ``None`` mean unlimited. All money is whole won.

    Usage:
        subscription = academy.subscription
        subscription.addons.additional_users
        subscription.has_pending_change
    """

    academy = models.OneToOneField(
        "academies.Academy",
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    tier = models.CharField(
        max_length=20,
        choices=PlanTier.choices,
        default=PlanTier.FREE,
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
    )
    billing_cycle = models.CharField(
        max_length=10,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    monthly_amount = models.PositiveIntegerField(
        default=0,
        help_text="Current recurring charge in KRW: base price plus add-ons.",
    )

    # Effective limits (base + add-ons). Null = unlimited.
    total_user_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Students plus teachers. Null = unlimited.",
    )
    storage_limit_gb = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Null = unlimited.",
    )
    classroom_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Null = unlimited.",
    )

    # Add-ons bought on top of the tier's base allowance
    additional_students = models.PositiveIntegerField(default=0)
    additional_teachers = models.PositiveIntegerField(default=0)
    additional_storage_gb = models.PositiveIntegerField(default=0)

    auto_renew = models.BooleanField(default=True)

    # Period tracking
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    next_billing_date = models.DateTimeField(null=True, blank=True)
    last_payment_date = models.DateTimeField(null=True, blank=True)

    # Scheduled change, applied by apply_pending_plan_changes
    pending_tier = models.CharField(
        max_length=20,
        choices=PlanTier.choices,
        blank=True,
        help_text="Tier to switch to at pending_change_effective_date.",
    )
    pending_monthly_amount = models.PositiveIntegerField(null=True, blank=True)
    pending_change_effective_date = models.DateTimeField(null=True, blank=True)

    # Gateway integration
    gateway_customer_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe Customer ID (cus_xxx).",
    )
    billing_key = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stored payment instrument (Stripe PaymentMethod pm_xxx).",
    )
    billing_key_issued_at = models.DateTimeField(null=True, blank=True)

    canceled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_6d1f0c_idx"),
            models.Index(
                fields=["gateway_customer_id"],
                name="billing_sub_gateway_3a7e21_idx",
            ),
            models.Index(
                fields=["pending_change_effective_date"],
                name="billing_sub_pending_9b4c52_idx",
            ),
            models.Index(
                fields=["next_billing_date"],
                name="billing_sub_next_bi_e08d17_idx",
            ),
        ]
        constraints = [
            # Either nothing is pending, or tier and date are both set.
            models.CheckConstraint(
                condition=(
                    models.Q(
                        pending_tier="",
                        pending_change_effective_date__isnull=True,
                        pending_monthly_amount__isnull=True,
                    )
                    | (
                        ~models.Q(pending_tier="")
                        & models.Q(pending_change_effective_date__isnull=False)
                    )
                ),
                name="subscription_pending_change_complete",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.academy.name} - {self.get_tier_display()} ({self.status})"

    @property
    def addons(self) -> AddOnState:
        return AddOnState(
            additional_students=self.additional_students,
            additional_teachers=self.additional_teachers,
            additional_storage_gb=self.additional_storage_gb,
        )

    @property
    def additional_users(self) -> int:
        return self.additional_students + self.additional_teachers

    @property
    def has_pending_change(self) -> bool:
        return bool(self.pending_tier)

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def set_addons(self, addons: AddOnState) -> None:
        self.additional_students = addons.additional_students
        self.additional_teachers = addons.additional_teachers
        self.additional_storage_gb = addons.additional_storage_gb

    def schedule_pending_change(
        self,
        tier: str,
        monthly_amount: int,
        effective_date,
    ) -> None:
        self.pending_tier = tier
        self.pending_monthly_amount = monthly_amount
        self.pending_change_effective_date = effective_date

    def clear_pending_change(self) -> None:
        self.pending_tier = ""
        self.pending_monthly_amount = None
        self.pending_change_effective_date = None


class SubscriptionChange(TimeStampedModel):
    """
    Audit log for subscription changes.

    Records add-on purchases, upgrades, scheduled and applied downgrades,
    cancellations and payment method updates for billing reconciliation and
    customer support history.
    """

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="changes",
    )
    change_type = models.CharField(max_length=30, choices=ChangeType.choices)
    old_tier = models.CharField(max_length=20, choices=PlanTier.choices)
    new_tier = models.CharField(max_length=20, choices=PlanTier.choices)
    old_monthly_amount = models.PositiveIntegerField(null=True, blank=True)
    new_monthly_amount = models.PositiveIntegerField(null=True, blank=True)
    effective_immediately = models.BooleanField(
        default=True,
        help_text="Whether change took effect immediately or was scheduled.",
    )
    scheduled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When scheduled change will take effect.",
    )
    proration_amount = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Prorated amount charged in KRW.",
    )
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ["-created", "-id"]

    def __str__(self) -> str:
        return (
            f"{self.subscription.academy.name}: {self.change_type} "
            f"{self.old_tier} → {self.new_tier}"
        )


class GatewayEvent(models.Model):
    """
    Every gateway webhook we have processed, keyed by the gateway's event id.

    Webhooks are delivered at least once. The unique ``event_id`` is what
    makes a replay a no-op: the row is written in the same transaction as
    the state transition it caused.
    """

    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    outcome = models.CharField(max_length=20, choices=GatewayOutcome.choices)
    amount = models.PositiveIntegerField(null=True, blank=True)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="gateway_events",
    )
    payload = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-processed_at"]

    def __str__(self) -> str:
        return f"{self.event_type} {self.event_id} ({self.outcome})"
