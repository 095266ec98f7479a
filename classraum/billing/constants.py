"""
Billing constants for academy subscriptions.

These enums define the plan tiers, subscription lifecycle states, billing
cycles and add-on dimensions used throughout the billing module. Values are
stored on the Subscription row and appear verbatim in API responses.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class PlanTier(models.TextChoices):
    """
    Subscription tiers, cheapest first.

    Free needs no payment method. Enterprise is negotiated with sales and
    has no fixed limits.
    """

    FREE = "free", _("Free")
    BASIC = "basic", _("Basic")
    PRO = "pro", _("Pro")
    ENTERPRISE = "enterprise", _("Enterprise")


# Upgrade/downgrade decisions compare positions in this list.
TIER_ORDER = [
    PlanTier.FREE,
    PlanTier.BASIC,
    PlanTier.PRO,
    PlanTier.ENTERPRISE,
]


class SubscriptionStatus(models.TextChoices):
    """
    Subscription lifecycle states.

    Typical flow:
        TRIALING → ACTIVE (first successful charge)
        ACTIVE → PAST_DUE (charge failed) → ACTIVE (charge succeeded)
        ACTIVE → CANCELED (auto-renew off and the paid period ran out)

    A canceled subscription can be started again, which begins a new cycle.
    """

    TRIALING = "trialing", _("Trial")
    ACTIVE = "active", _("Active")
    PAST_DUE = "past_due", _("Past Due")
    CANCELED = "canceled", _("Canceled")


class BillingCycle(models.TextChoices):
    MONTHLY = "monthly", _("Monthly")
    YEARLY = "yearly", _("Yearly")


class AddOnDimension(models.TextChoices):
    """Capacity that can be bought on top of a tier's base allowance."""

    USERS = "users", _("Users")
    STORAGE = "storage", _("Storage")


class ChangeType(models.TextChoices):
    """Kinds of entries in the SubscriptionChange audit log."""

    ADDON = "addon", _("Add-on change")
    UPGRADE = "upgrade", _("Upgrade")
    DOWNGRADE = "downgrade", _("Downgrade scheduled")
    DOWNGRADE_APPLIED = "downgrade_applied", _("Downgrade applied")
    DOWNGRADE_ABANDONED = "downgrade_abandoned", _("Downgrade abandoned")
    CANCEL = "cancel", _("Auto-renew turned off")
    EXPIRE = "expire", _("Expired")
    PAYMENT_METHOD = "payment_method", _("Payment method updated")


class ChargeKind(models.TextChoices):
    """Why a charge was made. Travels in the gateway's metadata."""

    RECURRING = "recurring", _("Recurring")
    UPGRADE = "upgrade", _("Upgrade proration")
    FIRST_PERIOD = "first_period", _("First period")


class GatewayOutcome(models.TextChoices):
    SUCCEEDED = "succeeded", _("Succeeded")
    FAILED = "failed", _("Failed")
    IGNORED = "ignored", _("Ignored")


# Trial duration in days
TRIAL_DURATION_DAYS = 14

# Months in a yearly cycle, used to price add-ons on yearly renewals.
MONTHS_PER_YEAR = 12
