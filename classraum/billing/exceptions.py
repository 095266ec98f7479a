"""
Billing exceptions.

Every error carries a human-readable ``detail`` and a stable machine
``code``. API views render both as ``{"detail": ..., "code": ...}``.

Validation errors are raised before anything is written. Gateway errors are
raised before the local write that depended on them, so in either case the
subscription is left as it was. The exceptions are the reconciliation
errors: the gateway already accepted a new instrument or a charge and only
the local write failed.
"""

from django.core.exceptions import ImproperlyConfigured


class BillingError(Exception):
    """Base exception for billing-related errors."""

    def __init__(self, detail: str, code: str = "billing_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


# =============================================================================
# Validation
# =============================================================================


class AddOnValidationError(BillingError):
    """An add-on request was rejected. Nothing was changed."""


class BelowUsageError(AddOnValidationError):
    """The resulting limits would not cover what the academy already uses."""

    def __init__(
        self,
        detail: str = "The new limit is below current usage.",
        *,
        dimension: str = "",
        limit=None,
        usage=None,
    ):
        self.dimension = dimension
        self.limit = limit
        self.usage = usage
        super().__init__(detail, code="below_usage")


class BelowBasePlanError(AddOnValidationError):
    """A reduction would take limits under the tier's included allowance."""

    def __init__(
        self,
        detail: str = "Add-ons cannot go below the plan's base allowance.",
    ):
        super().__init__(detail, code="below_base_plan")


class NoChangesSelectedError(AddOnValidationError):
    def __init__(self, detail: str = "No add-on changes were selected."):
        super().__init__(detail, code="no_changes_selected")


class TierNotPurchasableError(AddOnValidationError):
    """Free and Enterprise tiers do not sell add-ons."""

    def __init__(self, tier: str, detail: str | None = None):
        self.tier = tier
        super().__init__(
            detail or f"Add-ons are not available on the {tier} plan.",
            code="tier_not_purchasable",
        )


class InvalidIncrementError(AddOnValidationError):
    """A delta was not a whole number of blocks."""

    def __init__(self, dimension: str, unit_size: int):
        self.dimension = dimension
        self.unit_size = unit_size
        super().__init__(
            f"{dimension} add-ons are sold in blocks of {unit_size}.",
            code="invalid_increment",
        )


class InvalidPlanChangeError(BillingError):
    def __init__(self, detail: str):
        super().__init__(detail, code="invalid_plan_change")


class SubscriptionStateError(BillingError):
    """The subscription's status does not allow the requested operation."""

    def __init__(self, detail: str):
        super().__init__(detail, code="invalid_subscription_state")


class SubscriptionNotFoundError(BillingError):
    def __init__(self, detail: str = "This academy has no subscription."):
        super().__init__(detail, code="subscription_not_found")


# =============================================================================
# Gateway
# =============================================================================


class GatewayError(BillingError):
    """The payment gateway rejected or failed a request."""

    def __init__(self, detail: str, code: str = "gateway_error"):
        super().__init__(detail, code=code)


class PaymentDeclinedError(GatewayError):
    def __init__(self, detail: str = "The card was declined.", decline_code=""):
        self.decline_code = decline_code or ""
        super().__init__(detail, code="payment_declined")


class GatewayTimeoutError(GatewayError):
    def __init__(
        self,
        detail: str = "The payment gateway did not respond in time.",
    ):
        super().__init__(detail, code="gateway_timeout")


class PaymentMethodRequiredError(GatewayError):
    def __init__(
        self,
        detail: str = "Register a payment method before making this change.",
    ):
        super().__init__(detail, code="payment_method_required")


class BillingKeyReconciliationError(GatewayError):
    """
    The gateway stored the new instrument but saving it locally failed.

    The gateway and the Subscription row disagree until someone reconciles
    them. This is logged at ERROR so it reaches alerting.
    """

    def __init__(
        self,
        detail: str = (
            "Your payment method was registered but could not be saved. "
            "Support has been notified."
        ),
    ):
        super().__init__(detail, code="billing_key_reconciliation")


class ChargeReconciliationError(GatewayError):
    """
    A charge went through but saving what it paid for failed.

    ``reference`` is the gateway's charge id (the PaymentIntent), which is
    what support needs to refund or re-apply the change. Logged at ERROR.
    """

    def __init__(
        self,
        reference: str = "",
        detail: str = (
            "Your payment was taken but the change could not be saved. "
            "Support has been notified."
        ),
    ):
        self.reference = reference
        super().__init__(detail, code="charge_reconciliation")


# =============================================================================
# Configuration
# =============================================================================


class CatalogConfigurationError(BillingError, ImproperlyConfigured):
    """An unknown tier or dimension reached the catalog. A deployment bug."""

    def __init__(self, detail: str):
        super().__init__(detail, code="catalog_configuration")
