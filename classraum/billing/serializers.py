"""
Request and response serializers for the subscription API.

The dashboard speaks camelCase, so public field names are camelCase and map
onto snake_case service arguments via ``source``.
"""

from rest_framework import serializers

from classraum.billing.constants import BillingCycle
from classraum.billing.constants import GatewayOutcome
from classraum.billing.constants import PlanTier
from classraum.billing.models import GatewayEvent
from classraum.billing.models import Subscription

CHARGE_STATUS_BY_OUTCOME = {
    GatewayOutcome.SUCCEEDED: "paid",
    GatewayOutcome.FAILED: "failed",
}


class SubscriptionSerializer(serializers.ModelSerializer):
    tierName = serializers.CharField(source="get_tier_display", read_only=True)  # noqa: N815
    billingCycle = serializers.CharField(source="billing_cycle")  # noqa: N815
    monthlyAmount = serializers.IntegerField(source="monthly_amount")  # noqa: N815
    totalUserLimit = serializers.IntegerField(source="total_user_limit")  # noqa: N815
    storageLimitGb = serializers.IntegerField(source="storage_limit_gb")  # noqa: N815
    classroomLimit = serializers.IntegerField(source="classroom_limit")  # noqa: N815
    additionalStudents = serializers.IntegerField(source="additional_students")  # noqa: N815
    additionalTeachers = serializers.IntegerField(source="additional_teachers")  # noqa: N815
    additionalStorageGb = serializers.IntegerField(source="additional_storage_gb")  # noqa: N815
    autoRenew = serializers.BooleanField(source="auto_renew")  # noqa: N815
    trialEndsAt = serializers.DateTimeField(source="trial_ends_at")  # noqa: N815
    currentPeriodStart = serializers.DateTimeField(source="current_period_start")  # noqa: N815
    currentPeriodEnd = serializers.DateTimeField(source="current_period_end")  # noqa: N815
    nextBillingDate = serializers.DateTimeField(source="next_billing_date")  # noqa: N815
    pendingTier = serializers.CharField(source="pending_tier")  # noqa: N815
    pendingMonthlyAmount = serializers.IntegerField(source="pending_monthly_amount")  # noqa: N815
    pendingChangeEffectiveDate = serializers.DateTimeField(  # noqa: N815
        source="pending_change_effective_date",
    )
    hasPaymentMethod = serializers.SerializerMethodField()  # noqa: N815

    class Meta:
        model = Subscription
        fields = [
            "id",
            "tier",
            "tierName",
            "status",
            "billingCycle",
            "monthlyAmount",
            "totalUserLimit",
            "storageLimitGb",
            "classroomLimit",
            "additionalStudents",
            "additionalTeachers",
            "additionalStorageGb",
            "autoRenew",
            "trialEndsAt",
            "currentPeriodStart",
            "currentPeriodEnd",
            "nextBillingDate",
            "pendingTier",
            "pendingMonthlyAmount",
            "pendingChangeEffectiveDate",
            "hasPaymentMethod",
        ]
        read_only_fields = fields

    def get_hasPaymentMethod(self, obj) -> bool:  # noqa: N802
        return bool(obj.billing_key)


def status_document(report) -> dict:
    """Render a SubscriptionStatusReport."""
    return {
        "subscription": SubscriptionSerializer(report.subscription).data,
        "usage": report.usage.as_dict(),
        "limits": {
            "isValid": report.is_valid,
            "exceededLimits": report.exceeded_limits,
        },
        "daysRemaining": report.days_remaining,
    }


class AddOnChangeSerializer(serializers.Serializer):
    """Add-on deltas. Negative values remove capacity."""

    additionalStudents = serializers.IntegerField(  # noqa: N815
        source="delta_students",
        default=0,
    )
    additionalTeachers = serializers.IntegerField(  # noqa: N815
        source="delta_teachers",
        default=0,
    )
    additionalStorageGb = serializers.IntegerField(  # noqa: N815
        source="delta_storage_gb",
        default=0,
    )


class ChangePlanSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=PlanTier.choices)


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class UpdatePaymentMethodSerializer(serializers.Serializer):
    billingKey = serializers.CharField(source="billing_key", max_length=255)  # noqa: N815


class BillingKeyStartSerializer(serializers.Serializer):
    successUrl = serializers.URLField(source="success_url", max_length=2000)  # noqa: N815
    cancelUrl = serializers.URLField(source="cancel_url", max_length=2000)  # noqa: N815


class BillingKeyCompleteSerializer(serializers.Serializer):
    """What the hosted page handed back. Every field is optional."""

    billingKey = serializers.CharField(  # noqa: N815
        source="billing_key",
        required=False,
        allow_blank=True,
    )
    sessionId = serializers.CharField(  # noqa: N815
        source="session_id",
        required=False,
        allow_blank=True,
    )
    code = serializers.CharField(required=False, allow_blank=True)
    message = serializers.CharField(required=False, allow_blank=True)


class SubscribeSerializer(serializers.Serializer):
    tier = serializers.ChoiceField(choices=PlanTier.choices)
    billingCycle = serializers.ChoiceField(  # noqa: N815
        source="billing_cycle",
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    trial = serializers.BooleanField(default=False)


class ChargeSerializer(serializers.ModelSerializer):
    """One charge outcome from the gateway event ledger."""

    eventId = serializers.CharField(source="event_id")  # noqa: N815
    status = serializers.SerializerMethodField()
    chargeKind = serializers.SerializerMethodField()  # noqa: N815
    reference = serializers.SerializerMethodField()
    failureMessage = serializers.SerializerMethodField()  # noqa: N815
    createdAt = serializers.DateTimeField(source="processed_at")  # noqa: N815

    class Meta:
        model = GatewayEvent
        fields = [
            "eventId",
            "status",
            "amount",
            "chargeKind",
            "reference",
            "failureMessage",
            "createdAt",
        ]
        read_only_fields = fields

    def _intent(self, obj) -> dict:
        return ((obj.payload or {}).get("data") or {}).get("object") or {}

    def get_status(self, obj) -> str:
        return CHARGE_STATUS_BY_OUTCOME.get(obj.outcome, obj.outcome)

    def get_chargeKind(self, obj) -> str:  # noqa: N802
        return (self._intent(obj).get("metadata") or {}).get("charge_kind", "")

    def get_reference(self, obj) -> str:
        return self._intent(obj).get("id", "")

    def get_failureMessage(self, obj) -> str:  # noqa: N802
        return (self._intent(obj).get("last_payment_error") or {}).get("message", "")
