"""
Tests for SubscriptionService.

The gateway is a MagicMock (see the ``gateway`` fixture in conftest), so the
tests check what would be charged without talking to Stripe.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.utils import timezone

from classraum.academies.tests.factories import AcademyFactory
from classraum.academies.tests.factories import AcademyUsageFactory
from classraum.billing.constants import TRIAL_DURATION_DAYS
from classraum.billing.constants import BillingCycle
from classraum.billing.constants import ChangeType
from classraum.billing.constants import ChargeKind
from classraum.billing.constants import PlanTier
from classraum.billing.constants import SubscriptionStatus
from classraum.billing.exceptions import BelowUsageError
from classraum.billing.exceptions import BillingKeyReconciliationError
from classraum.billing.exceptions import ChargeReconciliationError
from classraum.billing.exceptions import InvalidPlanChangeError
from classraum.billing.exceptions import NoChangesSelectedError
from classraum.billing.exceptions import PaymentDeclinedError
from classraum.billing.exceptions import PaymentMethodRequiredError
from classraum.billing.exceptions import SubscriptionNotFoundError
from classraum.billing.exceptions import SubscriptionStateError
from classraum.billing.exceptions import TierNotPurchasableError
from classraum.billing.gateway import BillingKeyIssuance
from classraum.billing.gateway import IssuanceOutcome
from classraum.billing.models import Subscription
from classraum.billing.models import SubscriptionChange
from classraum.billing.pricing import compute_monthly_amount
from classraum.billing.tests.factories import SubscriptionFactory


@pytest.fixture
def now():
    return timezone.now()


@pytest.fixture
def basic_sub(academy, now):
    """Basic, ten days into a thirty day period."""
    return SubscriptionFactory(
        academy=academy,
        basic=True,
        current_period_start=now - timedelta(days=10),
        current_period_end=now + timedelta(days=20),
        next_billing_date=now + timedelta(days=20),
    )


@pytest.fixture
def pro_sub(academy, now):
    return SubscriptionFactory(
        academy=academy,
        pro=True,
        current_period_start=now - timedelta(days=10),
        current_period_end=now + timedelta(days=20),
        next_billing_date=now + timedelta(days=20),
    )


# ==============================================================================
# Starting a subscription
# ==============================================================================


@pytest.mark.django_db
class TestStartSubscription:
    def test_free(self, service, academy, gateway):
        subscription = service.start_subscription(academy, PlanTier.FREE)

        assert subscription.tier == PlanTier.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.total_user_limit == 22
        assert subscription.monthly_amount == 0
        assert subscription.current_period_end is None
        gateway.charge.assert_not_called()

    def test_paid_trial(self, service, academy, now, gateway):
        subscription = service.start_subscription(
            academy,
            PlanTier.BASIC,
            trial=True,
            now=now,
        )

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_ends_at == now + timedelta(days=TRIAL_DURATION_DAYS)
        assert subscription.next_billing_date == subscription.trial_ends_at
        assert subscription.monthly_amount == 50_000
        gateway.charge.assert_not_called()

    def test_paid_without_card(self, service, academy):
        with pytest.raises(PaymentMethodRequiredError):
            service.start_subscription(academy, PlanTier.BASIC)

        assert not Subscription.objects.filter(academy=academy).exists()

    def test_enterprise_is_contact_sales(self, service, academy):
        with pytest.raises(InvalidPlanChangeError):
            service.start_subscription(academy, PlanTier.ENTERPRISE)

    def test_live_subscription_exists(self, service, basic_sub):
        with pytest.raises(SubscriptionStateError):
            service.start_subscription(basic_sub.academy, PlanTier.PRO)

    def test_restart_canceled_charges_first_period(self, service, gateway, now):
        subscription = SubscriptionFactory(
            status=SubscriptionStatus.CANCELED,
            auto_renew=False,
            gateway_customer_id="cus_test_123",
            billing_key="pm_test_123",
        )

        restarted = service.start_subscription(
            subscription.academy,
            PlanTier.BASIC,
            BillingCycle.YEARLY,
            now=now,
        )

        assert restarted.pk == subscription.pk
        assert restarted.status == SubscriptionStatus.ACTIVE
        assert restarted.auto_renew
        assert restarted.current_period_end.year == now.year + 1
        _, kwargs = gateway.charge.call_args
        assert gateway.charge.call_args.args[1] == 500_000
        assert kwargs["charge_kind"] == ChargeKind.FIRST_PERIOD

    def test_first_charge_then_write_failure_needs_reconciliation(
        self,
        service,
        gateway,
    ):
        subscription = SubscriptionFactory(
            status=SubscriptionStatus.CANCELED,
            auto_renew=False,
            gateway_customer_id="cus_test_123",
            billing_key="pm_test_123",
        )

        with (
            patch.object(Subscription, "save", side_effect=DatabaseError("disk full")),
            patch("classraum.billing.subscriptions.logger") as mock_logger,
            pytest.raises(ChargeReconciliationError),
        ):
            service.start_subscription(subscription.academy, PlanTier.BASIC)

        gateway.charge.assert_called_once()
        mock_logger.exception.assert_called_once()
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.CANCELED


# ==============================================================================
# Add-ons
# ==============================================================================


@pytest.mark.django_db
class TestAddOns:
    def test_buy_users(self, service, basic_sub):
        quote = service.apply_addons(basic_sub.academy, delta_students=5)

        basic_sub.refresh_from_db()
        assert quote.new_monthly_amount == 60_000
        assert basic_sub.total_user_limit == 15
        assert basic_sub.monthly_amount == 60_000
        assert basic_sub.additional_students == 5
        change = basic_sub.changes.get()
        assert change.change_type == ChangeType.ADDON
        assert change.old_monthly_amount == 50_000
        assert change.new_monthly_amount == 60_000

    def test_reduction_below_usage_changes_nothing(self, service, basic_sub):
        basic_sub.additional_students = 5
        basic_sub.total_user_limit = 15
        basic_sub.monthly_amount = 60_000
        basic_sub.save()
        AcademyUsageFactory(academy=basic_sub.academy, student_count=12)

        with pytest.raises(BelowUsageError):
            service.apply_addons(basic_sub.academy, delta_students=-5)

        basic_sub.refresh_from_db()
        assert basic_sub.total_user_limit == 15
        assert basic_sub.monthly_amount == 60_000
        assert not basic_sub.changes.exists()

    def test_remove_all_blocked_by_usage(self, service, basic_sub):
        basic_sub.additional_teachers = 5
        basic_sub.total_user_limit = 15
        basic_sub.monthly_amount = 60_000
        basic_sub.save()
        AcademyUsageFactory(
            academy=basic_sub.academy,
            student_count=8,
            teacher_count=4,
        )

        with pytest.raises(BelowUsageError):
            service.cancel_addons(basic_sub.academy)

        basic_sub.refresh_from_db()
        assert basic_sub.additional_teachers == 5
        assert basic_sub.total_user_limit == 15

    def test_remove_all(self, service, basic_sub):
        basic_sub.additional_students = 5
        basic_sub.additional_storage_gb = 5
        basic_sub.save()

        quote = service.cancel_addons(basic_sub.academy)

        basic_sub.refresh_from_db()
        assert quote.addons.is_empty
        assert basic_sub.monthly_amount == 50_000
        assert basic_sub.total_user_limit == 10
        assert basic_sub.storage_limit_gb == 10

    def test_remove_all_without_addons(self, service, basic_sub):
        with pytest.raises(NoChangesSelectedError):
            service.cancel_addons(basic_sub.academy)

    def test_free_tier(self, service):
        subscription = SubscriptionFactory()

        with pytest.raises(TierNotPurchasableError):
            service.apply_addons(subscription.academy, delta_students=5)

    def test_past_due_cannot_change_addons(self, service, basic_sub):
        basic_sub.status = SubscriptionStatus.PAST_DUE
        basic_sub.save()

        with pytest.raises(SubscriptionStateError):
            service.apply_addons(basic_sub.academy, delta_students=5)

    def test_pending_amount_follows_addons(self, service, pro_sub):
        service.change_tier(pro_sub.academy, PlanTier.BASIC)

        service.apply_addons(pro_sub.academy, delta_storage_gb=10)

        pro_sub.refresh_from_db()
        assert pro_sub.pending_monthly_amount == 50_000 + 2 * 12_000

    def test_preview_saves_nothing(self, service, basic_sub):
        quote = service.preview_addons(basic_sub.academy, delta_teachers=10)

        basic_sub.refresh_from_db()
        assert quote.new_monthly_amount == 70_000
        assert basic_sub.monthly_amount == 50_000

    def test_get_addons(self, service, pro_sub):
        pro_sub.additional_students = 10
        pro_sub.save()

        result = service.get_addons(pro_sub.academy)

        assert result["current"] == {
            "students": 10,
            "teachers": 0,
            "storageGb": 0,
            "cost": 25_000,
        }
        assert result["pending"] is None

    def test_stored_amount_matches_recomputed(self, service, pro_sub):
        service.apply_addons(pro_sub.academy, delta_students=10, delta_teachers=10)
        service.apply_addons(pro_sub.academy, delta_storage_gb=20)
        service.apply_addons(pro_sub.academy, delta_teachers=-10)

        pro_sub.refresh_from_db()
        assert pro_sub.monthly_amount == compute_monthly_amount(
            pro_sub.tier,
            pro_sub.addons,
        )
        assert pro_sub.monthly_amount == 150_000 + 25_000 + 2 * 15_000

    def test_no_subscription(self, service, academy):
        with pytest.raises(SubscriptionNotFoundError):
            service.apply_addons(academy, delta_students=5)


# ==============================================================================
# Tier changes
# ==============================================================================


@pytest.mark.django_db
class TestUpgrade:
    def test_prorated_upgrade(self, service, basic_sub, gateway, now):
        result = service.change_tier(basic_sub.academy, PlanTier.PRO, now=now)

        # (150000 - 50000) * 20 / 30, rounded half up
        assert result.proration_amount == 66_667
        assert result.effective_immediately
        gateway.charge.assert_called_once()
        assert gateway.charge.call_args.args[1] == 66_667
        basic_sub.refresh_from_db()
        assert basic_sub.tier == PlanTier.PRO
        assert basic_sub.total_user_limit == 550
        assert basic_sub.monthly_amount == 150_000
        assert basic_sub.current_period_end == now + timedelta(days=20)
        assert basic_sub.changes.get().proration_amount == 66_667

    def test_decline_leaves_subscription_unchanged(self, service, basic_sub, gateway):
        gateway.charge.side_effect = PaymentDeclinedError(decline_code="card_declined")

        with pytest.raises(PaymentDeclinedError):
            service.change_tier(basic_sub.academy, PlanTier.PRO)

        basic_sub.refresh_from_db()
        assert basic_sub.tier == PlanTier.BASIC
        assert basic_sub.monthly_amount == 50_000
        assert not SubscriptionChange.objects.exists()

    def test_local_write_failure_after_charge_needs_reconciliation(
        self,
        service,
        basic_sub,
        gateway,
    ):
        with (
            patch.object(Subscription, "save", side_effect=DatabaseError("disk full")),
            patch("classraum.billing.subscriptions.logger") as mock_logger,
            pytest.raises(ChargeReconciliationError) as exc_info,
        ):
            service.change_tier(basic_sub.academy, PlanTier.PRO)

        gateway.charge.assert_called_once()
        mock_logger.exception.assert_called_once()
        assert exc_info.value.reference == "pi_test_123"
        assert exc_info.value.code == "charge_reconciliation"
        basic_sub.refresh_from_db()
        assert basic_sub.tier == PlanTier.BASIC
        assert not SubscriptionChange.objects.exists()

    def test_local_write_failure_without_charge_is_not_reconciliation(
        self,
        service,
        academy,
        gateway,
    ):
        service.start_subscription(academy, PlanTier.BASIC, trial=True)

        with (
            patch.object(Subscription, "save", side_effect=DatabaseError("disk full")),
            pytest.raises(DatabaseError),
        ):
            service.change_tier(academy, PlanTier.PRO)

        gateway.charge.assert_not_called()

    def test_upgrade_needs_card(self, service, basic_sub):
        basic_sub.billing_key = ""
        basic_sub.save()

        with pytest.raises(PaymentMethodRequiredError):
            service.change_tier(basic_sub.academy, PlanTier.PRO)

    def test_free_to_basic_charges_full_period(self, service, gateway, now):
        subscription = SubscriptionFactory(
            gateway_customer_id="cus_test_123",
            billing_key="pm_test_123",
        )

        result = service.change_tier(subscription.academy, PlanTier.BASIC, now=now)

        assert result.proration_amount == 50_000
        subscription.refresh_from_db()
        assert subscription.current_period_start == now
        assert subscription.next_billing_date == subscription.current_period_end

    def test_trial_upgrade_is_free(self, service, academy, gateway):
        service.start_subscription(academy, PlanTier.BASIC, trial=True)

        result = service.change_tier(academy, PlanTier.PRO)

        assert result.proration_amount == 0
        gateway.charge.assert_not_called()

    def test_same_tier(self, service, basic_sub):
        with pytest.raises(InvalidPlanChangeError):
            service.change_tier(basic_sub.academy, PlanTier.BASIC)

    def test_enterprise(self, service, basic_sub):
        with pytest.raises(InvalidPlanChangeError):
            service.change_tier(basic_sub.academy, PlanTier.ENTERPRISE)

    def test_addons_carry_over(self, service, basic_sub):
        basic_sub.additional_students = 10
        basic_sub.save()

        service.change_tier(basic_sub.academy, PlanTier.PRO)

        basic_sub.refresh_from_db()
        assert basic_sub.additional_students == 10
        assert basic_sub.total_user_limit == 560
        assert basic_sub.monthly_amount == 150_000 + 25_000


@pytest.mark.django_db
class TestDowngrade:
    def test_scheduled_for_period_end(self, service, pro_sub, gateway):
        AcademyUsageFactory(academy=pro_sub.academy, student_count=5)

        result = service.change_tier(pro_sub.academy, PlanTier.BASIC)

        pro_sub.refresh_from_db()
        assert not result.effective_immediately
        assert pro_sub.pending_tier == PlanTier.BASIC
        assert pro_sub.pending_monthly_amount == 50_000
        assert pro_sub.pending_change_effective_date == pro_sub.current_period_end
        assert pro_sub.tier == PlanTier.PRO
        assert pro_sub.monthly_amount == 150_000
        gateway.charge.assert_not_called()

    def test_usage_too_high(self, service, pro_sub):
        AcademyUsageFactory(academy=pro_sub.academy, student_count=30)

        with pytest.raises(BelowUsageError) as exc_info:
            service.change_tier(pro_sub.academy, PlanTier.BASIC)

        assert exc_info.value.dimension == "users"
        pro_sub.refresh_from_db()
        assert not pro_sub.has_pending_change

    def test_newer_downgrade_replaces_older(self, service, pro_sub):
        service.change_tier(pro_sub.academy, PlanTier.BASIC)
        service.change_tier(pro_sub.academy, PlanTier.FREE)

        pro_sub.refresh_from_db()
        assert pro_sub.pending_tier == PlanTier.FREE
        assert pro_sub.pending_monthly_amount == 0

    def test_trial_downgrade_is_immediate(self, service, academy):
        service.start_subscription(academy, PlanTier.PRO, trial=True)

        result = service.change_tier(academy, PlanTier.BASIC)

        assert result.effective_immediately
        assert Subscription.objects.get(academy=academy).tier == PlanTier.BASIC

    def test_cancel_scheduled_change(self, service, pro_sub):
        service.change_tier(pro_sub.academy, PlanTier.BASIC)

        assert service.cancel_scheduled_change(pro_sub.academy)
        assert not service.cancel_scheduled_change(pro_sub.academy)

        pro_sub.refresh_from_db()
        assert not pro_sub.has_pending_change
        assert pro_sub.changes.first().change_type == ChangeType.DOWNGRADE_ABANDONED


# ==============================================================================
# Cancellation and expiry
# ==============================================================================


@pytest.mark.django_db
class TestCancel:
    def test_keeps_access_until_period_end(self, service, basic_sub, now):
        service.cancel(basic_sub.academy, "Closing for summer", now=now)

        basic_sub.refresh_from_db()
        assert not basic_sub.auto_renew
        assert basic_sub.canceled_at == now
        assert basic_sub.status == SubscriptionStatus.ACTIVE
        assert basic_sub.tier == PlanTier.BASIC
        assert basic_sub.cancel_reason == "Closing for summer"

    def test_is_idempotent(self, service, basic_sub):
        service.cancel(basic_sub.academy)
        service.cancel(basic_sub.academy)

        assert basic_sub.changes.filter(change_type=ChangeType.CANCEL).count() == 1

    def test_free_ends_immediately(self, service):
        subscription = SubscriptionFactory()

        service.cancel(subscription.academy)

        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.CANCELED

    def test_expire_after_period_end(self, service, basic_sub, now):
        basic_sub.additional_students = 5
        basic_sub.save()
        service.cancel(basic_sub.academy, now=now)

        assert service.expire_canceled_subscriptions(now) == 0
        expired = service.expire_canceled_subscriptions(now + timedelta(days=21))

        basic_sub.refresh_from_db()
        assert expired == 1
        assert basic_sub.status == SubscriptionStatus.CANCELED
        assert basic_sub.tier == PlanTier.FREE
        assert basic_sub.total_user_limit == 22
        assert basic_sub.additional_students == 0
        assert basic_sub.monthly_amount == 0
        assert basic_sub.changes.first().change_type == ChangeType.EXPIRE


# ==============================================================================
# Sweeps
# ==============================================================================


@pytest.mark.django_db
class TestApplyDuePendingChanges:
    def test_applies_due_change(self, service, pro_sub, now):
        pro_sub.additional_students = 10
        pro_sub.save()
        service.change_tier(pro_sub.academy, PlanTier.BASIC, now=now)

        assert service.apply_due_pending_changes(now) == 0
        applied = service.apply_due_pending_changes(now + timedelta(days=21))

        pro_sub.refresh_from_db()
        assert applied == 1
        assert pro_sub.tier == PlanTier.BASIC
        assert pro_sub.additional_students == 10
        assert pro_sub.total_user_limit == 20
        assert pro_sub.monthly_amount == 50_000 + 2 * 10_000
        assert not pro_sub.has_pending_change

    def test_running_twice_applies_once(self, service, pro_sub, now):
        service.change_tier(pro_sub.academy, PlanTier.BASIC, now=now)
        later = now + timedelta(days=21)

        service.apply_due_pending_changes(later)
        service.apply_due_pending_changes(later)

        assert (
            pro_sub.changes.filter(change_type=ChangeType.DOWNGRADE_APPLIED).count()
            == 1
        )

    def test_abandons_change_that_no_longer_fits(self, service, pro_sub, now):
        service.change_tier(pro_sub.academy, PlanTier.BASIC, now=now)
        AcademyUsageFactory(academy=pro_sub.academy, student_count=40)

        applied = service.apply_due_pending_changes(now + timedelta(days=21))

        pro_sub.refresh_from_db()
        assert applied == 0
        assert pro_sub.tier == PlanTier.PRO
        assert not pro_sub.has_pending_change
        abandoned = pro_sub.changes.first()
        assert abandoned.change_type == ChangeType.DOWNGRADE_ABANDONED
        assert "users" in abandoned.notes

    def test_due_for_charge(self, service, basic_sub, now):
        SubscriptionFactory(next_billing_date=now - timedelta(days=1))

        later = now + timedelta(days=21)

        assert list(service.due_for_charge(now)) == []
        assert list(service.due_for_charge(later)) == [basic_sub]


# ==============================================================================
# Payment methods
# ==============================================================================


@pytest.mark.django_db
class TestPaymentMethod:
    def test_update(self, service, basic_sub, gateway):
        service.update_payment_method(basic_sub.academy, "pm_test_new")

        basic_sub.refresh_from_db()
        assert basic_sub.billing_key == "pm_test_new"
        assert basic_sub.billing_key_issued_at is not None
        gateway.update_stored_instrument.assert_called_once()
        assert basic_sub.changes.get().change_type == ChangeType.PAYMENT_METHOD

    def test_local_write_failure_needs_reconciliation(
        self,
        service,
        basic_sub,
        gateway,
    ):
        with (
            patch.object(Subscription, "save", side_effect=DatabaseError("disk full")),
            patch("classraum.billing.subscriptions.logger") as mock_logger,
            pytest.raises(BillingKeyReconciliationError),
        ):
            service.update_payment_method(basic_sub.academy, "pm_test_new")

        gateway.update_stored_instrument.assert_called_once()
        mock_logger.exception.assert_called_once()
        basic_sub.refresh_from_db()
        assert basic_sub.billing_key == "pm_test_123"

    def test_issuance_cancelled_changes_nothing(self, service, basic_sub, gateway):
        gateway.issue_billing_key.return_value = BillingKeyIssuance(
            outcome=IssuanceOutcome.USER_CANCELLED,
        )

        issuance = service.complete_billing_key_issuance(basic_sub.academy, {})

        assert issuance.is_user_cancelled
        gateway.update_stored_instrument.assert_not_called()
        basic_sub.refresh_from_db()
        assert basic_sub.billing_key == "pm_test_123"

    def test_issuance_stores_key(self, service, basic_sub, gateway):
        gateway.issue_billing_key.return_value = BillingKeyIssuance(
            outcome=IssuanceOutcome.ISSUED,
            billing_key="pm_test_issued",
        )

        service.complete_billing_key_issuance(
            basic_sub.academy,
            {"session_id": "cs_test_1"},
        )

        basic_sub.refresh_from_db()
        assert basic_sub.billing_key == "pm_test_issued"


# ==============================================================================
# Gateway confirmations and status
# ==============================================================================


@pytest.mark.django_db
class TestRecordCharge:
    def test_recurring_success_starts_next_period(self, service, basic_sub, now):
        basic_sub.status = SubscriptionStatus.PAST_DUE
        basic_sub.save()
        old_end = basic_sub.current_period_end

        service.record_charge_succeeded(
            basic_sub.pk,
            50_000,
            ChargeKind.RECURRING,
            now=now,
        )

        basic_sub.refresh_from_db()
        assert basic_sub.status == SubscriptionStatus.ACTIVE
        assert basic_sub.current_period_start == old_end
        assert basic_sub.current_period_end > old_end
        assert basic_sub.next_billing_date == basic_sub.current_period_end
        assert basic_sub.last_payment_date == now

    def test_upgrade_success_keeps_period(self, service, basic_sub):
        old_end = basic_sub.current_period_end

        service.record_charge_succeeded(basic_sub.pk, 66_667, ChargeKind.UPGRADE)

        basic_sub.refresh_from_db()
        assert basic_sub.current_period_end == old_end

    def test_failure_marks_past_due_and_keeps_limits(self, service, basic_sub):
        service.record_charge_failed(basic_sub.pk, 50_000)

        basic_sub.refresh_from_db()
        assert basic_sub.status == SubscriptionStatus.PAST_DUE
        assert basic_sub.total_user_limit == 10

    @pytest.mark.parametrize(
        "charge_kind",
        [ChargeKind.UPGRADE, ChargeKind.FIRST_PERIOD],
    )
    def test_non_renewal_failure_keeps_status(self, service, basic_sub, charge_kind):
        service.record_charge_failed(basic_sub.pk, 66_667, charge_kind)

        basic_sub.refresh_from_db()
        assert basic_sub.status == SubscriptionStatus.ACTIVE

    def test_unknown_subscription(self, service, db):
        assert service.record_charge_succeeded(999, 1, ChargeKind.RECURRING) is None
        assert service.record_charge_failed(999, 1) is None


@pytest.mark.django_db
class TestGetStatus:
    def test_reports_exceeded_limits(self, service, basic_sub, now):
        AcademyUsageFactory(
            academy=basic_sub.academy,
            student_count=11,
            classroom_count=2,
        )

        report = service.get_status(basic_sub.academy, now=now)

        assert report.exceeded_limits == ["users"]
        assert not report.is_valid
        assert report.days_remaining == 20

    def test_free_has_no_days_remaining(self, service):
        subscription = SubscriptionFactory(academy=AcademyFactory())

        report = service.get_status(subscription.academy)

        assert report.is_valid
        assert report.days_remaining is None
