"""
Subscription service: every state change an academy's subscription goes
through.

This module owns the rules for:
- Starting (and restarting) a subscription, with or without a trial
- Buying and removing capacity add-ons
- Upgrades (immediate, prorated charge) and downgrades (scheduled for the
  end of the paid period)
- Turning off auto-renew, and expiring subscriptions whose period ran out
- Storing a new payment method
- Applying charge outcomes reported by the gateway

Key design decisions:
- Every mutation runs in ``transaction.atomic()`` with the academy's
  Subscription row locked by ``select_for_update()``. Requests, webhooks and
  sweeps for one academy are therefore applied one at a time.
- All validation happens before any write. When a gateway call is needed it
  happens before the local write too, so a decline or timeout leaves the row
  exactly as it was. If the gateway accepted and the local write then fails,
  that is logged at ERROR and raised as a reconciliation error.
- Add-on changes take effect immediately, reductions included, subject to
  the usage floor. Tier downgrades wait for the end of the period.
- Every change is audited in SubscriptionChange.

Usage:
    service = SubscriptionService()
    quote = service.apply_addons(academy, delta_students=5)
    result = service.change_tier(academy, PlanTier.PRO)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import DatabaseError
from django.db import transaction
from django.utils import timezone

from classraum.academies.usage import UsageSnapshotProvider
from classraum.billing import catalog
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
from classraum.billing.exceptions import PaymentMethodRequiredError
from classraum.billing.exceptions import SubscriptionNotFoundError
from classraum.billing.exceptions import SubscriptionStateError
from classraum.billing.gateway import IssuanceOutcome
from classraum.billing.gateway import StripeBillingGateway
from classraum.billing.models import Subscription
from classraum.billing.models import SubscriptionChange
from classraum.billing.pricing import AddOnQuote
from classraum.billing.pricing import AddOnState
from classraum.billing.pricing import advance_period
from classraum.billing.pricing import calculate_prorated_amount
from classraum.billing.pricing import compute_monthly_amount
from classraum.billing.pricing import compute_new_state
from classraum.billing.pricing import cycle_charge_amount
from classraum.billing.pricing import days_remaining
from classraum.billing.pricing import limits_with_addons
from classraum.billing.pricing import total_days_in_period

if TYPE_CHECKING:
    from datetime import datetime

    from classraum.academies.models import Academy
    from classraum.academies.usage import UsageSnapshot
    from classraum.billing.gateway import BillingKeyIssuance
    from classraum.billing.gateway import GatewayAck

logger = logging.getLogger(__name__)

ADDON_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
TIER_CHANGE_STATUSES = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
}


@dataclass
class PlanChangeResult:
    """Result of a tier change."""

    change_type: str
    old_tier: str
    new_tier: str
    effective_immediately: bool
    monthly_amount: int
    scheduled_at: datetime | None = None
    proration_amount: int = 0
    message: str = ""

    def as_dict(self) -> dict:
        return {
            "changeType": self.change_type,
            "oldTier": self.old_tier,
            "newTier": self.new_tier,
            "effectiveImmediately": self.effective_immediately,
            "monthlyAmount": self.monthly_amount,
            "scheduledAt": self.scheduled_at,
            "prorationAmount": self.proration_amount,
            "message": self.message,
        }


@dataclass
class SubscriptionStatusReport:
    """A subscription, current usage and which limits usage exceeds."""

    subscription: Subscription
    usage: UsageSnapshot
    exceeded_limits: list[str] = field(default_factory=list)
    days_remaining: int | None = None

    @property
    def is_valid(self) -> bool:
        return not self.exceeded_limits


def carried_addons(addons: AddOnState, tier: str) -> AddOnState:
    """Add-ons that survive a move to ``tier``. Tiers without add-ons drop them."""
    if catalog.is_purchasable(tier):
        return addons
    return AddOnState()


def exceeded_limits(
    usage: UsageSnapshot,
    total_users: int | None,
    storage_gb: int | None,
    classrooms: int | None,
) -> list[str]:
    """Names of the limits that current usage is over. ``None`` never is."""
    exceeded = []
    if total_users is not None and usage.total_users > total_users:
        exceeded.append("users")
    if storage_gb is not None and usage.current_storage_gb > storage_gb:
        exceeded.append("storage")
    if classrooms is not None and usage.current_classroom_count > classrooms:
        exceeded.append("classrooms")
    return exceeded


class SubscriptionService:
    """
    Service for subscription state changes.

    The gateway and usage provider can be swapped, which is how tests run
    without Stripe.
    """

    def __init__(self, gateway=None, usage_provider=None):
        self.gateway = gateway or StripeBillingGateway()
        self.usage_provider = usage_provider or UsageSnapshotProvider()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _lock(self, academy: Academy) -> Subscription:
        """Lock and return the academy's subscription. Call inside atomic()."""
        try:
            return Subscription.objects.select_for_update().get(academy=academy)
        except Subscription.DoesNotExist:
            raise SubscriptionNotFoundError from None

    def _get(self, academy: Academy) -> Subscription:
        try:
            return Subscription.objects.select_related("academy").get(
                academy=academy,
            )
        except Subscription.DoesNotExist:
            raise SubscriptionNotFoundError from None

    def _audit(
        self,
        subscription: Subscription,
        change_type: str,
        *,
        old_tier: str,
        old_monthly_amount: int | None,
        **kwargs,
    ) -> SubscriptionChange:
        return SubscriptionChange.objects.create(
            subscription=subscription,
            change_type=change_type,
            old_tier=old_tier,
            new_tier=kwargs.pop("new_tier", subscription.tier),
            old_monthly_amount=old_monthly_amount,
            new_monthly_amount=kwargs.pop(
                "new_monthly_amount",
                subscription.monthly_amount,
            ),
            **kwargs,
        )

    def _apply_tier(
        self,
        subscription: Subscription,
        tier: str,
        addons: AddOnState,
    ) -> None:
        """Swap tier, add-ons, limits and amount in memory. Caller saves."""
        users, storage = limits_with_addons(tier, addons)
        subscription.tier = tier
        subscription.set_addons(addons)
        subscription.total_user_limit = users
        subscription.storage_limit_gb = storage
        subscription.classroom_limit = catalog.get_plan(tier).classrooms
        subscription.monthly_amount = compute_monthly_amount(tier, addons)
        subscription.clear_pending_change()
        if tier == PlanTier.FREE:
            # Free has no billing period and nothing to renew.
            if subscription.status != SubscriptionStatus.CANCELED:
                subscription.status = SubscriptionStatus.ACTIVE
            subscription.trial_ends_at = None
            subscription.current_period_start = None
            subscription.current_period_end = None
            subscription.next_billing_date = None

    def _check_fits(
        self,
        tier: str,
        addons: AddOnState,
        usage: UsageSnapshot,
    ) -> None:
        """Raise BelowUsageError if ``tier`` + ``addons`` cannot hold ``usage``."""
        users, storage = limits_with_addons(tier, addons)
        classrooms = catalog.get_plan(tier).classrooms
        exceeded = exceeded_limits(usage, users, storage, classrooms)
        if not exceeded:
            return
        dimension = exceeded[0]
        limit, used = {
            "users": (users, usage.total_users),
            "storage": (storage, usage.current_storage_gb),
            "classrooms": (classrooms, usage.current_classroom_count),
        }[dimension]
        plan = catalog.get_plan(tier)
        raise BelowUsageError(
            f"The {plan.name} plan allows {limit} {dimension} but "
            f"{used} are in use.",
            dimension=dimension,
            limit=limit,
            usage=used,
        )

    def _expire(self, subscription: Subscription, now: datetime) -> None:
        old_tier = subscription.tier
        old_amount = subscription.monthly_amount
        subscription.status = SubscriptionStatus.CANCELED
        subscription.auto_renew = False
        subscription.canceled_at = subscription.canceled_at or now
        self._apply_tier(subscription, PlanTier.FREE, AddOnState())
        subscription.monthly_amount = 0
        subscription.save()
        self._audit(
            subscription,
            ChangeType.EXPIRE,
            old_tier=old_tier,
            old_monthly_amount=old_amount,
        )

    def _charged_but_not_saved(
        self,
        subscription: Subscription,
        ack: GatewayAck,
        exc: DatabaseError,
    ):
        logger.exception(
            "Charge %s succeeded for academy %s (customer %s) but saving the "
            "change failed; needs reconciliation",
            ack.reference,
            subscription.academy_id,
            subscription.gateway_customer_id,
        )
        raise ChargeReconciliationError(ack.reference) from exc

    # -------------------------------------------------------------------------
    # Starting a subscription
    # -------------------------------------------------------------------------

    def start_subscription(
        self,
        academy: Academy,
        tier: str,
        billing_cycle: str = BillingCycle.MONTHLY,
        *,
        trial: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Create the academy's subscription, or restart a canceled one.

        Free subscriptions have no billing period. Paid subscriptions either
        start a trial, or are charged for the first period up front, which
        needs a billing key left on a restarted row.

        Raises:
            InvalidPlanChangeError: Enterprise (contact sales).
            SubscriptionStateError: a live subscription already exists.
            PaymentMethodRequiredError: paid, no trial, no billing key.
            GatewayError: the first charge failed.
        """
        now = now or timezone.now()
        plan = catalog.get_plan(tier)
        if tier == PlanTier.ENTERPRISE:
            msg = "Contact sales for Enterprise"
            raise InvalidPlanChangeError(msg)

        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(academy=academy)
                .first()
            )
            if subscription is not None and not subscription.is_canceled:
                msg = "This academy already has a subscription."
                raise SubscriptionStateError(msg)
            if subscription is None:
                subscription = Subscription(academy=academy)

            is_paid = plan.monthly_price > 0
            starts_trial = trial and is_paid
            first_charge = 0
            if is_paid and not starts_trial:
                first_charge = cycle_charge_amount(tier, billing_cycle, AddOnState())
                if not subscription.billing_key:
                    raise PaymentMethodRequiredError

            old_tier = subscription.tier
            old_amount = subscription.monthly_amount if subscription.pk else None

            subscription.billing_cycle = billing_cycle
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.auto_renew = True
            subscription.canceled_at = None
            subscription.cancel_reason = ""
            self._apply_tier(subscription, tier, AddOnState())

            ack = None
            if first_charge:
                # Charged before the row is saved. A decline leaves nothing behind.
                ack = self.gateway.charge(
                    subscription,
                    first_charge,
                    charge_kind=ChargeKind.FIRST_PERIOD,
                    idempotency_key=(
                        f"start:{academy.pk}:{tier}:{billing_cycle}:"
                        f"{subscription.billing_key}:{now.date().isoformat()}"
                    ),
                )
                subscription.last_payment_date = now

            if starts_trial:
                subscription.status = SubscriptionStatus.TRIALING
                subscription.trial_ends_at = now + timedelta(days=TRIAL_DURATION_DAYS)
                subscription.current_period_start = now
                subscription.current_period_end = subscription.trial_ends_at
                subscription.next_billing_date = subscription.trial_ends_at
            elif is_paid:
                subscription.trial_ends_at = None
                subscription.current_period_start = now
                subscription.current_period_end = advance_period(now, billing_cycle)
                subscription.next_billing_date = subscription.current_period_end

            try:
                with transaction.atomic():
                    subscription.save()
                    self._audit(
                        subscription,
                        ChangeType.UPGRADE,
                        old_tier=old_tier,
                        old_monthly_amount=old_amount,
                        proration_amount=first_charge or None,
                        notes="Subscription started"
                        + (" (trial)" if starts_trial else ""),
                    )
            except DatabaseError as exc:
                if ack is None:
                    raise
                self._charged_but_not_saved(subscription, ack, exc)

        logger.info(
            "Started %s subscription for academy %s (status=%s)",
            tier,
            academy.pk,
            subscription.status,
        )
        return subscription

    # -------------------------------------------------------------------------
    # Add-ons
    # -------------------------------------------------------------------------

    def preview_addons(
        self,
        academy: Academy,
        *,
        delta_students: int = 0,
        delta_teachers: int = 0,
        delta_storage_gb: int = 0,
    ) -> AddOnQuote:
        """Price an add-on change against current usage without saving it."""
        subscription = self._get(academy)
        usage = self.usage_provider.get_usage(academy)
        return compute_new_state(
            subscription.tier,
            subscription.addons,
            delta_students + delta_teachers,
            delta_storage_gb,
            usage,
            delta_students=delta_students,
            delta_teachers=delta_teachers,
        )

    def apply_addons(
        self,
        academy: Academy,
        *,
        delta_students: int = 0,
        delta_teachers: int = 0,
        delta_storage_gb: int = 0,
    ) -> AddOnQuote:
        """
        Buy or remove add-on capacity. Takes effect immediately.

        Raises:
            SubscriptionStateError: not active or trialing.
            AddOnValidationError: see pricing.compute_new_state.
        """
        with transaction.atomic():
            subscription = self._lock(academy)
            return self._apply_addon_deltas(
                subscription,
                delta_students=delta_students,
                delta_teachers=delta_teachers,
                delta_storage_gb=delta_storage_gb,
            )

    def cancel_addons(self, academy: Academy) -> AddOnQuote:
        """
        Remove every add-on. The usage floor still applies.

        Raises:
            NoChangesSelectedError: there are no add-ons to remove.
            BelowUsageError: usage needs the add-on capacity.
        """
        with transaction.atomic():
            subscription = self._lock(academy)
            current = subscription.addons
            return self._apply_addon_deltas(
                subscription,
                delta_students=-current.additional_students,
                delta_teachers=-current.additional_teachers,
                delta_storage_gb=-current.additional_storage_gb,
                enforce_increments=False,
            )

    def _apply_addon_deltas(
        self,
        subscription: Subscription,
        *,
        delta_students: int,
        delta_teachers: int,
        delta_storage_gb: int,
        enforce_increments: bool = True,
    ) -> AddOnQuote:
        if subscription.status not in ADDON_STATUSES:
            msg = (
                "Add-ons cannot be changed while the subscription is "
                f"{subscription.status}."
            )
            raise SubscriptionStateError(msg)

        usage = self.usage_provider.get_usage_for_update(subscription.academy)
        quote = compute_new_state(
            subscription.tier,
            subscription.addons,
            delta_students + delta_teachers,
            delta_storage_gb,
            usage,
            delta_students=delta_students,
            delta_teachers=delta_teachers,
            enforce_increments=enforce_increments,
        )

        old_amount = subscription.monthly_amount
        subscription.set_addons(quote.addons)
        subscription.total_user_limit = quote.new_total_user_limit
        subscription.storage_limit_gb = quote.new_storage_limit_gb
        subscription.monthly_amount = quote.new_monthly_amount
        if subscription.has_pending_change:
            # The scheduled tier inherits the new add-ons.
            subscription.pending_monthly_amount = compute_monthly_amount(
                subscription.pending_tier,
                carried_addons(quote.addons, subscription.pending_tier),
            )
        subscription.save()
        self._audit(
            subscription,
            ChangeType.ADDON,
            old_tier=subscription.tier,
            old_monthly_amount=old_amount,
            notes=(
                f"students {delta_students:+d}, teachers {delta_teachers:+d}, "
                f"storage {delta_storage_gb:+d} GB"
            ),
        )
        logger.info(
            "Add-ons changed for subscription %s: amount %s -> %s",
            subscription.pk,
            old_amount,
            quote.new_monthly_amount,
        )
        return quote

    # -------------------------------------------------------------------------
    # Tier changes
    # -------------------------------------------------------------------------

    def change_tier(
        self,
        academy: Academy,
        new_tier: str,
        *,
        now: datetime | None = None,
    ) -> PlanChangeResult:
        """
        Move to another tier.

        Upgrades apply now and charge the prorated difference for the rest of
        the period. Downgrades are checked against current usage and then
        scheduled for the end of the period.

        Raises:
            InvalidPlanChangeError: same tier, or Enterprise.
            SubscriptionStateError: canceled.
            BelowUsageError: a downgrade target cannot hold current usage.
            PaymentMethodRequiredError: an upgrade needs a charge and there
                is no billing key.
            GatewayError: the upgrade charge failed.
        """
        now = now or timezone.now()
        catalog.get_plan(new_tier)

        with transaction.atomic():
            subscription = self._lock(academy)
            if subscription.tier == new_tier:
                msg = "Already on this plan"
                raise InvalidPlanChangeError(msg)
            if new_tier == PlanTier.ENTERPRISE:
                msg = "Contact sales for Enterprise"
                raise InvalidPlanChangeError(msg)
            if subscription.status not in TIER_CHANGE_STATUSES:
                msg = f"Cannot change plan while {subscription.status}"
                raise SubscriptionStateError(msg)

            if catalog.is_upgrade(subscription.tier, new_tier):
                return self._upgrade(subscription, new_tier, now)
            return self._downgrade(subscription, new_tier, now)

    def _upgrade(
        self,
        subscription: Subscription,
        new_tier: str,
        now: datetime,
    ) -> PlanChangeResult:
        old_tier = subscription.tier
        old_amount = subscription.monthly_amount
        addons = carried_addons(subscription.addons, new_tier)
        cycle = subscription.billing_cycle
        starts_new_period = (
            subscription.status != SubscriptionStatus.TRIALING
            and (old_tier == PlanTier.FREE or subscription.current_period_end is None)
        )

        if subscription.status == SubscriptionStatus.TRIALING:
            charge = 0
        elif starts_new_period:
            charge = cycle_charge_amount(new_tier, cycle, addons)
        else:
            charge = calculate_prorated_amount(
                cycle_charge_amount(old_tier, cycle, subscription.addons),
                cycle_charge_amount(new_tier, cycle, addons),
                days_remaining(subscription.current_period_end, now),
                total_days_in_period(
                    subscription.current_period_start or now,
                    subscription.current_period_end,
                ),
            )

        ack = None
        if charge > 0:
            if not subscription.billing_key:
                raise PaymentMethodRequiredError
            # The billing key is part of the idempotency key so that retrying
            # with a new card after a decline is a new charge.
            ack = self.gateway.charge(
                subscription,
                charge,
                charge_kind=ChargeKind.UPGRADE,
                idempotency_key=(
                    f"upgrade:{subscription.pk}:{old_tier}:{new_tier}:"
                    f"{subscription.billing_key}:"
                    f"{(subscription.current_period_end or now).date().isoformat()}"
                ),
            )
            subscription.last_payment_date = now

        self._apply_tier(subscription, new_tier, addons)
        if starts_new_period:
            subscription.current_period_start = now
            subscription.current_period_end = advance_period(now, cycle)
            subscription.next_billing_date = subscription.current_period_end
        try:
            with transaction.atomic():
                subscription.save()
                self._audit(
                    subscription,
                    ChangeType.UPGRADE,
                    old_tier=old_tier,
                    old_monthly_amount=old_amount,
                    effective_immediately=True,
                    proration_amount=charge or None,
                )
        except DatabaseError as exc:
            if ack is None:
                raise
            self._charged_but_not_saved(subscription, ack, exc)

        logger.info(
            "Upgraded subscription %s from %s to %s (charged %s)",
            subscription.pk,
            old_tier,
            new_tier,
            charge,
        )
        return PlanChangeResult(
            change_type=ChangeType.UPGRADE,
            old_tier=old_tier,
            new_tier=new_tier,
            effective_immediately=True,
            monthly_amount=subscription.monthly_amount,
            proration_amount=charge,
            message="Upgrade takes effect immediately.",
        )

    def _downgrade(
        self,
        subscription: Subscription,
        new_tier: str,
        now: datetime,
    ) -> PlanChangeResult:
        old_tier = subscription.tier
        old_amount = subscription.monthly_amount
        addons = carried_addons(subscription.addons, new_tier)
        usage = self.usage_provider.get_usage_for_update(subscription.academy)
        self._check_fits(new_tier, addons, usage)
        new_amount = compute_monthly_amount(new_tier, addons)

        immediate = (
            subscription.status == SubscriptionStatus.TRIALING
            or subscription.current_period_end is None
        )
        if immediate:
            self._apply_tier(subscription, new_tier, addons)
            subscription.save()
            self._audit(
                subscription,
                ChangeType.DOWNGRADE_APPLIED,
                old_tier=old_tier,
                old_monthly_amount=old_amount,
                effective_immediately=True,
            )
            logger.info(
                "Downgraded subscription %s from %s to %s immediately",
                subscription.pk,
                old_tier,
                new_tier,
            )
            return PlanChangeResult(
                change_type=ChangeType.DOWNGRADE_APPLIED,
                old_tier=old_tier,
                new_tier=new_tier,
                effective_immediately=True,
                monthly_amount=subscription.monthly_amount,
                message="Downgrade takes effect immediately.",
            )

        effective = subscription.current_period_end
        # A newer downgrade replaces any older one.
        subscription.schedule_pending_change(new_tier, new_amount, effective)
        subscription.save()
        self._audit(
            subscription,
            ChangeType.DOWNGRADE,
            old_tier=old_tier,
            old_monthly_amount=old_amount,
            new_tier=new_tier,
            new_monthly_amount=new_amount,
            effective_immediately=False,
            scheduled_at=effective,
        )
        logger.info(
            "Scheduled downgrade of subscription %s from %s to %s at %s",
            subscription.pk,
            old_tier,
            new_tier,
            effective,
        )
        return PlanChangeResult(
            change_type=ChangeType.DOWNGRADE,
            old_tier=old_tier,
            new_tier=new_tier,
            effective_immediately=False,
            monthly_amount=subscription.monthly_amount,
            scheduled_at=effective,
            message=(
                "Downgrade scheduled for the end of the billing period. "
                "You'll keep your current plan until then."
            ),
        )

    def cancel_scheduled_change(self, academy: Academy) -> bool:
        """Drop a scheduled downgrade. Returns False if nothing was pending."""
        with transaction.atomic():
            subscription = self._lock(academy)
            if not subscription.has_pending_change:
                return False
            pending_tier = subscription.pending_tier
            subscription.clear_pending_change()
            subscription.save()
            self._audit(
                subscription,
                ChangeType.DOWNGRADE_ABANDONED,
                old_tier=subscription.tier,
                old_monthly_amount=subscription.monthly_amount,
                new_tier=pending_tier,
                effective_immediately=False,
                notes="Canceled by manager",
            )
        logger.info("Canceled scheduled change for subscription %s", subscription.pk)
        return True

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(
        self,
        academy: Academy,
        reason: str = "",
        *,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Turn off auto-renew. Access continues until the period ends.

        A subscription with no paid period (Free) ends right away. Calling
        this again does nothing.
        """
        now = now or timezone.now()
        with transaction.atomic():
            subscription = self._lock(academy)
            if subscription.is_canceled or not subscription.auto_renew:
                return subscription

            if subscription.current_period_end is None:
                subscription.cancel_reason = reason
                self._expire(subscription, now)
                logger.info("Subscription %s canceled immediately", subscription.pk)
                return subscription

            subscription.auto_renew = False
            subscription.canceled_at = now
            subscription.cancel_reason = reason
            subscription.save()
            self._audit(
                subscription,
                ChangeType.CANCEL,
                old_tier=subscription.tier,
                old_monthly_amount=subscription.monthly_amount,
                effective_immediately=False,
                scheduled_at=subscription.current_period_end,
                notes=reason,
            )
        logger.info(
            "Auto-renew turned off for subscription %s, ends %s",
            subscription.pk,
            subscription.current_period_end,
        )
        return subscription

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    def start_billing_key_issuance(
        self,
        academy: Academy,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Return the hosted page URL where the manager registers a card."""
        subscription = self._get(academy)
        return self.gateway.start_billing_key_issuance(
            subscription,
            success_url,
            cancel_url,
        )

    def complete_billing_key_issuance(
        self,
        academy: Academy,
        response: dict | None,
        *,
        now: datetime | None = None,
    ) -> BillingKeyIssuance:
        """
        Store the key the hosted flow issued.

        User cancellation and gateway failures are returned as outcomes and
        change nothing.
        """
        issuance = self.gateway.issue_billing_key(response)
        if issuance.outcome == IssuanceOutcome.ISSUED:
            self.update_payment_method(academy, issuance.billing_key, now=now)
        elif issuance.outcome == IssuanceOutcome.FAILED:
            logger.warning(
                "Billing key issuance failed for academy %s: %s %s",
                academy.pk,
                issuance.code,
                issuance.message,
            )
        return issuance

    def update_payment_method(
        self,
        academy: Academy,
        billing_key: str,
        *,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Replace the stored payment instrument.

        The gateway is updated first. If it accepts the key but the local
        write then fails, the two disagree: that is logged at ERROR and
        raised as BillingKeyReconciliationError.
        """
        now = now or timezone.now()
        with transaction.atomic():
            subscription = self._lock(academy)
            self.gateway.update_stored_instrument(subscription, billing_key)
            try:
                with transaction.atomic():
                    subscription.billing_key = billing_key
                    subscription.billing_key_issued_at = now
                    subscription.save(
                        update_fields=[
                            "billing_key",
                            "billing_key_issued_at",
                            "modified",
                        ],
                    )
                    self._audit(
                        subscription,
                        ChangeType.PAYMENT_METHOD,
                        old_tier=subscription.tier,
                        old_monthly_amount=subscription.monthly_amount,
                    )
            except DatabaseError as exc:
                logger.exception(
                    "Gateway accepted billing key for subscription %s "
                    "(customer %s) but saving it failed; needs reconciliation",
                    subscription.pk,
                    subscription.gateway_customer_id,
                )
                raise BillingKeyReconciliationError from exc

        logger.info("Payment method updated for subscription %s", subscription.pk)
        return subscription

    # -------------------------------------------------------------------------
    # Gateway confirmations
    # -------------------------------------------------------------------------

    def record_charge_succeeded(
        self,
        subscription_id: int,
        amount: int | None,
        charge_kind: str,
        now: datetime | None = None,
    ) -> Subscription | None:
        """
        Apply a successful charge reported by the gateway.

        Past-due and trialing subscriptions become active. A recurring charge
        also starts the next period.
        """
        now = now or timezone.now()
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(pk=subscription_id)
                .first()
            )
            if subscription is None:
                logger.warning(
                    "Charge succeeded for unknown subscription %s",
                    subscription_id,
                )
                return None
            if subscription.is_canceled:
                logger.info(
                    "Charge of %s succeeded for canceled subscription %s",
                    amount,
                    subscription_id,
                )
                return subscription

            old_status = subscription.status
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.last_payment_date = now
            if charge_kind == ChargeKind.RECURRING:
                start = subscription.current_period_end or now
                subscription.current_period_start = start
                subscription.current_period_end = advance_period(
                    start,
                    subscription.billing_cycle,
                )
                subscription.next_billing_date = subscription.current_period_end
                subscription.trial_ends_at = None
            subscription.save()

        logger.info(
            "Charge of %s succeeded for subscription %s (%s, %s -> %s)",
            amount,
            subscription_id,
            charge_kind,
            old_status,
            subscription.status,
        )
        return subscription

    def record_charge_failed(
        self,
        subscription_id: int,
        amount: int | None,
        charge_kind: str = ChargeKind.RECURRING,
    ) -> Subscription | None:
        """
        Apply a failed charge reported by the gateway.

        Only a failed renewal flags the subscription past due, and limits
        already granted are kept. An upgrade or first-period charge that fails
        was already refused to the caller before anything was written, so the
        row stays as it is.
        """
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(pk=subscription_id)
                .first()
            )
            if subscription is None:
                logger.warning(
                    "Charge failed for unknown subscription %s",
                    subscription_id,
                )
                return None
            if subscription.is_canceled:
                logger.info(
                    "Charge of %s failed for canceled subscription %s",
                    amount,
                    subscription_id,
                )
                return subscription
            if charge_kind != ChargeKind.RECURRING:
                logger.warning(
                    "%s charge of %s failed for subscription %s; left %s",
                    charge_kind,
                    amount,
                    subscription_id,
                    subscription.status,
                )
                return subscription

            if subscription.status != SubscriptionStatus.PAST_DUE:
                subscription.status = SubscriptionStatus.PAST_DUE
                subscription.save(update_fields=["status", "modified"])

        logger.warning(
            "Charge of %s failed for subscription %s; marked past due",
            amount,
            subscription_id,
        )
        return subscription

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    def pending_changes_due(self, now: datetime):
        return Subscription.objects.filter(
            pending_change_effective_date__lte=now,
        ).exclude(pending_tier="")

    def apply_due_pending_changes(self, now: datetime | None = None) -> int:
        """
        Apply scheduled downgrades whose date has passed.

        Each row is re-read under lock, so running this twice, or alongside a
        manager's request, applies each change once. A change that no longer
        fits current usage is abandoned rather than applied.

        Returns the number of changes applied.
        """
        now = now or timezone.now()
        applied = 0
        for pk in list(self.pending_changes_due(now).values_list("pk", flat=True)):
            with transaction.atomic():
                subscription = (
                    self.pending_changes_due(now)
                    .select_for_update()
                    .filter(pk=pk)
                    .first()
                )
                if subscription is None:
                    continue
                if self._apply_pending_change(subscription):
                    applied += 1
        return applied

    def _apply_pending_change(self, subscription: Subscription) -> bool:
        old_tier = subscription.tier
        old_amount = subscription.monthly_amount
        new_tier = subscription.pending_tier
        addons = carried_addons(subscription.addons, new_tier)
        usage = self.usage_provider.get_usage_for_update(subscription.academy)

        reason = ""
        if subscription.is_canceled:
            reason = "subscription is canceled"
        else:
            try:
                self._check_fits(new_tier, addons, usage)
            except BelowUsageError as exc:
                reason = exc.detail

        if reason:
            subscription.clear_pending_change()
            subscription.save()
            self._audit(
                subscription,
                ChangeType.DOWNGRADE_ABANDONED,
                old_tier=old_tier,
                old_monthly_amount=old_amount,
                new_tier=new_tier,
                effective_immediately=False,
                notes=reason,
            )
            logger.warning(
                "Abandoned downgrade of subscription %s to %s: %s",
                subscription.pk,
                new_tier,
                reason,
            )
            return False

        self._apply_tier(subscription, new_tier, addons)
        subscription.save()
        self._audit(
            subscription,
            ChangeType.DOWNGRADE_APPLIED,
            old_tier=old_tier,
            old_monthly_amount=old_amount,
            effective_immediately=True,
        )
        logger.info(
            "Applied scheduled downgrade of subscription %s from %s to %s",
            subscription.pk,
            old_tier,
            new_tier,
        )
        return True

    def expirable(self, now: datetime):
        return Subscription.objects.filter(
            auto_renew=False,
            current_period_end__lte=now,
        ).exclude(status=SubscriptionStatus.CANCELED)

    def expire_canceled_subscriptions(self, now: datetime | None = None) -> int:
        """
        End subscriptions whose auto-renew is off and whose period is over.

        They drop to Free limits with no add-ons. Returns the number expired.
        """
        now = now or timezone.now()
        expired = 0
        for pk in list(self.expirable(now).values_list("pk", flat=True)):
            with transaction.atomic():
                subscription = (
                    self.expirable(now).select_for_update().filter(pk=pk).first()
                )
                if subscription is None:
                    continue
                self._expire(subscription, now)
                expired += 1
            logger.info("Expired subscription %s", pk)
        return expired

    def due_for_charge(self, now: datetime | None = None):
        """Subscriptions whose renewal charge is due. Free and Enterprise never are."""
        now = now or timezone.now()
        return Subscription.objects.filter(
            status__in=[SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING],
            auto_renew=True,
            next_billing_date__lte=now,
        ).exclude(tier__in=[PlanTier.FREE, PlanTier.ENTERPRISE])

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_status(
        self,
        academy: Academy,
        now: datetime | None = None,
    ) -> SubscriptionStatusReport:
        now = now or timezone.now()
        subscription = self._get(academy)
        usage = self.usage_provider.get_usage(academy)
        remaining = (
            days_remaining(subscription.current_period_end, now)
            if subscription.current_period_end
            else None
        )
        return SubscriptionStatusReport(
            subscription=subscription,
            usage=usage,
            exceeded_limits=exceeded_limits(
                usage,
                subscription.total_user_limit,
                subscription.storage_limit_gb,
                subscription.classroom_limit,
            ),
            days_remaining=remaining,
        )

    def get_addons(self, academy: Academy) -> dict:
        subscription = self._get(academy)
        addons = subscription.addons
        pending = None
        if subscription.has_pending_change:
            pending = {
                "tier": subscription.pending_tier,
                "monthlyAmount": subscription.pending_monthly_amount,
                "effectiveDate": subscription.pending_change_effective_date,
            }
        return {
            "current": {
                "students": addons.additional_students,
                "teachers": addons.additional_teachers,
                "storageGb": addons.additional_storage_gb,
                "cost": addons.cost(subscription.tier),
            },
            "pending": pending,
        }
