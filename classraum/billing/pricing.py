"""
Add-on cost calculator and proration helpers.

Everything here is a pure function over integers: no database access, no
clock reads (callers pass ``now``), no gateway calls. The same inputs always
give the same quote, which is what lets the dashboard preview a purchase and
the server re-run the identical calculation before committing it.

Money is whole won. Fractions only arise in proration, which rounds half up
to the nearest won.

Usage:
    quote = compute_new_state(
        PlanTier.BASIC,
        AddOnState(),
        delta_users=5,
        delta_storage_gb=0,
        usage=snapshot,
    )
    quote.new_monthly_amount      # 60000
    quote.new_total_user_limit    # 15
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from decimal import ROUND_HALF_UP
from decimal import Decimal
from typing import TYPE_CHECKING

from django.utils import timezone

from classraum.billing import catalog
from classraum.billing.constants import MONTHS_PER_YEAR
from classraum.billing.constants import AddOnDimension
from classraum.billing.constants import BillingCycle
from classraum.billing.exceptions import BelowBasePlanError
from classraum.billing.exceptions import BelowUsageError
from classraum.billing.exceptions import InvalidIncrementError
from classraum.billing.exceptions import NoChangesSelectedError
from classraum.billing.exceptions import TierNotPurchasableError

if TYPE_CHECKING:
    from classraum.academies.usage import UsageSnapshot


@dataclass(frozen=True)
class AddOnState:
    """Capacity bought on top of the tier's base allowance."""

    additional_students: int = 0
    additional_teachers: int = 0
    additional_storage_gb: int = 0

    @property
    def additional_users(self) -> int:
        return self.additional_students + self.additional_teachers

    @property
    def is_empty(self) -> bool:
        return (
            self.additional_students == 0
            and self.additional_teachers == 0
            and self.additional_storage_gb == 0
        )

    def cost(self, tier: str) -> int:
        return compute_addon_cost(tier, self)


@dataclass(frozen=True)
class AddOnQuote:
    """The outcome of applying add-on deltas, before anything is saved."""

    tier: str
    addons: AddOnState
    new_total_user_limit: int
    new_storage_limit_gb: int
    addon_cost: int
    new_monthly_amount: int
    previous_monthly_amount: int
    previous_addons: AddOnState = field(default_factory=AddOnState)

    def as_dict(self) -> dict:
        return {
            "newMonthlyAmount": self.new_monthly_amount,
            "previousMonthlyAmount": self.previous_monthly_amount,
            "addonCost": self.addon_cost,
            "newLimits": {
                "totalUsers": self.new_total_user_limit,
                "storageGb": self.new_storage_limit_gb,
            },
            "addons": {
                "students": self.addons.additional_students,
                "teachers": self.addons.additional_teachers,
                "storageGb": self.addons.additional_storage_gb,
            },
        }


# =============================================================================
# Add-on cost
# =============================================================================


def _blocks(quantity: int, unit_size: int) -> int:
    # Legacy rows may hold partial blocks. Each started block is billed.
    return math.ceil(quantity / unit_size) if quantity > 0 else 0


def compute_addon_cost(tier: str, addons: AddOnState) -> int:
    """
    Monthly cost of the given add-on quantities on ``tier``.

    Tiers that sell no add-ons cost nothing extra.
    """
    if not catalog.is_purchasable(tier):
        return 0
    users = catalog.get_addon_increment(tier, AddOnDimension.USERS)
    storage = catalog.get_addon_increment(tier, AddOnDimension.STORAGE)
    user_cost = _blocks(addons.additional_users, users.unit_size) * users.unit_price
    storage_cost = (
        _blocks(addons.additional_storage_gb, storage.unit_size) * storage.unit_price
    )
    return user_cost + storage_cost


def compute_monthly_amount(tier: str, addons: AddOnState) -> int:
    """Base price plus add-ons. The stored ``monthly_amount`` must equal this."""
    return catalog.get_plan(tier).monthly_price + compute_addon_cost(tier, addons)


def cycle_charge_amount(tier: str, billing_cycle: str, addons: AddOnState) -> int:
    """
    Amount charged at each renewal.

    Yearly renewals use the discounted yearly base price. Add-ons have no
    yearly discount and are billed for twelve months.
    """
    if billing_cycle == BillingCycle.YEARLY:
        plan = catalog.get_plan(tier)
        return plan.yearly_price + MONTHS_PER_YEAR * compute_addon_cost(tier, addons)
    return compute_monthly_amount(tier, addons)


def base_limits(tier: str) -> tuple[int | None, int | None, int | None]:
    """(total users, storage GB, classrooms) included with the tier."""
    plan = catalog.get_plan(tier)
    return plan.total_users, plan.storage_gb, plan.classrooms


def limits_with_addons(
    tier: str,
    addons: AddOnState,
) -> tuple[int | None, int | None]:
    """Effective (total users, storage GB). ``None`` stays unlimited."""
    users, storage, _ = base_limits(tier)
    if users is not None:
        users += addons.additional_users
    if storage is not None:
        storage += addons.additional_storage_gb
    return users, storage


# =============================================================================
# Calculator
# =============================================================================


def _check_increment(tier: str, dimension: str, *deltas: int | None) -> None:
    unit_size = catalog.get_increment(tier, dimension)
    for delta in deltas:
        if delta is not None and delta % unit_size != 0:
            raise InvalidIncrementError(str(dimension), unit_size)


def compute_new_state(  # noqa: PLR0913
    tier: str,
    current_addons: AddOnState,
    delta_users: int,
    delta_storage_gb: int,
    usage: UsageSnapshot,
    *,
    delta_students: int | None = None,
    delta_teachers: int | None = None,
    enforce_increments: bool = True,
) -> AddOnQuote:
    """
    Apply add-on deltas to the current state and price the result.

    Negative deltas are reductions. When ``delta_students`` and
    ``delta_teachers`` are given they must add up to ``delta_users``; when
    they are omitted the whole user delta is booked as students.

    ``enforce_increments=False`` skips the block-size check. It is only used
    to remove every add-on at once, which must work for legacy rows holding
    partial blocks.

    Raises:
        TierNotPurchasableError: the tier sells no add-ons.
        NoChangesSelectedError: every delta is zero.
        InvalidIncrementError: a delta is not a whole number of blocks.
        BelowUsageError: new limits would not cover current usage.
        BelowBasePlanError: an add-on quantity would go negative.
    """
    if not catalog.is_purchasable(tier):
        raise TierNotPurchasableError(tier)

    if delta_students is None and delta_teachers is None:
        delta_students, delta_teachers = delta_users, 0
    else:
        delta_students = delta_students or 0
        delta_teachers = delta_teachers or 0
        if delta_students + delta_teachers != delta_users:
            msg = "delta_students + delta_teachers must equal delta_users"
            raise ValueError(msg)

    if delta_users == 0 and delta_students == 0 and delta_storage_gb == 0:
        raise NoChangesSelectedError

    if enforce_increments:
        _check_increment(
            tier,
            AddOnDimension.USERS,
            delta_users,
            delta_students,
            delta_teachers,
        )
        _check_increment(tier, AddOnDimension.STORAGE, delta_storage_gb)

    new_addons = AddOnState(
        additional_students=current_addons.additional_students + delta_students,
        additional_teachers=current_addons.additional_teachers + delta_teachers,
        additional_storage_gb=current_addons.additional_storage_gb + delta_storage_gb,
    )
    plan = catalog.get_plan(tier)
    new_user_limit = plan.total_users + new_addons.additional_users
    new_storage_limit = plan.storage_gb + new_addons.additional_storage_gb

    if new_user_limit < usage.total_users:
        raise BelowUsageError(
            f"{usage.total_users} students and teachers are enrolled, "
            f"more than the new limit of {new_user_limit}.",
            dimension=AddOnDimension.USERS,
            limit=new_user_limit,
            usage=usage.total_users,
        )
    if new_storage_limit < usage.current_storage_gb:
        raise BelowUsageError(
            f"{usage.current_storage_gb} GB of storage is in use, "
            f"more than the new limit of {new_storage_limit} GB.",
            dimension=AddOnDimension.STORAGE,
            limit=new_storage_limit,
            usage=usage.current_storage_gb,
        )

    if (
        new_addons.additional_students < 0
        or new_addons.additional_teachers < 0
        or new_addons.additional_storage_gb < 0
    ):
        raise BelowBasePlanError

    addon_cost = compute_addon_cost(tier, new_addons)
    return AddOnQuote(
        tier=tier,
        addons=new_addons,
        new_total_user_limit=new_user_limit,
        new_storage_limit_gb=new_storage_limit,
        addon_cost=addon_cost,
        new_monthly_amount=plan.monthly_price + addon_cost,
        previous_monthly_amount=compute_monthly_amount(tier, current_addons),
        previous_addons=current_addons,
    )


# =============================================================================
# Proration
# =============================================================================


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            value = timezone.localtime(value)
        return value.date()
    return value


def days_remaining(period_end: date | datetime, now: date | datetime) -> int:
    """Whole days left in the period, counting from the start of today."""
    return max(0, (_as_date(period_end) - _as_date(now)).days)


def total_days_in_period(start: date | datetime, end: date | datetime) -> int:
    """Length of the period in days, never less than one."""
    return max(1, (_as_date(end) - _as_date(start)).days)


def calculate_prorated_amount(
    current_price: int,
    new_price: int,
    days_remaining: int,
    total_days: int,
) -> int:
    """
    Charge for moving to a more expensive price partway through a period.

    ``(new - current) * days_remaining / total_days``, rounded half up to the
    nearest won. Zero when the price does not go up or no days are left.
    """
    if days_remaining <= 0 or new_price <= current_price:
        return 0
    amount = Decimal(new_price - current_price) * days_remaining / max(1, total_days)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def advance_period(start: datetime, billing_cycle: str) -> datetime:
    """
    End of a billing period that begins at ``start``.

    Monthly periods end on the same day of the next month, clamped to the
    month's last day (Jan 31 → Feb 28). Yearly periods clamp Feb 29 the same
    way.
    """
    months = MONTHS_PER_YEAR if billing_cycle == BillingCycle.YEARLY else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // MONTHS_PER_YEAR
    month = month_index % MONTHS_PER_YEAR + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)
