"""
Plan catalog and add-on pricing.

The catalog is static reference data: what each tier costs and how much it
includes. Add-ons are sold per tier in fixed blocks, and higher tiers sell
larger blocks at a lower unit cost.

Limits of ``None`` mean unlimited (Enterprise). Prices are whole won.

Usage:
    plan = get_plan(PlanTier.BASIC)
    plan.monthly_price             # 50000

    if is_purchasable(tier):
        get_increment(tier, AddOnDimension.USERS)   # 5
        unit_price(tier, AddOnDimension.USERS)      # 10000

The catalog is validated by a system check at startup (see checks.py), so an
unknown tier or dimension reaching these functions at runtime is a
configuration error, not a user error.
"""

from __future__ import annotations

from dataclasses import dataclass

from classraum.billing.constants import TIER_ORDER
from classraum.billing.constants import AddOnDimension
from classraum.billing.constants import PlanTier
from classraum.billing.exceptions import CatalogConfigurationError
from classraum.billing.exceptions import TierNotPurchasableError


@dataclass(frozen=True)
class PlanDefinition:
    tier: str
    name: str
    monthly_price: int
    yearly_price: int
    total_users: int | None
    storage_gb: int | None
    classrooms: int | None
    description: str = ""

    @property
    def is_unlimited(self) -> bool:
        return self.total_users is None


@dataclass(frozen=True)
class AddOnIncrement:
    """One purchasable block of capacity."""

    unit_size: int
    unit_price: int


PLANS: dict[str, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        name="Free",
        monthly_price=0,
        yearly_price=0,
        total_users=22,
        storage_gb=1,
        classrooms=3,
        description="For small tutoring groups getting started.",
    ),
    PlanTier.BASIC: PlanDefinition(
        tier=PlanTier.BASIC,
        name="Basic",
        monthly_price=50_000,
        yearly_price=500_000,
        total_users=10,
        storage_gb=10,
        classrooms=15,
        description="For single-location academies.",
    ),
    PlanTier.PRO: PlanDefinition(
        tier=PlanTier.PRO,
        name="Pro",
        monthly_price=150_000,
        yearly_price=1_500_000,
        total_users=550,
        storage_gb=50,
        classrooms=50,
        description="For growing academies with several teachers.",
    ),
    PlanTier.ENTERPRISE: PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        # Custom pricing, contact sales.
        monthly_price=0,
        yearly_price=0,
        total_users=None,
        storage_gb=None,
        classrooms=None,
        description="Custom limits and pricing for academy networks.",
    ),
}

ADDON_PRICING: dict[str, dict[str, AddOnIncrement]] = {
    PlanTier.BASIC: {
        AddOnDimension.USERS: AddOnIncrement(unit_size=5, unit_price=10_000),
        AddOnDimension.STORAGE: AddOnIncrement(unit_size=5, unit_price=12_000),
    },
    PlanTier.PRO: {
        AddOnDimension.USERS: AddOnIncrement(unit_size=10, unit_price=25_000),
        AddOnDimension.STORAGE: AddOnIncrement(unit_size=10, unit_price=15_000),
    },
}


def get_plan(tier: str) -> PlanDefinition:
    try:
        return PLANS[tier]
    except KeyError:
        msg = f"Unknown plan tier {tier!r}"
        raise CatalogConfigurationError(msg) from None


def tier_rank(tier: str) -> int:
    """Position of a tier in upgrade order. Higher is more expensive."""
    get_plan(tier)
    return TIER_ORDER.index(tier)


def is_upgrade(old_tier: str, new_tier: str) -> bool:
    return tier_rank(new_tier) > tier_rank(old_tier)


def is_purchasable(tier: str) -> bool:
    """Whether add-ons can be bought on this tier."""
    get_plan(tier)
    return tier in ADDON_PRICING


def get_addon_increment(tier: str, dimension: str) -> AddOnIncrement:
    """
    Return the add-on block for a tier and dimension.

    Raises:
        CatalogConfigurationError: unknown tier or dimension.
        TierNotPurchasableError: the tier sells no add-ons.
    """
    get_plan(tier)
    if dimension not in AddOnDimension.values:
        msg = f"Unknown add-on dimension {dimension!r}"
        raise CatalogConfigurationError(msg)
    pricing = ADDON_PRICING.get(tier)
    if pricing is None:
        raise TierNotPurchasableError(tier)
    try:
        return pricing[dimension]
    except KeyError:
        msg = f"Tier {tier!r} has no {dimension!r} add-on configured"
        raise CatalogConfigurationError(msg) from None


def get_increment(tier: str, dimension: str) -> int:
    return get_addon_increment(tier, dimension).unit_size


def unit_price(tier: str, dimension: str) -> int:
    return get_addon_increment(tier, dimension).unit_price


def catalog_as_list() -> list[dict]:
    """Plans with their add-on pricing, for display."""
    plans = []
    for tier in TIER_ORDER:
        plan = PLANS[tier]
        addons = {
            str(dimension): {
                "unitSize": increment.unit_size,
                "unitPrice": increment.unit_price,
            }
            for dimension, increment in ADDON_PRICING.get(tier, {}).items()
        }
        plans.append(
            {
                "tier": str(plan.tier),
                "name": plan.name,
                "monthlyPrice": plan.monthly_price,
                "yearlyPrice": plan.yearly_price,
                "totalUsers": plan.total_users,
                "storageGb": plan.storage_gb,
                "classrooms": plan.classrooms,
                "addons": addons or None,
            },
        )
    return plans
