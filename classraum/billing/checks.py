"""
System checks for the plan catalog.

A broken catalog would only surface when a customer first tried to buy
something, so it is validated when Django starts instead.
"""

from django.core.checks import Error
from django.core.checks import register

from classraum.billing import catalog
from classraum.billing.constants import AddOnDimension
from classraum.billing.constants import PlanTier


@register()
def check_plan_catalog(app_configs, **kwargs):
    errors = []

    for tier in PlanTier.values:
        plan = catalog.PLANS.get(tier)
        if plan is None:
            errors.append(
                Error(
                    f"Plan tier {tier!r} is missing from the catalog.",
                    id="billing.E001",
                ),
            )
            continue
        if plan.monthly_price < 0 or plan.yearly_price < 0:
            errors.append(
                Error(
                    f"Plan tier {tier!r} has a negative price.",
                    id="billing.E002",
                ),
            )

    for tier, pricing in catalog.ADDON_PRICING.items():
        if tier not in catalog.PLANS:
            errors.append(
                Error(
                    f"Add-on pricing configured for unknown tier {tier!r}.",
                    id="billing.E003",
                ),
            )
            continue
        if catalog.PLANS[tier].is_unlimited:
            errors.append(
                Error(
                    f"Unlimited tier {tier!r} cannot sell add-ons.",
                    id="billing.E004",
                ),
            )
        for dimension in AddOnDimension.values:
            increment = pricing.get(dimension)
            if increment is None:
                errors.append(
                    Error(
                        f"Tier {tier!r} sells add-ons but has no "
                        f"{dimension!r} pricing.",
                        id="billing.E005",
                    ),
                )
            elif increment.unit_size <= 0 or increment.unit_price <= 0:
                errors.append(
                    Error(
                        f"Tier {tier!r} {dimension!r} add-on needs a positive "
                        "unit size and price.",
                        id="billing.E006",
                    ),
                )

    return errors
