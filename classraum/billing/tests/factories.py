from datetime import timedelta

import factory
from django.utils import timezone
from factory.django import DjangoModelFactory

from classraum.academies.tests.factories import AcademyFactory
from classraum.billing.constants import BillingCycle
from classraum.billing.constants import GatewayOutcome
from classraum.billing.constants import PlanTier
from classraum.billing.constants import SubscriptionStatus
from classraum.billing.models import GatewayEvent
from classraum.billing.models import Subscription


def _paid_period():
    """Ten days into a thirty day monthly period, with a card on file."""
    return {
        "current_period_start": factory.LazyFunction(
            lambda: timezone.now() - timedelta(days=10),
        ),
        "current_period_end": factory.LazyFunction(
            lambda: timezone.now() + timedelta(days=20),
        ),
        "next_billing_date": factory.SelfAttribute("current_period_end"),
        "gateway_customer_id": "cus_test_123",
        "billing_key": "pm_test_123",
    }


class SubscriptionFactory(DjangoModelFactory):
    """
    A Free subscription by default.

    The ``basic`` and ``pro`` traits give a paid subscription in the middle
    of a monthly period.
    """

    class Meta:
        model = Subscription

    academy = factory.SubFactory(AcademyFactory)
    tier = PlanTier.FREE
    status = SubscriptionStatus.ACTIVE
    billing_cycle = BillingCycle.MONTHLY
    monthly_amount = 0
    total_user_limit = 22
    storage_limit_gb = 1
    classroom_limit = 3

    class Params:
        basic = factory.Trait(
            tier=PlanTier.BASIC,
            monthly_amount=50_000,
            total_user_limit=10,
            storage_limit_gb=10,
            classroom_limit=15,
            **_paid_period(),
        )
        pro = factory.Trait(
            tier=PlanTier.PRO,
            monthly_amount=150_000,
            total_user_limit=550,
            storage_limit_gb=50,
            classroom_limit=50,
            **_paid_period(),
        )


class GatewayEventFactory(DjangoModelFactory):
    class Meta:
        model = GatewayEvent

    event_id = factory.Sequence(lambda n: f"evt_test_{n}")
    event_type = "payment_intent.succeeded"
    outcome = GatewayOutcome.SUCCEEDED
