"""
Tests for gateway webhook handling.

Stripe delivers events at least once, so the main property under test is
that a replayed event changes nothing.
"""

import pytest

from classraum.billing.constants import ChargeKind
from classraum.billing.constants import GatewayOutcome
from classraum.billing.constants import PlanTier
from classraum.billing.constants import SubscriptionStatus
from classraum.billing.exceptions import PaymentDeclinedError
from classraum.billing.gateway import StripeBillingGateway
from classraum.billing.models import GatewayEvent
from classraum.billing.subscriptions import SubscriptionService
from classraum.billing.tests.factories import GatewayEventFactory
from classraum.billing.tests.factories import SubscriptionFactory
from classraum.billing.webhooks import WebhookStatus
from classraum.billing.webhooks import handle_gateway_event


def intent_event(
    event_id,
    event_type,
    subscription,
    *,
    charge_kind=ChargeKind.RECURRING,
):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": f"pi_{event_id}",
                "amount": subscription.monthly_amount,
                "amount_received": subscription.monthly_amount,
                "metadata": {
                    "subscription_id": str(subscription.pk),
                    "charge_kind": charge_kind,
                },
            },
        },
    }


@pytest.fixture
def webhook_service():
    # parse_event is pure, so the real gateway can be used without network.
    return SubscriptionService(gateway=StripeBillingGateway())


@pytest.mark.django_db
class TestHandleGatewayEvent:
    def test_success_advances_period(self, webhook_service):
        subscription = SubscriptionFactory(basic=True)
        old_end = subscription.current_period_end
        event = intent_event("evt_1", "payment_intent.succeeded", subscription)

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.PROCESSED
        assert result.subscription_id == subscription.pk
        subscription.refresh_from_db()
        assert subscription.current_period_start == old_end
        record = GatewayEvent.objects.get(event_id="evt_1")
        assert record.outcome == GatewayOutcome.SUCCEEDED
        assert record.amount == 50_000
        assert record.subscription == subscription

    def test_replay_is_a_duplicate(self, webhook_service):
        subscription = SubscriptionFactory(basic=True)
        event = intent_event("evt_1", "payment_intent.succeeded", subscription)

        handle_gateway_event(event, service=webhook_service)
        subscription.refresh_from_db()
        period_end = subscription.current_period_end

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.DUPLICATE
        subscription.refresh_from_db()
        assert subscription.current_period_end == period_end
        assert GatewayEvent.objects.filter(event_id="evt_1").count() == 1

    def test_previously_recorded_event_is_skipped(self, webhook_service):
        subscription = SubscriptionFactory(basic=True)
        GatewayEventFactory(event_id="evt_seen")
        event = intent_event("evt_seen", "payment_intent.payment_failed", subscription)

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.DUPLICATE
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_failure_marks_past_due(self, webhook_service):
        subscription = SubscriptionFactory(basic=True)
        event = intent_event("evt_2", "payment_intent.payment_failed", subscription)

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.PROCESSED
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.PAST_DUE

    def test_failed_upgrade_charge_leaves_subscription_active(
        self,
        webhook_service,
        gateway,
    ):
        subscription = SubscriptionFactory(basic=True)
        gateway.charge.side_effect = PaymentDeclinedError(decline_code="card_declined")
        declining = SubscriptionService(gateway=gateway)
        with pytest.raises(PaymentDeclinedError):
            declining.change_tier(subscription.academy, PlanTier.PRO)

        # Stripe also reports the declined PaymentIntent by webhook.
        event = intent_event(
            "evt_upgrade_failed",
            "payment_intent.payment_failed",
            subscription,
            charge_kind=ChargeKind.UPGRADE,
        )
        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.PROCESSED
        subscription.refresh_from_db()
        assert subscription.tier == PlanTier.BASIC
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert GatewayEvent.objects.get(event_id="evt_upgrade_failed").outcome == (
            GatewayOutcome.FAILED
        )

    def test_upgrade_charge_keeps_period(self, webhook_service):
        subscription = SubscriptionFactory(basic=True)
        old_end = subscription.current_period_end
        event = intent_event(
            "evt_3",
            "payment_intent.succeeded",
            subscription,
            charge_kind=ChargeKind.UPGRADE,
        )

        handle_gateway_event(event, service=webhook_service)

        subscription.refresh_from_db()
        assert subscription.current_period_end == old_end

    def test_unrelated_event_is_recorded_and_ignored(self, webhook_service):
        event = {"id": "evt_4", "type": "customer.updated", "data": {"object": {}}}

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.IGNORED
        assert GatewayEvent.objects.get(event_id="evt_4").outcome == (
            GatewayOutcome.IGNORED
        )

    def test_event_without_subscription_is_ignored(self, webhook_service):
        event = {
            "id": "evt_5",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_5", "amount": 1000, "metadata": {}}},
        }

        result = handle_gateway_event(event, service=webhook_service)

        assert result.status == WebhookStatus.IGNORED
