"""
Gateway webhook handling.

Stripe delivers each event at least once, so every event is recorded in
GatewayEvent under its event id in the same transaction as the state change
it causes. A replay hits the unique constraint and is reported as a
duplicate without touching the subscription.

Events handled:
- payment_intent.succeeded: the subscription becomes active; a recurring
  charge also starts the next period.
- payment_intent.payment_failed: a failed renewal makes the subscription
  past due. Other failed charges are logged and change nothing.

Any other event type is recorded as ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.db import IntegrityError
from django.db import transaction

from classraum.billing.constants import GatewayOutcome
from classraum.billing.models import GatewayEvent
from classraum.billing.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)


class WebhookStatus:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookResult:
    status: str
    event_id: str
    subscription_id: int | None = None


def handle_gateway_event(event: dict, service: SubscriptionService | None = None):
    """
    Apply one verified gateway event exactly once.

    ``event`` is the decoded webhook body (see StripeBillingGateway
    .construct_event). Returns a WebhookResult describing what happened.
    """
    service = service or SubscriptionService()
    event_id = event["id"]
    event_type = event.get("type", "")
    parsed = service.gateway.parse_event(event)

    with transaction.atomic():
        try:
            with transaction.atomic():
                record = GatewayEvent.objects.create(
                    event_id=event_id,
                    event_type=event_type,
                    outcome=parsed.outcome if parsed else GatewayOutcome.IGNORED,
                    amount=parsed.amount if parsed else None,
                    payload=event,
                )
        except IntegrityError:
            logger.warning("Ignoring replayed gateway event %s (%s)", event_id, event_type)
            return WebhookResult(status=WebhookStatus.DUPLICATE, event_id=event_id)

        if parsed is None:
            logger.info("Ignoring gateway event %s of type %s", event_id, event_type)
            return WebhookResult(status=WebhookStatus.IGNORED, event_id=event_id)

        if parsed.subscription_id is None:
            logger.warning(
                "Gateway event %s (%s) has no subscription_id in metadata",
                event_id,
                event_type,
            )
            return WebhookResult(status=WebhookStatus.IGNORED, event_id=event_id)

        if parsed.outcome == GatewayOutcome.SUCCEEDED:
            subscription = service.record_charge_succeeded(
                parsed.subscription_id,
                parsed.amount,
                parsed.charge_kind,
            )
        else:
            subscription = service.record_charge_failed(
                parsed.subscription_id,
                parsed.amount,
                parsed.charge_kind,
            )

        if subscription is not None:
            record.subscription = subscription
            record.save(update_fields=["subscription"])

    logger.info(
        "Processed gateway event %s (%s) for subscription %s",
        event_id,
        event_type,
        parsed.subscription_id,
    )
    return WebhookResult(
        status=WebhookStatus.PROCESSED,
        event_id=event_id,
        subscription_id=subscription.pk if subscription else None,
    )
