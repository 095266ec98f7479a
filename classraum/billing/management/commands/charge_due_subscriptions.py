"""
Management command to submit renewal charges.

Finds active and trialing subscriptions whose next billing date has passed
and charges one cycle against the stored billing key. The subscription row is
not touched here: the gateway's webhook reports the outcome, which starts the
next period or marks the subscription past due.

Declines and gateway failures are logged and the run moves on. The
idempotency key is tied to the billing date, so the next run retries the same
renewal without charging twice.

Scheduled downgrades that are due are applied before anything is charged,
so the renewal is priced at the tier the academy moved to. A downgrade to
Free leaves nothing to charge.

Usage:
    python manage.py charge_due_subscriptions
    python manage.py charge_due_subscriptions --dry-run
"""

import logging

from django.core.management.base import BaseCommand
from django.utils import timezone

from classraum.billing.constants import PlanTier
from classraum.billing.exceptions import GatewayError
from classraum.billing.pricing import cycle_charge_amount
from classraum.billing.subscriptions import SubscriptionService
from classraum.billing.subscriptions import carried_addons

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Charge subscriptions whose renewal is due."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be charged without charging",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        service = SubscriptionService()
        now = timezone.now()

        # A downgrade due at the billing date decides what the renewal costs.
        if dry_run:
            pending = service.pending_changes_due(now).count()
            if pending:
                self.stdout.write(
                    f"  [DRY RUN] Would apply {pending} plan change(s) first",
                )
        else:
            applied = service.apply_due_pending_changes(now)
            if applied:
                self.stdout.write(f"  Applied {applied} plan change(s) first")

        due = list(
            service.due_for_charge(now)
            .select_related("academy")
            .order_by("next_billing_date"),
        )

        if not due:
            self.stdout.write(self.style.SUCCESS("No renewals due."))
            return

        charged = skipped = failed = 0
        for subscription in due:
            tier = subscription.tier
            if (
                dry_run
                and subscription.has_pending_change
                and subscription.pending_change_effective_date <= now
            ):
                tier = subscription.pending_tier
            if tier in (PlanTier.FREE, PlanTier.ENTERPRISE):
                continue
            amount = cycle_charge_amount(
                tier,
                subscription.billing_cycle,
                carried_addons(subscription.addons, tier),
            )
            if not subscription.billing_key:
                self.stdout.write(
                    self.style.WARNING(
                        f"  Skipped {subscription.academy}: no payment method",
                    ),
                )
                skipped += 1
                continue

            if dry_run:
                self.stdout.write(
                    f"  [DRY RUN] Would charge {subscription.academy}: {amount} "
                    f"({tier}, {subscription.billing_cycle})"
                )
                charged += 1
                continue

            try:
                ack = service.gateway.charge_recurring(subscription)
            except GatewayError as exc:
                logger.warning(
                    "Renewal charge for subscription %s failed: %s (%s)",
                    subscription.pk,
                    exc.detail,
                    exc.code,
                )
                self.stdout.write(
                    self.style.ERROR(f"  Failed {subscription.academy}: {exc.detail}"),
                )
                failed += 1
                continue

            self.stdout.write(
                self.style.SUCCESS(
                    f"  Charged {subscription.academy}: {amount} ({ack.reference})",
                ),
            )
            charged += 1

        self.stdout.write(
            self.style.SUCCESS(
                f"Completed. Charged {charged}, skipped {skipped}, failed {failed}.",
            ),
        )
