"""
Management command to expire subscriptions whose auto-renew is off.

Once the paid period of a canceled subscription is over, the academy drops to
Free limits with no add-ons.

Usage:
    python manage.py expire_canceled_subscriptions
    python manage.py expire_canceled_subscriptions --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from classraum.billing.subscriptions import SubscriptionService


class Command(BaseCommand):
    help = "Expire subscriptions whose auto-renew is off and whose period is over."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List subscriptions that would expire without expiring them",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        service = SubscriptionService()

        if options["dry_run"]:
            count = 0
            for subscription in service.expirable(now).select_related("academy"):
                self.stdout.write(
                    f"  [DRY RUN] Would expire {subscription.academy} "
                    f"({subscription.tier}, ended {subscription.current_period_end})"
                )
                count += 1
            self.stdout.write(self.style.SUCCESS(f"{count} subscription(s) due."))
            return

        expired = service.expire_canceled_subscriptions(now)
        if expired:
            self.stdout.write(self.style.SUCCESS(f"Expired {expired} subscription(s)."))
        else:
            self.stdout.write(self.style.SUCCESS("No subscriptions to expire."))
