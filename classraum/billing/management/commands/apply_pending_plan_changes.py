"""
Management command to apply scheduled downgrades.

Downgrades are scheduled for the end of the paid period. This command applies
every change whose effective date has passed. A change that no longer fits
the academy's usage is abandoned and audited instead.

Usage:
    python manage.py apply_pending_plan_changes
    python manage.py apply_pending_plan_changes --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from classraum.billing.subscriptions import SubscriptionService


class Command(BaseCommand):
    help = "Apply scheduled plan changes whose effective date has passed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List due changes without applying them",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        service = SubscriptionService()
        due = service.pending_changes_due(now).select_related("academy")

        if options["dry_run"]:
            count = 0
            for subscription in due:
                self.stdout.write(
                    f"  [DRY RUN] Would change {subscription.academy}: "
                    f"{subscription.tier} -> {subscription.pending_tier} "
                    f"(due {subscription.pending_change_effective_date})"
                )
                count += 1
            self.stdout.write(self.style.SUCCESS(f"{count} change(s) due."))
            return

        if not due.exists():
            self.stdout.write(self.style.SUCCESS("No plan changes due."))
            return

        applied = service.apply_due_pending_changes(now)
        self.stdout.write(self.style.SUCCESS(f"Applied {applied} plan change(s)."))
