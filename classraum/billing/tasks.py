"""
Celery tasks for the periodic billing sweeps.

Beat triggers these on the schedule in ``CELERY_BEAT_SCHEDULE``
(config/settings/base.py). Each task wraps a management command, so the same
work can be run by hand or from cron:

    python manage.py apply_pending_plan_changes
    python manage.py expire_canceled_subscriptions
    python manage.py charge_due_subscriptions

To run the worker and scheduler:
    celery -A config worker --loglevel=info
    celery -A config beat --loglevel=info

Every sweep re-reads each row under a lock, so overlapping runs are harmless.
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

logger = logging.getLogger(__name__)

# Transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,  # Database connection issues
    ConnectionError,
    TimeoutError,
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its output.

    Exceptions propagate so that ``autoretry_for`` can handle them.
    """
    out = StringIO()
    err = StringIO()
    call_command(command_name, *args, stdout=out, stderr=err)

    result = {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    errors = err.getvalue().strip()
    if errors:
        result["errors"] = errors
    return result


# =============================================================================
# SCHEDULED TASKS
# =============================================================================
#   apply_pending_plan_changes     - Hourly
#   expire_canceled_subscriptions  - Hourly
#   charge_due_subscriptions       - Every 6 hours


@shared_task(
    bind=True,
    name="classraum.apply_pending_plan_changes",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,  # Exponential backoff starting at 60s
    retry_backoff_max=600,  # Max 10 minutes between retries
    acks_late=True,
)
def apply_pending_plan_changes(self) -> dict:
    """
    Apply scheduled downgrades whose effective date has passed.
    """
    logger.info(
        "Starting scheduled plan change sweep (task_id=%s)",
        self.request.id,
    )
    result = _run_management_command("apply_pending_plan_changes")
    logger.info("Plan change sweep completed: %s", result.get("output", ""))
    return result


@shared_task(
    bind=True,
    name="classraum.expire_canceled_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def expire_canceled_subscriptions(self) -> dict:
    """
    Drop subscriptions with auto-renew off to Free once their period ends.
    """
    logger.info("Starting subscription expiry sweep (task_id=%s)", self.request.id)
    result = _run_management_command("expire_canceled_subscriptions")
    logger.info("Expiry sweep completed: %s", result.get("output", ""))
    return result


@shared_task(
    bind=True,
    name="classraum.charge_due_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def charge_due_subscriptions(self) -> dict:
    """
    Charge renewals that are due.

    The charge outcome arrives by webhook; this task only submits charges.
    """
    logger.info("Starting renewal charge sweep (task_id=%s)", self.request.id)
    result = _run_management_command("charge_due_subscriptions")
    logger.info("Renewal charge sweep completed: %s", result.get("output", ""))
    return result
