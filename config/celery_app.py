"""
Celery application configuration for Classraum.

Billing sweeps run as periodic Celery tasks. Each task is a thin wrapper
around a management command so the same job can be run by hand from a
shell. Tasks are defined with @shared_task so CELERY_TASK_ALWAYS_EAGER works
in tests.

Components:
  - Worker: Processes background tasks (`celery -A config worker`)
  - Beat: Triggers periodic tasks from CELERY_BEAT_SCHEDULE (`celery -A config beat`)

Configuration:
  - Broker: Redis (CELERY_BROKER_URL)
  - Result backend: None (fire-and-forget, all state in Django models)
  - Task serialization: JSON

Usage:
    celery -A config worker --loglevel=info --concurrency=1
    celery -A config beat --loglevel=info
"""

import logging
import os

from celery import Celery

logger = logging.getLogger(__name__)

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("classraum")

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()
