"""
Celery configuration for the backup orchestrator.
"""

import os

from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.development")

app = Celery("backups")

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration
app.conf.task_routes = {
    "apps.backups.tasks.*": {"queue": "backups", "priority": 10},
}


@app.on_after_finalize.connect
def setup_backup_schedule(sender, **kwargs):
    """Build the beat schedule from the cron expressions in BACKUP_SCHEDULE."""
    from django.conf import settings

    from apps.backups.schedules import build_beat_schedule

    sender.conf.beat_schedule = build_beat_schedule(getattr(settings, "BACKUP_SCHEDULE", None))
