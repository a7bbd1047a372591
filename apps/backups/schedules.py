"""
Celery beat schedule for the backup tasks.

Schedules are configured as five-field cron expressions
(``minute hour day-of-month month day-of-week``) under
``settings.BACKUP_SCHEDULE``.
"""

from celery.schedules import crontab

DEFAULT_SCHEDULE = {
    "full": "0 2 * * *",  # daily at 2:00 AM
    "incremental": "0 */6 * * *",  # every 6 hours
    "verification": "0 4 * * *",  # daily at 4:00 AM
    "retention": "0 2 * * *",  # daily at 2:00 AM, alongside the full backup
}

# schedule name -> (beat entry name, task name, priority)
SCHEDULED_TASKS = {
    "full": ("backup-full", "apps.backups.tasks.full_backup", 10),
    "incremental": ("backup-incremental", "apps.backups.tasks.incremental_backup", 9),
    "verification": ("backup-verification", "apps.backups.tasks.verify_recent_backups", 7),
    "retention": ("backup-retention", "apps.backups.tasks.cleanup_old_backups", 3),
}


def crontab_from_expression(expression: str) -> crontab:
    """
    Convert a five-field cron expression into a celery crontab.

    Raises:
        ValueError: If the expression does not have exactly five fields
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields (minute hour day month weekday): {expression!r}"
        )

    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule(schedule=None) -> dict:
    """Build the beat schedule entries for every configured backup task."""
    merged = dict(DEFAULT_SCHEDULE)
    merged.update(schedule or {})

    unknown = set(merged) - set(SCHEDULED_TASKS)
    if unknown:
        raise ValueError(f"Unknown backup schedule entries: {sorted(unknown)}")

    beat_schedule = {}
    for name, expression in merged.items():
        if not expression:
            # An empty expression disables the task.
            continue
        entry_name, task, priority = SCHEDULED_TASKS[name]
        beat_schedule[entry_name] = {
            "task": task,
            "schedule": crontab_from_expression(expression),
            "options": {"queue": "backups", "priority": priority},
        }
    return beat_schedule
