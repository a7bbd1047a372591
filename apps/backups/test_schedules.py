"""
Tests for the celery beat schedule built from BACKUP_SCHEDULE.
"""

import pytest
from celery.schedules import crontab

from apps.backups.schedules import DEFAULT_SCHEDULE, build_beat_schedule, crontab_from_expression


def test_default_schedule_entries():
    schedule = build_beat_schedule()

    assert set(schedule) == {
        "backup-full",
        "backup-incremental",
        "backup-verification",
        "backup-retention",
    }
    assert schedule["backup-full"]["task"] == "apps.backups.tasks.full_backup"
    assert schedule["backup-full"]["schedule"] == crontab(minute="0", hour="2")
    assert schedule["backup-incremental"]["schedule"] == crontab(minute="0", hour="*/6")
    assert schedule["backup-retention"]["options"] == {"queue": "backups", "priority": 3}


def test_override_single_entry():
    schedule = build_beat_schedule({"verification": "30 5 * * 1"})

    assert schedule["backup-verification"]["schedule"] == crontab(
        minute="30", hour="5", day_of_week="1"
    )
    assert schedule["backup-full"]["schedule"] == crontab_from_expression(DEFAULT_SCHEDULE["full"])


def test_empty_expression_disables_task():
    schedule = build_beat_schedule({"incremental": ""})

    assert "backup-incremental" not in schedule


def test_unknown_entry_rejected():
    with pytest.raises(ValueError):
        build_beat_schedule({"weekly_full": "0 3 * * 0"})


@pytest.mark.parametrize("expression", ["0 2 * *", "0 2 * * * *", ""])
def test_expression_must_have_five_fields(expression):
    with pytest.raises(ValueError):
        crontab_from_expression(expression)
