"""
Celery tasks for the backup system.

This module implements the scheduled and on-demand backup tasks:
- Full backups (daily)
- Incremental backups (every 6 hours)
- Verification of recent backups
- Retention cleanup
- Restores and disaster recovery plans

Tasks never let an error escape into the beat loop: a run whose lease is
held by another run is skipped, and any other failure is logged (the
components have already persisted it and notified).
"""

import base64
import logging
from typing import List, Optional

from django.utils.dateparse import parse_datetime

from celery import shared_task

from .exceptions import LeaseUnavailableError
from .models import BackupType
from .services import get_backup_services

logger = logging.getLogger(__name__)

# Options of execute_disaster_recovery that arrive as ISO strings
DATETIME_OPTIONS = ("detected_at", "corrupted_since", "infection_time")


@shared_task(
    bind=True,
    name="apps.backups.tasks.run_backup",
    max_retries=0,
)
def run_backup(self, backup_type: str) -> Optional[dict]:
    """Run one backup of ``backup_type``. Returns the record summary, or None."""
    try:
        services = get_backup_services()
        record = services.orchestrator.perform_backup(BackupType(backup_type))
    except LeaseUnavailableError as e:
        logger.info(f"Skipping {backup_type} backup: {e}")
        return None
    except Exception as e:
        logger.error(f"{backup_type} backup task failed: {e}", exc_info=True)
        return None

    summary = record.summary()
    return {
        "id": summary["id"],
        "type": summary["type"],
        "status": summary["status"],
        "size_bytes": summary["size_bytes"],
        "location": summary["location"],
    }


@shared_task(bind=True, name="apps.backups.tasks.full_backup")
def full_backup(self):
    return run_backup(BackupType.FULL.value)


@shared_task(bind=True, name="apps.backups.tasks.incremental_backup")
def incremental_backup(self):
    return run_backup(BackupType.INCREMENTAL.value)


@shared_task(bind=True, name="apps.backups.tasks.verify_recent_backups")
def verify_recent_backups(self) -> Optional[dict]:
    try:
        report = get_backup_services().verifier.verify_recent()
    except LeaseUnavailableError as e:
        logger.info(f"Skipping verification: {e}")
        return None
    except Exception as e:
        logger.error(f"Verification task failed: {e}", exc_info=True)
        return None
    return report.to_dict()


@shared_task(bind=True, name="apps.backups.tasks.cleanup_old_backups")
def cleanup_old_backups(self) -> Optional[dict]:
    try:
        report = get_backup_services().retention_manager.sweep()
    except LeaseUnavailableError as e:
        logger.info(f"Skipping retention cleanup: {e}")
        return None
    except Exception as e:
        logger.error(f"Retention cleanup task failed: {e}", exc_info=True)
        return None
    return report.to_dict()


@shared_task(
    bind=True,
    name="apps.backups.tasks.restore_backup",
    max_retries=0,  # Restores should not be retried automatically
)
def restore_backup(
    self,
    backup_id: str,
    tables: Optional[List[str]] = None,
    target_time: Optional[str] = None,
    reason: str = "",
) -> Optional[dict]:
    try:
        restore_log = get_backup_services().restore_engine.restore(
            backup_id,
            target_time=parse_datetime(target_time) if target_time else None,
            tables=tables,
            reason=reason,
        )
    except LeaseUnavailableError as e:
        logger.warning(f"Restore of {backup_id} not started: {e}")
        return None
    except Exception as e:
        logger.error(f"Restore task for {backup_id} failed: {e}", exc_info=True)
        return None

    return {
        "restore_log_id": str(restore_log.pk),
        "status": restore_log.status,
        "duration_seconds": restore_log.duration_seconds,
    }


@shared_task(bind=True, name="apps.backups.tasks.rollback_restore", max_retries=0)
def rollback_restore(self, restore_log_id: str) -> Optional[dict]:
    try:
        restore_log = get_backup_services().restore_engine.rollback(restore_log_id)
    except LeaseUnavailableError as e:
        logger.warning(f"Rollback of restore {restore_log_id} not started: {e}")
        return None
    except Exception as e:
        logger.error(f"Rollback of restore {restore_log_id} failed: {e}", exc_info=True)
        return None
    return {"restore_log_id": str(restore_log.pk), "status": restore_log.status}


@shared_task(bind=True, name="apps.backups.tasks.execute_disaster_recovery", max_retries=0)
def execute_disaster_recovery(self, scenario: str, options: Optional[dict] = None) -> Optional[dict]:
    options = dict(options or {})
    for key in DATETIME_OPTIONS:
        if isinstance(options.get(key), str):
            options[key] = parse_datetime(options[key])
    if isinstance(options.get("transaction_log"), str):
        options["transaction_log"] = base64.b64decode(options["transaction_log"])

    try:
        report = get_backup_services().dispatcher.execute_recovery_plan(scenario, **options)
    except Exception as e:
        logger.error(f"Disaster recovery plan {scenario} failed: {e}", exc_info=True)
        return None
    return report.to_dict()
