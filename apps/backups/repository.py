"""
Metadata repository for backup records, restore logs and audit events.

All components read and write backup metadata through this repository
instead of caching mutable copies, so the database stays the single
source of truth.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from .exceptions import BackupChainError, BackupNotFoundError
from .models import (
    RESTORABLE_STATUSES,
    BackupAuditEvent,
    BackupRecord,
    BackupRestoreLog,
    BackupStatus,
    BackupType,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("apps.backups.audit")

HEIGHTENED_AUDIT_KEY = "backups:audit:heightened"
DEFAULT_MAX_CHAIN_DEPTH = 30
RESTORE_POINT_KEY = "restore_point_for"

CHAIN_ROOT_TYPES = (BackupType.FULL, BackupType.SNAPSHOT)
DELTA_TYPES = (BackupType.INCREMENTAL, BackupType.DIFFERENTIAL)


def enable_heightened_audit(hours: int, reason: str = "") -> None:
    """Log every audit event at WARNING level for the next ``hours`` hours."""
    cache.set(HEIGHTENED_AUDIT_KEY, reason or "enabled", int(hours * 3600))
    audit_logger.warning(f"Heightened audit logging enabled for {hours} hours: {reason}")


def is_heightened_audit_enabled() -> bool:
    return cache.get(HEIGHTENED_AUDIT_KEY) is not None


class MetadataRepository:
    """Django ORM backed store for backup metadata."""

    def __init__(self, max_chain_depth: Optional[int] = None):
        if max_chain_depth is None:
            max_chain_depth = getattr(
                settings, "BACKUP_MAX_INCREMENTAL_CHAIN", DEFAULT_MAX_CHAIN_DEPTH
            )
        self.max_chain_depth = max_chain_depth

    # Backup records

    def insert(self, record: BackupRecord) -> BackupRecord:
        record.save(force_insert=True)
        return record

    def update(self, record: BackupRecord) -> BackupRecord:
        record.save()
        return record

    def mark_verified(self, record: BackupRecord, verified_at=None) -> bool:
        """
        Mark ``record`` verified if it is still completed or verified.

        The write is guarded on the stored status so a record deleted by a
        concurrent retention sweep stays deleted. Returns False (and reloads
        ``record``) when the guard rejected the write.
        """
        verified_at = verified_at or timezone.now()
        updated = BackupRecord.objects.filter(
            pk=record.pk, status__in=RESTORABLE_STATUSES
        ).update(status=BackupStatus.VERIFIED, verified_at=verified_at, verification_error="")
        if not updated:
            record.refresh_from_db()
            return False

        record.status = BackupStatus.VERIFIED
        record.verified_at = verified_at
        record.verification_error = ""
        return True

    def record_verification_error(self, record: BackupRecord, error: str) -> bool:
        """Store a verification error on a still restorable record. Same guard as mark_verified."""
        updated = BackupRecord.objects.filter(
            pk=record.pk, status__in=RESTORABLE_STATUSES
        ).update(verification_error=error)
        if not updated:
            record.refresh_from_db()
            return False

        record.verification_error = error
        return True

    def find(self, backup_id: str) -> Optional[BackupRecord]:
        return BackupRecord.objects.select_related("base_backup").filter(pk=backup_id).first()

    def get_by_id(self, backup_id: str) -> BackupRecord:
        """
        Raises:
            BackupNotFoundError: If no record has this id
        """
        record = self.find(backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup {backup_id} not found")
        return record

    def list_recent(
        self, days: int, statuses: Optional[Iterable[str]] = None, now=None
    ) -> List[BackupRecord]:
        """Records started within the last ``days`` days, newest first."""
        since = (now or timezone.now()) - timedelta(days=days)
        queryset = BackupRecord.objects.filter(start_time__gte=since)
        if statuses is not None:
            queryset = queryset.filter(status__in=list(statuses))
        return list(queryset.order_by("-start_time"))

    def _backups(self):
        """Records that may anchor a chain or a recovery. Restore points are excluded."""
        return BackupRecord.objects.exclude(metadata__has_key=RESTORE_POINT_KEY)

    def list_all(self, include_deleted: bool = True) -> List[BackupRecord]:
        queryset = BackupRecord.objects.all()
        if not include_deleted:
            queryset = queryset.exclude(status=BackupStatus.DELETED)
        return list(queryset.order_by("-start_time"))

    def latest_successful(
        self, backup_types: Optional[Iterable[str]] = None, before=None
    ) -> Optional[BackupRecord]:
        """Most recent completed or verified record, optionally filtered by type."""
        queryset = self._backups().filter(status__in=RESTORABLE_STATUSES)
        if backup_types is not None:
            queryset = queryset.filter(backup_type__in=list(backup_types))
        if before is not None:
            queryset = queryset.filter(start_time__lt=before)
        return queryset.order_by("-end_time", "-start_time").first()

    def latest_verified(self, before=None) -> Optional[BackupRecord]:
        queryset = self._backups().filter(status=BackupStatus.VERIFIED)
        if before is not None:
            queryset = queryset.filter(start_time__lt=before)
        return queryset.order_by("-start_time").first()

    def list_verified(self, before=None) -> List[BackupRecord]:
        """Verified records, newest first."""
        queryset = self._backups().filter(status=BackupStatus.VERIFIED)
        if before is not None:
            queryset = queryset.filter(start_time__lt=before)
        return list(queryset.order_by("-start_time"))

    def list_replicated(self) -> List[BackupRecord]:
        """Restorable records with a replica copy, newest first."""
        queryset = self._backups().filter(status__in=RESTORABLE_STATUSES).exclude(replica_location="")
        return list(queryset.order_by("-start_time"))

    def resolve_chain(self, record: BackupRecord, max_depth: Optional[int] = None) -> List[BackupRecord]:
        """
        Return the restore chain for ``record``, root first.

        The chain follows base_backup references from the record down to a
        full or snapshot root. Every link must be restorable and must start
        before the record that depends on it.

        Raises:
            BackupChainError: On cycles, excessive depth, a missing or
                              unrestorable base, or a delta without a base
        """
        max_depth = max_depth or self.max_chain_depth
        chain = [record]
        seen = {record.pk}
        current = record

        while current.backup_type in DELTA_TYPES:
            if current.base_backup_id is None:
                raise BackupChainError(f"Backup {current.pk} has no base backup")
            if current.base_backup_id in seen:
                raise BackupChainError(
                    f"Backup chain for {record.pk} is cyclic at {current.base_backup_id}"
                )
            if len(chain) >= max_depth:
                raise BackupChainError(
                    f"Backup chain for {record.pk} exceeds {max_depth} links"
                )

            base = self.find(current.base_backup_id)
            if base is None:
                raise BackupChainError(f"Base backup {current.base_backup_id} not found")
            if not base.is_restorable():
                raise BackupChainError(
                    f"Base backup {base.pk} is {base.status}, not completed or verified"
                )
            if base.start_time >= current.start_time:
                raise BackupChainError(
                    f"Base backup {base.pk} does not precede {current.pk}"
                )

            seen.add(base.pk)
            chain.append(base)
            current = base

        if current.backup_type not in CHAIN_ROOT_TYPES:
            raise BackupChainError(f"Backup chain for {record.pk} has no full or snapshot root")

        chain.reverse()
        return chain

    # Restore logs

    def create_restore_log(self, record: BackupRecord, **fields) -> BackupRestoreLog:
        return BackupRestoreLog.objects.create(backup=record, **fields)

    def save_restore_log(self, restore_log: BackupRestoreLog) -> BackupRestoreLog:
        restore_log.save()
        return restore_log

    def get_restore_log(self, restore_log_id) -> BackupRestoreLog:
        try:
            return BackupRestoreLog.objects.select_related("backup", "restore_point").get(
                pk=restore_log_id
            )
        except BackupRestoreLog.DoesNotExist:
            raise BackupNotFoundError(f"Restore log {restore_log_id} not found")

    def last_completed_restore(self, source_store: str = "primary") -> Optional[BackupRestoreLog]:
        """Most recent successful restore read from ``source_store``."""
        return (
            BackupRestoreLog.objects.filter(
                status=BackupRestoreLog.COMPLETED, metadata__source_store=source_store
            )
            .order_by("-completed_at")
            .first()
        )

    # Audit events

    def log(self, event: str, payload: Optional[dict] = None, timestamp=None) -> BackupAuditEvent:
        """Append an audit event."""
        payload = payload or {}
        backup_id = payload.get("id") or payload.get("backup_id") or ""

        audit_event = BackupAuditEvent.objects.create(
            event=event,
            backup_id=str(backup_id),
            payload=payload,
            timestamp=timestamp or timezone.now(),
        )

        if is_heightened_audit_enabled():
            audit_logger.warning(f"Backup {event}: {backup_id}", extra={"payload": payload})
        else:
            audit_logger.info(f"Backup {event}: {backup_id}")

        return audit_event
