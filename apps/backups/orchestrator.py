"""
Backup orchestrator.

Runs one backup end to end:
1. Create the record (pending -> in_progress)
2. Build the raw payload for the requested type
3. Compress and encrypt it, checksum the encrypted blob
4. Upload it to the primary store, then copy it to the replica store
5. Mark the record completed, audit and notify

Any failure between steps 2 and 4 leaves the record failed, never stuck in
progress, and is re-raised to the caller.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.utils import timezone

from .exceptions import BackupChainError, OperationCancelledError, StorageError
from .locks import BACKUP_LEASE, operation_lease
from .models import BackupRecord, BackupStatus, BackupType, generate_backup_id
from .snapshot import PAYLOAD_VERSION, Snapshot

logger = logging.getLogger(__name__)


def build_remote_key(record: BackupRecord) -> str:
    """Remote-store key for a record: ``backups/<year>/<id>.enc``."""
    return f"backups/{record.start_time.year}/{record.id}.enc"


class BackupOrchestrator:
    """Coordinates the snapshot builder, crypto engine and remote stores."""

    def __init__(
        self,
        repository,
        builder,
        crypto,
        primary_store,
        replica_store=None,
        notifier=None,
        run_deadline_seconds: Optional[int] = None,
    ):
        self.repository = repository
        self.builder = builder
        self.crypto = crypto
        self.primary_store = primary_store
        self.replica_store = replica_store
        self.notifier = notifier
        self.run_deadline_seconds = run_deadline_seconds

        self._handlers = BackupType.require_exhaustive(
            {
                BackupType.FULL: self._capture_full,
                BackupType.INCREMENTAL: self._capture_incremental,
                BackupType.DIFFERENTIAL: self._capture_differential,
                BackupType.SNAPSHOT: self._capture_snapshot,
            },
            owner=self.__class__.__name__,
        )

    def perform_backup(self, backup_type, deadline=None, metadata: Optional[dict] = None) -> BackupRecord:
        """
        Run a backup while holding the ``backup`` lease.

        Raises:
            LeaseUnavailableError: If another backup or restore is running
        """
        if deadline is None and self.run_deadline_seconds:
            deadline = timezone.now() + timedelta(seconds=self.run_deadline_seconds)

        with operation_lease(BACKUP_LEASE):
            return self.capture(backup_type, deadline=deadline, metadata=metadata)

    def capture(self, backup_type, deadline=None, metadata: Optional[dict] = None) -> BackupRecord:
        """
        Run a backup without taking the lease.

        Used directly by the restore engine to take restore points while it
        already holds the ``backup`` lease.
        """
        backup_type = BackupType(backup_type)
        start_time = timezone.now()

        record = BackupRecord(
            id=self._new_backup_id(backup_type, start_time),
            backup_type=backup_type,
            status=BackupStatus.PENDING,
            start_time=start_time,
            metadata=dict(metadata or {}),
        )
        self.repository.insert(record)
        self.repository.log("start", {"id": record.id, "type": backup_type.value})

        record.transition_to(BackupStatus.IN_PROGRESS)
        self.repository.update(record)

        logger.info(f"Starting {backup_type.label} {record.id}")

        try:
            self._check_deadline(record, deadline, "export")
            snapshot = self._handlers[backup_type](record)

            self._check_deadline(record, deadline, "encryption")
            blob, salt_hex = self.crypto.encrypt(snapshot.encode())
            checksum = self.crypto.checksum(blob)

            self._check_deadline(record, deadline, "upload")
            location = build_remote_key(record)
            self.primary_store.put(location, blob)
            self._replicate(record, location, blob)

            record.tables = snapshot.tables
            record.metadata["payload_version"] = PAYLOAD_VERSION
            record.mark_completed(
                location=location,
                checksum=checksum,
                salt_hex=salt_hex,
                size_bytes=len(blob),
            )
        except Exception as e:
            logger.error(f"Backup {record.id} failed: {e}", exc_info=True)
            record.mark_failed(e)
            self.repository.update(record)
            self.repository.log("failed", record.summary())
            self._notify("backup_failed", record.summary())
            raise

        self.repository.update(record)
        self.repository.log("complete", record.summary())
        self._notify("backup_success", record.summary())

        logger.info(
            f"Backup {record.id} completed: {record.get_size_mb()} MB "
            f"in {record.get_duration_seconds():.1f}s"
        )
        return record

    def _new_backup_id(self, backup_type, moment):
        backup_id = generate_backup_id(backup_type, moment)
        # Two runs in the same millisecond would collide on the primary key.
        while self.repository.find(backup_id) is not None:
            moment += timedelta(milliseconds=1)
            backup_id = generate_backup_id(backup_type, moment)
        return backup_id

    def _check_deadline(self, record, deadline, stage):
        if deadline is not None and timezone.now() >= deadline:
            raise OperationCancelledError(
                f"Backup {record.id} passed its deadline before {stage}"
            )

    def _replicate(self, record, location, blob):
        if self.replica_store is None:
            return
        try:
            self.replica_store.put(location, blob)
            record.replica_location = location
        except StorageError as e:
            logger.error(f"Replication of {record.id} failed: {e}")
            record.metadata["replication_error"] = str(e)

    def _notify(self, event_type, payload):
        if self.notifier is not None:
            self.notifier.notify(event_type, payload)

    # Type handlers

    def _capture_full(self, record) -> Snapshot:
        return self.builder.build_full()

    def _capture_snapshot(self, record) -> Snapshot:
        return self.builder.build_snapshot()

    def _capture_incremental(self, record) -> Snapshot:
        base = self.repository.latest_successful(before=record.start_time)
        return self._capture_changes(record, base)

    def _capture_differential(self, record) -> Snapshot:
        base = self.repository.latest_successful(
            backup_types=[BackupType.FULL], before=record.start_time
        )
        return self._capture_changes(record, base)

    def _capture_changes(self, record, base) -> Snapshot:
        reason = self._base_problem(base)
        if reason:
            logger.warning(f"{record.id}: {reason}, falling back to a full backup")
            record.metadata["requested_type"] = BackupType(record.backup_type).value
            record.metadata["fallback_reason"] = reason
            record.backup_type = BackupType.FULL
            self.repository.update(record)
            return self._capture_full(record)

        record.base_backup = base
        self.repository.update(record)
        return self.builder.build_changes(record.backup_type, base.pk, base.end_time)

    def _base_problem(self, base) -> Optional[str]:
        """Return why ``base`` cannot anchor a new delta, or None if it can."""
        if base is None:
            return "no completed base backup"
        try:
            chain = self.repository.resolve_chain(base)
        except BackupChainError as e:
            return f"base chain is invalid: {e}"
        if len(chain) >= self.repository.max_chain_depth:
            return f"base chain already has {len(chain)} links"
        # Restored rows keep their old change timestamps, so no delta would pick them up.
        restore = self.repository.last_completed_restore()
        if restore is not None and restore.completed_at >= base.start_time:
            return f"database was restored from {restore.backup_id} after base {base.pk}"
        return None
