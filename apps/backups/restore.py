"""
Restore engine.

A restore never touches the target before every blob in the backup chain
has been downloaded, checksum-verified and decrypted. Only then is a
restore point taken and the chain applied, root first.
"""

import logging
from typing import List, Optional

from .exceptions import (
    BackupIntegrityError,
    BackupNotFoundError,
    RestoreError,
    RestoreVerificationError,
)
from .locks import BACKUP_LEASE, operation_lease
from .models import BackupRecord, BackupRestoreLog, BackupType
from .repository import RESTORE_POINT_KEY
from .snapshot import decode_payload

logger = logging.getLogger(__name__)


class RestoreEngine:
    """
    Restores backups into the database and file store behind ``applier``.

    The primary engine reads from the primary store and takes a restore
    point first. The failover engine reads from the replica store and
    writes to the failover target, which has nothing worth preserving.
    Without a failover file store it restores the database only and lists
    the skipped buckets in the restore log metadata.
    """

    def __init__(
        self,
        repository,
        crypto,
        store,
        applier,
        orchestrator=None,
        notifier=None,
        use_replica: bool = False,
    ):
        self.repository = repository
        self.crypto = crypto
        self.store = store
        self.applier = applier
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.use_replica = use_replica

        self._appliers = BackupType.require_exhaustive(
            {
                BackupType.FULL: self._apply_dump,
                BackupType.SNAPSHOT: self._apply_dump,
                BackupType.INCREMENTAL: self._apply_changes,
                BackupType.DIFFERENTIAL: self._apply_changes,
            },
            owner=self.__class__.__name__,
        )

    @property
    def source_name(self):
        return "replica" if self.use_replica else "primary"

    def restore(
        self,
        backup_id: str,
        target_time=None,
        tables: Optional[List[str]] = None,
        reason: str = "",
        scenario: str = "",
    ) -> BackupRestoreLog:
        """
        Restore ``backup_id`` while holding the ``backup`` lease.

        Args:
            backup_id: Backup to restore (its whole chain is applied)
            target_time: Requested point in time, recorded on the restore log
            tables: Restore only these logical units (database only)
            reason: Why the restore was requested
            scenario: Disaster recovery scenario that triggered it, if any

        Raises:
            BackupNotFoundError: If the backup does not exist
            BackupChainError: If the chain cannot be resolved
            BackupIntegrityError: If any blob fails its checksum
            RestoreError: If applying or sanity checking the restore fails
        """
        with operation_lease(BACKUP_LEASE):
            return self._restore(backup_id, target_time, tables, reason, scenario)

    def rollback(self, restore_log_id) -> BackupRestoreLog:
        """Restore the restore point taken before an earlier restore attempt."""
        restore_log = self.repository.get_restore_log(restore_log_id)
        if restore_log.restore_point_id is None:
            raise RestoreError(f"Restore {restore_log_id} has no restore point to roll back to")

        logger.warning(
            f"Rolling back restore {restore_log_id} to restore point {restore_log.restore_point_id}"
        )
        return self.restore(
            restore_log.restore_point_id,
            reason=f"Rollback of restore {restore_log_id}",
            scenario=restore_log.scenario,
        )

    def _restore(self, backup_id, target_time, tables, reason, scenario):
        try:
            record = self.repository.get_by_id(backup_id)
        except BackupNotFoundError as e:
            logger.error(f"Restore requested for unknown backup {backup_id}")
            self._notify("restore_failed", {"backup_id": backup_id, "error": str(e)})
            raise

        logger.info("=" * 80)
        logger.info(f"RESTORE INITIATED: {record.id} from {self.source_name} store")
        logger.info(f"Reason: {reason or 'not given'}")
        logger.info("=" * 80)

        restore_log = self.repository.create_restore_log(
            record,
            target_time=target_time,
            tables=list(tables) if tables is not None else None,
            reason=reason,
            scenario=scenario,
            metadata={"source_store": self.source_name},
        )
        self.repository.log(
            "restore_started",
            {"backup_id": record.id, "restore_log_id": str(restore_log.pk), "tables": tables},
        )

        try:
            if not record.is_restorable():
                raise RestoreError(f"Backup {record.id} is {record.status}, not completed or verified")

            chain = self.repository.resolve_chain(record)
            restore_log.metadata["chain"] = [link.id for link in chain]

            # Every link must pass before anything destructive happens.
            payloads = [self.load_payload(link) for link in chain]

            if self.orchestrator is not None:
                restore_point = self.orchestrator.capture(
                    BackupType.SNAPSHOT,
                    metadata={RESTORE_POINT_KEY: record.id},
                )
                restore_log.restore_point = restore_point
                self.repository.save_restore_log(restore_log)
                logger.info(f"Restore point {restore_point.id} captured")

            for link, payload in zip(chain, payloads):
                logger.info(f"Applying {link.backup_type} backup {link.id}")
                self._appliers[BackupType(link.backup_type)](payload, tables)
                if tables is None:
                    self._restore_storage(payload.get("storage") or {}, restore_log)

            self._sanity_check(chain, tables)
        except Exception as e:
            logger.error(f"Restore of {record.id} failed: {e}", exc_info=True)
            restore_log.finish(error=e)
            self.repository.save_restore_log(restore_log)
            self.repository.log(
                "restore_failed",
                {"backup_id": record.id, "restore_log_id": str(restore_log.pk), "error": str(e)},
            )
            self._notify(
                "restore_failed",
                {"backup_id": record.id, "restore_log_id": str(restore_log.pk), "error": str(e)},
            )
            raise

        restore_log.finish()
        self.repository.save_restore_log(restore_log)
        self.repository.log(
            "restore_completed",
            {
                "backup_id": record.id,
                "restore_log_id": str(restore_log.pk),
                "duration_seconds": restore_log.duration_seconds,
            },
        )
        self._notify(
            "restore_success",
            {
                "backup_id": record.id,
                "restore_log_id": str(restore_log.pk),
                "tables": tables,
                "restore_point_id": restore_log.restore_point_id,
            },
        )
        logger.info(f"Restore of {record.id} completed in {restore_log.duration_seconds:.1f}s")
        return restore_log

    def load_payload(self, record: BackupRecord) -> dict:
        """
        Download, verify and decrypt the payload of a single record.

        Raises:
            BackupIntegrityError: If the blob does not match the recorded checksum
        """
        location = record.replica_location if self.use_replica else record.location
        if not location:
            raise RestoreError(f"Backup {record.id} has no {self.source_name} store location")

        blob = self.store.get(location)
        if not self.crypto.verify_checksum(blob, record.checksum):
            raise BackupIntegrityError(
                f"Backup {record.id} failed integrity check: checksum mismatch"
            )

        return decode_payload(self.crypto.decrypt(blob, record.salt_hex))

    def _apply_dump(self, payload, tables):
        self.applier.apply_dump(payload, tables=tables)

    def _apply_changes(self, payload, tables):
        applied = self.applier.apply_changes(payload, tables=tables)
        logger.info(f"Applied {applied} changed rows")

    def _restore_storage(self, storage, restore_log):
        if storage and self.use_replica and self.applier.file_store is None:
            skipped = restore_log.metadata.setdefault("skipped_buckets", [])
            skipped.extend([bucket for bucket in sorted(storage) if bucket not in skipped])
            logger.warning(
                f"No file store in the failover region, skipping buckets {sorted(storage)}"
            )
            return
        self.applier.restore_storage(storage)

    def _sanity_check(self, chain, tables):
        try:
            present = set(self.applier.database.list_tables())
        except Exception as e:
            raise RestoreVerificationError(f"Could not list restored tables: {e}") from e

        if tables is not None:
            expected = set(tables)
        else:
            expected = set()
            for link in chain:
                expected.update(link.tables)

        missing = expected - present
        if missing:
            raise RestoreVerificationError(f"Tables missing after restore: {sorted(missing)}")

        if tables is None:
            unexpected = present - expected
            if unexpected:
                raise RestoreVerificationError(
                    f"Unexpected tables after restore: {sorted(unexpected)}"
                )

        logger.info(f"Restore sanity check passed for {len(expected)} tables")

    def _notify(self, event_type, payload):
        if self.notifier is not None:
            self.notifier.notify(event_type, payload)
