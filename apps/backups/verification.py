"""
Backup verification.

Re-reads recently completed backups from the primary store, checks the
blob against its recorded checksum and proves it still decrypts and
decodes. Downloads and checks run on a bounded thread pool; all database
writes happen on the calling thread.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .exceptions import BackupError
from .locks import VERIFY_LEASE, operation_lease
from .models import BackupRecord, BackupStatus
from .snapshot import decode_payload

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7


@dataclass
class VerificationReport:
    checked: List[str] = field(default_factory=list)
    verified: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def all_verified(self) -> bool:
        return not self.failed

    def to_dict(self):
        return {
            "checked": len(self.checked),
            "verified": list(self.verified),
            "failed": dict(self.failed),
        }


class BackupVerifier:
    def __init__(
        self,
        repository,
        crypto,
        store,
        notifier=None,
        window_days: int = DEFAULT_WINDOW_DAYS,
        max_workers: int = 5,
    ):
        self.repository = repository
        self.crypto = crypto
        self.store = store
        self.notifier = notifier
        self.window_days = window_days
        self.max_workers = max_workers

    def verify_recent(self, now=None) -> VerificationReport:
        """
        Verify every completed backup started within the verification window.

        Raises:
            LeaseUnavailableError: If another verification sweep is running
        """
        with operation_lease(VERIFY_LEASE):
            records = self.repository.list_recent(
                self.window_days, statuses=[BackupStatus.COMPLETED], now=now
            )
            logger.info(f"Verifying {len(records)} backups from the last {self.window_days} days")

            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                problems = list(executor.map(self.check, records))

            report = VerificationReport()
            for record, problem in zip(records, problems):
                self._record_outcome(record, problem, report)

        logger.info(
            f"Verification finished: {len(report.verified)} verified, {len(report.failed)} failed"
        )
        return report

    def verify(self, record: BackupRecord) -> bool:
        """Verify a single record and persist the outcome."""
        report = VerificationReport()
        self._record_outcome(record, self.check(record), report)
        return record.pk in report.verified

    def check(self, record: BackupRecord) -> Optional[str]:
        """
        Download and inspect the blob of ``record`` without touching the database.

        Returns:
            None if the blob is intact, otherwise the reason it is not
        """
        if not record.location:
            return "Backup has no remote location"

        try:
            blob = self.store.get(record.location)
        except BackupError as e:
            return f"Download failed: {e}"

        if not self.crypto.verify_checksum(blob, record.checksum):
            return "Checksum mismatch"

        try:
            decode_payload(self.crypto.decrypt(blob, record.salt_hex))
        except (BackupError, ValueError) as e:
            return f"Payload unreadable: {e}"

        return None

    def _record_outcome(self, record, problem, report):
        report.checked.append(record.pk)

        if problem is None:
            stored = self.repository.mark_verified(record)
        else:
            stored = self.repository.record_verification_error(record, problem)
        if not stored:
            # Deleted by a retention sweep while the blob was being checked
            logger.warning(f"Backup {record.pk} is now {record.status}, verification result dropped")
            return

        if problem is None:
            self.repository.log("verified", {"id": record.pk})
            report.verified.append(record.pk)
            return

        logger.error(f"Backup {record.pk} failed verification: {problem}")
        self.repository.log("verification_failed", {"id": record.pk, "error": problem})
        report.failed[record.pk] = problem
        if self.notifier is not None:
            self.notifier.notify(
                "backup_verification_failed", {"backup_id": record.pk, "error": problem}
            )
