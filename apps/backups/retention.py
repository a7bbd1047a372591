"""
Tiered retention for backup records.

Every sweep keeps:
- everything younger than the daily window (never deleted)
- the first full backup of each calendar month, up to the yearly window
- the first backup of each ISO week, up to the monthly window
- other full backups, up to the weekly window
- any backup another retained backup builds on

Nothing is kept past the yearly window.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from django.conf import settings
from django.utils import timezone

from .exceptions import RetentionError
from .locks import RETENTION_LEASE, operation_lease
from .models import BackupRecord, BackupStatus, BackupType

logger = logging.getLogger(__name__)

# Runs still being written are never swept.
ACTIVE_STATUSES = (BackupStatus.PENDING, BackupStatus.IN_PROGRESS)


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention windows: daily in days, weekly in weeks, monthly in months, yearly in years."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 12
    yearly: int = 5

    def __post_init__(self):
        for tier in ("daily", "weekly", "monthly", "yearly"):
            value = getattr(self, tier)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"Retention {tier} must be a non-negative integer, got {value!r}")

    @classmethod
    def from_settings(cls):
        config = getattr(settings, "BACKUP_RETENTION", {}) or {}
        return cls(**{key.lower(): value for key, value in config.items()})


@dataclass
class RetentionPlan:
    keep: List[BackupRecord] = field(default_factory=list)
    delete: List[BackupRecord] = field(default_factory=list)
    reasons: Dict[str, str] = field(default_factory=dict)


@dataclass
class RetentionReport:
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self):
        return {
            "deleted": list(self.deleted),
            "kept": len(self.kept),
            "failures": dict(self.failures),
        }


class RetentionManager:
    def __init__(self, repository, primary_store, replica_store=None, policy=None, notifier=None):
        self.repository = repository
        self.primary_store = primary_store
        self.replica_store = replica_store
        self.policy = policy or RetentionPolicy.from_settings()
        self.notifier = notifier

    def plan(self, records: Iterable[BackupRecord], now) -> RetentionPlan:
        """Decide which records to keep and which to delete. Touches nothing."""
        records = sorted(
            (r for r in records if r.status != BackupStatus.DELETED),
            key=lambda r: r.start_time,
        )
        by_id = {record.id: record for record in records}

        monthly = OrderedDict()
        weekly = OrderedDict()
        for record in records:
            if not record.is_restorable():
                continue
            if record.backup_type == BackupType.FULL:
                monthly.setdefault((record.start_time.year, record.start_time.month), record.id)
            iso = record.start_time.isocalendar()
            weekly.setdefault((iso[0], iso[1]), record.id)
        monthly_ids = set(monthly.values())
        weekly_ids = set(weekly.values())

        decisions = {}
        for record in records:
            decisions[record.id] = self._decide(record, now, monthly_ids, weekly_ids)

        # Never orphan a chain: bases of retained backups stay.
        for record in records:
            if decisions[record.id][0] != "keep":
                continue
            seen = {record.id}
            base_id = record.base_backup_id
            while base_id and base_id in by_id and base_id not in seen:
                if decisions[base_id][0] == "delete":
                    decisions[base_id] = ("keep", f"base of retained backup {record.id}")
                seen.add(base_id)
                base_id = by_id[base_id].base_backup_id

        plan = RetentionPlan()
        for record in records:
            action, reason = decisions[record.id]
            plan.reasons[record.id] = reason
            if action == "keep":
                plan.keep.append(record)
            else:
                plan.delete.append(record)
        return plan

    def _decide(self, record, now, monthly_ids, weekly_ids):
        if record.status in ACTIVE_STATUSES:
            return "keep", "still running"

        policy = self.policy
        age_days = (now - record.start_time).days

        if age_days <= policy.daily:
            return "keep", "within daily retention"
        if age_days > policy.yearly * 365:
            return "delete", "older than yearly retention"
        if record.id in monthly_ids:
            return "keep", "monthly representative"
        if age_days > policy.monthly * 30:
            return "delete", "older than monthly retention"
        if record.id in weekly_ids:
            return "keep", "weekly representative"
        if age_days > policy.weekly * 7:
            return "delete", "older than weekly retention"
        if record.backup_type != BackupType.FULL:
            return "delete", "non-full backup outside daily retention"
        return "keep", "full backup within weekly retention"

    def sweep(self, now=None) -> RetentionReport:
        """
        Apply the retention policy to every record.

        Per-record failures are reported and never stop the sweep.

        Raises:
            LeaseUnavailableError: If another retention sweep is running
        """
        with operation_lease(RETENTION_LEASE):
            now = now or timezone.now()
            plan = self.plan(self.repository.list_all(include_deleted=False), now)

            report = RetentionReport(kept=[record.id for record in plan.keep])
            logger.info(
                f"Retention sweep: keeping {len(plan.keep)}, deleting {len(plan.delete)} backups"
            )

            for record in plan.delete:
                try:
                    self._delete(record, plan.reasons[record.id])
                    report.deleted.append(record.id)
                except Exception as e:
                    error = e if isinstance(e, RetentionError) else RetentionError(
                        f"Failed to delete backup {record.id}: {e}"
                    )
                    logger.error(str(error))
                    report.failures[record.id] = str(error)
                    self.repository.log("retention_failed", {"id": record.id, "error": str(error)})

        if report.failures and self.notifier is not None:
            self.notifier.notify("retention_failed", report.to_dict())

        return report

    def _delete(self, record, reason):
        # Blobs go first; a record is only marked deleted once nothing remains.
        if record.location:
            self.primary_store.delete(record.location)
        if record.replica_location:
            if self.replica_store is None:
                raise RetentionError(
                    f"Backup {record.id} has a replica copy but no replica store is configured"
                )
            self.replica_store.delete(record.replica_location)

        record.transition_to(BackupStatus.DELETED)
        self.repository.update(record)
        self.repository.log("deleted", {"id": record.id, "reason": reason})
        logger.info(f"Deleted backup {record.id} ({reason})")
