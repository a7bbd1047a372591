"""
Disaster recovery runbooks.

Each scenario is a short procedure built from the restore engine, the
verifier and the notifier. Procedures record every step in a
RecoveryReport, try candidate backups newest first and move on to the next
candidate when a restore fails.

Scenarios:
- data_corruption: restore the affected tables from the last verified
  backup taken before the corruption was detected
- data_loss: restore the newest verified backup rooted in a full backup and
  replay the transaction log if one is supplied
- ransomware: restore the newest verified backup whose whole chain predates
  the infection, then turn on heightened audit logging
- regional_failure: restore the replica copy into the failover target and
  redirect traffic to it
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from django.db import models
from django.utils import timezone

from .exceptions import BackupError, DisasterRecoveryError, LeaseUnavailableError
from .models import BackupType, require_exhaustive
from .repository import enable_heightened_audit

logger = logging.getLogger(__name__)

DEFAULT_HEIGHTENED_AUDIT_HOURS = 72


class Scenario(models.TextChoices):
    DATA_CORRUPTION = "data_corruption", "Data Corruption"
    DATA_LOSS = "data_loss", "Data Loss"
    RANSOMWARE = "ransomware", "Ransomware Attack"
    REGIONAL_FAILURE = "regional_failure", "Regional Failure"


@dataclass
class RecoveryReport:
    scenario: str
    status: str = "in_progress"
    started_at: datetime = field(default_factory=timezone.now)
    completed_at: Optional[datetime] = None
    backup_id: Optional[str] = None
    restore_log_id: Optional[str] = None
    error: Optional[str] = None
    steps: List[dict] = field(default_factory=list)

    def add_step(self, name, status, **details):
        step = {
            "step": len(self.steps) + 1,
            "name": name,
            "status": status,
            "timestamp": timezone.now().isoformat(),
        }
        step.update(details)
        self.steps.append(step)
        logger.info(f"Step {step['step']}: {name} - {status}")
        return step

    def finish(self, error=None):
        self.completed_at = timezone.now()
        if error is None:
            self.status = "completed"
        else:
            self.status = "failed"
            self.error = str(error)

    @property
    def duration_seconds(self):
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self):
        return {
            "scenario": self.scenario,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "backup_id": self.backup_id,
            "restore_log_id": self.restore_log_id,
            "error": self.error,
            "steps": list(self.steps),
        }


def finished_before(moment):
    """Chain predicate: every link started and finished strictly before ``moment``."""

    def predicate(chain):
        return all(
            link.start_time < moment and link.end_time is not None and link.end_time < moment
            for link in chain
        )

    return predicate


class DisasterRecoveryDispatcher:
    def __init__(
        self,
        repository,
        restore_engine,
        failover_engine=None,
        verifier=None,
        notifier=None,
        traffic_router=None,
        source_database=None,
        failover_target: str = "failover",
        heightened_audit_hours: int = DEFAULT_HEIGHTENED_AUDIT_HOURS,
    ):
        self.repository = repository
        self.restore_engine = restore_engine
        self.failover_engine = failover_engine
        self.verifier = verifier
        self.notifier = notifier
        self.traffic_router = traffic_router
        self.source_database = source_database
        self.failover_target = failover_target
        self.heightened_audit_hours = heightened_audit_hours

        self._procedures = require_exhaustive(
            Scenario,
            {
                Scenario.DATA_CORRUPTION: self.recover_data_corruption,
                Scenario.DATA_LOSS: self.recover_data_loss,
                Scenario.RANSOMWARE: self.recover_ransomware,
                Scenario.REGIONAL_FAILURE: self.recover_regional_failure,
            },
            owner=self.__class__.__name__,
        )

    def execute_recovery_plan(self, scenario, **options) -> RecoveryReport:
        """
        Run the runbook for ``scenario``.

        Raises:
            DisasterRecoveryError: If no candidate backup could be restored
            ValueError: If the scenario is unknown
        """
        scenario = Scenario(scenario)
        report = RecoveryReport(scenario=scenario.value)

        logger.info("=" * 80)
        logger.info(f"DISASTER RECOVERY INITIATED: {scenario.label}")
        logger.info("=" * 80)
        logged_options = {
            key: f"<{len(value)} bytes>" if isinstance(value, bytes) else value
            for key, value in options.items()
        }
        self.repository.log("dr_started", {"scenario": scenario.value, "options": logged_options})

        try:
            self._procedures[scenario](report, **options)
        except Exception as e:
            report.finish(error=e)
            logger.error(f"Disaster recovery for {scenario.value} failed: {e}")
            self.repository.log("dr_failed", report.to_dict())
            self._notify("disaster_recovery_failed", report.to_dict())
            raise

        report.finish()
        self.repository.log("dr_completed", report.to_dict())
        self._notify("disaster_recovery_completed", report.to_dict())
        logger.info(f"Disaster recovery for {scenario.value} completed in {report.duration_seconds:.1f}s")
        return report

    # Procedures

    def recover_data_corruption(self, report, detected_at=None, tables=None, corrupted_since=None):
        detected_at = detected_at or timezone.now()
        window_start = corrupted_since or detected_at
        candidates = [
            record for record in self.repository.list_verified(before=window_start)
            if self._chain_matches(record, finished_before(window_start))
        ]
        report.add_step(
            "Select candidates",
            "completed",
            candidates=[record.id for record in candidates],
            detected_at=detected_at.isoformat(),
            corrupted_since=window_start.isoformat(),
        )

        self._restore_first(report, candidates, self.restore_engine, tables=tables)

        if self.verifier is None:
            report.add_step("Re-verify backups", "skipped", reason="no verifier configured")
            return
        try:
            verification = self.verifier.verify_recent()
            report.add_step("Re-verify backups", "completed", **verification.to_dict())
        except LeaseUnavailableError as e:
            report.add_step("Re-verify backups", "skipped", reason=str(e))

    def recover_data_loss(self, report, transaction_log=None, affected_parties=()):
        candidates = [
            record for record in self.repository.list_verified()
            if self._chain_matches(record, lambda chain: chain[0].backup_type == BackupType.FULL)
        ]
        report.add_step(
            "Select candidates", "completed", candidates=[record.id for record in candidates]
        )

        record, _ = self._restore_first(report, candidates, self.restore_engine)

        if transaction_log:
            if self.source_database is None:
                report.add_step("Replay transaction log", "failed", error="no database gateway")
                raise DisasterRecoveryError("Cannot replay transaction log without a database gateway")
            try:
                self.source_database.apply_transaction_log(transaction_log)
            except Exception as e:
                report.add_step("Replay transaction log", "failed", error=str(e))
                raise DisasterRecoveryError(f"Transaction log replay failed: {e}") from e
            report.add_step("Replay transaction log", "completed", size_bytes=len(transaction_log))

        self._notify(
            "data_loss_recovered",
            {
                "backup_id": record.id,
                "affected_parties": list(affected_parties),
                "transaction_log_applied": bool(transaction_log),
            },
        )
        report.add_step("Notify affected parties", "completed", count=len(affected_parties))

    def recover_ransomware(self, report, infection_time=None):
        if infection_time is None:
            raise DisasterRecoveryError("Ransomware recovery requires the infection time")

        candidates = [
            record for record in self.repository.list_verified(before=infection_time)
            if self._chain_matches(record, finished_before(infection_time))
        ]
        report.add_step(
            "Select clean candidates",
            "completed",
            candidates=[record.id for record in candidates],
            infection_time=infection_time.isoformat(),
        )

        self._restore_first(report, candidates, self.restore_engine)

        enable_heightened_audit(
            self.heightened_audit_hours, reason=f"ransomware recovery ({infection_time.isoformat()})"
        )
        report.add_step(
            "Enable heightened audit logging", "completed", hours=self.heightened_audit_hours
        )

    def recover_regional_failure(self, report, region=""):
        if self.failover_engine is None:
            report.add_step("Select failover target", "failed", error="not configured")
            raise DisasterRecoveryError("No failover target or replica store configured")

        candidates = self.repository.list_replicated()
        report.add_step(
            "Select replicated candidates",
            "completed",
            candidates=[record.id for record in candidates],
            failed_region=region,
        )

        _, restore_log = self._restore_first(report, candidates, self.failover_engine)
        skipped_buckets = restore_log.metadata.get("skipped_buckets")
        if skipped_buckets:
            report.add_step(
                "Restore file storage",
                "skipped",
                buckets=skipped_buckets,
                reason="no failover file store configured",
            )

        if self.traffic_router is None or not self.traffic_router.is_configured:
            report.add_step(
                "Redirect traffic",
                "manual_required",
                target=self.failover_target,
                instructions="Point application traffic at the failover target",
            )
        else:
            try:
                self.traffic_router.redirect(self.failover_target, region=region)
            except BackupError as e:
                report.add_step("Redirect traffic", "failed", error=str(e))
                raise
            report.add_step("Redirect traffic", "completed", target=self.failover_target)

        if self.traffic_router is None:
            return
        healthy = self.traffic_router.wait_until_healthy()
        if healthy is None:
            report.add_step("Health check", "skipped", reason="no health check configured")
        elif healthy:
            report.add_step("Health check", "completed")
        else:
            report.add_step("Health check", "failed")
            raise DisasterRecoveryError("Failover target did not become healthy")

    # Helpers

    def _chain_matches(self, record, predicate):
        try:
            chain = self.repository.resolve_chain(record)
        except BackupError as e:
            logger.warning(f"Skipping candidate {record.id}: {e}")
            return False
        return predicate(chain)

    def _restore_first(self, report, candidates, engine, tables=None):
        """Restore the first candidate that succeeds, newest first."""
        for record in candidates:
            try:
                restore_log = engine.restore(
                    record.id,
                    tables=tables,
                    reason=f"Disaster recovery: {report.scenario}",
                    scenario=report.scenario,
                )
            except LeaseUnavailableError:
                report.add_step(f"Restore {record.id}", "failed", error="backup lease is held")
                raise
            except Exception as e:
                logger.error(f"Restore of candidate {record.id} failed, trying next: {e}")
                report.add_step(f"Restore {record.id}", "failed", error=str(e))
                continue

            report.backup_id = record.id
            report.restore_log_id = str(restore_log.pk)
            report.add_step(
                f"Restore {record.id}", "completed", restore_log_id=str(restore_log.pk)
            )
            return record, restore_log

        raise DisasterRecoveryError(
            f"No usable backup for {report.scenario} ({len(candidates)} candidates tried)"
        )

    def _notify(self, event_type, payload):
        if self.notifier is not None:
            self.notifier.notify(event_type, payload)
