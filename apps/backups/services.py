"""
Service layer for backup operations.

This module provides:
- build_backup_services(): wires every component from settings (the
  components themselves never read settings or hold global clients)
- BackupService: high-level entry points that queue the Celery tasks
"""

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings

from .disaster_recovery import DisasterRecoveryDispatcher, Scenario
from .encryption import get_crypto_engine
from .models import BackupType
from .notifications import get_notifier, get_traffic_router
from .orchestrator import BackupOrchestrator
from .repository import MetadataRepository
from .restore import RestoreEngine
from .retention import RetentionManager, RetentionPolicy
from .snapshot import SnapshotApplier, SnapshotBuilder, get_database_gateway, get_file_store
from .storage import PRIMARY_STORE, REPLICA_STORE, get_remote_store
from .verification import BackupVerifier

logger = logging.getLogger(__name__)

_DEFAULT = object()


@dataclass
class BackupServices:
    repository: MetadataRepository
    orchestrator: BackupOrchestrator
    verifier: BackupVerifier
    restore_engine: RestoreEngine
    failover_engine: Optional[RestoreEngine]
    retention_manager: RetentionManager
    dispatcher: DisasterRecoveryDispatcher
    notifier: object


def build_backup_services(
    crypto=None,
    primary_store=None,
    replica_store=_DEFAULT,
    source_database=None,
    failover_database=_DEFAULT,
    file_store=_DEFAULT,
    failover_file_store=_DEFAULT,
    notifier=None,
    traffic_router=_DEFAULT,
    retention_policy=None,
) -> BackupServices:
    """
    Build every backup component.

    Anything not passed in is built from settings. Optional collaborators
    (replica store, failover database, file stores, traffic router) may be
    passed as None to disable them. The failover engine only ever writes to
    the failover file store, never to the source region's.
    """
    crypto = crypto or get_crypto_engine()
    primary_store = primary_store or get_remote_store(PRIMARY_STORE)
    if replica_store is _DEFAULT:
        replica_store = get_remote_store(REPLICA_STORE)
    source_database = source_database or get_database_gateway("source")
    if failover_database is _DEFAULT:
        failover_database = get_database_gateway("failover")
    if file_store is _DEFAULT:
        file_store = get_file_store()
    if failover_file_store is _DEFAULT:
        failover_file_store = get_file_store("failover")
    if traffic_router is _DEFAULT:
        traffic_router = get_traffic_router()
    notifier = notifier or get_notifier()

    max_workers = getattr(settings, "BACKUP_MAX_CONCURRENCY", 5)
    repository = MetadataRepository()

    orchestrator = BackupOrchestrator(
        repository=repository,
        builder=SnapshotBuilder(source_database, file_store, max_workers=max_workers),
        crypto=crypto,
        primary_store=primary_store,
        replica_store=replica_store,
        notifier=notifier,
        run_deadline_seconds=getattr(settings, "BACKUP_RUN_DEADLINE_SECONDS", None),
    )

    verifier = BackupVerifier(
        repository=repository,
        crypto=crypto,
        store=primary_store,
        notifier=notifier,
        window_days=getattr(settings, "BACKUP_VERIFICATION_WINDOW_DAYS", 7),
        max_workers=max_workers,
    )

    restore_engine = RestoreEngine(
        repository=repository,
        crypto=crypto,
        store=primary_store,
        applier=SnapshotApplier(source_database, file_store, max_workers=max_workers),
        orchestrator=orchestrator,
        notifier=notifier,
    )

    failover_engine = None
    if failover_database is not None and replica_store is not None:
        failover_engine = RestoreEngine(
            repository=repository,
            crypto=crypto,
            store=replica_store,
            applier=SnapshotApplier(failover_database, failover_file_store, max_workers=max_workers),
            notifier=notifier,
            use_replica=True,
        )

    retention_manager = RetentionManager(
        repository=repository,
        primary_store=primary_store,
        replica_store=replica_store,
        policy=retention_policy or RetentionPolicy.from_settings(),
        notifier=notifier,
    )

    failover_config = getattr(settings, "BACKUP_FAILOVER_DATABASE", None) or {}
    dispatcher = DisasterRecoveryDispatcher(
        repository=repository,
        restore_engine=restore_engine,
        failover_engine=failover_engine,
        verifier=verifier,
        notifier=notifier,
        traffic_router=traffic_router,
        source_database=source_database,
        failover_target=failover_config.get("NAME", "failover"),
        heightened_audit_hours=getattr(settings, "BACKUP_HEIGHTENED_AUDIT_HOURS", 72),
    )

    return BackupServices(
        repository=repository,
        orchestrator=orchestrator,
        verifier=verifier,
        restore_engine=restore_engine,
        failover_engine=failover_engine,
        retention_manager=retention_manager,
        dispatcher=dispatcher,
        notifier=notifier,
    )


def get_backup_services() -> BackupServices:
    return build_backup_services()


class BackupService:
    """Queue backup operations on the ``backups`` Celery queue."""

    @staticmethod
    def trigger_backup(backup_type: str = BackupType.FULL):
        from .tasks import run_backup

        backup_type = BackupType(backup_type)
        logger.info(f"Queueing {backup_type.label}")
        return run_backup.delay(backup_type.value)

    @staticmethod
    def trigger_restore(
        backup_id: str,
        tables: Optional[List[str]] = None,
        target_time=None,
        reason: str = "",
    ):
        """
        Queue a restore.

        Args:
            backup_id: Backup to restore
            tables: Restore only these tables (None restores everything)
            target_time: Requested point in time (datetime), recorded only
            reason: Why the restore was requested
        """
        from .tasks import restore_backup

        logger.info(f"Queueing restore of {backup_id}")
        return restore_backup.delay(
            backup_id,
            tables=tables,
            target_time=target_time.isoformat() if target_time else None,
            reason=reason,
        )

    @staticmethod
    def trigger_disaster_recovery(scenario: str, **options):
        """
        Queue a disaster recovery plan.

        Datetime options are sent as ISO strings and a transaction log as
        base64 so the arguments survive JSON serialization.
        """
        from .tasks import execute_disaster_recovery

        scenario = Scenario(scenario)
        serialized = {}
        for key, value in options.items():
            if isinstance(value, bytes):
                serialized[key] = base64.b64encode(value).decode("ascii")
            elif hasattr(value, "isoformat"):
                serialized[key] = value.isoformat()
            elif isinstance(value, tuple):
                serialized[key] = list(value)
            else:
                serialized[key] = value

        logger.warning(f"Queueing disaster recovery plan: {scenario.label}")
        return execute_disaster_recovery.delay(scenario.value, serialized)
