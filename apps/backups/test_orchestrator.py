"""
Tests for the backup orchestrator.

Backups run end to end against the in-memory fakes from conftest.py: the
payload is really compressed, encrypted, checksummed and uploaded.
"""

from datetime import timedelta
from unittest.mock import MagicMock

from django.utils import timezone

from celery.exceptions import SoftTimeLimitExceeded

import pytest

from apps.backups.conftest import MemoryRemoteStore, make_rows
from apps.backups.encryption import calculate_checksum
from apps.backups.exceptions import ExportError, LeaseUnavailableError, OperationCancelledError
from apps.backups.locks import BACKUP_LEASE, operation_lease
from apps.backups.models import BackupAuditEvent, BackupRecord, BackupStatus, BackupType
from apps.backups.orchestrator import build_remote_key
from apps.backups.services import build_backup_services
from apps.backups.snapshot import decode_payload

pytestmark = pytest.mark.django_db


def test_full_backup_end_to_end(services, primary_store, crypto, notifier):
    record = services.orchestrator.perform_backup(BackupType.FULL)

    record.refresh_from_db()
    assert record.status == BackupStatus.COMPLETED
    assert record.location == build_remote_key(record)
    assert record.location.startswith(f"backups/{record.start_time.year}/")
    assert record.location.endswith(".enc")
    assert record.end_time is not None
    assert record.tables == ["customers", "orders"]

    blob = primary_store.get(record.location)
    assert record.size_bytes == len(blob)
    assert record.checksum == calculate_checksum(blob)
    assert blob[:32] == bytes.fromhex(record.salt_hex)

    payload = decode_payload(crypto.decrypt(blob, record.salt_hex))
    assert payload["type"] == "full"
    assert payload["metadata"]["version"] == "1.0"
    assert "database" in payload
    assert payload["storage"]["media"][0]["name"] == "invoices/1.pdf"

    events = list(BackupAuditEvent.objects.filter(backup_id=record.id).values_list("event", flat=True))
    assert set(events) == {"start", "complete"}
    assert notifier.types() == ["backup_success"]


def test_backup_id_format(services):
    record = services.orchestrator.perform_backup(BackupType.SNAPSHOT)
    assert record.id.startswith("backup-")
    assert record.id.endswith("-snapshot")


def test_back_to_back_backups_get_distinct_ids(services):
    first = services.orchestrator.perform_backup(BackupType.FULL)
    second = services.orchestrator.perform_backup(BackupType.FULL)

    assert first.id != second.id
    assert first.location != second.location


def test_snapshot_backup_is_database_only(services, primary_store, crypto, source_db):
    record = services.orchestrator.perform_backup(BackupType.SNAPSHOT)

    payload = decode_payload(crypto.decrypt(primary_store.get(record.location), record.salt_hex))
    assert payload["type"] == "snapshot"
    assert "storage" not in payload
    assert source_db.exports == [True]


def test_incremental_without_base_falls_back_to_full(services):
    record = services.orchestrator.perform_backup(BackupType.INCREMENTAL)

    record.refresh_from_db()
    assert record.backup_type == BackupType.FULL
    assert record.base_backup is None
    assert record.metadata["requested_type"] == "incremental"
    assert record.metadata["fallback_reason"]
    assert record.id.endswith("-incremental")
    assert record.status == BackupStatus.COMPLETED


def test_incremental_captures_changes_since_base(services, primary_store, crypto, source_db):
    full = services.orchestrator.perform_backup(BackupType.FULL)
    source_db.upsert("customers", make_rows(2, start=11, updated_at=timezone.now()))

    incremental = services.orchestrator.perform_backup(BackupType.INCREMENTAL)

    assert incremental.backup_type == BackupType.INCREMENTAL
    assert incremental.base_backup_id == full.id
    assert incremental.tables == ["customers"]

    payload = decode_payload(
        crypto.decrypt(primary_store.get(incremental.location), incremental.salt_hex)
    )
    assert payload["base_backup_id"] == full.id
    assert [row["id"] for row in payload["changes"]["customers"]] == [11, 12]
    assert payload["storage"] == {"media": []}


def test_differential_is_based_on_latest_full(services, source_db):
    full = services.orchestrator.perform_backup(BackupType.FULL)
    source_db.upsert("orders", make_rows(1, start=4, updated_at=timezone.now()))
    services.orchestrator.perform_backup(BackupType.INCREMENTAL)

    differential = services.orchestrator.perform_backup(BackupType.DIFFERENTIAL)

    assert differential.backup_type == BackupType.DIFFERENTIAL
    assert differential.base_backup_id == full.id


def test_incremental_falls_back_when_chain_is_too_deep(services):
    services.repository.max_chain_depth = 2
    services.orchestrator.perform_backup(BackupType.FULL)
    second = services.orchestrator.perform_backup(BackupType.INCREMENTAL)
    third = services.orchestrator.perform_backup(BackupType.INCREMENTAL)

    assert second.backup_type == BackupType.INCREMENTAL
    assert third.backup_type == BackupType.FULL
    assert "links" in third.metadata["fallback_reason"]


def test_export_failure_persists_failed_record(services, source_db, notifier):
    source_db.fail_export = True

    with pytest.raises(ExportError):
        services.orchestrator.perform_backup(BackupType.FULL)

    record = BackupRecord.objects.get()
    assert record.status == BackupStatus.FAILED
    assert "pg_dump failed" in record.error
    assert record.end_time is not None
    assert notifier.types() == ["backup_failed"]
    assert BackupAuditEvent.objects.filter(event="failed", backup_id=record.id).exists()


def test_soft_time_limit_persists_failed_record(services, source_db):
    source_db.export = MagicMock(side_effect=SoftTimeLimitExceeded())

    with pytest.raises(SoftTimeLimitExceeded):
        services.orchestrator.perform_backup(BackupType.FULL)

    assert BackupRecord.objects.get().status == BackupStatus.FAILED


def test_upload_failure_persists_failed_record(services, primary_store):
    primary_store.fail_puts = True

    with pytest.raises(Exception):
        services.orchestrator.perform_backup(BackupType.FULL)

    assert BackupRecord.objects.get().status == BackupStatus.FAILED


def test_expired_deadline_fails_instead_of_hanging(services, primary_store):
    with pytest.raises(OperationCancelledError):
        services.orchestrator.perform_backup(
            BackupType.FULL, deadline=timezone.now() - timedelta(seconds=1)
        )

    record = BackupRecord.objects.get()
    assert record.status == BackupStatus.FAILED
    assert "deadline" in record.error
    assert primary_store.blobs == {}


def test_no_record_left_in_progress_after_failure(services, source_db):
    source_db.fail_export = True
    with pytest.raises(ExportError):
        services.orchestrator.perform_backup(BackupType.SNAPSHOT)

    assert not BackupRecord.objects.filter(
        status__in=[BackupStatus.PENDING, BackupStatus.IN_PROGRESS]
    ).exists()


def test_backup_skipped_while_lease_is_held(services):
    with operation_lease(BACKUP_LEASE):
        with pytest.raises(LeaseUnavailableError):
            services.orchestrator.perform_backup(BackupType.FULL)

    assert not BackupRecord.objects.exists()


def test_replica_receives_a_copy(crypto, primary_store, source_db, file_store, notifier):
    replica = MemoryRemoteStore()
    services = build_backup_services(
        crypto=crypto,
        primary_store=primary_store,
        replica_store=replica,
        source_database=source_db,
        failover_database=None,
        file_store=file_store,
        notifier=notifier,
        traffic_router=None,
    )

    record = services.orchestrator.perform_backup(BackupType.FULL)

    assert record.replica_location == record.location
    assert replica.get(record.location) == primary_store.get(record.location)


def test_replica_failure_is_not_fatal(crypto, primary_store, source_db, file_store, notifier):
    replica = MemoryRemoteStore()
    replica.fail_puts = True
    services = build_backup_services(
        crypto=crypto,
        primary_store=primary_store,
        replica_store=replica,
        source_database=source_db,
        failover_database=None,
        file_store=file_store,
        notifier=notifier,
        traffic_router=None,
    )

    record = services.orchestrator.perform_backup(BackupType.FULL)

    assert record.status == BackupStatus.COMPLETED
    assert record.replica_location == ""
    assert "service unavailable" in record.metadata["replication_error"]
