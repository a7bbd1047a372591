"""
Tests for backup verification sweeps.
"""

from datetime import timedelta

from django.utils import timezone

import pytest

from apps.backups.exceptions import LeaseUnavailableError
from apps.backups.locks import VERIFY_LEASE, operation_lease
from apps.backups.models import BackupAuditEvent, BackupRecord, BackupStatus, BackupType

pytestmark = pytest.mark.django_db


def test_only_the_corrupted_backup_fails(services, primary_store, notifier):
    records = [services.orchestrator.perform_backup(BackupType.FULL) for _ in range(3)]
    corrupted = records[1]
    primary_store.corrupt(corrupted.location)

    report = services.verifier.verify_recent()

    assert sorted(report.checked) == sorted(record.id for record in records)
    assert list(report.failed) == [corrupted.id]
    assert report.failed[corrupted.id] == "Checksum mismatch"
    assert not report.all_verified

    for record in records:
        record.refresh_from_db()
    assert records[0].status == BackupStatus.VERIFIED
    assert records[0].verified_at is not None
    assert records[2].status == BackupStatus.VERIFIED
    assert corrupted.status == BackupStatus.COMPLETED
    assert corrupted.verification_error == "Checksum mismatch"

    assert notifier.types().count("backup_verification_failed") == 1
    assert BackupAuditEvent.objects.filter(event="verification_failed").count() == 1


def test_missing_blob_is_reported(services, primary_store):
    record = services.orchestrator.perform_backup(BackupType.SNAPSHOT)
    del primary_store.blobs[record.location]

    report = services.verifier.verify_recent()

    assert report.failed[record.id].startswith("Download failed")


def test_backups_outside_window_are_skipped(services, make_record):
    make_record(
        status=BackupStatus.COMPLETED, start_time=timezone.now() - timedelta(days=30)
    )

    report = services.verifier.verify_recent()

    assert report.checked == []


def test_failed_and_verified_backups_are_not_rechecked(services, make_record):
    make_record(status=BackupStatus.FAILED)
    make_record(status=BackupStatus.VERIFIED)

    assert services.verifier.verify_recent().checked == []


def test_verify_single_record(services):
    record = services.orchestrator.perform_backup(BackupType.FULL)

    assert services.verifier.verify(record)
    assert record.status == BackupStatus.VERIFIED

    # Verifying again keeps the record verified
    assert services.verifier.verify(record)
    assert record.status == BackupStatus.VERIFIED


def test_record_deleted_during_check_stays_deleted(services):
    record = services.orchestrator.perform_backup(BackupType.FULL)
    # A retention sweep deletes the row while this copy is being checked
    BackupRecord.objects.filter(pk=record.pk).update(status=BackupStatus.DELETED)

    assert not services.verifier.verify(record)

    stored = BackupRecord.objects.get(pk=record.pk)
    assert stored.status == BackupStatus.DELETED
    assert stored.verified_at is None
    assert record.status == BackupStatus.DELETED
    assert not BackupAuditEvent.objects.filter(event="verified").exists()


def test_failure_on_deleted_record_is_dropped(services, primary_store, notifier):
    record = services.orchestrator.perform_backup(BackupType.FULL)
    BackupRecord.objects.filter(pk=record.pk).update(status=BackupStatus.DELETED)
    primary_store.blobs.clear()

    assert not services.verifier.verify(record)

    assert BackupRecord.objects.get(pk=record.pk).verification_error == ""
    assert "backup_verification_failed" not in notifier.types()


def test_wrong_salt_is_unreadable(services):
    record = services.orchestrator.perform_backup(BackupType.FULL)
    record.salt_hex = "00" * 32

    problem = services.verifier.check(record)

    assert problem.startswith("Payload unreadable")


def test_sweep_skipped_while_lease_is_held(services):
    with operation_lease(VERIFY_LEASE):
        with pytest.raises(LeaseUnavailableError):
            services.verifier.verify_recent()


def test_report_to_dict(services):
    record = services.orchestrator.perform_backup(BackupType.FULL)

    report = services.verifier.verify_recent()

    assert report.to_dict() == {"checked": 1, "verified": [record.id], "failed": {}}
