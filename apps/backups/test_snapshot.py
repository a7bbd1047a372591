"""
Tests for snapshot capture and application.
"""

import base64
import subprocess
from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.test import override_settings
from django.utils import timezone

import pytest

from apps.backups.conftest import FakeFileStore
from apps.backups.exceptions import ExportError, RestoreError
from apps.backups.models import BackupType
from apps.backups.snapshot import (
    PostgresGateway,
    S3FileStore,
    SnapshotApplier,
    SnapshotBuilder,
    decode_payload,
    get_database_gateway,
)


class TestSnapshotBuilder:
    def test_full_payload(self, source_db, file_store):
        snapshot = SnapshotBuilder(source_db, file_store).build_full()

        payload = snapshot.payload
        assert snapshot.tables == ["customers", "orders"]
        assert payload["type"] == "full"
        assert payload["version"] == "1.0"
        assert payload["metadata"] == {"tables": ["customers", "orders"], "version": "1.0"}
        assert base64.b64decode(payload["database"]).startswith(b"{")
        entry = payload["storage"]["media"][0]
        assert entry["name"] == "invoices/1.pdf"
        assert entry["content_type"] == "application/pdf"
        assert base64.b64decode(entry["data"]) == b"%PDF-1.4 invoice"
        assert source_db.exports == [False]

    def test_snapshot_requests_consistent_export(self, source_db, file_store):
        snapshot = SnapshotBuilder(source_db, file_store).build_snapshot()

        assert source_db.exports == [True]
        assert "storage" not in snapshot.payload

    def test_changes_only_include_recent_rows_and_objects(self, source_db, file_store):
        since = timezone.now() - timedelta(hours=1)
        source_db.upsert("orders", [{"id": 99, "name": "new", "updated_at": timezone.now().isoformat()}])
        file_store.add("media", "invoices/2.pdf", b"%PDF-1.4 new")

        snapshot = SnapshotBuilder(source_db, file_store).build_changes(
            BackupType.DIFFERENTIAL, "backup-1-full", since
        )

        payload = snapshot.payload
        assert snapshot.tables == ["orders"]
        assert payload["type"] == "differential"
        assert payload["base_backup_id"] == "backup-1-full"
        assert payload["since"] == since.isoformat()
        assert [row["id"] for row in payload["changes"]["orders"]] == [99]
        assert [entry["name"] for entry in payload["storage"]["media"]] == ["invoices/2.pdf"]

    def test_no_file_store(self, source_db):
        snapshot = SnapshotBuilder(source_db).build_full()

        assert snapshot.payload["storage"] == {}

    def test_export_failure(self, source_db):
        source_db.fail_export = True

        with pytest.raises(ExportError):
            SnapshotBuilder(source_db).build_full()

    def test_file_store_failure_is_an_export_error(self, source_db):
        broken = MagicMock()
        broken.list_buckets.side_effect = OSError("connection reset")

        with pytest.raises(ExportError):
            SnapshotBuilder(source_db, broken).capture_storage()

    def test_encode_round_trip(self, source_db):
        snapshot = SnapshotBuilder(source_db).build_snapshot()

        assert decode_payload(snapshot.encode()) == snapshot.payload


class TestSnapshotApplier:
    def test_apply_dump(self, source_db):
        payload = SnapshotBuilder(source_db).build_snapshot().payload
        source_db.tables = {}

        SnapshotApplier(source_db).apply_dump(payload)

        assert source_db.row_count("customers") == 10

    def test_apply_dump_requires_database(self, source_db):
        with pytest.raises(RestoreError):
            SnapshotApplier(source_db).apply_dump({"type": "incremental", "changes": {}})

    def test_apply_changes_filters_tables(self, source_db):
        payload = {
            "changes": {
                "customers": [{"id": 1, "name": "changed", "updated_at": timezone.now().isoformat()}],
                "orders": [{"id": 4, "name": "new", "updated_at": timezone.now().isoformat()}],
            }
        }

        applied = SnapshotApplier(source_db).apply_changes(payload, tables=["orders"])

        assert applied == 1
        assert source_db.row_count("orders") == 4
        assert source_db.tables["customers"][0]["name"] == "row 1"

    def test_restore_storage(self):
        store = FakeFileStore()
        storage = {
            "media": [
                {
                    "name": "a.txt",
                    "content_type": "text/plain",
                    "data": base64.b64encode(b"hello").decode("ascii"),
                }
            ]
        }

        restored = SnapshotApplier(MagicMock(), store).restore_storage(storage)

        assert restored == 1
        assert store.download("media", "a.txt") == b"hello"

    def test_restore_storage_without_file_store(self):
        with pytest.raises(RestoreError):
            SnapshotApplier(MagicMock()).restore_storage({"media": [{"name": "a", "data": ""}]})


def completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPostgresGateway:
    def setup_method(self):
        self.gateway = PostgresGateway(
            "postgresql://backup:secret@db:5432/app",
            excluded_tables=["backups_record"],
            timeout=60,
        )

    @patch("apps.backups.snapshot.subprocess.run")
    def test_export_command(self, mock_run):
        mock_run.return_value = completed(stdout=b"PGDMP")

        assert self.gateway.export(snapshot=True) == b"PGDMP"

        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "pg_dump"
        assert "--format=custom" in cmd
        assert "--serializable-deferrable" in cmd
        assert cmd[cmd.index("--exclude-table") + 1] == "backups_record"
        assert mock_run.call_args.kwargs["timeout"] == 60

    @patch("apps.backups.snapshot.subprocess.run")
    def test_export_failure(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr=b"connection refused")

        with pytest.raises(ExportError) as excinfo:
            self.gateway.export()
        assert "connection refused" in str(excinfo.value)

    @patch("apps.backups.snapshot.subprocess.run")
    def test_export_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="pg_dump", timeout=60)

        with pytest.raises(ExportError):
            self.gateway.export()

    @patch("apps.backups.snapshot.subprocess.run")
    def test_import_selected_tables(self, mock_run):
        mock_run.return_value = completed()

        self.gateway.import_dump(b"PGDMP", tables=["customers"])

        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "pg_restore"
        assert "--single-transaction" in cmd
        assert cmd[cmd.index("--table") + 1] == "customers"
        assert mock_run.call_args.kwargs["input"] == b"PGDMP"

    @patch("apps.backups.snapshot.subprocess.run")
    def test_import_failure_is_a_restore_error(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr=b"relation does not exist")

        with pytest.raises(RestoreError):
            self.gateway.import_dump(b"PGDMP")

    @patch("apps.backups.snapshot.subprocess.run")
    def test_missing_tool(self, mock_run):
        mock_run.side_effect = FileNotFoundError("psql")

        with pytest.raises(RestoreError):
            self.gateway.apply_transaction_log(b"SELECT 1;")


class TestS3FileStore:
    def test_list_objects(self):
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "a.pdf", "Size": 3, "LastModified": timezone.now()}]},
            {},
        ]

        objects = S3FileStore(client=client).list_objects("media")

        assert [obj.name for obj in objects] == ["a.pdf"]
        assert objects[0].size == 3

    def test_configured_buckets(self):
        client = MagicMock()

        assert S3FileStore(buckets=["media"], client=client).list_buckets() == ["media"]
        client.list_buckets.assert_not_called()


class TestGatewayFactory:
    def test_failover_not_configured(self):
        assert get_database_gateway("failover") is None

    def test_source_without_url(self):
        with pytest.raises(ValueError):
            get_database_gateway("source")

    @override_settings(
        BACKUP_SOURCE_DATABASE={"URL": "postgresql://db/app", "EXCLUDED_TABLES": ["backups_record"]}
    )
    def test_source_from_settings(self):
        gateway = get_database_gateway()

        assert gateway.database_url == "postgresql://db/app"
        assert gateway.excluded_tables == ["backups_record"]