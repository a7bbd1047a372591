"""
Pytest configuration and fixtures for backup tests.

The external collaborators (database exporter, file store, remote store,
notifier) are replaced with in-memory fakes so the whole backup and restore
pipeline runs for real inside the test process.
"""

import json
from datetime import timedelta

from django.core.cache import cache
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone
from django.utils.dateparse import parse_datetime

import pytest

from apps.backups.encryption import CryptoEngine
from apps.backups.exceptions import DownloadError, ExportError, StorageError, UploadError
from apps.backups.models import BackupRecord, BackupStatus, BackupType
from apps.backups.retention import RetentionPolicy
from apps.backups.services import build_backup_services
from apps.backups.snapshot import DatabaseGateway, FileStore, StoredObject
from apps.backups.storage import RemoteStore


def make_rows(count, start=1, updated_at=None):
    updated_at = (updated_at or timezone.now() - timedelta(days=1)).isoformat()
    return [
        {"id": i, "name": f"row {i}", "updated_at": updated_at} for i in range(start, start + count)
    ]


class FakeDatabase(DatabaseGateway):
    """In-memory database: table name -> list of row dicts keyed by ``id``."""

    def __init__(self, tables=None):
        self.tables = tables if tables is not None else {}
        self.exports = []
        self.imports = 0
        self.transaction_logs = []
        self.fail_export = False

    def export(self, snapshot=False):
        if self.fail_export:
            raise ExportError("pg_dump failed with return code 1: connection refused")
        self.exports.append(snapshot)
        return json.dumps(self.tables, cls=DjangoJSONEncoder).encode("utf-8")

    def import_dump(self, dump, tables=None):
        data = json.loads(dump.decode("utf-8"))
        self.imports += 1
        if tables is None:
            self.tables = data
        else:
            for table in tables:
                self.tables[table] = data.get(table, [])

    def list_tables(self):
        return sorted(self.tables)

    def changes_since(self, since):
        changes = {}
        for table, rows in self.tables.items():
            changed = [row for row in rows if parse_datetime(row["updated_at"]) >= since]
            if changed:
                changes[table] = changed
        return changes

    def upsert(self, table, rows):
        existing = {row["id"]: row for row in self.tables.setdefault(table, [])}
        for row in rows:
            existing[row["id"]] = row
        self.tables[table] = sorted(existing.values(), key=lambda row: row["id"])

    def apply_transaction_log(self, log):
        self.transaction_logs.append(log)

    def row_count(self, table):
        return len(self.tables.get(table, []))


class FakeFileStore(FileStore):
    def __init__(self):
        self.buckets = {}

    def add(self, bucket, key, data, content_type="application/octet-stream", updated_at=None):
        self.buckets.setdefault(bucket, {})[key] = (data, content_type, updated_at or timezone.now())

    def list_buckets(self):
        return sorted(self.buckets)

    def list_objects(self, bucket):
        return [
            StoredObject(name=key, size=len(data), content_type=content_type, updated_at=updated_at)
            for key, (data, content_type, updated_at) in sorted(self.buckets.get(bucket, {}).items())
        ]

    def download(self, bucket, key):
        return self.buckets[bucket][key][0]

    def upload(self, bucket, key, data, content_type=None):
        self.buckets.setdefault(bucket, {})[key] = (data, content_type, timezone.now())


class MemoryRemoteStore(RemoteStore):
    """Remote store backed by a dict, with switches for failure injection."""

    name = "memory"

    def __init__(self):
        self.blobs = {}
        self.fail_puts = False
        self.fail_delete_keys = set()

    def put(self, key, data, server_side_encryption=None, storage_class=None):
        if self.fail_puts:
            raise UploadError(f"Failed to upload {key}: service unavailable")
        if key in self.blobs:
            raise UploadError(f"refusing to overwrite {key}")
        self.blobs[key] = bytes(data)

    def get(self, key):
        if key not in self.blobs:
            raise DownloadError(f"Blob not found: {key}")
        return self.blobs[key]

    def delete(self, key):
        if key in self.fail_delete_keys:
            raise StorageError(f"Failed to delete {key}: access denied")
        self.blobs.pop(key, None)

    def exists(self, key):
        return key in self.blobs

    def corrupt(self, key, position=-1):
        blob = bytearray(self.blobs[key])
        blob[position] ^= 0x01
        self.blobs[key] = bytes(blob)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event_type, payload=None):
        self.events.append((event_type, payload or {}))
        return {"webhook": True, "email": False}

    def types(self):
        return [event_type for event_type, _ in self.events]


@pytest.fixture(autouse=True)
def clear_cache():
    """Leases and the heightened-audit flag live in the cache."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def crypto():
    return CryptoEngine("test-backup-password", scrypt_cost=2**4)


@pytest.fixture
def source_db():
    return FakeDatabase(
        {
            "customers": make_rows(10),
            "orders": make_rows(3),
        }
    )


@pytest.fixture
def file_store():
    store = FakeFileStore()
    store.add(
        "media",
        "invoices/1.pdf",
        b"%PDF-1.4 invoice",
        "application/pdf",
        updated_at=timezone.now() - timedelta(days=1),
    )
    return store


@pytest.fixture
def primary_store():
    return MemoryRemoteStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(crypto, primary_store, source_db, file_store, notifier):
    return build_backup_services(
        crypto=crypto,
        primary_store=primary_store,
        replica_store=None,
        source_database=source_db,
        failover_database=None,
        file_store=file_store,
        notifier=notifier,
        traffic_router=None,
        retention_policy=RetentionPolicy(daily=7, weekly=4, monthly=12, yearly=5),
    )


@pytest.fixture
def make_record(db):
    """Create a BackupRecord row directly, bypassing the orchestrator."""
    counter = {"n": 0}

    def _make_record(
        backup_type=BackupType.FULL,
        status=BackupStatus.VERIFIED,
        start_time=None,
        end_time=None,
        base_backup=None,
        **fields,
    ):
        counter["n"] += 1
        start_time = start_time or timezone.now() - timedelta(hours=counter["n"])
        if end_time is None and status in (BackupStatus.COMPLETED, BackupStatus.VERIFIED):
            end_time = start_time + timedelta(minutes=5)
        backup_id = f"backup-{int(start_time.timestamp() * 1000)}-{counter['n']}-{backup_type}"
        defaults = {
            "location": f"backups/{start_time.year}/{backup_id}.enc",
            "checksum": "a" * 64,
            "salt_hex": "b" * 64,
            "tables": ["customers", "orders"],
        }
        defaults.update(fields)
        return BackupRecord.objects.create(
            id=backup_id,
            backup_type=backup_type,
            status=status,
            start_time=start_time,
            end_time=end_time,
            base_backup=base_backup,
            **defaults,
        )

    return _make_record
