"""
Snapshot capture and application.

This module turns application state into backup payloads and back:
- DatabaseGateway / PostgresGateway: the external database exporter and
  importer (pg_dump, pg_restore, psql) plus row-level change queries
- FileStore / S3FileStore: the bucket/object store holding uploaded media
- SnapshotBuilder: builds the raw (unencrypted) payload for a backup
- SnapshotApplier: writes a decoded payload back into the database and
  file store

Payloads are JSON documents (binary parts base64-encoded), gzip-compressed
before they are handed to the crypto engine.
"""

import base64
import json
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import connections
from django.utils import timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .encryption import compress_bytes, decompress_bytes
from .exceptions import ExportError, RestoreError
from .models import BackupType

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "1.0"
DEFAULT_MAX_WORKERS = 5
DEFAULT_EXPORT_TIMEOUT = 3600  # 1 hour


@dataclass
class StoredObject:
    """An object in the application's file store."""

    name: str
    size: int = 0
    content_type: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class Snapshot:
    """Raw payload produced by the snapshot builder."""

    payload: dict
    tables: List[str] = field(default_factory=list)

    def encode(self) -> bytes:
        return encode_payload(self.payload)


def encode_payload(payload: dict) -> bytes:
    """Serialize and compress a payload."""
    return compress_bytes(json.dumps(payload, cls=DjangoJSONEncoder).encode("utf-8"))


def decode_payload(data: bytes) -> dict:
    """Decompress and parse a payload produced by encode_payload()."""
    return json.loads(decompress_bytes(data).decode("utf-8"))


class DatabaseGateway:
    """Interface to the external database exporter/importer."""

    def export(self, snapshot: bool = False) -> bytes:
        """
        Produce a serialized dump of the database.

        Args:
            snapshot: Request a point-in-time consistent export

        Raises:
            ExportError: If the dump tool fails
        """
        raise NotImplementedError

    def import_dump(self, dump: bytes, tables: Optional[List[str]] = None) -> None:
        """
        Replace database state with a dump, optionally limited to ``tables``.

        Raises:
            RestoreError: If the import tool fails
        """
        raise NotImplementedError

    def list_tables(self) -> List[str]:
        raise NotImplementedError

    def changes_since(self, since: datetime) -> Dict[str, List[dict]]:
        """Rows changed at or after ``since``, keyed by table."""
        raise NotImplementedError

    def upsert(self, table: str, rows: List[dict]) -> None:
        raise NotImplementedError

    def apply_transaction_log(self, log: bytes) -> None:
        raise NotImplementedError


class PostgresGateway(DatabaseGateway):
    """
    PostgreSQL gateway.

    Dumps and restores run through the PostgreSQL client tools against
    ``database_url``; row queries go through the Django connection ``alias``
    that points at the same database.
    """

    def __init__(
        self,
        database_url: str,
        alias: str = "default",
        excluded_tables: Optional[List[str]] = None,
        timeout: int = DEFAULT_EXPORT_TIMEOUT,
        schema: str = "public",
    ):
        self.database_url = database_url
        self.alias = alias
        self.excluded_tables = list(excluded_tables or [])
        self.timeout = timeout
        self.schema = schema

    def _run(self, cmd: List[str], stdin: Optional[bytes] = None, error_class=ExportError) -> bytes:
        tool = cmd[0]
        logger.info(f"Running {tool}")
        try:
            result = subprocess.run(cmd, input=stdin, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise error_class(f"{tool} timed out after {self.timeout} seconds") from e
        except OSError as e:
            raise error_class(f"{tool} could not be started: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace")
            raise error_class(f"{tool} failed with return code {result.returncode}: {stderr}")

        return result.stdout

    def export(self, snapshot=False):
        # --format=custom: compressed archive that pg_restore can filter by table
        cmd = [
            "pg_dump",
            "--format=custom",
            "--no-owner",
            "--no-acl",
            f"--dbname={self.database_url}",
        ]
        if snapshot:
            cmd.append("--serializable-deferrable")
        for table in self.excluded_tables:
            cmd.extend(["--exclude-table", table])

        dump = self._run(cmd)
        logger.info(f"pg_dump produced {len(dump)} bytes (snapshot={snapshot})")
        return dump

    def import_dump(self, dump, tables=None):
        cmd = [
            "pg_restore",
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-acl",
            "--single-transaction",
            f"--dbname={self.database_url}",
        ]
        for table in tables or []:
            cmd.extend(["--table", table])

        if tables:
            logger.warning(f"Restoring tables {tables} - existing rows will be replaced")
        else:
            logger.warning("Restoring full dump - existing objects will be dropped")

        self._run(cmd, stdin=dump, error_class=RestoreError)

    def apply_transaction_log(self, log):
        cmd = [
            "psql",
            "--single-transaction",
            "-v",
            "ON_ERROR_STOP=1",
            f"--dbname={self.database_url}",
        ]
        self._run(cmd, stdin=log, error_class=RestoreError)

    def _cursor(self):
        return connections[self.alias].cursor()

    def _quote(self, name: str) -> str:
        return connections[self.alias].ops.quote_name(name)

    def list_tables(self):
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = %s AND table_type = 'BASE TABLE' "
                "ORDER BY table_name",
                [self.schema],
            )
            tables = [row[0] for row in cursor.fetchall()]
        return [table for table in tables if table not in self.excluded_tables]

    def _column_types(self, table: str) -> Dict[str, str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_schema = %s AND table_name = %s",
                [self.schema, table],
            )
            return dict(cursor.fetchall())

    def _primary_key(self, table: str) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT a.attname FROM pg_index i "
                "JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey) "
                "WHERE i.indrelid = %s::regclass AND i.indisprimary",
                [f"{self.schema}.{table}"],
            )
            return [row[0] for row in cursor.fetchall()]

    @staticmethod
    def _jsonable(value):
        if isinstance(value, memoryview):
            value = value.tobytes()
        if isinstance(value, bytes):
            # bytea accepts hex input
            return "\\x" + value.hex()
        return value

    def changes_since(self, since):
        changes = {}
        for table in self.list_tables():
            if "updated_at" not in self._column_types(table):
                continue
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT * FROM {self._quote(table)} WHERE updated_at >= %s", [since]
                )
                columns = [column[0] for column in cursor.description]
                rows = [
                    {column: self._jsonable(value) for column, value in zip(columns, row)}
                    for row in cursor.fetchall()
                ]
            if rows:
                changes[table] = rows
        logger.info(f"Found changes in {len(changes)} tables since {since.isoformat()}")
        return changes

    def upsert(self, table, rows):
        if not rows:
            return

        primary_key = self._primary_key(table)
        if not primary_key:
            raise RestoreError(f"Table {table} has no primary key, cannot upsert")

        column_types = self._column_types(table)
        columns = list(rows[0].keys())
        updates = [column for column in columns if column not in primary_key]

        sql = (
            f"INSERT INTO {self._quote(table)} ({', '.join(self._quote(c) for c in columns)}) "
            f"VALUES ({', '.join(['%s'] * len(columns))}) "
            f"ON CONFLICT ({', '.join(self._quote(c) for c in primary_key)}) "
        )
        if updates:
            sql += "DO UPDATE SET " + ", ".join(
                f"{self._quote(c)} = EXCLUDED.{self._quote(c)}" for c in updates
            )
        else:
            sql += "DO NOTHING"

        def adapt(column, value):
            if column_types.get(column) in ("json", "jsonb") and value is not None:
                return json.dumps(value, cls=DjangoJSONEncoder)
            return value

        params = [[adapt(column, row.get(column)) for column in columns] for row in rows]
        with self._cursor() as cursor:
            cursor.executemany(sql, params)
        logger.info(f"Upserted {len(rows)} rows into {table}")


class FileStore:
    """Interface to the bucket/object store holding user-uploaded media."""

    def list_buckets(self) -> List[str]:
        raise NotImplementedError

    def list_objects(self, bucket: str) -> List[StoredObject]:
        raise NotImplementedError

    def download(self, bucket: str, key: str) -> bytes:
        raise NotImplementedError

    def upload(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError


class S3FileStore(FileStore):
    """S3-compatible media store."""

    def __init__(
        self,
        buckets: Optional[List[str]] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.buckets = list(buckets or [])
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region or None,
        )

    def list_buckets(self):
        if self.buckets:
            return list(self.buckets)
        response = self.client.list_buckets()
        return [bucket["Name"] for bucket in response.get("Buckets", [])]

    def list_objects(self, bucket):
        objects = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            for item in page.get("Contents", []):
                objects.append(
                    StoredObject(
                        name=item["Key"],
                        size=item.get("Size", 0),
                        updated_at=item.get("LastModified"),
                    )
                )
        return objects

    def download(self, bucket, key):
        response = self.client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()

    def _ensure_bucket(self, bucket):
        try:
            self.client.head_bucket(Bucket=bucket)
        except ClientError:
            logger.info(f"Creating missing bucket {bucket}")
            self.client.create_bucket(Bucket=bucket)

    def upload(self, bucket, key, data, content_type=None):
        self._ensure_bucket(bucket)
        self.client.put_object(
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )


class SnapshotBuilder:
    """
    Builds raw backup payloads.

    Object downloads run on a bounded thread pool so a large media store
    does not overwhelm the file store.
    """

    def __init__(
        self,
        database: DatabaseGateway,
        file_store: Optional[FileStore] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.database = database
        self.file_store = file_store
        self.max_workers = max_workers

    def _base_payload(self, backup_type: str, tables: List[str]) -> dict:
        return {
            "version": PAYLOAD_VERSION,
            "timestamp": timezone.now().isoformat(),
            "type": BackupType(backup_type).value,
            "metadata": {"tables": tables, "version": PAYLOAD_VERSION},
        }

    def _list_tables(self) -> List[str]:
        try:
            return list(self.database.list_tables())
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(f"Failed to list tables: {e}") from e

    def _export(self, snapshot: bool) -> str:
        try:
            dump = self.database.export(snapshot=snapshot)
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(f"Database export failed: {e}") from e
        return base64.b64encode(dump).decode("ascii")

    def capture_storage(self, since: Optional[datetime] = None) -> Dict[str, List[dict]]:
        """
        Download every file-store object (or only those changed since ``since``).

        Raises:
            ExportError: If any bucket cannot be listed or object downloaded
        """
        if self.file_store is None:
            return {}

        logger.info("Backing up storage files...")
        storage = {}
        try:
            for bucket in self.file_store.list_buckets():
                objects = self.file_store.list_objects(bucket)
                if since is not None:
                    objects = [
                        obj for obj in objects if obj.updated_at is None or obj.updated_at >= since
                    ]

                def fetch(obj, bucket=bucket):
                    data = self.file_store.download(bucket, obj.name)
                    return {
                        "name": obj.name,
                        "size": obj.size or len(data),
                        "content_type": obj.content_type,
                        "updated_at": obj.updated_at,
                        "data": base64.b64encode(data).decode("ascii"),
                    }

                with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                    storage[bucket] = list(executor.map(fetch, objects))

                logger.info(f"Captured {len(storage[bucket])} objects from bucket {bucket}")
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(f"File store capture failed: {e}") from e

        return storage

    def build_full(self) -> Snapshot:
        """Entire database plus all file-store contents."""
        logger.info("Creating full backup payload...")
        tables = self._list_tables()
        payload = self._base_payload(BackupType.FULL, tables)
        payload["database"] = self._export(snapshot=False)
        payload["storage"] = self.capture_storage()
        return Snapshot(payload=payload, tables=tables)

    def build_snapshot(self) -> Snapshot:
        """Point-in-time consistent database export, without file-store content."""
        logger.info("Creating snapshot backup payload...")
        tables = self._list_tables()
        payload = self._base_payload(BackupType.SNAPSHOT, tables)
        payload["database"] = self._export(snapshot=True)
        return Snapshot(payload=payload, tables=tables)

    def build_changes(self, backup_type: str, base_backup_id: str, since: datetime) -> Snapshot:
        """Rows and objects changed since ``since`` (incremental or differential)."""
        logger.info(f"Creating {backup_type} backup payload (base {base_backup_id}, since {since})...")
        try:
            changes = self.database.changes_since(since)
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(f"Change export failed: {e}") from e

        tables = list(changes.keys())
        payload = self._base_payload(backup_type, tables)
        payload["base_backup_id"] = base_backup_id
        payload["since"] = since.isoformat()
        payload["changes"] = changes
        payload["storage"] = self.capture_storage(since=since)
        return Snapshot(payload=payload, tables=tables)


class SnapshotApplier:
    """Writes decoded payloads back into the database and file store."""

    def __init__(
        self,
        database: DatabaseGateway,
        file_store: Optional[FileStore] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.database = database
        self.file_store = file_store
        self.max_workers = max_workers

    def apply_dump(self, payload: dict, tables: Optional[List[str]] = None) -> None:
        """Replace database state with the payload's dump."""
        if "database" not in payload:
            raise RestoreError(f"Payload of type {payload.get('type')} carries no database dump")

        dump = base64.b64decode(payload["database"])
        try:
            self.database.import_dump(dump, tables=tables)
        except RestoreError:
            raise
        except Exception as e:
            raise RestoreError(f"Database import failed: {e}") from e

    def apply_changes(self, payload: dict, tables: Optional[List[str]] = None) -> int:
        """Upsert the payload's changed rows. Returns the number of rows applied."""
        applied = 0
        for table, rows in payload.get("changes", {}).items():
            if tables is not None and table not in tables:
                continue
            try:
                self.database.upsert(table, rows)
            except RestoreError:
                raise
            except Exception as e:
                raise RestoreError(f"Failed to apply changes to {table}: {e}") from e
            applied += len(rows)
        return applied

    def restore_storage(self, storage: Dict[str, List[dict]]) -> int:
        """Upload captured objects back into the file store. Returns the object count."""
        if not storage:
            return 0
        if self.file_store is None:
            raise RestoreError("Payload carries file-store objects but no file store is configured")

        logger.info("Restoring storage files...")
        restored = 0
        for bucket, entries in storage.items():

            def put(entry, bucket=bucket):
                self.file_store.upload(
                    bucket,
                    entry["name"],
                    base64.b64decode(entry["data"]),
                    entry.get("content_type"),
                )

            try:
                with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                    list(executor.map(put, entries))
            except (ClientError, BotoCoreError, OSError) as e:
                raise RestoreError(f"Failed to restore objects into {bucket}: {e}") from e

            restored += len(entries)
            logger.info(f"Restored {len(entries)} objects into bucket {bucket}")
        return restored


def get_database_gateway(name: str = "source") -> Optional[DatabaseGateway]:
    """
    Build the gateway for the source database or the failover target.

    Returns None when the failover target is not configured.
    """
    setting = "BACKUP_FAILOVER_DATABASE" if name == "failover" else "BACKUP_SOURCE_DATABASE"
    config = getattr(settings, setting, None)
    if not config or not config.get("URL"):
        if name == "failover":
            return None
        raise ValueError(f"{setting} not configured in settings")

    return PostgresGateway(
        database_url=config["URL"],
        alias=config.get("ALIAS", "default"),
        excluded_tables=config.get("EXCLUDED_TABLES", []),
        timeout=getattr(settings, "BACKUP_EXPORT_TIMEOUT_SECONDS", DEFAULT_EXPORT_TIMEOUT),
    )


def get_file_store(name: str = "source") -> Optional[FileStore]:
    """
    Build the media store of the source region or of the failover region.

    Returns None when that store is not configured.
    """
    setting = "BACKUP_FAILOVER_FILE_STORE" if name == "failover" else "BACKUP_FILE_STORE"
    config = getattr(settings, setting, None)
    if not config:
        return None
    return S3FileStore(
        buckets=config.get("BUCKETS"),
        region=config.get("REGION"),
        endpoint_url=config.get("ENDPOINT_URL"),
        access_key_id=config.get("ACCESS_KEY_ID"),
        secret_access_key=config.get("SECRET_ACCESS_KEY"),
    )
