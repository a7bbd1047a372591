"""
Remote object stores for encrypted backup blobs.

Two backends implement the common RemoteStore interface:
1. S3RemoteStore - any S3-compatible object store (AWS S3, Cloudflare R2,
   Backblaze B2) accessed through boto3
2. LocalRemoteStore - local filesystem, for development and tests

Blobs are immutable once uploaded: they are only ever deleted, never
overwritten. Stores are configured under ``settings.BACKUP_REMOTE_STORES``
with a ``primary`` entry and an optional geo-replicated ``replica`` entry.
"""

import logging
from pathlib import Path
from typing import Optional

from django.conf import settings

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import DownloadError, StorageError, UploadError

logger = logging.getLogger(__name__)

PRIMARY_STORE = "primary"
REPLICA_STORE = "replica"

_MISSING_KEY_CODES = {"404", "NoSuchKey", "NotFound"}


class RemoteStore:
    """Base class for remote stores."""

    name = "remote"

    def put(
        self,
        key: str,
        data: bytes,
        server_side_encryption: Optional[str] = None,
        storage_class: Optional[str] = None,
    ) -> None:
        """
        Store a blob under ``key``.

        Raises:
            UploadError: If the blob could not be stored
        """
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        """
        Read the blob stored under ``key``.

        Raises:
            DownloadError: If the blob is missing or unreadable
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """
        Delete the blob stored under ``key``. Deleting a missing key is not an error.

        Raises:
            StorageError: If the store refused the deletion
        """
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class LocalRemoteStore(RemoteStore):
    """
    Local filesystem store.

    Used for development and as a stand-in for object storage in tests.
    """

    name = "local"

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(
            base_path or getattr(settings, "BACKUP_LOCAL_PATH", "/var/backups/orchestrator")
        )
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"LocalRemoteStore initialized with base_path: {self.base_path}")

    def _get_full_path(self, key: str) -> Path:
        full_path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise StorageError(f"Key escapes the store root: {key}")
        return full_path

    def put(self, key, data, server_side_encryption=None, storage_class=None):
        destination = self._get_full_path(key)
        if destination.exists():
            raise UploadError(f"LocalRemoteStore: refusing to overwrite {key}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(data)
        except OSError as e:
            logger.error(f"LocalRemoteStore: Failed to upload {key}: {e}")
            raise UploadError(f"Failed to write {key}: {e}") from e
        logger.info(f"LocalRemoteStore: Uploaded {key} ({len(data)} bytes)")

    def get(self, key):
        source = self._get_full_path(key)
        try:
            data = source.read_bytes()
        except FileNotFoundError as e:
            logger.error(f"LocalRemoteStore: File not found: {source}")
            raise DownloadError(f"Blob not found: {key}") from e
        except OSError as e:
            logger.error(f"LocalRemoteStore: Failed to download {key}: {e}")
            raise DownloadError(f"Failed to read {key}: {e}") from e
        logger.info(f"LocalRemoteStore: Downloaded {key} ({len(data)} bytes)")
        return data

    def delete(self, key):
        full_path = self._get_full_path(key)
        if not full_path.exists():
            logger.warning(f"LocalRemoteStore: File not found for deletion: {full_path}")
            return
        try:
            full_path.unlink()
        except OSError as e:
            logger.error(f"LocalRemoteStore: Failed to delete {key}: {e}")
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.info(f"LocalRemoteStore: Deleted {full_path}")

    def exists(self, key):
        full_path = self._get_full_path(key)
        return full_path.exists() and full_path.is_file()


class S3RemoteStore(RemoteStore):
    """
    S3-compatible object store backend.

    Transient errors are retried by botocore with bounded exponential backoff
    (``standard`` retry mode); anything that still fails is raised as a
    StorageError subclass.
    """

    name = "s3"

    def __init__(
        self,
        bucket_name: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        server_side_encryption: Optional[str] = "AES256",
        storage_class: Optional[str] = "GLACIER_IR",
        max_attempts: int = 5,
        client=None,
    ):
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url or None
        self.server_side_encryption = server_side_encryption
        self.storage_class = storage_class

        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region or None,
            config=Config(retries={"max_attempts": max_attempts, "mode": "standard"}),
        )

        logger.info(f"S3RemoteStore initialized with bucket: {self.bucket_name}, region: {region}")

    def put(self, key, data, server_side_encryption=None, storage_class=None):
        extra = {}
        sse = server_side_encryption or self.server_side_encryption
        if sse:
            extra["ServerSideEncryption"] = sse
        storage_class = storage_class or self.storage_class
        if storage_class:
            extra["StorageClass"] = storage_class

        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                Metadata={"uploaded-from": "backup-orchestrator"},
                **extra,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3RemoteStore: Failed to upload {key} to {self.bucket_name}: {e}")
            raise UploadError(f"Failed to upload {key}: {e}") from e

        logger.info(f"S3RemoteStore: Uploaded {key} ({len(data)} bytes) to {self.bucket_name}")

    def get(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _MISSING_KEY_CODES:
                logger.error(f"S3RemoteStore: Blob {key} does not exist in {self.bucket_name}")
                raise DownloadError(f"Blob not found: {key}") from e
            logger.error(f"S3RemoteStore: Failed to download {key}: {e}")
            raise DownloadError(f"Failed to download {key}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"S3RemoteStore: Failed to download {key}: {e}")
            raise DownloadError(f"Failed to download {key}: {e}") from e

        logger.info(f"S3RemoteStore: Downloaded {key} ({len(data)} bytes)")
        return data

    def delete(self, key):
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3RemoteStore: Failed to delete {key}: {e}")
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.info(f"S3RemoteStore: Deleted {key}")

    def exists(self, key):
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code", "") in _MISSING_KEY_CODES:
                return False
            raise StorageError(f"Failed to check {key}: {e}") from e


def build_remote_store(config: dict) -> RemoteStore:
    """
    Build a remote store from a settings dictionary.

    Raises:
        ValueError: If the backend is not recognized
    """
    backend = config.get("BACKEND", "s3").lower()

    if backend == "local":
        return LocalRemoteStore(config.get("PATH"))
    elif backend == "s3":
        return S3RemoteStore(
            bucket_name=config["BUCKET"],
            region=config.get("REGION"),
            endpoint_url=config.get("ENDPOINT_URL"),
            access_key_id=config.get("ACCESS_KEY_ID"),
            secret_access_key=config.get("SECRET_ACCESS_KEY"),
            server_side_encryption=config.get("SERVER_SIDE_ENCRYPTION", "AES256"),
            storage_class=config.get("STORAGE_CLASS", "GLACIER_IR"),
            max_attempts=config.get("MAX_ATTEMPTS", 5),
        )
    else:
        raise ValueError(f"Unknown remote store backend: {backend}")


def get_remote_store(name: str = PRIMARY_STORE) -> Optional[RemoteStore]:
    """
    Factory function returning the configured store called ``name``.

    Returns None when an optional store (the replica) is not configured.

    Raises:
        ValueError: If the primary store is not configured
    """
    stores = getattr(settings, "BACKUP_REMOTE_STORES", {})
    config = stores.get(name)

    if not config:
        if name == PRIMARY_STORE:
            raise ValueError("BACKUP_REMOTE_STORES['primary'] not configured in settings")
        return None

    return build_remote_store(config)
