"""
Exceptions raised by the backup and disaster recovery system.

Every error derives from BackupError so callers that must keep running
(Celery tasks, the disaster recovery dispatcher) can catch a single type.
"""


class BackupError(Exception):
    """Base class for all backup system errors."""

    pass


class ExportError(BackupError):
    """Raised when the external database dump or file-store capture fails."""

    pass


class EncryptionError(BackupError):
    """Raised when encryption or key derivation fails."""

    pass


class DecryptionError(EncryptionError):
    """Raised when a blob cannot be decrypted with the recorded salt."""

    pass


class CompressionError(BackupError):
    """Raised when payload compression or decompression fails."""

    pass


class StorageError(BackupError):
    """Base class for remote store failures."""

    pass


class UploadError(StorageError):
    """Raised when a blob cannot be written to the remote store."""

    pass


class DownloadError(StorageError):
    """Raised when a blob cannot be read from the remote store."""

    pass


class BackupIntegrityError(BackupError):
    """Raised when a stored blob does not match its recorded checksum."""

    pass


class BackupNotFoundError(BackupError):
    """Raised when a backup id is unknown to the metadata repository."""

    pass


class BackupChainError(BackupError):
    """Raised when an incremental chain is cyclic, too deep or unresolvable."""

    pass


class RestoreError(BackupError):
    """Raised when the external importer fails to apply a payload."""

    pass


class RestoreVerificationError(RestoreError):
    """Raised when restored logical units do not match the backup record."""

    pass


class RetentionError(BackupError):
    """Raised when a backup selected by the retention policy cannot be deleted."""

    pass


class LeaseUnavailableError(BackupError):
    """Raised when another run already holds the requested lease."""

    pass


class OperationCancelledError(BackupError):
    """Raised when a run passes its deadline."""

    pass


class InvalidStatusTransition(BackupError):
    """Raised when a backup record is moved to a status it cannot reach."""

    pass


class DisasterRecoveryError(BackupError):
    """Raised when no candidate backup could be used for a recovery plan."""

    pass
