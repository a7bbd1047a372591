"""
Backup and disaster recovery models.

This module tracks every backup attempt, every restore attempt and an
append-only audit trail of backup events. Records are owned by the metadata
repository (see repository.py); other components only hold them for the
duration of a run and persist changes back through the repository.
"""

import uuid

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from .exceptions import InvalidStatusTransition


def require_exhaustive(choices, handlers, owner):
    """
    Ensure a dispatch table covers every member of ``choices``.

    Adding a member to the choices makes every consumer that builds a
    handler table fail at construction until it handles the new member.
    """
    missing = [member for member in choices if member not in handlers]
    if missing:
        names = ", ".join(member.value for member in missing)
        raise TypeError(f"{owner} has no handler for {choices.__name__} values: {names}")
    return handlers


class BackupType(models.TextChoices):
    FULL = "full", "Full Backup"
    INCREMENTAL = "incremental", "Incremental Backup"
    DIFFERENTIAL = "differential", "Differential Backup"
    SNAPSHOT = "snapshot", "Snapshot Backup"

    @classmethod
    def require_exhaustive(cls, handlers, owner):
        return require_exhaustive(cls, handlers, owner)


class BackupStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    VERIFIED = "verified", "Verified"
    DELETED = "deleted", "Deleted"


# Status changes are forward-only; any non-deleted record may be deleted.
ALLOWED_TRANSITIONS = {
    BackupStatus.PENDING: {BackupStatus.IN_PROGRESS, BackupStatus.FAILED, BackupStatus.DELETED},
    BackupStatus.IN_PROGRESS: {
        BackupStatus.COMPLETED,
        BackupStatus.FAILED,
        BackupStatus.DELETED,
    },
    BackupStatus.COMPLETED: {BackupStatus.VERIFIED, BackupStatus.DELETED},
    BackupStatus.VERIFIED: {BackupStatus.DELETED},
    BackupStatus.FAILED: {BackupStatus.DELETED},
    BackupStatus.DELETED: set(),
}

RESTORABLE_STATUSES = (BackupStatus.COMPLETED, BackupStatus.VERIFIED)


def generate_backup_id(backup_type, moment=None):
    """Build a backup id of the form ``backup-<epoch millis>-<type>``."""
    moment = moment or timezone.now()
    return f"backup-{int(moment.timestamp() * 1000)}-{BackupType(backup_type).value}"


class BackupRecord(models.Model):
    """
    One record per backup attempt.

    The checksum always covers the exact bytes stored remotely, including the
    salt and IV prefix. A completed record always carries its location,
    checksum, salt and end time.
    """

    id = models.CharField(
        primary_key=True,
        max_length=100,
        editable=False,
        help_text="Backup identifier (backup-<timestamp>-<type>)",
    )

    backup_type = models.CharField(
        max_length=20,
        choices=BackupType.choices,
        help_text="Type of backup operation",
    )

    status = models.CharField(
        max_length=20,
        choices=BackupStatus.choices,
        default=BackupStatus.PENDING,
        help_text="Current status of the backup",
    )

    start_time = models.DateTimeField(
        default=timezone.now,
        help_text="Timestamp when the backup was initiated",
    )

    end_time = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the backup reached a terminal state",
    )

    size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the encrypted payload in bytes",
    )

    tables = models.JSONField(
        default=list,
        blank=True,
        help_text="Ordered list of logical units captured",
    )

    salt_hex = models.CharField(
        max_length=64,
        blank=True,
        help_text="Random salt used for key derivation (hex)",
    )

    checksum = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA-256 checksum of the encrypted payload",
    )

    location = models.CharField(
        max_length=500,
        blank=True,
        help_text="Key of the encrypted blob in the primary remote store",
    )

    replica_location = models.CharField(
        max_length=500,
        blank=True,
        help_text="Key of the encrypted blob in the geo-replica store",
    )

    base_backup = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="dependents",
        help_text="Base backup for incremental and differential backups",
    )

    error = models.TextField(
        null=True,
        blank=True,
        help_text="Error message if the backup failed",
    )

    verified_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the backup integrity was verified",
    )

    verification_error = models.TextField(
        blank=True,
        help_text="Reason the most recent verification failed",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="Additional metadata (requested type, fallback reason, restore point, etc.)",
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "backups_record"
        ordering = ["-start_time"]
        indexes = [
            models.Index(fields=["backup_type", "-start_time"], name="record_type_start_idx"),
            models.Index(fields=["status", "-start_time"], name="record_status_start_idx"),
        ]
        verbose_name = "Backup Record"
        verbose_name_plural = "Backup Records"

    def __str__(self):
        return f"{self.get_backup_type_display()} - {self.id} - {self.status}"

    def can_transition_to(self, status):
        return BackupStatus(status) in ALLOWED_TRANSITIONS[BackupStatus(self.status)]

    def transition_to(self, status):
        """Move to a new status, rejecting backward transitions."""
        if not self.can_transition_to(status):
            raise InvalidStatusTransition(
                f"Backup {self.id} cannot move from {self.status} to {status}"
            )
        self.status = BackupStatus(status)

    def mark_completed(self, location, checksum, salt_hex, size_bytes, end_time=None):
        if not (location and checksum and salt_hex):
            raise InvalidStatusTransition(
                f"Backup {self.id} cannot complete without location, checksum and salt"
            )
        self.location = location
        self.checksum = checksum
        self.salt_hex = salt_hex
        self.size_bytes = size_bytes
        self.end_time = end_time or timezone.now()
        self.transition_to(BackupStatus.COMPLETED)

    def mark_failed(self, error, end_time=None):
        self.error = str(error) or error.__class__.__name__
        self.end_time = end_time or timezone.now()
        self.transition_to(BackupStatus.FAILED)

    def is_restorable(self):
        """Check if backup completed successfully."""
        return self.status in RESTORABLE_STATUSES

    def get_size_mb(self):
        """Get backup size in megabytes."""
        return round(self.size_bytes / (1024 * 1024), 2)

    def get_duration_seconds(self):
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def summary(self):
        """Serializable view used for audit events and notifications."""
        return {
            "id": self.id,
            "type": self.backup_type,
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "size_bytes": self.size_bytes,
            "tables": list(self.tables),
            "checksum": self.checksum,
            "location": self.location,
            "base_backup_id": self.base_backup_id,
            "error": self.error,
        }


class BackupAuditEvent(models.Model):
    """Append-only audit trail of backup system events."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    event = models.CharField(
        max_length=100,
        help_text="Event name (start, complete, failed, verified, deleted, ...)",
    )

    backup_id = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="Backup the event refers to (if any)",
    )

    payload = models.JSONField(
        default=dict,
        blank=True,
        encoder=DjangoJSONEncoder,
    )

    timestamp = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "backups_audit_event"
        ordering = ["-timestamp"]
        indexes = [
            models.Index(fields=["event", "-timestamp"], name="audit_event_ts_idx"),
        ]
        verbose_name = "Backup Audit Event"
        verbose_name_plural = "Backup Audit Events"

    def __str__(self):
        return f"{self.event} - {self.backup_id} - {self.timestamp:%Y-%m-%d %H:%M}"


class BackupRestoreLog(models.Model):
    """
    Track all restore operations for audit and troubleshooting.

    Records what was restored, the restore point taken beforehand, which
    disaster recovery scenario (if any) triggered it, and how it ended.
    """

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    STATUS_CHOICES = [
        (IN_PROGRESS, "In Progress"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the restore operation",
    )

    backup = models.ForeignKey(
        BackupRecord,
        on_delete=models.PROTECT,
        related_name="restore_logs",
        help_text="Backup that was restored",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=IN_PROGRESS,
    )

    target_time = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Requested point in time (informational for incremental chains)",
    )

    tables = models.JSONField(
        null=True,
        blank=True,
        help_text="Logical units restored (null for a wholesale restore)",
    )

    restore_point = models.ForeignKey(
        BackupRecord,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Safety snapshot taken before the destructive restore",
    )

    scenario = models.CharField(
        max_length=50,
        blank=True,
        help_text="Disaster recovery scenario that triggered the restore",
    )

    reason = models.TextField(blank=True)

    started_at = models.DateTimeField(default=timezone.now)

    completed_at = models.DateTimeField(null=True, blank=True)

    duration_seconds = models.FloatField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    class Meta:
        db_table = "backups_restore_log"
        ordering = ["-started_at"]
        verbose_name = "Backup Restore Log"
        verbose_name_plural = "Backup Restore Logs"

    def __str__(self):
        return f"Restore {self.backup_id} - {self.started_at:%Y-%m-%d %H:%M} - {self.status}"

    def finish(self, error=None):
        self.completed_at = timezone.now()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        if error is None:
            self.status = self.COMPLETED
        else:
            self.status = self.FAILED
            self.error_message = str(error) or error.__class__.__name__
