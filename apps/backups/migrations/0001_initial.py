import uuid

import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="BackupRecord",
            fields=[
                (
                    "id",
                    models.CharField(
                        editable=False,
                        help_text="Backup identifier (backup-<timestamp>-<type>)",
                        max_length=100,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "backup_type",
                    models.CharField(
                        choices=[
                            ("full", "Full Backup"),
                            ("incremental", "Incremental Backup"),
                            ("differential", "Differential Backup"),
                            ("snapshot", "Snapshot Backup"),
                        ],
                        help_text="Type of backup operation",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("verified", "Verified"),
                            ("deleted", "Deleted"),
                        ],
                        default="pending",
                        help_text="Current status of the backup",
                        max_length=20,
                    ),
                ),
                (
                    "start_time",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="Timestamp when the backup was initiated",
                    ),
                ),
                (
                    "end_time",
                    models.DateTimeField(
                        blank=True,
                        help_text="Timestamp when the backup reached a terminal state",
                        null=True,
                    ),
                ),
                (
                    "size_bytes",
                    models.BigIntegerField(default=0, help_text="Size of the encrypted payload in bytes"),
                ),
                (
                    "tables",
                    models.JSONField(
                        blank=True, default=list, help_text="Ordered list of logical units captured"
                    ),
                ),
                (
                    "salt_hex",
                    models.CharField(
                        blank=True,
                        help_text="Random salt used for key derivation (hex)",
                        max_length=64,
                    ),
                ),
                (
                    "checksum",
                    models.CharField(
                        blank=True, help_text="SHA-256 checksum of the encrypted payload", max_length=64
                    ),
                ),
                (
                    "location",
                    models.CharField(
                        blank=True,
                        help_text="Key of the encrypted blob in the primary remote store",
                        max_length=500,
                    ),
                ),
                (
                    "replica_location",
                    models.CharField(
                        blank=True,
                        help_text="Key of the encrypted blob in the geo-replica store",
                        max_length=500,
                    ),
                ),
                (
                    "error",
                    models.TextField(blank=True, help_text="Error message if the backup failed", null=True),
                ),
                (
                    "verified_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Timestamp when the backup integrity was verified",
                        null=True,
                    ),
                ),
                (
                    "verification_error",
                    models.TextField(blank=True, help_text="Reason the most recent verification failed"),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                        help_text="Additional metadata (requested type, fallback reason, restore point, etc.)",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "base_backup",
                    models.ForeignKey(
                        blank=True,
                        help_text="Base backup for incremental and differential backups",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dependents",
                        to="backups.backuprecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup Record",
                "verbose_name_plural": "Backup Records",
                "db_table": "backups_record",
                "ordering": ["-start_time"],
            },
        ),
        migrations.CreateModel(
            name="BackupAuditEvent",
            fields=[
                (
                    "id",
                    models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False),
                ),
                (
                    "event",
                    models.CharField(
                        help_text="Event name (start, complete, failed, verified, deleted, ...)",
                        max_length=100,
                    ),
                ),
                (
                    "backup_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Backup the event refers to (if any)",
                        max_length=100,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name": "Backup Audit Event",
                "verbose_name_plural": "Backup Audit Events",
                "db_table": "backups_audit_event",
                "ordering": ["-timestamp"],
            },
        ),
        migrations.CreateModel(
            name="BackupRestoreLog",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for the restore operation",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("IN_PROGRESS", "In Progress"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="IN_PROGRESS",
                        max_length=20,
                    ),
                ),
                (
                    "target_time",
                    models.DateTimeField(
                        blank=True,
                        help_text="Requested point in time (informational for incremental chains)",
                        null=True,
                    ),
                ),
                (
                    "tables",
                    models.JSONField(
                        blank=True,
                        help_text="Logical units restored (null for a wholesale restore)",
                        null=True,
                    ),
                ),
                (
                    "scenario",
                    models.CharField(
                        blank=True,
                        help_text="Disaster recovery scenario that triggered the restore",
                        max_length=50,
                    ),
                ),
                ("reason", models.TextField(blank=True)),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("duration_seconds", models.FloatField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
                (
                    "backup",
                    models.ForeignKey(
                        help_text="Backup that was restored",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="restore_logs",
                        to="backups.backuprecord",
                    ),
                ),
                (
                    "restore_point",
                    models.ForeignKey(
                        blank=True,
                        help_text="Safety snapshot taken before the destructive restore",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="backups.backuprecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup Restore Log",
                "verbose_name_plural": "Backup Restore Logs",
                "db_table": "backups_restore_log",
                "ordering": ["-started_at"],
            },
        ),
        migrations.AddIndex(
            model_name="backuprecord",
            index=models.Index(fields=["backup_type", "-start_time"], name="record_type_start_idx"),
        ),
        migrations.AddIndex(
            model_name="backuprecord",
            index=models.Index(fields=["status", "-start_time"], name="record_status_start_idx"),
        ),
        migrations.AddIndex(
            model_name="backupauditevent",
            index=models.Index(fields=["event", "-timestamp"], name="audit_event_ts_idx"),
        ),
    ]
