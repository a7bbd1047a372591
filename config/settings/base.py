"""
Base Django settings for the backup orchestrator.
Common settings shared across all environments.
"""

import os
from pathlib import Path

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
INSTALLED_APPS = [
    "django_prometheus",  # Must be first for proper metrics collection
    "django.contrib.contenttypes",
    # Local apps
    "apps.backups",
]

MIDDLEWARE = []

DATABASES = {}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

# Email
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "backups@localhost")
SERVER_EMAIL = os.getenv("SERVER_EMAIL", DEFAULT_FROM_EMAIL)

# Celery Configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 4 * 60 * 60  # 4 hours
CELERY_TASK_SOFT_TIME_LIMIT = int(3.5 * 60 * 60)  # 3.5 hours
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_MAX_TASKS_PER_CHILD = 100

# Backup configuration

# Encryption (the password never leaves settings; only salts are persisted)
BACKUP_ENCRYPTION_PASSWORD = os.getenv("BACKUP_ENCRYPTION_PASSWORD", "")
BACKUP_ENCRYPTION_ALGORITHM = os.getenv("BACKUP_ENCRYPTION_ALGORITHM", "aes-256-gcm")
BACKUP_ENCRYPTION_KEY_LENGTH = int(os.getenv("BACKUP_ENCRYPTION_KEY_LENGTH", "32"))
BACKUP_SCRYPT_COST = int(os.getenv("BACKUP_SCRYPT_COST", str(2**14)))

# Remote stores for encrypted blobs
BACKUP_REMOTE_STORE_MAX_ATTEMPTS = int(os.getenv("BACKUP_REMOTE_STORE_MAX_ATTEMPTS", "5"))
BACKUP_REMOTE_STORES = {
    "primary": {
        "BACKEND": os.getenv("BACKUP_PRIMARY_BACKEND", "s3"),
        "BUCKET": os.getenv("BACKUP_PRIMARY_BUCKET", "backups"),
        "REGION": os.getenv("BACKUP_PRIMARY_REGION", "us-east-1"),
        "ENDPOINT_URL": os.getenv("BACKUP_PRIMARY_ENDPOINT_URL", ""),
        "ACCESS_KEY_ID": os.getenv("BACKUP_PRIMARY_ACCESS_KEY_ID", ""),
        "SECRET_ACCESS_KEY": os.getenv("BACKUP_PRIMARY_SECRET_ACCESS_KEY", ""),
        "SERVER_SIDE_ENCRYPTION": os.getenv("BACKUP_SERVER_SIDE_ENCRYPTION", "AES256"),
        "STORAGE_CLASS": os.getenv("BACKUP_STORAGE_CLASS", "GLACIER_IR"),
        "MAX_ATTEMPTS": BACKUP_REMOTE_STORE_MAX_ATTEMPTS,
        "PATH": os.getenv("BACKUP_LOCAL_PATH", "/var/backups/orchestrator"),
    },
}

if os.getenv("BACKUP_REPLICA_BUCKET"):
    BACKUP_REMOTE_STORES["replica"] = {
        "BACKEND": "s3",
        "BUCKET": os.getenv("BACKUP_REPLICA_BUCKET"),
        "REGION": os.getenv("BACKUP_REPLICA_REGION", "us-west-2"),
        "ENDPOINT_URL": os.getenv("BACKUP_REPLICA_ENDPOINT_URL", ""),
        "ACCESS_KEY_ID": os.getenv("BACKUP_REPLICA_ACCESS_KEY_ID", ""),
        "SECRET_ACCESS_KEY": os.getenv("BACKUP_REPLICA_SECRET_ACCESS_KEY", ""),
        "SERVER_SIDE_ENCRYPTION": os.getenv("BACKUP_SERVER_SIDE_ENCRYPTION", "AES256"),
        "STORAGE_CLASS": os.getenv("BACKUP_STORAGE_CLASS", "GLACIER_IR"),
        "MAX_ATTEMPTS": BACKUP_REMOTE_STORE_MAX_ATTEMPTS,
    }

# Application file store (user uploads) captured by full backups
BACKUP_FILE_STORE = None
if os.getenv("BACKUP_FILE_STORE_BUCKETS") or os.getenv("BACKUP_FILE_STORE_ENDPOINT_URL"):
    BACKUP_FILE_STORE = {
        "BUCKETS": [b for b in os.getenv("BACKUP_FILE_STORE_BUCKETS", "").split(",") if b],
        "REGION": os.getenv("BACKUP_FILE_STORE_REGION", ""),
        "ENDPOINT_URL": os.getenv("BACKUP_FILE_STORE_ENDPOINT_URL", ""),
        "ACCESS_KEY_ID": os.getenv("BACKUP_FILE_STORE_ACCESS_KEY_ID", ""),
        "SECRET_ACCESS_KEY": os.getenv("BACKUP_FILE_STORE_SECRET_ACCESS_KEY", ""),
    }

# Media store in the failover region; without it regional failover restores the database only
BACKUP_FAILOVER_FILE_STORE = None
if os.getenv("BACKUP_FAILOVER_FILE_STORE_BUCKETS") or os.getenv(
    "BACKUP_FAILOVER_FILE_STORE_ENDPOINT_URL"
):
    BACKUP_FAILOVER_FILE_STORE = {
        "BUCKETS": [b for b in os.getenv("BACKUP_FAILOVER_FILE_STORE_BUCKETS", "").split(",") if b],
        "REGION": os.getenv("BACKUP_FAILOVER_FILE_STORE_REGION", ""),
        "ENDPOINT_URL": os.getenv("BACKUP_FAILOVER_FILE_STORE_ENDPOINT_URL", ""),
        "ACCESS_KEY_ID": os.getenv("BACKUP_FAILOVER_FILE_STORE_ACCESS_KEY_ID", ""),
        "SECRET_ACCESS_KEY": os.getenv("BACKUP_FAILOVER_FILE_STORE_SECRET_ACCESS_KEY", ""),
    }


def postgres_url(database):
    """Build a libpq connection URL from a Django DATABASES entry."""
    return (
        f"postgresql://{database['USER']}:{database['PASSWORD']}"
        f"@{database['HOST']}:{database['PORT']}/{database['NAME']}"
    )


# Backup metadata lives next to the application data; its tables are
# excluded from dumps so a restore never rewinds the backup history.
BACKUP_EXCLUDED_TABLES = ["backups_record", "backups_audit_event", "backups_restore_log"]

# Database being backed up ("URL" is filled in by the environment settings)
BACKUP_SOURCE_DATABASE = {
    "URL": os.getenv("BACKUP_SOURCE_DATABASE_URL", ""),
    "ALIAS": "default",
    "EXCLUDED_TABLES": BACKUP_EXCLUDED_TABLES,
}

# Failover target in another region (optional)
FAILOVER_DATABASE = None
BACKUP_FAILOVER_DATABASE = None
if os.getenv("FAILOVER_POSTGRES_HOST"):
    FAILOVER_DATABASE = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.getenv("FAILOVER_POSTGRES_DB", "postgres"),
        "USER": os.getenv("FAILOVER_POSTGRES_USER", "postgres"),
        "PASSWORD": os.getenv("FAILOVER_POSTGRES_PASSWORD", ""),
        "HOST": os.getenv("FAILOVER_POSTGRES_HOST"),
        "PORT": os.getenv("FAILOVER_POSTGRES_PORT", "5432"),
    }
    BACKUP_FAILOVER_DATABASE = {
        "URL": postgres_url(FAILOVER_DATABASE),
        "ALIAS": "failover",
        "NAME": os.getenv("BACKUP_FAILOVER_NAME", "failover"),
        "EXCLUDED_TABLES": BACKUP_EXCLUDED_TABLES,
    }

# Cron expressions: minute hour day-of-month month day-of-week
BACKUP_SCHEDULE = {
    "full": os.getenv("BACKUP_SCHEDULE_FULL", "0 2 * * *"),
    "incremental": os.getenv("BACKUP_SCHEDULE_INCREMENTAL", "0 */6 * * *"),
    "verification": os.getenv("BACKUP_SCHEDULE_VERIFICATION", "0 4 * * *"),
    "retention": os.getenv("BACKUP_SCHEDULE_RETENTION", "0 2 * * *"),
}

BACKUP_RETENTION = {
    "daily": int(os.getenv("BACKUP_RETENTION_DAILY", "7")),
    "weekly": int(os.getenv("BACKUP_RETENTION_WEEKLY", "4")),
    "monthly": int(os.getenv("BACKUP_RETENTION_MONTHLY", "12")),
    "yearly": int(os.getenv("BACKUP_RETENTION_YEARLY", "5")),
}

BACKUP_VERIFICATION_WINDOW_DAYS = int(os.getenv("BACKUP_VERIFICATION_WINDOW_DAYS", "7"))
BACKUP_MAX_CONCURRENCY = int(os.getenv("BACKUP_MAX_CONCURRENCY", "5"))
BACKUP_MAX_INCREMENTAL_CHAIN = int(os.getenv("BACKUP_MAX_INCREMENTAL_CHAIN", "30"))
BACKUP_LEASE_TIMEOUT_SECONDS = int(os.getenv("BACKUP_LEASE_TIMEOUT_SECONDS", str(4 * 60 * 60)))
BACKUP_RUN_DEADLINE_SECONDS = int(os.getenv("BACKUP_RUN_DEADLINE_SECONDS", str(3 * 60 * 60)))
BACKUP_EXPORT_TIMEOUT_SECONDS = int(os.getenv("BACKUP_EXPORT_TIMEOUT_SECONDS", "3600"))
BACKUP_HEIGHTENED_AUDIT_HOURS = int(os.getenv("BACKUP_HEIGHTENED_AUDIT_HOURS", "72"))

# Notifications and failover routing
BACKUP_NOTIFICATION_WEBHOOK_URL = os.getenv("BACKUP_NOTIFICATION_WEBHOOK_URL", "")
BACKUP_NOTIFICATION_EMAILS = [
    email for email in os.getenv("BACKUP_NOTIFICATION_EMAILS", "").split(",") if email
]
BACKUP_FAILOVER_REDIRECT_WEBHOOK_URL = os.getenv("BACKUP_FAILOVER_REDIRECT_WEBHOOK_URL", "")
BACKUP_FAILOVER_HEALTH_CHECK_URL = os.getenv("BACKUP_FAILOVER_HEALTH_CHECK_URL", "")

# Prometheus Monitoring Configuration
PROMETHEUS_EXPORT_MIGRATIONS = False

# Logging
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "level": "INFO",
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
        "file": {
            "level": "INFO",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOGS_DIR / "backups.log",
            "maxBytes": 1024 * 1024 * 50,  # 50 MB
            "backupCount": 20,
            "formatter": "json",
        },
        "audit_file": {
            "level": "INFO",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOGS_DIR / "backups_audit.log",
            "maxBytes": 1024 * 1024 * 50,  # 50 MB
            "backupCount": 50,
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": "INFO",
    },
    "loggers": {
        "apps.backups.audit": {
            "handlers": ["console", "audit_file"],
            "level": "INFO",
            "propagate": False,
        },
        "celery": {
            "handlers": ["console", "file"],
            "level": "INFO",
            "propagate": False,
        },
    },
}


def validate_required_env_vars():
    """
    Validate that all required environment variables are set.
    This function should be called at the end of each deployed settings file.
    """
    required_vars = {
        "DJANGO_SECRET_KEY": "Django secret key for cryptographic signing",
        "POSTGRES_DB": "PostgreSQL database holding backup metadata",
        "POSTGRES_USER": "PostgreSQL username",
        "POSTGRES_PASSWORD": "PostgreSQL password",
        "POSTGRES_HOST": "PostgreSQL host",
        "REDIS_HOST": "Redis host (Celery broker and run leases)",
    }

    missing_vars = [
        f"{var} ({description})" for var, description in required_vars.items() if not os.getenv(var)
    ]

    if missing_vars:
        error_msg = (
            "Missing required environment variables:\n"
            + "\n".join(f"  - {var}" for var in missing_vars)
            + "\n\nPlease set these variables in your .env file or environment."
        )
        raise ValueError(error_msg)


def validate_security_settings(debug_mode):
    """
    Validate security-critical settings based on environment.
    """
    if debug_mode:
        return

    password = os.getenv("BACKUP_ENCRYPTION_PASSWORD", "")
    if not password:
        raise ValueError("BACKUP_ENCRYPTION_PASSWORD must be set in production for secure backups!")
    if len(password) < 32:
        raise ValueError("BACKUP_ENCRYPTION_PASSWORD must be at least 32 characters long in production!")

    if os.getenv("BACKUP_PRIMARY_BACKEND", "s3") == "local":
        raise ValueError("The local remote store is for development only; configure an S3 bucket!")
