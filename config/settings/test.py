"""
Test settings: in-memory database, local-memory cache and mail, and a
local remote store in a temporary directory.
"""

import tempfile

from .base import *  # noqa: F403,F405

SECRET_KEY = "test-secret-key"

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "backups-tests",
    }
}

EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

BACKUP_ENCRYPTION_PASSWORD = "test-backup-password"
BACKUP_ENCRYPTION_ALGORITHM = "aes-256-gcm"
BACKUP_ENCRYPTION_KEY_LENGTH = 32
# Minimum sensible cost keeps key derivation fast under test
BACKUP_SCRYPT_COST = 2**4

BACKUP_LOCAL_PATH = tempfile.mkdtemp(prefix="backups-test-")
BACKUP_REMOTE_STORES = {
    "primary": {"BACKEND": "local", "PATH": BACKUP_LOCAL_PATH},
}

BACKUP_FILE_STORE = None
BACKUP_FAILOVER_FILE_STORE = None
BACKUP_SOURCE_DATABASE = {"URL": "", "ALIAS": "default", "EXCLUDED_TABLES": BACKUP_EXCLUDED_TABLES}  # noqa: F405
BACKUP_FAILOVER_DATABASE = None

BACKUP_NOTIFICATION_WEBHOOK_URL = ""
BACKUP_NOTIFICATION_EMAILS = []
BACKUP_FAILOVER_REDIRECT_WEBHOOK_URL = ""
BACKUP_FAILOVER_HEALTH_CHECK_URL = ""

BACKUP_RUN_DEADLINE_SECONDS = None

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "null": {"class": "logging.NullHandler"},
    },
    "root": {"handlers": ["null"], "level": "DEBUG"},
}
