"""
Development-specific Django settings.
"""

import os

# Load environment variables from .env file
from dotenv import load_dotenv

load_dotenv()

from .base import *  # noqa: E402,F403,F405

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-secret-key-change-in-production")

DEBUG = True

ALLOWED_HOSTS = ["localhost", "127.0.0.1"]

# Database with Prometheus monitoring
DATABASES = {
    "default": {
        "ENGINE": "django_prometheus.db.backends.postgresql",
        "NAME": os.getenv("POSTGRES_DB", "app"),
        "USER": os.getenv("POSTGRES_USER", "postgres"),
        "PASSWORD": os.getenv("POSTGRES_PASSWORD", "postgres"),
        "HOST": os.getenv("POSTGRES_HOST", "db"),
        "PORT": os.getenv("POSTGRES_PORT", "5432"),
        "CONN_MAX_AGE": 600,
    }
}
if FAILOVER_DATABASE:  # noqa: F405
    DATABASES["failover"] = FAILOVER_DATABASE  # noqa: F405

if not BACKUP_SOURCE_DATABASE["URL"]:  # noqa: F405
    BACKUP_SOURCE_DATABASE["URL"] = postgres_url(DATABASES["default"])  # noqa: F405

# Redis Cache Configuration - Development (run leases live here)
CACHES = {
    "default": {
        "BACKEND": "django_prometheus.cache.backends.redis.RedisCache",
        "LOCATION": f"redis://{os.getenv('REDIS_HOST', 'redis')}:{os.getenv('REDIS_PORT', '6379')}/1",
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
            "SOCKET_CONNECT_TIMEOUT": 5,
            "SOCKET_TIMEOUT": 5,
        },
        "KEY_PREFIX": "backups_dev",
        "TIMEOUT": 300,
    },
}

CELERY_BROKER_URL = os.getenv(
    "CELERY_BROKER_URL", f"redis://{os.getenv('REDIS_HOST', 'redis')}:{os.getenv('REDIS_PORT', '6379')}/0"
)
CELERY_RESULT_BACKEND = CELERY_BROKER_URL

# Blobs go to a local directory unless a bucket is configured
if os.getenv("BACKUP_PRIMARY_BACKEND", "local") == "local":
    BACKUP_REMOTE_STORES["primary"] = {  # noqa: F405
        "BACKEND": "local",
        "PATH": os.getenv("BACKUP_LOCAL_PATH", str(BASE_DIR / "var" / "backups")),  # noqa: F405
    }

BACKUP_ENCRYPTION_PASSWORD = os.getenv(
    "BACKUP_ENCRYPTION_PASSWORD", "dev-backup-password-change-in-production"
)

# Email Configuration - Development (Console backend)
EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"

# Logging Configuration - Development (Verbose console output)
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "level": "DEBUG",
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "DEBUG",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "botocore": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": "DEBUG",
            "propagate": False,
        },
    },
}
