"""
Production-specific Django settings.
"""

import os

# Load environment variables from .env file
from dotenv import load_dotenv

load_dotenv()

from .base import *  # noqa: E402,F403,F405

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY")
if not SECRET_KEY:
    raise ValueError("DJANGO_SECRET_KEY must be set in production environment!")

DEBUG = False

ALLOWED_HOSTS = [host for host in os.getenv("DJANGO_ALLOWED_HOSTS", "").split(",") if host]

# Database with Prometheus monitoring
DATABASES = {
    "default": {
        "ENGINE": "django_prometheus.db.backends.postgresql",
        "NAME": os.getenv("POSTGRES_DB"),
        "USER": os.getenv("POSTGRES_USER"),
        "PASSWORD": os.getenv("POSTGRES_PASSWORD"),
        "HOST": os.getenv("POSTGRES_HOST"),
        "PORT": os.getenv("POSTGRES_PORT", "5432"),
        "CONN_MAX_AGE": 600,
        "OPTIONS": {
            "connect_timeout": 10,
            "sslmode": os.getenv("DB_SSLMODE", "prefer"),
        },
    }
}
if FAILOVER_DATABASE:  # noqa: F405
    DATABASES["failover"] = FAILOVER_DATABASE  # noqa: F405

# Redis Cache Configuration - Production (run leases live here)
redis_host = os.getenv("REDIS_HOST")
redis_port = os.getenv("REDIS_PORT", "6379")
redis_password = os.getenv("REDIS_PASSWORD", "")
redis_auth = f":{redis_password}@" if redis_password else ""

CACHES = {
    "default": {
        "BACKEND": "django_prometheus.cache.backends.redis.RedisCache",
        "LOCATION": f"redis://{redis_auth}{redis_host}:{redis_port}/1",
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
            "SOCKET_CONNECT_TIMEOUT": 5,
            "SOCKET_TIMEOUT": 5,
            "RETRY_ON_TIMEOUT": True,
            "MAX_CONNECTIONS": 20,
        },
        "KEY_PREFIX": "backups",
        "TIMEOUT": 300,
    },
}

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", f"redis://{redis_auth}{redis_host}:{redis_port}/0")
CELERY_RESULT_BACKEND = CELERY_BROKER_URL

# Email Configuration - Production (SMTP)
EMAIL_BACKEND = "django.core.mail.backends.smtp.EmailBackend"
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "True") == "True"

# Logging Configuration - Production (JSON format for log aggregation)
LOGGING["handlers"]["error_file"] = {  # noqa: F405
    "level": "ERROR",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "backups_errors.log",  # noqa: F405
    "maxBytes": 1024 * 1024 * 50,  # 50 MB
    "backupCount": 20,
    "formatter": "json",
}
LOGGING["root"]["handlers"] = ["console", "file", "error_file"]  # noqa: F405

# Sentry - Enabled in production
SENTRY_DSN = os.getenv("SENTRY_DSN")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "production")
SENTRY_RELEASE = os.getenv("SENTRY_RELEASE")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))

if SENTRY_DSN:
    from apps.backups.error_tracking import initialize_sentry

    initialize_sentry(
        dsn=SENTRY_DSN,
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        release=SENTRY_RELEASE,
    )

# Validate all required environment variables
validate_required_env_vars()  # noqa: F405
validate_security_settings(DEBUG)  # noqa: F405

if not BACKUP_SOURCE_DATABASE["URL"]:  # noqa: F405
    BACKUP_SOURCE_DATABASE["URL"] = postgres_url(DATABASES["default"])  # noqa: F405
