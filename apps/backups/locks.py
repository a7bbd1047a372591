"""
Run leases for backup-mutating operations.

A lease is a cache key added with ``cache.add`` (SET NX EX on the Redis
cache backend) that expires on its own if the holder dies. Only one run may
hold a given lease at a time; a run that finds the lease taken is skipped,
not queued.

Lease names:
- ``backup``: backup orchestrator and restore engine runs
- ``verify``: verification sweeps
- ``retention``: retention sweeps
"""

import logging
import uuid
from contextlib import contextmanager

from django.conf import settings
from django.core.cache import cache

from .exceptions import LeaseUnavailableError

logger = logging.getLogger(__name__)

BACKUP_LEASE = "backup"
VERIFY_LEASE = "verify"
RETENTION_LEASE = "retention"

DEFAULT_LEASE_TIMEOUT = 2 * 60 * 60  # 2 hours


def lease_key(name: str) -> str:
    return f"backups:lease:{name}"


def get_lease_holder(name: str):
    """Return the token of the current holder, or None if the lease is free."""
    return cache.get(lease_key(name))


@contextmanager
def operation_lease(name: str, timeout=None):
    """
    Hold the lease called ``name`` for the duration of the block.

    Raises:
        LeaseUnavailableError: If another run already holds the lease
    """
    if timeout is None:
        timeout = getattr(settings, "BACKUP_LEASE_TIMEOUT_SECONDS", DEFAULT_LEASE_TIMEOUT)

    key = lease_key(name)
    token = uuid.uuid4().hex

    if not cache.add(key, token, timeout):
        holder = cache.get(key)
        logger.warning(f"Lease '{name}' is held by {holder}, skipping run")
        raise LeaseUnavailableError(f"Lease '{name}' is already held")

    logger.debug(f"Acquired lease '{name}' ({token})")
    try:
        yield token
    finally:
        try:
            # Release only our own lease; it may have expired and been re-acquired.
            if cache.get(key) == token:
                cache.delete(key)
                logger.debug(f"Released lease '{name}' ({token})")
            else:
                logger.warning(f"Lease '{name}' expired before release ({token})")
        except Exception as lock_error:
            logger.warning(f"Failed to release lease '{name}': {lock_error}")
