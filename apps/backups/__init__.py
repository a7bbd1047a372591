"""
Backup and disaster recovery orchestrator.

This app captures the application database and file store, compresses,
encrypts and checksums each capture, ships it to remote object storage
(with an optional geo-replica), verifies stored backups, enforces tiered
retention, restores on demand and runs scripted disaster recovery plans.
"""
