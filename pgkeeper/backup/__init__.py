"""
Backup module for pgkeeper.

This module handles the core backup functionality including:
- Logical dumps via pg_dump/psql
- Compression and checksums
- S3-compatible storage with SigV4 request signing
- Execution orchestration, locking and history
- Restore verification
- Retention policy enforcement
- WAL archiving / PITR configuration snippets
"""

from .executor import BackupExecutor
from .dump import PgDumpInvoker, DatabaseConnection, parse_database_url
from .compression import gzip_file, gunzip_file, compute_checksum
from .records import BackupRecord, BackupResult, BackupType, BackupTier, BackupStatus
from .state import BackupStateStore
from .storage import S3Storage, ObjectStoreConfig, StorageError, sign_request
from .verification import BackupVerifier, VerificationResult
from .retention import RetentionEnforcer, RetentionPolicy
from .wal import WALArchiveConfig, render_wal_archive_config, render_recovery_config

__all__ = [
    'BackupExecutor',
    'PgDumpInvoker',
    'DatabaseConnection',
    'parse_database_url',
    'gzip_file',
    'gunzip_file',
    'compute_checksum',
    'BackupRecord',
    'BackupResult',
    'BackupType',
    'BackupTier',
    'BackupStatus',
    'BackupStateStore',
    'S3Storage',
    'ObjectStoreConfig',
    'StorageError',
    'sign_request',
    'BackupVerifier',
    'VerificationResult',
    'RetentionEnforcer',
    'RetentionPolicy',
    'WALArchiveConfig',
    'render_wal_archive_config',
    'render_recovery_config',
]
