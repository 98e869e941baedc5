"""
Wiring of the backup components from app.config.

Components take typed settings objects; this is the only place that reads
the Flask configuration for them. A missing DATABASE_URL or bucket leaves
the pipeline unconfigured instead of failing app startup: read views keep
working and running a backup raises RuntimeError.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from pgkeeper.kvstore import create_kv_store
from pgkeeper.backup.dump import PgDumpInvoker, parse_database_url
from pgkeeper.backup.executor import BackupExecutor
from pgkeeper.backup.retention import RetentionEnforcer, RetentionPolicy
from pgkeeper.backup.state import BackupStateStore
from pgkeeper.backup.storage import ObjectStoreConfig, S3Storage, StorageError
from pgkeeper.backup.verification import BackupVerifier
from pgkeeper.backup.wal import WALArchiveConfig

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'pgkeeper'


@dataclass
class BackupServices:
    state: BackupStateStore
    wal: WALArchiveConfig
    storage: Optional[S3Storage] = None
    invoker: Optional[PgDumpInvoker] = None
    verifier: Optional[BackupVerifier] = None
    retention: Optional[RetentionEnforcer] = None
    executor: Optional[BackupExecutor] = None

    def require_executor(self) -> BackupExecutor:
        if self.executor is None:
            raise RuntimeError(
                "Backups are not configured: set DATABASE_URL and BACKUP_S3_BUCKET"
            )
        return self.executor

    def require_retention(self) -> RetentionEnforcer:
        if self.retention is None:
            raise RuntimeError("Retention is not configured: set BACKUP_S3_BUCKET")
        return self.retention


def object_store_config(app_config) -> ObjectStoreConfig:
    return ObjectStoreConfig(
        bucket=app_config.get('BACKUP_S3_BUCKET') or '',
        region=app_config.get('BACKUP_S3_REGION') or 'us-east-1',
        access_key=app_config.get('BACKUP_S3_ACCESS_KEY') or '',
        secret_key=app_config.get('BACKUP_S3_SECRET_KEY') or '',
        endpoint=app_config.get('BACKUP_S3_ENDPOINT') or None,
    )


def retention_policy(app_config) -> RetentionPolicy:
    return RetentionPolicy(
        daily=app_config.get('BACKUP_RETENTION_DAILY', 7),
        weekly=app_config.get('BACKUP_RETENTION_WEEKLY', 4),
        monthly=app_config.get('BACKUP_RETENTION_MONTHLY', 12),
    )


def wal_archive_config(app_config) -> WALArchiveConfig:
    defaults = WALArchiveConfig()
    return WALArchiveConfig(
        enabled=bool(app_config.get('BACKUP_WAL_ENABLED', False)),
        archive_command=app_config.get('BACKUP_WAL_ARCHIVE_CMD') or defaults.archive_command,
        restore_command=app_config.get('BACKUP_WAL_RESTORE_CMD') or defaults.restore_command,
        archive_path=app_config.get('BACKUP_WAL_ARCHIVE_PATH') or defaults.archive_path,
    )


def build_services(app_config, kv_store) -> BackupServices:
    """
    Assemble the backup components.

    Args:
        app_config: Mapping with the pgkeeper settings (usually app.config)
        kv_store: KeyValueStore backing the shared state

    Returns:
        BackupServices; storage, invoker, verifier, retention and executor
        are None when their settings are missing or invalid
    """
    services = BackupServices(
        state=BackupStateStore(kv_store),
        wal=wal_archive_config(app_config),
    )

    try:
        services.storage = S3Storage(object_store_config(app_config))
    except StorageError as e:
        logger.warning(f"Object storage not configured: {e}")

    try:
        connection = parse_database_url(app_config.get('BACKUP_DATABASE_URL'))
        services.invoker = PgDumpInvoker(
            connection,
            pg_dump_path=app_config.get('PG_DUMP_PATH') or 'pg_dump',
            psql_path=app_config.get('PSQL_PATH') or 'psql',
        )
    except ValueError as e:
        logger.warning(f"Database to back up not configured: {e}")

    if services.storage is not None:
        services.retention = RetentionEnforcer(services.storage, retention_policy(app_config))

    if services.storage is not None and services.invoker is not None:
        temp_dir = app_config.get('TEMP_DIR')
        services.verifier = BackupVerifier(services.storage, services.invoker, temp_dir)
        services.executor = BackupExecutor(
            services.state,
            services.storage,
            services.invoker,
            verifier=services.verifier,
            retention=services.retention,
            temp_dir=temp_dir,
            compression_enabled=app_config.get('BACKUP_COMPRESSION', True),
            verification_enabled=app_config.get('BACKUP_VERIFICATION', True),
            max_concurrent_backups=app_config.get('BACKUP_MAX_CONCURRENT', 1),
        )

    return services


def init_services(app) -> BackupServices:
    """Build the components once per app and attach them to app.extensions."""
    services = build_services(app.config, create_kv_store(app))
    app.extensions[EXTENSION_KEY] = services
    if services.executor is not None:
        app.logger.info(
            f"Backup pipeline ready (bucket={services.storage.config.bucket}, "
            f"database={services.invoker.connection.database})"
        )
    return services


def get_services() -> BackupServices:
    """Components of the current app. Requires an application context."""
    return current_app.extensions[EXTENSION_KEY]
