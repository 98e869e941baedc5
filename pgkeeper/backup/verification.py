"""
Backup verification by restore.

Downloads an uploaded artifact, restores it into a throwaway database and
checks that the restored schema has tables. The throwaway database and the
temporary files are always removed, whatever happened before.
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from .compression import gunzip_file, is_gzip_file, CompressionError
from .dump import DumpError
from .records import BackupRecord, BackupStatus
from .storage import StorageError

logger = logging.getLogger(__name__)

VERIFY_DB_PREFIX = 'pgkeeper_verify_'

TABLE_COUNT_SQL = (
    "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public';"
)
ROW_SAMPLE_SQL = "SELECT COALESCE(SUM(n_live_tup), 0) FROM pg_stat_user_tables;"


@dataclass
class VerificationResult:
    success: bool
    backup_id: str
    table_count: int = 0
    row_sample: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def verification_database_name(backup_id: str) -> str:
    """Deterministic throwaway database name for a backup id."""
    return VERIFY_DB_PREFIX + backup_id.replace('-', '_')[:20].lower()


class BackupVerifier:
    """
    Restores backups into an ephemeral database to prove they are usable.
    """

    def __init__(self, storage, invoker, temp_dir: Optional[str] = None):
        """
        Args:
            storage: S3Storage (or compatible) to download artifacts from
            invoker: PgDumpInvoker used to create/restore/query/drop
            temp_dir: Directory for downloaded files (system temp by default)
        """
        self.storage = storage
        self.invoker = invoker
        self.temp_dir = temp_dir or tempfile.gettempdir()

    def verify(self, record: BackupRecord) -> VerificationResult:
        """
        Verify a completed backup.

        Never raises: failures are reported through VerificationResult.error.
        The record itself is not modified.
        """
        start = time.monotonic()

        def elapsed_ms():
            return int((time.monotonic() - start) * 1000)

        if record.status not in (BackupStatus.COMPLETED, BackupStatus.VERIFIED) or not record.storage_key:
            return VerificationResult(
                success=False,
                backup_id=record.id,
                error=f"Backup {record.id} is not a completed upload (status: {record.status})"
            )

        temp_db = verification_database_name(record.id)
        download_path = os.path.join(self.temp_dir, f"pgkeeper-verify-{record.id}.sql.gz")
        sql_path = os.path.join(self.temp_dir, f"pgkeeper-verify-{record.id}.sql")
        create_attempted = False

        logger.info(f"Starting backup verification: {record.id} (temp db: {temp_db})")

        try:
            self.storage.download(record.storage_key, download_path)

            if is_gzip_file(download_path):
                gunzip_file(download_path, sql_path)
                restore_path = sql_path
            else:
                restore_path = download_path

            create_attempted = True
            self.invoker.create_database(temp_db)
            self.invoker.restore(restore_path, temp_db)

            table_count = self.invoker.query_scalar(temp_db, TABLE_COUNT_SQL)
            row_sample = self.invoker.query_scalar(temp_db, ROW_SAMPLE_SQL)

            result = VerificationResult(
                success=table_count > 0,
                backup_id=record.id,
                table_count=table_count,
                row_sample=row_sample,
                duration_ms=elapsed_ms(),
                error=None if table_count > 0 else "No tables found in restored database"
            )

            logger.info(
                f"Backup verification finished: {record.id} "
                f"(success={result.success}, tables={table_count}, rows={row_sample}, "
                f"duration={result.duration_ms}ms)"
            )
            return result

        except (StorageError, CompressionError, DumpError, ValueError) as e:
            logger.error(f"Backup verification failed: {record.id}: {e}")
            return VerificationResult(
                success=False,
                backup_id=record.id,
                duration_ms=elapsed_ms(),
                error=str(e)
            )

        except Exception as e:
            logger.exception(f"Unexpected error verifying backup {record.id}: {e}")
            return VerificationResult(
                success=False,
                backup_id=record.id,
                duration_ms=elapsed_ms(),
                error=str(e)
            )

        finally:
            # A failed CREATE may still leave the database behind
            if create_attempted:
                try:
                    self.invoker.drop_database(temp_db)
                except (DumpError, ValueError) as e:
                    logger.warning(f"Failed to drop verification database {temp_db}: {e}")

            for path in (download_path, sql_path):
                self._remove_temp_file(path)

    @staticmethod
    def _remove_temp_file(path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to cleanup temp file {path}: {e}")
