"""
Backup executor - orchestrates the complete backup workflow.

Workflow for one attempt:
1. Reserve an in-process slot (max concurrent backups)
2. Take the fleet-wide lock (atomic set-if-absent, owner = attempt id)
3. pg_dump -> gzip -> SHA-256 -> size -> storage key -> upload
4. Persist the record (latest pointer, history, stats)
5. Remove temporary files (always)
6. Optionally verify by restore (advisory, never fails the backup)
7. Release the slot and the lock (always)
"""

import logging
import os
import tempfile
import threading
import time
from datetime import datetime
from typing import Optional, List, Dict, Any

from .compression import gzip_file, compute_checksum, get_file_size
from .records import (
    BackupRecord,
    BackupResult,
    BackupStatus,
    BackupTier,
    BackupType,
    determine_backup_tier,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_CONCURRENT_ERROR = "Maximum concurrent backups exceeded"
LOCK_HELD_ERROR = "Backup lock already held"


def cleanup_temp_files(*file_paths: str):
    """
    Remove temporary files, logging (never raising) on failure.

    Args:
        *file_paths: Paths to delete; missing files and duplicates are skipped
    """
    for file_path in dict.fromkeys(file_paths):
        try:
            if file_path and os.path.exists(file_path):
                os.remove(file_path)
                logger.debug(f"Cleaned up temporary file: {file_path}")
        except OSError as e:
            logger.warning(f"Failed to cleanup temp file {file_path}: {e}")


class BackupExecutor:
    """
    Orchestrates backup attempts against one database and one bucket.

    Construct once per process; collaborators are injected so tests can swap
    in fakes.
    """

    def __init__(
        self,
        state,
        storage,
        invoker,
        verifier=None,
        retention=None,
        temp_dir: Optional[str] = None,
        compression_enabled: bool = True,
        verification_enabled: bool = True,
        max_concurrent_backups: int = 1
    ):
        """
        Initialize backup executor.

        Args:
            state: BackupStateStore for lock, history and stats
            storage: S3Storage to upload artifacts to
            invoker: PgDumpInvoker producing the dumps
            verifier: BackupVerifier for post-upload verification (optional)
            retention: RetentionEnforcer run after scheduled backups (optional)
            temp_dir: Directory for dump files (system temp by default)
            compression_enabled: gzip the dump before upload
            verification_enabled: verify full backups after upload
            max_concurrent_backups: In-process concurrency limit
        """
        self.state = state
        self.storage = storage
        self.invoker = invoker
        self.verifier = verifier
        self.retention = retention
        self.temp_dir = temp_dir or tempfile.gettempdir()
        self.compression_enabled = compression_enabled
        self.verification_enabled = verification_enabled
        self.max_concurrent_backups = max_concurrent_backups

        self.active_backups = 0
        self._slots_lock = threading.Lock()

    # Entry points

    def create_backup(self, backup_type: str = BackupType.FULL, tier: Optional[str] = None,
                      now: Optional[datetime] = None) -> BackupResult:
        """
        Run one backup attempt.

        Args:
            backup_type: One of BackupType.ALL
            tier: Tier override; derived from the date when omitted
            now: Attempt start time (defaults to the current UTC time)

        Returns:
            BackupResult. Coordination rejections carry no record; stage
            failures carry the failed record and its error message.

        Raises:
            ValueError: If backup_type or tier is invalid
        """
        record = BackupRecord.start(backup_type, tier, now)

        if not self._reserve_slot():
            logger.warning(
                f"Maximum concurrent backups reached "
                f"(active={self.active_backups}, max={self.max_concurrent_backups})"
            )
            return BackupResult(success=False, record=None, error=MAX_CONCURRENT_ERROR)

        lock_acquired = False
        try:
            lock_acquired = self.state.acquire_lock(record.id)
            if not lock_acquired:
                logger.warning("Backup lock already held, another backup may be in progress")
                return BackupResult(success=False, record=None, error=LOCK_HELD_ERROR)

            return self._run_attempt(record)

        finally:
            self._release_slot()
            if lock_acquired:
                self._release_lock(record.id)

    def trigger_on_demand(self, backup_type: str = BackupType.FULL) -> BackupResult:
        """Manual backup; always filed under the daily tier."""
        logger.info(f"On-demand backup triggered (type={backup_type})")
        return self.create_backup(backup_type, BackupTier.DAILY)

    def run_scheduled_backup(self, now: Optional[datetime] = None) -> BackupResult:
        """
        Full backup for the scheduler, followed by retention on success.
        """
        now = now or utc_now()
        tier = determine_backup_tier(now)
        logger.info(f"Running scheduled backup (tier={tier})")

        result = self.create_backup(BackupType.FULL, tier, now)

        if result.success and self.retention is not None:
            try:
                self.retention.enforce()
            except Exception as e:
                logger.error(f"Retention enforcement failed after backup: {e}")

        return result

    def verify_backup(self, backup_id: str):
        """
        Verify a backup from history on demand.

        Returns:
            VerificationResult, or None if the id is not in history

        Raises:
            RuntimeError: If no verifier is configured
        """
        if self.verifier is None:
            raise RuntimeError("Backup verification is not configured")

        record = self.state.find_record(backup_id)
        if record is None:
            return None

        result = self.verifier.verify(record)
        if result.success and record.status == BackupStatus.COMPLETED:
            record.mark_verified()
            self._save_record(record)
        return result

    # Read side

    def get_history(self, limit: int = 20) -> List[BackupRecord]:
        return self.state.get_history(limit)

    def get_latest(self) -> Optional[BackupRecord]:
        return self.state.get_latest()

    def get_running(self) -> Optional[BackupRecord]:
        return self.state.get_running()

    def get_stats(self) -> Dict[str, Any]:
        return self.state.get_stats()

    # Pipeline

    def _run_attempt(self, record: BackupRecord) -> BackupResult:
        start = time.monotonic()
        temp_files = []

        record.transition(BackupStatus.IN_PROGRESS)
        logger.info(f"Starting backup {record.id} (type={record.type}, tier={record.tier})")

        try:
            self.state.set_running(record)
            self._save_record(record)

            # Step 1: Dump
            dump_path = os.path.join(self.temp_dir, f"pgkeeper-backup-{record.id}.sql")
            temp_files.append(dump_path)
            self.invoker.dump(record.type, dump_path)

            # Step 2: Compress
            if self.compression_enabled:
                artifact_path = gzip_file(dump_path)
                temp_files.append(artifact_path)
            else:
                artifact_path = dump_path

            # Steps 3-4: Checksum and size of the exact bytes uploaded
            checksum = compute_checksum(artifact_path)
            size_bytes = get_file_size(artifact_path)

            # Steps 5-6: Key and upload
            storage_key = record.storage_key_for()
            self.storage.upload(storage_key, artifact_path)

            record.storage_key = storage_key
            record.checksum = checksum
            record.size_bytes = size_bytes
            record.duration_ms = self._elapsed_ms(start)
            record.transition(BackupStatus.COMPLETED)

            # Step 7: Persist
            self._save_record(record)

        except Exception as e:
            record.error = str(e)
            record.duration_ms = self._elapsed_ms(start)
            record.transition(BackupStatus.FAILED)

            logger.error(
                f"Backup failed {record.id} (type={record.type}, tier={record.tier}): {e}"
            )
            self._save_record(record)
            self._update_stats(record)
            return BackupResult(success=False, record=record, error=record.error)

        finally:
            # Step 8: Temp files go regardless of outcome
            cleanup_temp_files(*temp_files)

        # Step 9: Advisory verification
        if self.verification_enabled and self.verifier is not None and record.type == BackupType.FULL:
            self._verify(record)

        self._update_stats(record)

        logger.info(
            f"Backup completed {record.id} (type={record.type}, tier={record.tier}, "
            f"size={record.size_bytes}, duration={record.duration_ms}ms, status={record.status})"
        )
        return BackupResult(success=True, record=record, error=None)

    def _verify(self, record: BackupRecord):
        try:
            verification = self.verifier.verify(record)
        except Exception as e:
            logger.warning(f"Backup verification errored for {record.id}: {e}")
            return

        if verification.success:
            record.mark_verified()
            self._save_record(record)
        else:
            logger.warning(f"Backup verification failed for {record.id}: {verification.error}")

    # Coordination

    def _reserve_slot(self) -> bool:
        with self._slots_lock:
            if self.active_backups >= self.max_concurrent_backups:
                return False
            self.active_backups += 1
            return True

    def _release_slot(self):
        with self._slots_lock:
            self.active_backups -= 1

    def _release_lock(self, backup_id: str):
        try:
            self.state.release_lock(backup_id)
        except Exception as e:
            logger.error(f"Failed to release backup lock for {backup_id}: {e}")

        try:
            self.state.clear_running()
        except Exception as e:
            logger.warning(f"Failed to clear running backup marker: {e}")

    # State writes log failures instead of raising

    def _save_record(self, record: BackupRecord):
        try:
            self.state.save_record(record)
        except Exception as e:
            logger.error(f"Failed to save backup record {record.id} ({record.status}): {e}")

    def _update_stats(self, record: BackupRecord):
        try:
            self.state.update_stats(record)
        except Exception as e:
            logger.error(f"Failed to update backup stats for {record.id}: {e}")

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
