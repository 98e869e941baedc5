"""
Shared backup state kept in the key-value store.

Keys:
    backup:lock     id of the attempt holding the fleet-wide lock (TTL 2h)
    backup:running  JSON of the attempt in progress (TTL 2h)
    backup:latest   JSON of the most recently saved record
    backup:history  JSON list of records, newest first, capped at 100
    backup:stats    JSON aggregate counters

History and stats are read-modify-write blobs without transactions: two
hosts saving at the same moment can lose one update (last writer wins).
"""

import json
import logging
from typing import Optional, List, Dict, Any

from .records import BackupRecord

logger = logging.getLogger(__name__)

LOCK_KEY = 'backup:lock'
RUNNING_KEY = 'backup:running'
LATEST_KEY = 'backup:latest'
HISTORY_KEY = 'backup:history'
STATS_KEY = 'backup:stats'

# Seconds; long enough to outlive a slow dump
LOCK_TTL = 7200
RUNNING_TTL = 7200

HISTORY_LIMIT = 100

NEVER = 'never'


def empty_stats() -> Dict[str, Any]:
    return {
        'total_backups': 0,
        'total_size_bytes': 0,
        'total_duration_ms': 0,
        'average_duration_ms': 0,
        'last_successful': NEVER,
        'last_failed': NEVER,
    }


class BackupStateStore:
    """Lock, running marker, latest pointer, history and stats for backups."""

    def __init__(self, store, history_limit: int = HISTORY_LIMIT):
        """
        Args:
            store: KeyValueStore implementation
            history_limit: Maximum number of history entries kept
        """
        self.store = store
        self.history_limit = history_limit

    def _load(self, key: str, default=None):
        raw = self.store.get(key)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable state record {key}")
            return default

    def _dump(self, key: str, value, ttl: Optional[int] = None):
        self.store.set(key, json.dumps(value), ttl)

    # Lock

    def acquire_lock(self, owner_id: str) -> bool:
        """Take the fleet-wide backup lock in one atomic set-if-absent."""
        return self.store.set_if_absent(LOCK_KEY, owner_id, LOCK_TTL)

    def release_lock(self, owner_id: str) -> bool:
        """Release the lock only if owner_id still holds it."""
        released = self.store.delete_if_equals(LOCK_KEY, owner_id)
        if not released:
            logger.debug(f"Backup lock not released by {owner_id}: held by another attempt or expired")
        return released

    def lock_holder(self) -> Optional[str]:
        return self.store.get(LOCK_KEY)

    # Running attempt

    def set_running(self, record: BackupRecord):
        self._dump(RUNNING_KEY, record.to_dict(), RUNNING_TTL)

    def clear_running(self):
        self.store.delete(RUNNING_KEY)

    def get_running(self) -> Optional[BackupRecord]:
        data = self._load(RUNNING_KEY)
        return BackupRecord.from_dict(data) if data else None

    # Records

    def save_record(self, record: BackupRecord):
        """Update the latest pointer and upsert the record into history."""
        self._dump(LATEST_KEY, record.to_dict())

        history = self._load(HISTORY_KEY, [])
        for index, existing in enumerate(history):
            if existing.get('id') == record.id:
                history[index] = record.to_dict()
                break
        else:
            history.insert(0, record.to_dict())

        self._dump(HISTORY_KEY, history[:self.history_limit])

    def get_latest(self) -> Optional[BackupRecord]:
        data = self._load(LATEST_KEY)
        return BackupRecord.from_dict(data) if data else None

    def get_history(self, limit: int = 20) -> List[BackupRecord]:
        history = self._load(HISTORY_KEY, [])
        return [BackupRecord.from_dict(item) for item in history[:limit]]

    def find_record(self, backup_id: str) -> Optional[BackupRecord]:
        for item in self._load(HISTORY_KEY, []):
            if item.get('id') == backup_id:
                return BackupRecord.from_dict(item)
        return None

    # Stats

    def update_stats(self, record: BackupRecord):
        """
        Fold a terminal record into the aggregate stats.

        Successful records count towards the totals and set last_successful;
        failed records only set last_failed.
        """
        stats = empty_stats()
        stats.update(self._load(STATS_KEY, {}))

        if record.is_successful:
            stats['total_backups'] = int(stats['total_backups']) + 1
            stats['total_size_bytes'] = int(stats['total_size_bytes']) + record.size_bytes
            stats['total_duration_ms'] = int(stats['total_duration_ms']) + record.duration_ms
            stats['average_duration_ms'] = round(stats['total_duration_ms'] / stats['total_backups'])
            stats['last_successful'] = record.timestamp
        else:
            stats['last_failed'] = record.timestamp

        self._dump(STATS_KEY, stats)

    def get_stats(self) -> Dict[str, Any]:
        stats = empty_stats()
        stats.update(self._load(STATS_KEY, {}))
        return stats
