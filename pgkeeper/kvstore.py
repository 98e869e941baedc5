"""
Key-value store with TTL.

Holds the backup lock and the small JSON records (running attempt, latest
pointer, history, stats). Two backends:
- RedisKeyValueStore: shared Redis, for fleets of hosts
- SQLKeyValueStore: the app's SQLAlchemy database (default, single host or
  hosts sharing one database)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import redis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pgkeeper import db
from pgkeeper.models import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface shared by the backends. Values are strings."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Atomically store value only if key is absent. Returns True if stored."""
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically delete key only if it currently holds value."""
        raise NotImplementedError


class RedisKeyValueStore(KeyValueStore):
    """Backend on redis-py."""

    # Compare-and-delete in one round trip
    _DELETE_IF_EQUALS = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._delete_if_equals = client.register_script(self._DELETE_IF_EQUALS)

    @classmethod
    def from_url(cls, url: str) -> 'RedisKeyValueStore':
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        self.client.set(key, value, ex=ttl)

    def delete(self, key: str):
        self.client.delete(key)

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return bool(self.client.set(key, value, ex=ttl, nx=True))

    def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(self._delete_if_equals(keys=[key], args=[value]))


class SQLKeyValueStore(KeyValueStore):
    """
    Backend on the Flask-SQLAlchemy session.

    Expired rows read as absent and are purged when touched. Must be used
    inside an application context.
    """

    def __init__(self, database=None):
        self.db = database or db

    @staticmethod
    def _now() -> datetime:
        return datetime.utcnow()

    def _expiry(self, ttl: Optional[int]) -> Optional[datetime]:
        return self._now() + timedelta(seconds=ttl) if ttl else None

    def _commit(self):
        # A failed flush leaves the session unusable until rolled back
        try:
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            raise

    def _live_entry(self, key: str) -> Optional[KeyValueEntry]:
        entry = self.db.session.get(KeyValueEntry, key)
        if entry is not None and entry.is_expired(self._now()):
            self.db.session.delete(entry)
            self._commit()
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        entry = self._live_entry(key)
        return entry.value if entry else None

    def set(self, key: str, value: str, ttl: Optional[int] = None):
        entry = self.db.session.get(KeyValueEntry, key)
        if entry is None:
            entry = KeyValueEntry(key=key)
            self.db.session.add(entry)
        entry.value = value
        entry.expires_at = self._expiry(ttl)
        self._commit()

    def delete(self, key: str):
        KeyValueEntry.query.filter_by(key=key).delete()
        self._commit()

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        # Purges a stale holder; the primary key decides races between hosts
        if self._live_entry(key) is not None:
            return False

        self.db.session.add(KeyValueEntry(key=key, value=value, expires_at=self._expiry(ttl)))
        try:
            self.db.session.commit()
            return True
        except IntegrityError:
            self.db.session.rollback()
            return False
        except SQLAlchemyError:
            self.db.session.rollback()
            raise

    def delete_if_equals(self, key: str, value: str) -> bool:
        deleted = KeyValueEntry.query.filter_by(key=key, value=value).delete()
        self._commit()
        return deleted > 0


def create_kv_store(app) -> KeyValueStore:
    """
    Build the store selected by KV_STORE_BACKEND ('sql' or 'redis').

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = app.config.get('KV_STORE_BACKEND', 'sql')

    if backend == 'redis':
        app.logger.info("Using Redis key-value store")
        return RedisKeyValueStore.from_url(app.config['REDIS_URL'])
    elif backend == 'sql':
        app.logger.info("Using SQL key-value store")
        return SQLKeyValueStore()
    else:
        raise ValueError(f"Invalid key-value store backend: {backend}")
