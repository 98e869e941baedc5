"""
Shared pytest fixtures for pgkeeper tests.

This module provides fixtures for:
- Flask app, CLI runner and database setup with in-memory SQLite
- An in-memory key-value store and the backup state built on it
- Fakes for the object store and the PostgreSQL client tools
- Executor wiring with those fakes
"""

import gzip
import os
import shutil
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from pgkeeper import create_app, db as _db
from pgkeeper.kvstore import KeyValueStore
from pgkeeper.backup.executor import BackupExecutor
from pgkeeper.backup.retention import RetentionEnforcer
from pgkeeper.backup.state import BackupStateStore
from pgkeeper.backup.storage import StorageError
from pgkeeper.backup.verification import BackupVerifier


SAMPLE_SQL = (
    "CREATE TABLE users (id integer PRIMARY KEY, name text);\n"
    "INSERT INTO users VALUES (1, 'alice');\n"
)


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store; TTLs are recorded but never expire."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ttl=None):
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    def set_if_absent(self, key, value, ttl=None):
        if key in self.data:
            return False
        self.set(key, value, ttl)
        return True

    def delete_if_equals(self, key, value):
        if self.data.get(key) != value:
            return False
        self.delete(key)
        return True


class FakeStorage:
    """
    Object store double keeping objects in memory.

    Set fail_upload / fail_download / fail_list to a StorageError to make the
    operation raise; fail_delete_keys makes individual deletes fail.
    """

    def __init__(self):
        self.objects = {}
        self.uploads = []
        self.deleted = []
        self.fail_upload = None
        self.fail_download = None
        self.fail_list = None
        self.fail_delete_keys = set()

    def put(self, key, body=b'', last_modified=None):
        self.objects[key] = {
            'body': body,
            'last_modified': last_modified or datetime.now(timezone.utc),
        }

    def upload(self, key, local_path):
        if self.fail_upload:
            raise self.fail_upload
        with open(local_path, 'rb') as f:
            self.put(key, f.read())
        self.uploads.append(key)

    def download(self, key, dest_path):
        if self.fail_download:
            raise self.fail_download
        if key not in self.objects:
            raise StorageError(f"S3 download failed: 404 Not Found - {key}", status_code=404)
        with open(dest_path, 'wb') as f:
            f.write(self.objects[key]['body'])

    def delete(self, key):
        if key in self.fail_delete_keys:
            raise StorageError(f"S3 delete failed: 500 Internal Server Error - {key}", status_code=500)
        self.objects.pop(key, None)
        self.deleted.append(key)

    def list_objects(self, prefix):
        if self.fail_list:
            raise self.fail_list
        return [
            {'key': key, 'last_modified': obj['last_modified'], 'size': len(obj['body'])}
            for key, obj in sorted(self.objects.items())
            if key.startswith(prefix)
        ]


class FakeInvoker:
    """
    Stand-in for PgDumpInvoker.

    dump() writes SAMPLE_SQL; restore/create/drop calls are recorded and the
    scalar queries return table_count then row_sample.
    """

    def __init__(self, table_count=3, row_sample=42):
        self.table_count = table_count
        self.row_sample = row_sample
        self.calls = []
        self.dumped_paths = []
        self.restored_sql = None
        self.fail_dump = None
        self.fail_create = None
        self.fail_restore = None

    def dump(self, backup_type, output_path):
        self.calls.append(('dump', backup_type))
        if self.fail_dump:
            raise self.fail_dump
        with open(output_path, 'w') as f:
            f.write(SAMPLE_SQL)
        self.dumped_paths.append(output_path)
        return output_path

    def restore(self, sql_path, database):
        self.calls.append(('restore', database))
        if self.fail_restore:
            raise self.fail_restore
        with open(sql_path) as f:
            self.restored_sql = f.read()

    def query_scalar(self, database, sql):
        self.calls.append(('query', database))
        if 'information_schema.tables' in sql:
            return self.table_count
        return self.row_sample

    def create_database(self, name):
        self.calls.append(('create', name))
        if self.fail_create:
            raise self.fail_create

    def drop_database(self, name):
        self.calls.append(('drop', name))


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'TEMP_DIR': str(tmp_path / 'temp'),
    })
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def fail_history_insert(db):
    """
    Make the first INSERT of the backup:history row fail like a locked
    SQLite database. Yields the list of failed statements.
    """
    failed = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if failed or not statement.startswith('INSERT INTO kv_entries'):
            return
        if 'backup:history' in str(parameters):
            failed.append(statement)
            raise OperationalError(statement, parameters, Exception("database is locked"))

    event.listen(db.engine, 'before_cursor_execute', before_cursor_execute)
    yield failed
    event.remove(db.engine, 'before_cursor_execute', before_cursor_execute)


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def state(kv_store):
    return BackupStateStore(kv_store)


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def temp_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return str(path)


@pytest.fixture
def executor(state, fake_storage, fake_invoker, temp_dir):
    """Executor wired to the fakes with verification and retention enabled."""
    return BackupExecutor(
        state,
        fake_storage,
        fake_invoker,
        verifier=BackupVerifier(fake_storage, fake_invoker, temp_dir),
        retention=RetentionEnforcer(fake_storage),
        temp_dir=temp_dir,
    )


@pytest.fixture
def gzipped_dump(tmp_path):
    """A gzip-compressed SQL dump on disk."""
    path = tmp_path / 'dump.sql.gz'
    with gzip.open(path, 'wb') as f:
        f.write(SAMPLE_SQL.encode('utf-8'))
    return path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('pgkeeper.scheduler.BackgroundScheduler') as mock_sched, \
            patch('pgkeeper.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture(scope='session', autouse=True)
def cleanup_test_dirs():
    """Remove the shared test log/temp directory after the session."""
    yield
    from pgkeeper.config import TestingConfig
    shutil.rmtree(os.path.dirname(TestingConfig.LOG_DIR), ignore_errors=True)


