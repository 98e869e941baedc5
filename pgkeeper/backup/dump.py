"""
PostgreSQL client tool invocation.

Wraps pg_dump and psql behind a narrow interface: produce a plain-text SQL
dump, apply a SQL file to a database, run a scalar query, create and drop
databases. Failures surface as DumpError; the tools' stderr is carried along
for diagnostics.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse, unquote

from .records import BackupType

logger = logging.getLogger(__name__)

# Seconds
DUMP_TIMEOUT = 3600
RESTORE_TIMEOUT = 1800
QUERY_TIMEOUT = 300

MAINTENANCE_DATABASE = 'postgres'

_IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class DumpError(Exception):
    """Raised when a database client tool fails or times out."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class DatabaseConnection:
    """Connection parameters handed to the client tools."""

    host: str
    port: str
    database: str
    user: str
    password: str = ''


def parse_database_url(url: str) -> DatabaseConnection:
    """
    Parse a postgres:// URL into connection parameters.

    Raises:
        ValueError: If the URL is empty or has no database name
    """
    if not url:
        raise ValueError("DATABASE_URL is required for backup configuration")

    parsed = urlparse(url)
    database = parsed.path.lstrip('/')
    if not database:
        raise ValueError(f"Database name missing from URL: {parsed.scheme}://{parsed.hostname}")

    return DatabaseConnection(
        host=parsed.hostname or 'localhost',
        port=str(parsed.port or 5432),
        database=unquote(database),
        user=unquote(parsed.username or ''),
        password=unquote(parsed.password or ''),
    )


def dump_type_args(backup_type: str) -> List[str]:
    """pg_dump flags restricting the dump to the requested scope."""
    if backup_type == BackupType.FULL:
        return ['--format=plain']
    if backup_type == BackupType.SCHEMA_ONLY:
        return ['--schema-only', '--format=plain']
    if backup_type == BackupType.DATA_ONLY:
        return ['--data-only', '--format=plain']
    raise ValueError(f"Invalid backup type: {backup_type}")


def quote_identifier(name: str) -> str:
    """Validate a database name before it is interpolated into DDL."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Unsafe database identifier: {name!r}")
    return f'"{name}"'


class PgDumpInvoker:
    """
    Runs pg_dump/psql against the configured database server.

    The password is passed through PGPASSWORD and every command uses
    --no-password so the tools never prompt.
    """

    def __init__(self, connection: DatabaseConnection, pg_dump_path: str = 'pg_dump',
                 psql_path: str = 'psql'):
        self.connection = connection
        self.pg_dump_path = pg_dump_path
        self.psql_path = psql_path

    def _connection_args(self, database: str) -> List[str]:
        return [
            '-h', self.connection.host,
            '-p', self.connection.port,
            '-U', self.connection.user,
            '-d', database,
            '--no-password',
        ]

    def _run(self, cmd: List[str], timeout: int, description: str) -> str:
        """
        Run a client tool and return its stdout.

        Raises:
            DumpError: On non-zero exit, timeout or a missing binary
        """
        env = os.environ.copy()
        env['PGPASSWORD'] = self.connection.password

        try:
            result = subprocess.run(cmd, env=env, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise DumpError(f"{description} timed out after {timeout} seconds")
        except OSError as e:
            raise DumpError(f"{description} could not be started: {e}")

        if result.returncode != 0:
            raise DumpError(
                f"{description} failed with return code {result.returncode}: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr
            )

        return result.stdout

    def dump(self, backup_type: str, output_path: str) -> str:
        """
        Produce a plain-text SQL dump.

        Args:
            backup_type: One of BackupType.ALL
            output_path: Where pg_dump writes the file

        Returns:
            output_path

        Raises:
            DumpError: If pg_dump fails
        """
        cmd = [self.pg_dump_path]
        cmd += self._connection_args(self.connection.database)
        cmd += ['-f', output_path]
        cmd += dump_type_args(backup_type)

        logger.debug(
            f"Running pg_dump (type={backup_type}, host={self.connection.host}, "
            f"database={self.connection.database})"
        )
        self._run(cmd, DUMP_TIMEOUT, 'pg_dump')
        logger.debug(f"pg_dump completed: {output_path}")
        return output_path

    def restore(self, sql_path: str, database: str):
        """
        Apply a plain SQL file to a database.

        Raises:
            DumpError: If psql fails
        """
        cmd = [self.psql_path] + self._connection_args(database) + ['-f', sql_path]
        self._run(cmd, RESTORE_TIMEOUT, 'psql restore')

    def query_scalar(self, database: str, sql: str) -> int:
        """
        Run a single-value query in tuples-only mode.

        Returns:
            Integer result (0 when the output is empty or not numeric)
        """
        cmd = [self.psql_path] + self._connection_args(database) + ['-t', '-c', sql]
        output = self._run(cmd, QUERY_TIMEOUT, 'psql query').strip()
        try:
            return int(output)
        except ValueError:
            return 0

    def create_database(self, name: str):
        cmd = [self.psql_path] + self._connection_args(MAINTENANCE_DATABASE)
        cmd += ['-c', f"CREATE DATABASE {quote_identifier(name)};"]
        self._run(cmd, QUERY_TIMEOUT, f"CREATE DATABASE {name}")

    def drop_database(self, name: str):
        cmd = [self.psql_path] + self._connection_args(MAINTENANCE_DATABASE)
        cmd += ['-c', f"DROP DATABASE IF EXISTS {quote_identifier(name)};"]
        self._run(cmd, QUERY_TIMEOUT, f"DROP DATABASE {name}")
