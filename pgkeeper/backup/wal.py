"""
WAL archiving and point-in-time recovery configuration snippets.

Plain text for postgresql.conf / recovery settings. Nothing here touches the
database server.
"""

from dataclasses import dataclass, replace


@dataclass
class WALArchiveConfig:
    enabled: bool = False
    archive_command: str = (
        'test ! -f /var/lib/postgresql/wal_archive/%f && cp %p /var/lib/postgresql/wal_archive/%f'
    )
    restore_command: str = 'cp /var/lib/postgresql/wal_archive/%f %p'
    archive_path: str = '/var/lib/postgresql/wal_archive'


def get_wal_archive_config(config: WALArchiveConfig) -> WALArchiveConfig:
    """Return a copy so callers cannot alter the live settings."""
    return replace(config)


def render_wal_archive_config(config: WALArchiveConfig) -> str:
    """
    postgresql.conf snippet enabling WAL archiving.

    Returns a comment-only snippet when archiving is disabled.
    """
    if not config.enabled:
        return '# WAL archiving is disabled'

    return '\n'.join([
        '# === pgkeeper WAL archiving ===',
        'wal_level = replica',
        'archive_mode = on',
        f"archive_command = '{config.archive_command}'",
        'max_wal_senders = 3',
        'wal_keep_size = 1024  # MB',
        '',
        '# Point-in-time recovery settings',
        f"# restore_command = '{config.restore_command}'",
        "# recovery_target_time = '2024-01-01 12:00:00 UTC'  # set as needed",
    ])


def render_recovery_config(config: WALArchiveConfig, target_time: str) -> str:
    """
    Recovery settings replaying archived WAL up to target_time.

    Args:
        config: WAL settings providing the restore command
        target_time: Timestamp accepted by recovery_target_time

    Without WAL archiving there is nothing to replay, so a comment-only
    snippet is returned.
    """
    if not config.enabled:
        return '# WAL archiving is disabled; point-in-time recovery is unavailable'

    return '\n'.join([
        '# pgkeeper point-in-time recovery configuration',
        f"restore_command = '{config.restore_command}'",
        f"recovery_target_time = '{target_time}'",
        "recovery_target_action = 'promote'",
    ])
