"""
Unit tests for WAL archiving snippets (pgkeeper/backup/wal.py).
"""

from pgkeeper.backup.wal import (
    WALArchiveConfig,
    get_wal_archive_config,
    render_recovery_config,
    render_wal_archive_config,
)


class TestWALArchiveConfig:
    def test_get_returns_copy(self):
        live = WALArchiveConfig(enabled=True)

        copy = get_wal_archive_config(live)
        copy.enabled = False

        assert live.enabled is True
        assert copy == WALArchiveConfig(enabled=False)

    def test_disabled_snippet(self):
        assert render_wal_archive_config(WALArchiveConfig()) == '# WAL archiving is disabled'

    def test_enabled_snippet(self):
        config = WALArchiveConfig(enabled=True, archive_command='aws s3 cp %p s3://wal/%f')

        snippet = render_wal_archive_config(config)

        lines = snippet.splitlines()
        assert 'wal_level = replica' in lines
        assert 'archive_mode = on' in lines
        assert "archive_command = 'aws s3 cp %p s3://wal/%f'" in lines
        assert 'max_wal_senders = 3' in lines
        assert any(line.startswith('wal_keep_size = 1024') for line in lines)
        assert "# restore_command = 'cp /var/lib/postgresql/wal_archive/%f %p'" in lines


class TestRecoveryConfig:
    def test_enabled(self):
        config = WALArchiveConfig(enabled=True, restore_command='aws s3 cp s3://wal/%f %p')

        snippet = render_recovery_config(config, '2024-03-04 12:00:00 UTC')

        assert snippet.splitlines()[1:] == [
            "restore_command = 'aws s3 cp s3://wal/%f %p'",
            "recovery_target_time = '2024-03-04 12:00:00 UTC'",
            "recovery_target_action = 'promote'",
        ]

    def test_disabled(self):
        snippet = render_recovery_config(WALArchiveConfig(), '2024-03-04 12:00:00 UTC')

        assert snippet.startswith('#')
        assert 'recovery_target_time' not in snippet
