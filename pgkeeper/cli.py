"""
`flask backup ...` commands.

Operational entry points for the backup pipeline. Commands print JSON so
they can be piped into other tools, and exit with status 1 when the
operation did not succeed.
"""

import json

import click
from flask.cli import AppGroup

from pgkeeper.backup.records import BackupTier, BackupType
from pgkeeper.backup.wal import (
    get_wal_archive_config,
    render_recovery_config,
    render_wal_archive_config,
)
from pgkeeper.services import get_services

backup_cli = AppGroup('backup', help='Database backup commands.')


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _executor():
    try:
        return get_services().require_executor()
    except RuntimeError as e:
        raise click.ClickException(str(e))


@backup_cli.command('run')
@click.option('--type', 'backup_type', type=click.Choice(BackupType.ALL),
              default=BackupType.FULL, show_default=True)
@click.option('--tier', type=click.Choice(BackupTier.ALL), default=None,
              help='Defaults to the tier derived from today\'s date.')
def run_backup(backup_type, tier):
    """Run one backup now, in this process."""
    result = _executor().create_backup(backup_type, tier)
    _echo_json(result.to_dict())
    if not result.success:
        raise SystemExit(1)


@backup_cli.command('scheduled')
def run_scheduled():
    """Run the scheduled full backup followed by retention."""
    result = _executor().run_scheduled_backup()
    _echo_json(result.to_dict())
    if not result.success:
        raise SystemExit(1)


@backup_cli.command('retention')
def run_retention():
    """Delete backups older than the retention policy."""
    try:
        retention = get_services().require_retention()
    except RuntimeError as e:
        raise click.ClickException(str(e))

    summary = retention.enforce()
    _echo_json(summary)
    if summary['errors']:
        raise SystemExit(1)


@backup_cli.command('verify')
@click.argument('backup_id')
def verify(backup_id):
    """Restore a backup from history into a scratch database and check it."""
    result = _executor().verify_backup(backup_id)
    if result is None:
        raise click.ClickException(f"Backup not found in history: {backup_id}")

    _echo_json(result.to_dict())
    if not result.success:
        raise SystemExit(1)


@backup_cli.command('history')
@click.option('--limit', type=click.IntRange(min=1), default=20, show_default=True)
def history(limit):
    """List recent backups, newest first."""
    records = get_services().state.get_history(limit)
    _echo_json([record.to_dict() for record in records])


@backup_cli.command('status')
def status():
    """Show the running backup, the latest record and aggregate stats."""
    state = get_services().state
    running = state.get_running()
    latest = state.get_latest()
    _echo_json({
        'running': running.to_dict() if running else None,
        'latest': latest.to_dict() if latest else None,
        'stats': state.get_stats(),
    })


@backup_cli.command('wal-config')
def wal_config():
    """Print the postgresql.conf snippet for WAL archiving."""
    click.echo(render_wal_archive_config(get_wal_archive_config(get_services().wal)))


@backup_cli.command('recovery-conf')
@click.argument('target_time')
def recovery_conf(target_time):
    """Print recovery settings for point-in-time recovery to TARGET_TIME."""
    config = get_wal_archive_config(get_services().wal)
    click.echo(render_recovery_config(config, target_time))
    if not config.enabled:
        raise SystemExit(1)
