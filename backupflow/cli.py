"""Command-line interface for backupflow."""

import json
import sys
import logging
from datetime import datetime
from typing import Optional

import click

from backupflow import configure_logging, __version__
from backupflow.config import get_config
from backupflow.history import HistoryStore
from backupflow.utils.crypto import SecretBox, is_encrypted
from backupflow.utils.formatters import format_file_size, format_date
from backupflow.backup.executor import (
    RunOrchestrator,
    exit_code_for,
    EXIT_SUCCESS,
    EXIT_FAILURE,
    EXIT_VALIDATION,
    EXIT_LOCK_CONFLICT,
)
from backupflow.backup.lock import LockConflictError
from backupflow.backup.profile import ConfigStore, ProfileError
from backupflow.backup.report import render_text
from backupflow.backup.restore import RestoreSession, RestoreError, PasswordRequiredError, extract_archive
from backupflow.backup.storage import StorageError, create_transport

logger = logging.getLogger(__name__)

SECRET_OPTION_KEYS = ('password', 'secret_key', 'access_key', 'token')


@click.group(invoke_without_command=True)
@click.option('--config-dir', type=click.Path(file_okay=False),
              help='Directory holding config.json, notifications.json and the lock file')
@click.option('--log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Console logging level')
@click.version_option(__version__, prog_name='backupflow')
@click.pass_context
def cli(ctx, config_dir: Optional[str], log_level: Optional[str]):
    """backupflow - archive local paths to remote targets, verify and prune."""
    ctx.ensure_object(dict)

    settings = get_config(CONFIG_DIR=config_dir)
    settings.ensure_directories()
    configure_logging(settings, log_level)
    ctx.obj['settings'] = settings

    if ctx.invoked_subcommand is None:
        interactive(ctx)


def interactive(ctx):
    """Show the profile summary and offer to run a backup."""
    settings = ctx.obj['settings']
    try:
        profile = ConfigStore(settings.CONFIG_FILE, settings.LEGACY_CONFIG_FILE).load()
    except ProfileError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_VALIDATION)

    click.echo(f"backupflow {__version__}")
    click.echo("=" * 50)
    click.echo(f"Profile: {settings.CONFIG_FILE}")
    click.echo(f"Sources ({len(profile.sources)}):")
    for source in profile.sources:
        click.echo(f"  📂 {source}")
    click.echo(f"Targets ({len(profile.enabled_targets())} enabled):")
    for target in profile.targets:
        mark = '✅' if target.enabled else '⏸️ '
        click.echo(f"  {mark} {target.name} [{target.backend}]")
    click.echo(f"Mode: {profile.backup_mode.value}, strategy: {profile.packaging_strategy.value}, "
               f"format: {profile.compression.format}")
    click.echo(f"Retention: {profile.retention.describe()}")
    if profile.last_run_timestamp:
        click.echo(f"Last backup: {format_date(datetime.fromtimestamp(profile.last_run_timestamp))}")
    else:
        click.echo("Last backup: never")
    click.echo("")

    if click.confirm("Run a backup now?", default=False):
        ctx.invoke(run)


@cli.command()
@click.pass_context
def run(ctx):
    """Run a backup now."""
    _run_backup(ctx, auto=False)


@cli.command('check-auto-backup')
@click.pass_context
def check_auto_backup(ctx):
    """Run a backup if the configured interval has elapsed (for cron)."""
    _run_backup(ctx, auto=True)


def _run_backup(ctx, auto: bool):
    settings = ctx.obj['settings']
    orchestrator = RunOrchestrator(settings)
    try:
        if auto:
            report = orchestrator.check_auto()
        else:
            report = orchestrator.run('manual')
    except LockConflictError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_LOCK_CONFLICT)

    if report is None:
        click.echo("No backup due.")
        ctx.exit(EXIT_SUCCESS)

    click.echo("")
    click.echo(render_text(report))
    ctx.exit(exit_code_for(report))


@cli.command()
@click.option('--every-minutes', type=click.IntRange(min=1),
              help='Minutes between due-checks')
@click.pass_context
def daemon(ctx, every_minutes: Optional[int]):
    """Run the in-process scheduler (alternative to cron)."""
    from backupflow.scheduler import init_scheduler, start_scheduler

    init_scheduler(ctx.obj['settings'], every_minutes)
    start_scheduler()


@cli.command()
@click.argument('target')
@click.argument('archive', required=False)
@click.option('--to', 'dest', type=click.Path(file_okay=False), help='Extract into this directory')
@click.option('--list', 'list_contents', is_flag=True, help='List archive contents instead of extracting')
@click.option('--password', help='Password for encrypted zip archives')
@click.pass_context
def restore(ctx, target: str, archive: Optional[str], dest: Optional[str],
            list_contents: bool, password: Optional[str]):
    """List archives on TARGET, or restore ARCHIVE from it."""
    settings = ctx.obj['settings']
    try:
        with RestoreSession(settings, target) as session:
            if archive is None:
                names = session.archives()
                if not names:
                    click.echo(f"No archives found on {session.target.name}")
                for index, name in enumerate(names, 1):
                    click.echo(f"{index:3d}. {name}")
                ctx.exit(EXIT_SUCCESS)

            if list_contents:
                for member in session.contents(archive):
                    click.echo(member)
                ctx.exit(EXIT_SUCCESS)

            if not dest:
                raise click.UsageError("Give --to DIR to extract, or --list to show contents")

            local_path = session.fetch(archive)
            try:
                extract_archive(local_path, dest, password)
            except PasswordRequiredError:
                if password:
                    raise
                password = click.prompt("Archive is password protected, password", hide_input=True)
                extract_archive(local_path, dest, password)
            click.echo(f"✅ Restored {archive} to {dest}")
    except LockConflictError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_LOCK_CONFLICT)
    except ProfileError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_VALIDATION)
    except (StorageError, RestoreError) as e:
        click.echo(f"❌ Restore failed: {e}", err=True)
        ctx.exit(EXIT_FAILURE)


@cli.command('test-remote')
@click.argument('target')
@click.pass_context
def test_remote(ctx, target: str):
    """Check that TARGET is reachable."""
    settings = ctx.obj['settings']
    try:
        profile = ConfigStore(settings.CONFIG_FILE, settings.LEGACY_CONFIG_FILE).load()
        remote_target = profile.find_target(target)
        transport = create_transport(remote_target, SecretBox(settings.SECRET_KEY_FILE),
                                     settings.RCLONE_BINARY, profile.transfer_timeout_seconds)
        transport.test_connection()
    except ProfileError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_VALIDATION)
    except StorageError as e:
        click.echo(f"❌ {target}: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    click.echo(f"✅ {remote_target.name} is reachable")


@cli.command()
@click.option('--limit', default=10, show_default=True, type=click.IntRange(min=1),
              help='Number of runs to show')
@click.pass_context
def history(ctx, limit: int):
    """Show recent backup runs."""
    store = HistoryStore(ctx.obj['settings'].HISTORY_DATABASE_URI)
    runs = store.recent(limit)
    if not runs:
        click.echo("No backup runs recorded yet.")
        return

    icons = {'success': '✅', 'partial_success': '⚠️ ', 'failure': '❌'}
    for entry in runs:
        line = (
            f"{icons.get(entry.status, '?')} {format_date(entry.started_at)}  "
            f"{entry.status:<16} {entry.trigger:<9} "
            f"{entry.archives_count} archive(s), {format_file_size(entry.total_size_bytes or 0)}"
        )
        if entry.failure_reason:
            line += f"  ({entry.failure_reason})"
        click.echo(line)


@cli.command('show-config')
@click.pass_context
def show_config(ctx):
    """Print the profile with secrets masked."""
    settings = ctx.obj['settings']
    try:
        profile = ConfigStore(settings.CONFIG_FILE, settings.LEGACY_CONFIG_FILE).load()
    except ProfileError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_VALIDATION)

    document = profile.to_dict()
    if document['compression']['password']:
        document['compression']['password'] = _mask(document['compression']['password'])
    for target in document['targets']:
        for key in SECRET_OPTION_KEYS:
            if target['options'].get(key):
                target['options'][key] = _mask(target['options'][key])
    click.echo(json.dumps(document, indent=2))


def _mask(value: str) -> str:
    return '<encrypted>' if is_encrypted(value) else '********'


@cli.command('encrypt-secret')
@click.pass_context
def encrypt_secret(ctx):
    """Encrypt a secret for pasting into config.json."""
    plaintext = click.prompt("Secret", hide_input=True, confirmation_prompt=True)
    box = SecretBox(ctx.obj['settings'].SECRET_KEY_FILE)
    click.echo(box.encrypt(plaintext))


def main():
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)


if __name__ == '__main__':
    main()
