"""
Command line entry point for Guardian.
"""

import logging
import os
import sys
from pathlib import Path

import click

from guardian import __version__, configure_logging
from guardian.approval import InteractiveApprover, PolicyApprover
from guardian.backup.executor import BackupExecutor, backup_history, discover_units, run_batch
from guardian.backup.replicator import RemoteReplicator
from guardian.backup.retention import RetentionManager
from guardian.backup.runtime import DockerRuntime, RuntimeCommandError
from guardian.config import DEFAULTS, ConfigurationError, load_config, remote_config_path


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _overrides(backup_dir, no_stop, no_compress, no_verify, no_remote, local_only, non_interactive):
    return {
        'BACKUP_BASE_DIR': backup_dir,
        'STOP_CONTAINER_FOR_BACKUP': False if no_stop else None,
        'ENABLE_COMPRESSION': False if no_compress else None,
        'METADATA_INTEGRITY_CHECK': False if no_verify else None,
        'REMOTE_STORAGE_ENABLED': False if no_remote else None,
        'DELETE_LOCAL_AFTER_UPLOAD': False if local_only else None,
        'NON_INTERACTIVE': True if non_interactive else None,
    }


def _runtime(ctx):
    runtime = (ctx.obj or {}).get('runtime')
    return runtime if runtime is not None else DockerRuntime()


def _require_docker(ctx, runtime):
    if not runtime.ping():
        click.echo('Docker is not running or not accessible.', err=True)
        ctx.exit(EXIT_FAILURE)


def _format_size(size: int) -> str:
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('-c', '--container', metavar='NAME', help='Backup specific container.')
@click.option('-a', '--all', 'backup_all', is_flag=True, help='Backup all matching containers.')
@click.option('-l', '--list', 'list_only', is_flag=True, help='List matching containers.')
@click.option('--cleanup', is_flag=True, help='Delete ALL existing backups (asks for confirmation).')
@click.option('--mounts', metavar='NAME', help='Show the mounts of a container.')
@click.option('--history', is_flag=True, help='Show backup history.')
@click.option('-n', '--no-stop', is_flag=True, help="Don't stop containers during backup.")
@click.option('-d', '--backup-dir', type=click.Path(file_okay=False), help='Backup root directory.')
@click.option('--no-compress', is_flag=True, help='Write a plain .tar instead of .tar.gz.')
@click.option('--no-verify', is_flag=True, help='Skip database integrity verification.')
@click.option('--no-remote', is_flag=True, help='Disable remote storage for this run.')
@click.option('--local-only', is_flag=True, help="Keep local backups (don't delete after upload).")
@click.option('--dry-run', is_flag=True, help='Show what would be done without doing it.')
@click.option('-y', '--non-interactive', is_flag=True, help='Never prompt; configured policy decides.')
@click.option('--test-remote', is_flag=True, help='Test the remote storage connection.')
@click.option('--configure-remote', is_flag=True, help='Run the remote storage setup wizard.')
@click.option('--schedule', metavar='CRON', help='Back up all containers on a cron schedule.')
@click.option('--config', 'config_file', type=click.Path(dir_okay=False), help='Main config file.')
@click.option('--verbose', is_flag=True, help='Debug logging.')
@click.version_option(__version__, '-v', '--version', prog_name='guardian')
@click.pass_context
def cli(ctx, container, backup_all, list_only, cleanup, mounts, history, no_stop, backup_dir,
        no_compress, no_verify, no_remote, local_only, dry_run, non_interactive, test_remote,
        configure_remote, schedule, config_file, verbose):
    """Backup Jellyfin containers safely, with integrity checks and remote replication."""
    if configure_remote:
        from guardian.remote_setup import run_wizard
        config_dir = Path(os.environ.get('CONFIG_DIR', DEFAULTS['CONFIG_DIR'])).expanduser()
        run_wizard(remote_config_path(), config_dir)
        ctx.exit(EXIT_OK)

    try:
        config = load_config(
            config_file=config_file,
            overrides=_overrides(backup_dir, no_stop, no_compress, no_verify, no_remote, local_only,
                                 non_interactive or bool(schedule))
        )
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_USAGE)
    config = config.with_overrides(dry_run=dry_run)

    log_buffer = configure_logging(config, verbose)
    logger.debug("Configuration sources: %s", ', '.join(config.sources) or 'defaults')
    approver = PolicyApprover() if config.non_interactive else InteractiveApprover()

    if test_remote:
        replicator = RemoteReplicator(config.remote, RetentionManager(config.backup_root))
        ctx.exit(EXIT_OK if replicator.test() else EXIT_FAILURE)

    if history:
        entries = backup_history(config.backup_root)
        if not entries:
            click.echo(f"No backups found in {config.backup_root}")
        for entry in entries:
            click.echo(f"{entry['name']}  {_format_size(entry['size']):>10}  {', '.join(entry['artifacts'])}")
        ctx.exit(EXIT_OK)

    if cleanup:
        summary = RetentionManager(config.backup_root).purge_all(approver)
        ctx.exit(EXIT_FAILURE if summary['errors'] else EXIT_OK)

    if not (list_only or mounts or container or backup_all or schedule):
        click.echo(ctx.get_help())
        ctx.exit(EXIT_USAGE)

    runtime = _runtime(ctx)
    _require_docker(ctx, runtime)

    try:
        if list_only:
            containers = runtime.list_containers(config.unit_filter)
            if not containers:
                click.echo(f"No containers matching '{config.unit_filter}' found")
            for info in containers:
                click.echo(f"{info.name:<30} {info.state:<12} {info.image}")
            ctx.exit(EXIT_OK)

        if mounts:
            for mount in runtime.get_mounts(mounts):
                click.echo(f"{mount.source} -> {mount.destination} ({mount.type})")
            ctx.exit(EXIT_OK)

        if schedule:
            from guardian.scheduler import run_scheduled

            def scheduled_job():
                try:
                    run_batch(discover_units(runtime, config), config, runtime, approver, log_buffer=log_buffer)
                except RuntimeCommandError as e:
                    logger.error("Scheduled backup failed: %s", e)

            try:
                run_scheduled(schedule, scheduled_job)
            except ConfigurationError as e:
                click.echo(f"Configuration error: {e}", err=True)
                ctx.exit(EXIT_USAGE)
            ctx.exit(EXIT_OK)

        if container:
            result = BackupExecutor(container, config, runtime, approver, log_buffer=log_buffer).execute()
            ctx.exit(EXIT_OK if result.succeeded else EXIT_FAILURE)

        units = discover_units(runtime, config)
        if not units:
            logger.warning("No containers matching '%s' found", config.unit_filter)
            ctx.exit(EXIT_FAILURE)
        logger.info("Found %d container(s): %s", len(units), ', '.join(units))
        summary = run_batch(units, config, runtime, approver, log_buffer=log_buffer)
        ctx.exit(EXIT_OK if summary.ok else EXIT_FAILURE)

    except RuntimeCommandError as e:
        logger.error("%s", e)
        ctx.exit(EXIT_FAILURE)


def main():
    try:
        cli(prog_name='guardian')
    except KeyboardInterrupt:
        click.echo('Interrupted', err=True)
        sys.exit(130)


if __name__ == '__main__':
    main()
