"""Main CLI entry point - Root command group with global options."""

import click

from version import __version__


@click.group()
@click.option('--config', '-c', default='config.json', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Show detailed logging on console')
@click.version_option(version=__version__, prog_name='ZFS Glacier Sync')
@click.pass_context
def cli(ctx, config, verbose):
    """ZFS Glacier Sync - back up ZFS snapshots to S3 cold storage.

    Streams the newest snapshot of each configured dataset straight from
    zfs send into a checksum-verified S3 multipart upload:
    - Full export when nothing usable is in the bucket yet
    - Incremental export against the newest snapshot already backed up
    - Nothing when the bucket is already current

    Examples:
        # Create a configuration file
        python -m main config init

        # Preview what would be sent
        python -m main sync --dry-run

        # Back up everything
        python -m main sync

        # See what is in the bucket
        python -m main status
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose


def register_all_commands():
    """Register all command modules with the main CLI."""
    from cli import (
        config_commands,
        sync_commands,
    )

    config_commands.register_commands(cli)
    sync_commands.register_commands(cli)


# Register all commands when module is imported
register_all_commands()
