"""Configuration management commands."""

import json
from pathlib import Path

import click

from config import create_default_config
from cli.utils import (
    load_app_config,
    handle_error
)


def register_commands(cli):
    """Register config commands with main CLI."""

    @cli.group('config')
    @click.pass_context
    def config_group(ctx):
        """Configuration management commands.

        Initialize and inspect the sync configuration.
        """
        pass

    @config_group.command('init')
    @click.pass_context
    def init_config(ctx):
        """Create a default configuration file.

        Creates config.json with default settings for:
        - Pools, buckets and datasets
        - zfs send options
        - Upload and retry tuning
        - Logging configuration

        Examples:
            # Create default config.json
            python -m main config init

            # Create config at custom location
            python -m main --config my_config.json config init
        """
        config_path = ctx.obj['config_path']

        if Path(config_path).exists():
            click.echo(f"Configuration file already exists: {config_path}")
            if not click.confirm("Overwrite existing configuration?"):
                return
            Path(config_path).unlink()

        create_default_config(config_path)
        click.echo(f"✓ Created configuration file: {config_path}")
        click.echo("\nNext steps:")
        click.echo("  1. Set the bucket (and optional prefix) for each pool")
        click.echo("  2. List the datasets to back up, or leave empty for all")
        click.echo("  3. Preview the first run with: python -m main sync --dry-run")

    @config_group.command('show')
    @click.pass_context
    def show_config(ctx):
        """Show the validated configuration.

        Examples:
            python -m main config show
        """
        config_path = ctx.obj['config_path']
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(config_path)
            click.echo(f"Configuration: {config_path}\n")
            click.echo(json.dumps(config.model_dump(), indent=2))
        except Exception as e:
            handle_error(e, verbose)
