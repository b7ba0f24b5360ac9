"""Sync and status commands."""

import signal
import sys

import click
from tabulate import tabulate

from cli.utils import (
    load_app_config,
    setup_logging,
    handle_error,
    get_s3_client,
    format_size,
    format_time
)
from glacier_sync import SyncEngine
from glacier_sync.models import SyncStatus

STATUS_MARKS = {
    SyncStatus.SYNCED: '✓ synced',
    SyncStatus.SKIPPED: '✓ up to date',
    SyncStatus.PLANNED: '→ planned',
    SyncStatus.FAILED: '✗ failed',
}


def _result_row(result):
    plan = result.plan
    if result.status == SyncStatus.PLANNED:
        size = format_size(result.estimated_size)
    elif result.status == SyncStatus.SYNCED:
        size = format_size(result.bytes_uploaded)
    else:
        size = '-'
    return [
        result.dataset,
        STATUS_MARKS[result.status],
        plan.describe() if plan is not None else '-',
        size,
        format_time(result.elapsed),
        (result.error or '').splitlines()[0] if result.error else '',
    ]


def print_report(report):
    title = "SYNC PLAN (DRY RUN)" if report.dry_run else "SYNC SUMMARY"
    click.echo()
    click.echo("=" * 70)
    click.echo(title)
    click.echo("=" * 70)

    if not report.results:
        click.echo("No datasets selected.")
        return

    headers = ['Dataset', 'Status', 'Action', 'Size', 'Time', 'Error']
    click.echo(tabulate([_result_row(r) for r in report.results], headers=headers, tablefmt='grid'))

    for result in report.results:
        if result.plan is not None:
            for warning in result.plan.warnings:
                click.echo(f"⚠ {warning}")

    click.echo()
    click.echo(f"Synced:     {len(report.synced)}")
    click.echo(f"Up to date: {len(report.skipped)}")
    if report.dry_run:
        click.echo(f"Planned:    {len(report.planned)}")
    click.echo(f"Failed:     {len(report.failed)}")
    if report.bytes_uploaded:
        click.echo(f"Uploaded:   {format_size(report.bytes_uploaded)}")
    click.echo("=" * 70)


def register_commands(cli):
    """Register sync commands with main CLI."""

    @cli.command('sync')
    @click.option('--dry-run', '-n', is_flag=True, help='Plan only; no export or upload')
    @click.option('--pool', '-p', 'pools', multiple=True, help='Only sync this pool (repeatable)')
    @click.option('--dataset', '-d', 'datasets', multiple=True, help='Only sync this dataset (repeatable)')
    @click.option('--no-progress', is_flag=True, help='Disable the upload progress bar')
    @click.pass_context
    def sync(ctx, dry_run, pools, datasets, no_progress):
        """Back up the newest snapshot of every configured dataset.

        Each dataset gets a full export when nothing usable exists
        remotely, an incremental one when a remote backup of an older
        local snapshot exists, and nothing when it is already current.

        Examples:
            # Preview what would be sent
            python -m main sync --dry-run

            # Sync a single dataset
            python -m main sync --dataset tank/data
        """
        config_path = ctx.obj['config_path']
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(config_path)
            setup_logging(config, verbose)

            # SIGTERM unwinds like Ctrl-C so the open upload gets aborted
            signal.signal(signal.SIGTERM, signal.default_int_handler)

            engine = SyncEngine(
                config,
                get_s3_client(config),
                dry_run=dry_run,
                progress=not no_progress,
            )
            report = engine.run(pools=pools, datasets=datasets)

        except KeyboardInterrupt:
            click.echo("\n✗ Interrupted; open upload aborted", err=True)
            sys.exit(130)
        except Exception as e:
            handle_error(e, verbose)

        print_report(report)
        sys.exit(report.exit_code)

    @cli.command('status')
    @click.option('--pool', '-p', 'pools', multiple=True, help='Only show this pool (repeatable)')
    @click.pass_context
    def status(ctx, pools):
        """Show the backups that exist in S3 for each dataset.

        Examples:
            python -m main status
            python -m main status --pool tank
        """
        config_path = ctx.obj['config_path']
        verbose = ctx.obj['verbose']

        try:
            config = load_app_config(config_path)
            setup_logging(config, verbose)

            engine = SyncEngine(config, get_s3_client(config))
            for pool_name, pool in engine.selected_pools(pools):
                state = engine.remote_state(pool)

                click.echo()
                click.echo("=" * 70)
                click.echo(f"POOL {pool_name}: s3://{pool.bucket}/{pool.prefix or ''}")
                click.echo("=" * 70)

                rows = []
                total_size = 0
                for dataset in state.datasets():
                    records = sorted(state.for_dataset(dataset).values(), key=lambda r: r.key)
                    for record in records:
                        total_size += record.size
                        rows.append([
                            dataset,
                            record.snapshot,
                            'incremental' if record.is_incremental else 'full',
                            record.parent or '-',
                            format_size(record.size),
                        ])

                if not rows:
                    click.echo("No backups found.")
                    continue

                headers = ['Dataset', 'Snapshot', 'Type', 'Parent', 'Size']
                click.echo(tabulate(rows, headers=headers, tablefmt='grid'))
                click.echo(f"\n{len(rows)} backup(s), {format_size(total_size)} total")

        except Exception as e:
            handle_error(e, verbose)
