#!/usr/bin/env python3
"""ZFS Glacier Sync - command line entry point.

Examples:
    # Get help
    python -m main --help
    python -m main sync --help

    # Basic workflow
    python -m main config init           # Write config.json
    python -m main sync --dry-run        # Preview plans
    python -m main sync                  # Upload what is missing
    python -m main status                # List remote backups
"""

from cli.main import cli

if __name__ == '__main__':
    cli()
