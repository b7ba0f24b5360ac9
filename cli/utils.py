"""Shared utilities for CLI commands."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import boto3
import click
from botocore.config import Config as BotoConfig

from config import load_config, Config


def load_app_config(config_path: str) -> Config:
    """Load application configuration.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated Config

    Raises:
        FileNotFoundError: If the file does not exist
        pydantic.ValidationError: If the file content is invalid
    """
    return load_config(config_path)


def get_s3_client(config: Config):
    """Create an S3 client for the configured region with adaptive retries."""
    boto_config = BotoConfig(
        region_name=config.aws_region,
        retries={'max_attempts': 3, 'mode': 'adaptive'}
    )
    return boto3.client('s3', config=boto_config)


def setup_logging(config: Config, verbose: bool = False):
    """Set up logging with silent console - only click.echo() messages show.

    Args:
        config: Application configuration
        verbose: Whether to show console logging
    """
    log_file = Path(config.logging.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        config.logging.file,
        maxBytes=config.logging.max_bytes,
        backupCount=config.logging.backup_count
    )
    file_handler.setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))
    file_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    file_handler.setFormatter(file_formatter)

    if verbose:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_formatter = logging.Formatter('LOG: %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)

    # BrokenChainWarning and friends end up in the log file
    logging.captureWarnings(True)

    # Quiet all libraries
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('s3transfer').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.ERROR)


def handle_error(error: Exception, verbose: bool = False):
    """Handle and display errors consistently.

    Args:
        error: Exception to handle
        verbose: Whether to show full traceback
    """
    if verbose:
        import traceback
        click.echo(f"Error: {error}", err=True)
        click.echo(traceback.format_exc(), err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def format_size(bytes_size) -> str:
    """Format bytes as human-readable size.

    Args:
        bytes_size: Size in bytes, or None when unknown

    Returns:
        Formatted string (e.g., "1.5 GB")
    """
    if bytes_size is None:
        return "-"
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.2f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.2f} PB"


def format_time(seconds: float) -> str:
    """Format seconds as human-readable duration.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2h 30m 45s")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        return f"{hours}h {minutes}m {secs}s"
