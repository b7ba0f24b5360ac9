"""Configuration management for ZFS Glacier Sync."""

import json
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator


class PoolConfig(BaseModel):
    """A ZFS pool and the bucket its datasets are backed up to."""
    bucket: str
    prefix: Optional[str] = None
    datasets: List[str] = []
    snapshot_pattern: Optional[str] = None

    @field_validator('snapshot_pattern')
    @classmethod
    def pattern_compiles(cls, v):
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid snapshot_pattern {v!r}: {e}")
        return v


class ExportConfig(BaseModel):
    """How ``zfs send`` is invoked."""
    binary: str = "zfs"
    use_sudo: bool = False
    sudo_binary: str = "sudo"
    raw: bool = True
    extra_flags: List[str] = []


class UploadConfig(BaseModel):
    """Multipart upload tuning."""
    part_size_mb: int = 8
    max_parts: int = 10000
    pipe_depth: int = 2
    stale_upload_hours: float = 24.0

    @field_validator('part_size_mb')
    @classmethod
    def part_size_minimum(cls, v):
        if v < 5:
            raise ValueError("part_size_mb must be at least 5 (S3 minimum part size)")
        return v

    @field_validator('max_parts', 'pipe_depth')
    @classmethod
    def positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def part_size_bytes(self) -> int:
        return self.part_size_mb * 1024 * 1024


class RetryConfig(BaseModel):
    """Backoff for transient S3 failures and per-part integrity mismatches."""
    max_retries: int = 3
    initial_backoff_seconds: float = 2
    max_backoff_seconds: float = 60
    backoff_multiplier: float = 2


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "zfs_glacier.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    @field_validator('file')
    @classmethod
    def expand_path(cls, v):
        """Expand environment variables and user home directory."""
        return os.path.expanduser(os.path.expandvars(v))


class Config(BaseModel):
    """Main configuration model."""
    aws_region: str = "us-east-1"
    pools: Dict[str, PoolConfig]
    export: ExportConfig = ExportConfig()
    upload_settings: UploadConfig = UploadConfig()
    retry_settings: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator('pools')
    @classmethod
    def datasets_belong_to_pool(cls, v):
        if not v:
            raise ValueError("at least one pool must be configured")
        for pool_name, pool in v.items():
            for dataset in pool.datasets:
                if dataset != pool_name and not dataset.startswith(f"{pool_name}/"):
                    raise ValueError(f"dataset {dataset!r} is not part of pool {pool_name!r}")
        return v


def _strip_comments(data):
    """Drop ``_comment``-style keys at every level."""
    if isinstance(data, dict):
        return {k: _strip_comments(v) for k, v in data.items() if not k.startswith('_')}
    return data


def load_config(config_path: str = "config.json") -> Config:
    """Load and validate configuration from a JSON file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        config_data = json.load(f)

    return Config(**_strip_comments(config_data))


DEFAULT_CONFIG = {
    "_comment": "ZFS Glacier Sync configuration. Keys starting with '_' are ignored.",
    "aws_region": "us-east-1",
    "pools": {
        "tank": {
            "_comment": "Leave datasets empty to back up every dataset in the pool",
            "bucket": "your-bucket-name",
            "prefix": None,
            "datasets": [],
            "snapshot_pattern": None
        }
    },
    "export": {
        "binary": "zfs",
        "use_sudo": False,
        "sudo_binary": "sudo",
        "raw": True,
        "extra_flags": []
    },
    "upload_settings": {
        "part_size_mb": 8,
        "max_parts": 10000,
        "pipe_depth": 2,
        "stale_upload_hours": 24
    },
    "retry_settings": {
        "max_retries": 3,
        "initial_backoff_seconds": 2,
        "max_backoff_seconds": 60,
        "backoff_multiplier": 2
    },
    "logging": {
        "level": "INFO",
        "file": "zfs_glacier.log",
        "max_bytes": 10485760,
        "backup_count": 5
    }
}


def create_default_config(config_path: str = "config.json") -> None:
    """Write the default configuration file; never overwrites."""
    config_file = Path(config_path)
    if config_file.exists():
        raise FileExistsError(f"Configuration file already exists: {config_path}")

    with open(config_file, 'w') as f:
        json.dump(DEFAULT_CONFIG, f, indent=2)
