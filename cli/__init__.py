"""Command line interface for ZFS Glacier Sync."""
