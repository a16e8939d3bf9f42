"""
tmbackup - Time Machine like backups with rsync.

This package creates dated snapshots of a directory tree on a local or remote
backup location, hard-linking unchanged files against the previous snapshot,
and thins old snapshots out under a tiered retention policy.
"""

__version__ = "0.1.0"

# Export public API
from .config import BackupConfig, MarkerConfig, Options, RetentionWindows
from .operations import BackupOperations

__all__ = ["BackupOperations", "BackupConfig", "MarkerConfig", "Options", "RetentionWindows"]
