"""Immutable run configuration.

A :class:`BackupConfig` is assembled once per invocation from the built-in
defaults, the settings stored in the location's marker file and the command
line flags. Nothing mutates it afterwards.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

APPNAME = "tmbackup"

# Timestamp format used for snapshot directory names
SNAPSHOT_FORMAT = "%Y-%m-%d-%H%M%S"

MARKER_FILE = "backup.marker"
INPROGRESS_FILE = "backup.inprogress"
LATEST_LINK = "latest"
EXPIRED_DIR = "expired"

HOUR = 3600
DAY = 24 * HOUR


@dataclass(frozen=True)
class RetentionWindows:
    """Age limits (seconds) of the retention tiers.

    Snapshots younger than ``all`` are always kept, younger than ``h1`` one
    per hour, ``h4`` one per 4 hours, ``h8`` one per 8 hours, ``h24`` one per
    day, and one per month beyond that.
    """

    all: int = 4 * HOUR
    h1: int = 1 * DAY
    h4: int = 3 * DAY
    h8: int = 14 * DAY
    h24: int = 28 * DAY


@dataclass(frozen=True)
class MarkerConfig:
    """Settings persisted in ``backup.marker``."""

    use_utc: bool = False
    windows: RetentionWindows = field(default_factory=RetentionWindows)


@dataclass(frozen=True)
class Options:
    """Flags given on the command line."""

    verbose: bool = False
    syslog: bool = False
    keep_expired: bool = False
    ssh_options: Optional[str] = None


@dataclass(frozen=True)
class BackupConfig:
    """Everything a backup run needs to know, fixed for the whole run."""

    options: Options = field(default_factory=Options)
    marker: MarkerConfig = field(default_factory=MarkerConfig)

    @property
    def use_utc(self) -> bool:
        return self.marker.use_utc

    @property
    def windows(self) -> RetentionWindows:
        return self.marker.windows

    def with_marker(self, marker: MarkerConfig) -> "BackupConfig":
        """Return a copy of this configuration using ``marker``."""
        return replace(self, marker=marker)
