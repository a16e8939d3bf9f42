"""Backup locations and the marker file that identifies them."""

import configparser
import logging
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .config import (
    EXPIRED_DIR,
    INPROGRESS_FILE,
    LATEST_LINK,
    MARKER_FILE,
    MarkerConfig,
    RetentionWindows,
)
from .errors import (
    AlreadyInitialized,
    InvalidMarker,
    LocationNotFound,
    NotABackupLocation,
    PermissionDenied,
)
from .executor import Executor


logger = logging.getLogger('tmbackup')

REMOTE_PATTERN = re.compile(r"^([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+):(.+)$")

# Marker keys mapped to RetentionWindows fields
WINDOW_KEYS = {
    "RETENTION_WIN_ALL": "all",
    "RETENTION_WIN_01H": "h1",
    "RETENTION_WIN_04H": "h4",
    "RETENTION_WIN_08H": "h8",
    "RETENTION_WIN_24H": "h24",
}

_MARKER_SECTION = "marker"


@dataclass(frozen=True)
class BackupLocation:
    """A backup root, optionally on a remote host."""

    root: str
    host: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def marker_file(self) -> str:
        return posixpath.join(self.root, MARKER_FILE)

    @property
    def inprogress_file(self) -> str:
        return posixpath.join(self.root, INPROGRESS_FILE)

    @property
    def latest_link(self) -> str:
        return posixpath.join(self.root, LATEST_LINK)

    @property
    def expired_dir(self) -> str:
        return posixpath.join(self.root, EXPIRED_DIR)

    def path(self, name: str) -> str:
        """Path of the active snapshot ``name``."""
        return posixpath.join(self.root, name)

    def expired_path(self, name: str) -> str:
        """Path of the expired snapshot ``name``."""
        return posixpath.join(self.expired_dir, name)

    def rsync_path(self, path: str) -> str:
        """Return ``path`` in the form rsync expects for this location."""
        return f"{self.host}:{path}" if self.host else path

    def __str__(self) -> str:
        return self.rsync_path(self.root)


def parse_location(text: str) -> BackupLocation:
    """Split ``user@host:path`` into host and root; anything else is a local path."""
    match = REMOTE_PATTERN.match(text)
    if match:
        return BackupLocation(root=match.group(2), host=match.group(1))
    return BackupLocation(root=text)


def resolve_location(
    text: str,
    executor_factory: Callable[[Optional[str]], Executor] = Executor,
) -> Tuple[BackupLocation, Executor]:
    """
    Parse a location string and verify that its root directory exists.

    Args:
        text (str): ``/path`` or ``user@host:/path``
        executor_factory (callable, optional): Builds the executor from the host

    Returns:
        Tuple[BackupLocation, Executor]: The location and an executor bound to it

    Raises:
        LocationNotFound: If the root directory does not exist
        TransportFailure: If the remote host cannot be reached
    """
    location = parse_location(text)
    logger.info(f"backup location: {location}")
    executor = executor_factory(location.host)
    if not executor.check(f"[ -d {shlex.quote(location.root)} ]"):
        raise LocationNotFound(f"backup location {location.root} does not exist.")
    return location, executor


def check_marker(location: BackupLocation, executor: Executor) -> None:
    """
    Verify that ``location`` is an initialized, writable backup location.

    Raises:
        NotABackupLocation: If there is no marker file
        PermissionDenied: If the marker file cannot be touched
    """
    marker = shlex.quote(location.marker_file)
    if not executor.check(f"[ -f {marker} ]"):
        raise NotABackupLocation(
            "Destination does not appear to be a backup location - no backup marker file found."
        )
    if not executor.check(f"touch -c {marker} > /dev/null 2>&1"):
        raise PermissionDenied("no write permission for this backup location - aborting.")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_marker(text: str) -> Dict[str, str]:
    """
    Parse marker text into a dict of upper-case keys.

    Markers are flat ``KEY=value`` lines without a section header; values may
    be quoted as the shell-style markers of older installations are. A key
    repeated by an older, appending ``init`` takes its last value.

    Raises:
        InvalidMarker: If the text is not a key/value record
    """
    parser = configparser.ConfigParser(delimiters=("=",), interpolation=None, strict=False)
    parser.optionxform = str
    try:
        parser.read_string(f"[{_MARKER_SECTION}]\n{text}")
    except configparser.Error as e:
        raise InvalidMarker(f"backup marker is not a key/value file: {e}") from e
    return {key.upper(): _unquote(value) for key, value in parser.items(_MARKER_SECTION)}


def marker_from_settings(settings: Dict[str, str]) -> MarkerConfig:
    """Build a MarkerConfig from parsed marker settings, defaulting what is missing."""
    windows = {}
    for key, value in settings.items():
        if key in WINDOW_KEYS:
            try:
                windows[WINDOW_KEYS[key]] = int(value)
            except ValueError:
                raise InvalidMarker(f"invalid value for {key} in backup marker: {value!r}")
        elif key != "UTC":
            logger.warning(f"ignoring unknown backup marker setting {key}")
    use_utc = settings.get("UTC", "false").lower() == "true"
    return MarkerConfig(use_utc=use_utc, windows=RetentionWindows(**windows))


def format_marker(config: MarkerConfig) -> str:
    """Serialize a MarkerConfig as marker file text."""
    lines = [f"UTC={'true' if config.use_utc else 'false'}"]
    for key, attr in WINDOW_KEYS.items():
        lines.append(f"{key}={getattr(config.windows, attr)}")
    return "\n".join(lines) + "\n"


def import_marker(location: BackupLocation, executor: Executor) -> MarkerConfig:
    """
    Load the configuration stored in the location's marker file.

    Locations created before markers carried configuration have an empty
    marker; they get the built-in defaults (local time, default windows).
    """
    check_marker(location, executor)
    result = executor.run(f"cat {shlex.quote(location.marker_file)}")
    if result.ok and result.output.strip():
        config = marker_from_settings(parse_marker(result.output))
        logger.info("configuration imported from backup marker")
    else:
        config = MarkerConfig()
        logger.info("no configuration imported from backup marker - using defaults")
    logger.info(f"backup time base: {'UTC' if config.use_utc else 'local time'}")
    return config


def init_location(location: BackupLocation, executor: Executor, use_utc: bool = True) -> MarkerConfig:
    """
    Turn an existing directory into a backup location by writing its marker.

    Args:
        location (BackupLocation): Location to initialize
        executor (Executor): Executor bound to the location
        use_utc (bool, optional): Name snapshots in UTC. Defaults to True.

    Returns:
        MarkerConfig: The configuration written to the marker

    Raises:
        AlreadyInitialized: If the location already has a marker
        PermissionDenied: If the marker cannot be written
    """
    marker = shlex.quote(location.marker_file)
    if executor.check(f"[ -e {marker} ]"):
        raise AlreadyInitialized(f"{location} is already a backup location.")

    config = MarkerConfig(use_utc=use_utc)
    # noclobber closes the window between the check above and the write
    result = executor.run(f"set -C; printf '%s' {shlex.quote(format_marker(config))} > {marker}")
    if not result.ok:
        if executor.check(f"[ -e {marker} ]"):
            raise AlreadyInitialized(f"{location} is already a backup location.")
        raise PermissionDenied(f"could not create backup marker {location.marker_file}")
    executor.run(f"chmod -- 600 {marker}")
    logger.info(f"created backup marker {location.marker_file}")
    return config
