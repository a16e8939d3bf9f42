"""Exception hierarchy for tmbackup.

Library code raises these; only the command line interface turns them into
an error message and an exit status.
"""


class BackupError(Exception):
    """Base class for every error raised by tmbackup."""


class InvalidArgument(BackupError):
    """Command line usage error."""


class LocationError(BackupError):
    """The backup location cannot be used."""


class LocationNotFound(LocationError):
    """A source or backup location does not exist."""


class NotABackupLocation(LocationError):
    """The destination has no backup marker file."""


class InvalidMarker(NotABackupLocation):
    """The backup marker exists but holds unusable settings."""


class PermissionDenied(LocationError):
    """The backup location is not writable."""


class AlreadyInitialized(LocationError):
    """``init`` was run on a location that already has a marker."""


class TransportFailure(BackupError):
    """The remote shell itself failed, as opposed to the remote command."""


class AlreadyRunning(BackupError):
    """Another live process owns the in-progress marker."""


class StoreError(BackupError):
    """A snapshot directory could not be created or moved."""


class InsufficientSpace(BackupError):
    """The device is full and no snapshot is left to sacrifice."""


class TransferFailure(BackupError):
    """rsync failed for a reason other than a full device."""


class DateParseFailure(BackupError, ValueError):
    """A snapshot name is not a valid timestamp."""
