import os
import logging
import tempfile
from typing import Callable, Optional

import psutil

from .config import APPNAME, BackupConfig, Options
from .errors import AlreadyRunning, InsufficientSpace, LocationNotFound, TransferFailure
from .executor import Executor
from .location import import_marker, resolve_location
from .retention import expire_backups, snapshot_name
from .rsync import RsyncTransfer, is_device_full
from .store import SnapshotStore


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('tmbackup')


def process_alive(pid: int) -> bool:
    """
    Return True if a live process has the given pid.

    This is the whole locking protocol: a pid left behind by a crashed run
    and since reused by an unrelated process reads as a running backup.
    """
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.AccessDenied:
        # the pid exists, it just belongs to another user
        return True
    except psutil.NoSuchProcess:
        return False


class BackupOperations:
    """Runs backups against one backup location."""

    def __init__(
        self,
        destination: str,
        options: Optional[Options] = None,
        transfer: Optional[RsyncTransfer] = None,
        is_alive: Callable[[int], bool] = process_alive,
    ):
        """
        Resolve the backup location and load its configuration.

        Args:
            destination (str): ``/path`` or ``user@host:/path`` of the backup location
            options (Options, optional): Command line flags
            transfer (RsyncTransfer, optional): Transfer to use instead of rsync
            is_alive (callable, optional): Liveness check for in-progress pids

        Raises:
            LocationNotFound: If the backup location does not exist
            NotABackupLocation: If the location has no marker
            PermissionDenied: If the location is not writable
            TransportFailure: If the remote host cannot be reached
        """
        options = options or Options()
        self.location, self.executor = resolve_location(
            destination, lambda host: Executor(host, options.ssh_options)
        )
        self.config = BackupConfig(options=options).with_marker(import_marker(self.location, self.executor))
        self.store = SnapshotStore(self.location, self.executor)
        self.transfer = transfer or RsyncTransfer(self.config, self.location)
        self.is_alive = is_alive
        self.log_file = None
        logger.debug(f"Initialized BackupOperations for {self.location}")

    def expire(self, reference: Optional[str] = None):
        """
        Expire snapshots relative to ``reference`` (default: a snapshot taken now).

        Returns:
            List[str]: Names of the expired snapshots
        """
        if reference is None:
            reference = snapshot_name(use_utc=self.config.use_utc)
        logger.info("expiring backups...")
        return expire_backups(self.store, reference, self.config)

    def delete_expired(self):
        """Delete all expired snapshots."""
        return self.store.delete_all()

    def backup(self, source: str, exclude_file: Optional[str] = None, now: Optional[float] = None) -> str:
        """
        Create a new snapshot of ``source``.

        An interrupted earlier run is picked up where it stopped, old
        snapshots are expired, and the most recently expired one is reused as
        the new snapshot's directory so rsync only has to update it.

        Args:
            source (str): Local directory to back up
            exclude_file (str, optional): File with rsync exclude patterns
            now (float, optional): Time of the run in seconds since the epoch

        Returns:
            str: Name of the completed snapshot

        Raises:
            LocationNotFound: If ``source`` is not a directory
            AlreadyRunning: If another backup holds the in-progress marker
            InsufficientSpace: If the device is full and nothing can be expired
            TransferFailure: If rsync fails for any other reason
        """
        logger.info("backup start")
        if not os.path.isdir(source):
            raise LocationNotFound(f"backup source path {source} does not exist.")
        logger.info(f"backup source path: {source}")

        store = self.store
        name = snapshot_name(now, self.config.use_utc)
        logger.info(f"backup name: {name}")

        if store.has_inprogress():
            pid = store.read_inprogress()
            if pid is not None and pid != os.getpid() and self.is_alive(pid):
                raise AlreadyRunning("previous backup task is still active - aborting.")
            store.write_inprogress(os.getpid())
            active = store.list_active()
            if active and active[0] != name:
                logger.info(f"previous backup {active[0]} was interrupted - resuming from there.")
                # the interrupted snapshot continues under the new name
                store.rename(active[0], name)
            elif not active:
                logger.info("previous backup was interrupted before creating a snapshot.")
        else:
            store.write_inprogress(os.getpid())

        self.expire(name)

        # picked after expiry, the policy may have expired the snapshot below a resumed one
        previous = self._newest_except(name)

        if store.exists(name):
            logger.info(f"continuing interrupted backup in {name}")
        else:
            expired = store.list_expired()
            if expired:
                logger.info(f"reusing expired backup {expired[0]}")
                store.reuse_expired(expired[0], name)
            else:
                store.create(name)

        link_dest = None
        if previous is not None:
            link_dest = store.absolute_path(previous)
            logger.info(f"doing incremental backup from {previous}")
        else:
            logger.info("no previous backup - creating new one.")

        self._transfer(source, name, link_dest, exclude_file)

        store.update_latest(name)
        if not self.config.options.keep_expired:
            store.delete_all()
        store.remove_inprogress()
        logger.info(f"backup {name} completed")
        return name

    def _transfer(self, source: str, name: str, link_dest: Optional[str], exclude_file: Optional[str]) -> None:
        """Run rsync until it succeeds, making room whenever the device fills up."""
        if self.log_file is None:
            fd, self.log_file = tempfile.mkstemp(prefix=f"{APPNAME}_")
            os.close(fd)

        while True:
            # each attempt is judged by its own log
            open(self.log_file, 'w').close()
            logger.info(f"rsync started for backup {name}")
            returncode = self.transfer.run(
                source, self.location.path(name), self.log_file, link_dest, exclude_file
            )
            logger.info("rsync end")
            if returncode == 0:
                return

            logger.warning(f"rsync error exit code: {returncode}")
            if not self._device_full():
                logger.error("rsync error - exiting")
                raise TransferFailure(f"rsync failed with exit code {returncode}")

            if not self.store.list_expired():
                candidates = [snapshot for snapshot in self.store.list_active() if snapshot != name]
                # the newest remaining snapshot is the incremental base
                if len(candidates) < 2:
                    raise InsufficientSpace("no space left on backup device, and no old backup to expire")
                logger.warning("no space left on backup device, expiring oldest backup")
                self.store.move_to_expired(candidates[-1])
            if not self.store.delete_all():
                raise InsufficientSpace("no space left on backup device, and expired backups could not be deleted")

    def _newest_except(self, name: str) -> Optional[str]:
        for snapshot in self.store.list_active():
            if snapshot != name:
                return snapshot
        return None

    def _device_full(self) -> bool:
        try:
            with open(self.log_file, errors="replace") as f:
                return is_device_full(f.read())
        except OSError as e:
            logger.warning(f"Could not read rsync log '{self.log_file}': {str(e)}")
            return False

    def close(self) -> None:
        """
        Remove the temporary rsync log.

        The in-progress marker is left alone: if a run fails it must stay so
        the next run can resume.
        """
        if self.log_file and os.path.exists(self.log_file):
            logger.debug(f"Removing rsync log {self.log_file}")
            os.unlink(self.log_file)
        self.log_file = None

    def __enter__(self) -> 'BackupOperations':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Clean up on every exit path, including errors and interrupts."""
        self.close()
