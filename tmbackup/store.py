import logging
import posixpath
import re
import shlex
from typing import List, Optional

from .errors import StoreError
from .executor import Executor
from .location import BackupLocation, check_marker


logger = logging.getLogger('tmbackup')

SNAPSHOT_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}-\d{6}$")


def q(path: str) -> str:
    return shlex.quote(path)


class SnapshotStore:
    """
    Snapshot directories of one backup location.

    Active snapshots live directly under the backup root, expired ones under
    ``root/expired``. The directory listing is the only record of what
    exists, so every query goes back to the filesystem. Each mutation is a
    single ``mv``/``mkdir``/``rm`` and therefore atomic wherever the
    filesystem's rename is.
    """

    def __init__(self, location: BackupLocation, executor: Executor):
        self.location = location
        self.executor = executor

    def _run_or_fail(self, command: str, message: str) -> None:
        result = self.executor.run(command)
        if not result.ok:
            raise StoreError(message)

    def _list(self, directory: str) -> List[str]:
        result = self.executor.run(
            f"find {q(directory)} -mindepth 1 -maxdepth 1 -type d -name '????-??-??-??????'"
        )
        if not result.ok:
            return []
        names = (posixpath.basename(line.rstrip("/")) for line in result.output.splitlines())
        return sorted((name for name in names if SNAPSHOT_PATTERN.match(name)), reverse=True)

    def list_active(self) -> List[str]:
        """Active snapshot names, most recent first."""
        return self._list(self.location.root)

    def list_expired(self) -> List[str]:
        """Expired snapshot names, most recent first."""
        return self._list(self.location.expired_dir)

    def exists(self, name: str) -> bool:
        return self.executor.check(f"[ -d {q(self.location.path(name))} ]")

    def create(self, name: str) -> None:
        """Create an empty active snapshot directory."""
        path = self.location.path(name)
        self._run_or_fail(f"mkdir -p -- {q(path)}", f"creation of directory {path} failed.")

    def rename(self, name: str, new_name: str) -> None:
        """Give an active snapshot a new name."""
        self._run_or_fail(
            f"mv -- {q(self.location.path(name))} {q(self.location.path(new_name))}",
            f"could not rename backup {name} to {new_name}",
        )

    def move_to_expired(self, name: str) -> None:
        """Move an active snapshot into the expired area."""
        check_marker(self.location, self.executor)
        expired_dir = self.location.expired_dir
        self._run_or_fail(f"mkdir -p -- {q(expired_dir)}", f"creation of directory {expired_dir} failed.")
        self._run_or_fail(
            f"mv -- {q(self.location.path(name))} {q(expired_dir + '/')}",
            f"could not expire backup {name}",
        )

    def reuse_expired(self, name: str, new_name: str) -> None:
        """Bring an expired snapshot back as the active snapshot ``new_name``."""
        self._run_or_fail(
            f"mv -- {q(self.location.expired_path(name))} {q(self.location.path(new_name))}",
            f"could not reuse expired backup {name}",
        )

    def delete_all(self) -> List[str]:
        """
        Delete every expired snapshot, then the empty expired directory.

        Calling it again once the expired area is gone does nothing.

        Returns:
            List[str]: Names of the deleted snapshots
        """
        check_marker(self.location, self.executor)
        deleted = []
        for name in self.list_expired():
            logger.info(f"deleting expired backup {name}")
            if self.executor.check(f"rm -rf -- {q(self.location.expired_path(name))}"):
                deleted.append(name)
            else:
                logger.warning(f"could not delete expired backup {name}")

        expired_dir = q(self.location.expired_dir)
        if not self.list_expired() and self.executor.check(f"[ -d {expired_dir} ]"):
            if not self.executor.check(f"rmdir -- {expired_dir}"):
                logger.warning(f"{self.location.expired_dir} is not empty, leaving it in place")
        return deleted

    def absolute_path(self, name: str) -> str:
        """Absolute path of an active snapshot, resolved on the location's host."""
        result = self.executor.run(f"cd {q(self.location.path(name))} && pwd")
        if not result.ok or not result.output.strip():
            raise StoreError(f"could not resolve path of backup {name}")
        return result.output.strip()

    def update_latest(self, name: str) -> None:
        """Point the ``latest`` link at ``name``."""
        link = q(self.location.latest_link)
        self.executor.run(f"rm -f -- {link}")
        self._run_or_fail(f"ln -s -- {q(name)} {link}", f"could not link latest to {name}")

    def has_inprogress(self) -> bool:
        return self.executor.check(f"[ -f {q(self.location.inprogress_file)} ]")

    def read_inprogress(self) -> Optional[int]:
        """Pid recorded in the in-progress marker, None if absent or unreadable."""
        result = self.executor.run(f"cat {q(self.location.inprogress_file)}")
        if not result.ok:
            return None
        try:
            return int(result.output.strip())
        except ValueError:
            logger.warning(f"ignoring malformed in-progress marker: {result.output.strip()!r}")
            return None

    def write_inprogress(self, pid: int) -> None:
        self._run_or_fail(
            f"echo {int(pid)} > {q(self.location.inprogress_file)}",
            "could not write the in-progress marker",
        )

    def remove_inprogress(self) -> None:
        self.executor.run(f"rm -f -- {q(self.location.inprogress_file)}")
