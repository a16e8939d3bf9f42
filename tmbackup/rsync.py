"""Invocation of rsync, the tool that moves the actual data."""

import logging
import re
import subprocess
import sys
from typing import Iterable, Iterator, List, Optional

from .config import BackupConfig
from .errors import TransferFailure
from .executor import SSH_CMD
from .location import BackupLocation


logger = logging.getLogger('tmbackup')

RSYNC_CMD = "rsync"

# deletions, blank lines and lines reporting nothing but a new timestamp
BACKUP_NOISE = re.compile(r"^[*]?deleting|^$|^.[Ld]\.\.t\.\.\.\.\.\.")
DIFF_NOISE = re.compile(r"^sending|^$|^sent.*sec$|^total.*RUN\)")

# rsync has no exit status of its own for a full device
DEVICE_FULL_MESSAGES = ("No space left on device (28)", "Result too large (34)")


def is_device_full(log_text: str) -> bool:
    """Return True if an rsync log shows that the destination ran out of space."""
    return any(message in log_text for message in DEVICE_FULL_MESSAGES)


def filter_output(lines: Iterable[str], noise=BACKUP_NOISE) -> Iterator[str]:
    """Yield the lines of rsync output that are worth showing."""
    for line in lines:
        line = line.rstrip("\n")
        if not noise.search(line):
            yield line


class RsyncTransfer:
    """Copies a source tree into a snapshot directory with rsync."""

    def __init__(self, config: BackupConfig, location: BackupLocation, rsync_cmd: str = RSYNC_CMD):
        self.config = config
        self.location = location
        self.rsync_cmd = rsync_cmd

    def build_command(
        self,
        source: str,
        destination: str,
        log_file: str,
        link_dest: Optional[str] = None,
        exclude_file: Optional[str] = None,
    ) -> List[str]:
        """
        Build the rsync argument vector for one transfer.

        Args:
            source (str): Local source directory
            destination (str): Snapshot directory on the backup location
            log_file (str): Local file rsync writes its log to
            link_dest (str, optional): Absolute path of the incremental base
            exclude_file (str, optional): File with exclude patterns

        Returns:
            List[str]: The command line
        """
        options = self.config.options
        args = [self.rsync_cmd]
        args += ["--archive", "--hard-links", "--numeric-ids"]
        args += ["--delete", "--delete-excluded"]
        args += ["--one-file-system"]
        args += ["--itemize-changes", "--human-readable"]
        args += [f"--log-file={log_file}"]

        if options.verbose:
            args.append("--verbose")
        if options.ssh_options:
            args += ["-e", f"{SSH_CMD} {options.ssh_options}"]
        if exclude_file:
            args.append(f"--exclude-from={exclude_file}")
        if link_dest:
            args.append(f"--link-dest={link_dest}")

        args += ["--", source.rstrip("/") + "/", self.location.rsync_path(destination)]
        return args

    def run(
        self,
        source: str,
        destination: str,
        log_file: str,
        link_dest: Optional[str] = None,
        exclude_file: Optional[str] = None,
    ) -> int:
        """
        Run rsync, logging its filtered output as it arrives.

        Returns:
            int: rsync's exit status

        Raises:
            TransferFailure: If rsync cannot be started
        """
        args = self.build_command(source, destination, log_file, link_dest, exclude_file)
        logger.debug(f"rsync command: {subprocess.list2cmdline(args)}")
        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise TransferFailure(f"could not start {self.rsync_cmd}: {e}") from e

        with proc:
            for line in filter_output(proc.stdout):
                logger.info(line)
        return proc.returncode


def diff(first: str, second: str, ssh_options: Optional[str] = None, rsync_cmd: str = RSYNC_CMD) -> int:
    """
    Print the differences between two backups using rsync's dry-run mode.

    Returns:
        int: rsync's exit status
    """
    args = [rsync_cmd, "--dry-run", "-auvi"]
    if ssh_options:
        args += ["-e", f"{SSH_CMD} {ssh_options}"]
    args += ["--", first.rstrip("/") + "/", second.rstrip("/") + "/"]
    logger.debug(f"rsync command: {subprocess.list2cmdline(args)}")
    try:
        proc = subprocess.Popen(args, stdout=subprocess.PIPE, text=True, errors="replace")
    except OSError as e:
        raise TransferFailure(f"could not start {rsync_cmd}: {e}") from e

    with proc:
        for line in filter_output(proc.stdout, DIFF_NOISE):
            print(line, file=sys.stdout)
    return proc.returncode
