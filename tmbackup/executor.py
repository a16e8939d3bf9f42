import logging
import shlex
import subprocess
from typing import List, NamedTuple, Optional

from .errors import TransportFailure


logger = logging.getLogger('tmbackup')

SSH_CMD = "ssh"

# ssh reserves this exit status for its own failures
SSH_TRANSPORT_ERROR = 255


class CommandResult(NamedTuple):
    """Output and exit status of a command."""

    output: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Executor:
    """
    Runs shell expressions on the machine that holds the backup location.

    Commands are plain shell strings. Locally they are evaluated by the shell,
    so pipes, redirection and conditionals behave as typed. For a remote
    location the same string is handed to ``ssh``, which evaluates it with the
    remote user's shell.
    """

    def __init__(self, host: Optional[str] = None, ssh_options: Optional[str] = None):
        """
        Initialize an executor.

        Args:
            host (str, optional): ``user@host`` of a remote location, None for local
            ssh_options (str, optional): Extra options passed to ssh, e.g. ``-p 2222``
        """
        self.host = host
        self.ssh_options = ssh_options

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    def ssh_command(self) -> List[str]:
        """Return the ssh invocation prefix for this executor's host."""
        args = [SSH_CMD]
        if self.ssh_options:
            args += shlex.split(self.ssh_options)
        return args + ["--", self.host]

    def run(self, command: str) -> CommandResult:
        """
        Run a shell expression locally or on the remote host.

        Args:
            command (str): Shell expression to evaluate

        Returns:
            CommandResult: Standard output and exit status of the command; stderr
                is only written to the debug log

        Raises:
            TransportFailure: If ssh could not reach or authenticate to the host
        """
        logger.debug(f"Running {'remote' if self.is_remote else 'local'} command: {command}")

        if self.is_remote:
            args = self.ssh_command() + [command]
            proc = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        else:
            proc = subprocess.run(command, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)

        if proc.stderr:
            logger.debug(f"Command stderr: {proc.stderr.rstrip()}")

        if self.is_remote and proc.returncode == SSH_TRANSPORT_ERROR:
            logger.error(f"ssh command failed: {' '.join(args)}")
            raise TransportFailure(f"ssh to {self.host} failed: {proc.stderr.strip()}")

        if proc.returncode != 0:
            logger.debug(f"Command exit code: {proc.returncode}")
        return CommandResult(proc.stdout, proc.returncode)

    def check(self, command: str) -> bool:
        """Return True if ``command`` exits with status zero."""
        return self.run(command).ok
