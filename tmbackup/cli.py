import argparse
import logging
import logging.handlers
import os
import signal
import sys
from typing import List, NoReturn, Optional

from .config import APPNAME, Options
from .errors import BackupError, InvalidArgument, LocationNotFound
from .executor import Executor
from .location import init_location, resolve_location
from .operations import BackupOperations
from .rsync import diff


logger = logging.getLogger('tmbackup')


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def configure_logging(verbose: bool = False, syslog: bool = False) -> None:
    """
    Send log output to the console and optionally to syslog.

    Informational messages go to stdout, warnings and errors to stderr with
    a ``[LEVEL]`` prefix. Debug messages are only shown with ``verbose``.

    Args:
        verbose (bool, optional): Also show debug messages
        syslog (bool, optional): Copy all messages to the local syslog daemon
    """
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(_BelowWarning())
    stdout_handler.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(stdout_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
    logger.addHandler(stderr_handler)

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
        except OSError as e:
            logger.warning(f"syslog is not available: {str(e)}")
        else:
            syslog_handler.setFormatter(logging.Formatter(f'{APPNAME}[{os.getpid()}]: %(message)s'))
            logger.addHandler(syslog_handler)


def close_logging() -> None:
    """Flush and release the handlers installed by configure_logging."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()


def print_error_and_exit(error_message: str, exit_code: int = 1) -> NoReturn:
    """
    Report a fatal error and exit the program with the specified exit code.

    The message goes through the ``tmbackup`` logger, so it reaches stderr
    with an ``[ERROR]`` prefix and syslog when that is enabled.

    Args:
        error_message (str): The error message to report
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    sys.exit(exit_code)


def options_from_args(args: argparse.Namespace) -> Options:
    return Options(
        verbose=args.verbose,
        syslog=args.syslog,
        keep_expired=args.keep_expired,
        ssh_options=args.ssh_opt,
    )


def init_command(args: argparse.Namespace) -> None:
    """
    Execute the init command to turn a directory into a backup location.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - location: Backup location to initialize
            - local_time: Name snapshots in local time instead of UTC
    """
    try:
        location, executor = resolve_location(args.location, lambda host: Executor(host, args.ssh_opt))
        init_location(location, executor, use_utc=not args.local_time)
    except BackupError as e:
        print_error_and_exit(str(e))
    except Exception as e:
        print_error_and_exit(f"Error initializing backup location: {str(e)}")


def backup_command(args: argparse.Namespace) -> None:
    """
    Execute the backup command to create a new snapshot.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - source: Local directory to back up
            - location: Backup location
            - exclude_file: Optional file with rsync exclude patterns
    """
    try:
        if not os.path.isdir(args.source):
            raise LocationNotFound(f"backup source path {args.source} does not exist.")
        if args.exclude_file and not os.path.isfile(args.exclude_file):
            raise InvalidArgument(f"exclude file {args.exclude_file} does not exist.")

        with BackupOperations(args.location, options_from_args(args)) as ops:
            ops.backup(args.source, exclude_file=args.exclude_file)
    except BackupError as e:
        print_error_and_exit(str(e))
    except Exception as e:
        print_error_and_exit(f"Error during backup: {str(e)}")


def diff_command(args: argparse.Namespace) -> None:
    """
    Execute the diff command to show the differences between two backups.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - backup1, backup2: The backups to compare
    """
    try:
        returncode = diff(args.backup1, args.backup2, ssh_options=args.ssh_opt)
    except BackupError as e:
        print_error_and_exit(str(e))
    except Exception as e:
        print_error_and_exit(f"Error comparing backups: {str(e)}")
    if returncode != 0:
        print_error_and_exit(f"rsync exited with code {returncode}")


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit code 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print_error_and_exit(f"{message}. Use --help for more information.")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog=APPNAME,
        description="Time Machine like backups with rsync",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="increase verbosity"
    )
    parser.add_argument(
        "-s", "--syslog",
        action="store_true",
        help="log output to syslogd"
    )
    parser.add_argument(
        "-k", "--keep-expired",
        action="store_true",
        help="do not delete expired backups until they can be reused by subsequent "
             "backups or the backup location runs out of space"
    )
    parser.add_argument(
        "--ssh-opt",
        metavar="OPTION",
        help="pass options to ssh, e.g. '-p 22'"
    )

    subparsers = parser.add_subparsers(dest="command", parser_class=ArgumentParser)

    init_parser = subparsers.add_parser(
        "init",
        help="initialize <backup_location> by creating a backup marker file"
    )
    init_parser.add_argument("location", help="[USER@HOST:]PATH of the backup location")
    init_parser.add_argument(
        "--local-time",
        action="store_true",
        help="name all backups using local time, per default backups are named using UTC"
    )

    backup_parser = subparsers.add_parser(
        "backup",
        help="create a Time Machine like backup from <source> at <backup_location>"
    )
    backup_parser.add_argument("source", help="local directory to back up")
    backup_parser.add_argument("location", help="[USER@HOST:]PATH of the backup location")
    backup_parser.add_argument(
        "exclude_file",
        nargs="?",
        help="exclude files listed in this file from the backup"
    )

    diff_parser = subparsers.add_parser(
        "diff",
        help="show differences between two backups"
    )
    diff_parser.add_argument("backup1")
    diff_parser.add_argument("backup2")

    return parser


def _terminate(signal_number, frame) -> NoReturn:
    logger.info("SIGTERM caught.")
    sys.exit(1)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the tmbackup command line interface.
    Parses arguments and dispatches to the command handlers.

    Returns:
        int: Process exit code
    """
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, syslog=args.syslog)

    command_handlers = {
        "init": init_command,
        "backup": backup_command,
        "diff": diff_command,
    }

    if args.command not in command_handlers:
        parser.print_usage()
        print(f"Try '{APPNAME} --help' for more information.")
        return 0

    signal.signal(signal.SIGTERM, _terminate)
    try:
        command_handlers[args.command](args)
    except KeyboardInterrupt:
        logger.info("SIGINT caught.")
        return 1
    finally:
        close_logging()
    return 0


if __name__ == "__main__":
    sys.exit(main())
