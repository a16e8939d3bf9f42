import os
import pytest
import tempfile
import shutil
from pathlib import Path

from tmbackup.config import Options
from tmbackup.executor import CommandResult, Executor
from tmbackup.location import BackupLocation, init_location
from tmbackup.operations import BackupOperations
from tmbackup.retention import parse_snapshot_name
from tmbackup.store import SnapshotStore


DEVICE_FULL_LOG = "rsync: [receiver] write failed on \"file_1.txt\": No space left on device (28)\n"


def at(name):
    """Epoch of a UTC snapshot name, used as the ``now`` of a test run."""
    return parse_snapshot_name(name, use_utc=True)


class FailingExecutor(Executor):
    """Local executor that fails every command containing ``fail_on``."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def run(self, command):
        if self.fail_on in command:
            return CommandResult("", 1)
        return super().run(command)


class FakeTransfer:
    """
    Stands in for rsync.

    Mirrors the source into the destination with shutil, or replays the
    queued failures first: each failure is a (returncode, log text) pair.
    """

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.calls = []

    def run(self, source, destination, log_file, link_dest=None, exclude_file=None):
        dest = Path(destination)
        self.calls.append({
            "destination": destination,
            "link_dest": link_dest,
            "exclude_file": exclude_file,
            "log_file": log_file,
            "preexisting": sorted(p.name for p in dest.iterdir()),
        })

        if self.failures:
            returncode, message = self.failures.pop(0)
            with open(log_file, "a") as f:
                f.write(message)
            return returncode

        for child in list(dest.iterdir()):
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        shutil.copytree(source, destination, dirs_exist_ok=True)
        return 0


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def local_executor():
    return Executor()


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for tmbackup tests providing an initialized backup location."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source and backup directories
        3. Creates test files
        4. Initializes the backup location (UTC time base)
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.backup_root = self.working_dir / "backups"
        os.makedirs(self.source_dir)
        os.makedirs(self.backup_root)

        self._create_test_files()

        self.executor = Executor()
        self.location = BackupLocation(str(self.backup_root))
        init_location(self.location, self.executor, use_utc=True)
        self.store = SnapshotStore(self.location, self.executor)

    def tearDown(self):
        """Clean up the temporary directory."""
        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not clean up temporary directory: {e}")

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def _create_test_files(self):
        """Create test files in the source directory."""
        for i in range(1, 5):
            with open(self.source_dir / f"file_{i}.txt", "w") as f:
                f.write(f"Content of file {i}")

        os.makedirs(self.source_dir / "nested")
        with open(self.source_dir / "nested" / "binary.bin", "wb") as f:
            f.write(os.urandom(1024))

    def make_snapshot(self, name, expired=False, files=("data.txt",)):
        """Create a snapshot directory by hand, active or expired."""
        parent = self.backup_root / "expired" if expired else self.backup_root
        path = parent / name
        os.makedirs(path)
        for file_name in files:
            with open(path / file_name, "w") as f:
                f.write(f"{name}/{file_name}")
        return path

    def operations(self, transfer=None, is_alive=None, **options):
        """Open BackupOperations on the test location."""
        kwargs = {}
        if is_alive is not None:
            kwargs["is_alive"] = is_alive
        return BackupOperations(
            str(self.backup_root),
            Options(**options),
            transfer=transfer if transfer is not None else FakeTransfer(),
            **kwargs
        )

    def active(self):
        return self.store.list_active()

    def expired(self):
        return self.store.list_expired()
