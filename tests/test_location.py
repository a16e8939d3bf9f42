import os
import stat
import pytest

from tmbackup.config import MarkerConfig, RetentionWindows
from tmbackup.errors import (
    AlreadyInitialized,
    InvalidMarker,
    LocationNotFound,
    NotABackupLocation,
    PermissionDenied,
)
from tmbackup.location import (
    BackupLocation,
    check_marker,
    format_marker,
    import_marker,
    init_location,
    parse_location,
    parse_marker,
    resolve_location,
)
from tests.conftest import FailingExecutor, TestBase


class TestParseLocation:

    def test_remote_location(self):
        location = parse_location("backup@nas.example.org:/srv/backups")
        assert location == BackupLocation(root="/srv/backups", host="backup@nas.example.org")
        assert location.is_remote
        assert location.marker_file == "/srv/backups/backup.marker"
        assert location.rsync_path(location.path("2024-05-10-120000")) == \
            "backup@nas.example.org:/srv/backups/2024-05-10-120000"

    def test_local_location(self):
        location = parse_location("/mnt/backup")
        assert location == BackupLocation(root="/mnt/backup")
        assert not location.is_remote
        assert location.expired_dir == "/mnt/backup/expired"
        assert location.inprogress_file == "/mnt/backup/backup.inprogress"
        assert location.latest_link == "/mnt/backup/latest"

    def test_host_without_user_is_a_local_path(self):
        assert not parse_location("nas:/srv/backups").is_remote


class TestMarkerFormat:

    def test_written_marker_parses_back(self):
        config = MarkerConfig(use_utc=True, windows=RetentionWindows(all=60))
        text = format_marker(config)
        assert text.splitlines()[0] == "UTC=true"
        assert "RETENTION_WIN_ALL=60" in text
        assert "RETENTION_WIN_24H=2419200" in text

    def test_legacy_shell_marker(self):
        settings = parse_marker('UTC="true"\nRETENTION_WIN_ALL=7200\n')
        assert settings == {"UTC": "true", "RETENTION_WIN_ALL": "7200"}

    def test_repeated_key_takes_last_value(self):
        settings = parse_marker('UTC="true"\nUTC="false"\n')
        assert settings["UTC"] == "false"

    def test_marker_is_not_executed(self):
        settings = parse_marker("UTC=$(touch /tmp/tmbackup-should-not-exist)\n")
        assert settings["UTC"] == "$(touch /tmp/tmbackup-should-not-exist)"

    def test_garbage_marker(self):
        with pytest.raises(InvalidMarker):
            parse_marker("this is not a key value line\n")


class TestLocation(TestBase):
    """Resolving, checking and initializing backup locations."""

    def test_resolve_existing_location(self):
        location, executor = resolve_location(str(self.backup_root))
        assert location.root == str(self.backup_root)
        assert not executor.is_remote

    def test_resolve_missing_location(self):
        with pytest.raises(LocationNotFound):
            resolve_location(str(self.working_dir / "missing"))

    def test_check_marker_on_initialized_location(self):
        check_marker(self.location, self.executor)

    def test_check_marker_without_marker(self):
        bare = BackupLocation(str(self.source_dir))
        with pytest.raises(NotABackupLocation):
            check_marker(bare, self.executor)

    def test_check_marker_without_write_permission(self):
        with pytest.raises(PermissionDenied):
            check_marker(self.location, FailingExecutor("touch"))

    def test_init_defaults_to_utc(self):
        config = import_marker(self.location, self.executor)
        assert config == MarkerConfig(use_utc=True)

    def test_init_local_time(self):
        other = self.working_dir / "other"
        os.makedirs(other)
        location = BackupLocation(str(other))
        init_location(location, self.executor, use_utc=False)
        assert import_marker(location, self.executor).use_utc is False

    def test_marker_is_private(self):
        mode = stat.S_IMODE(os.stat(self.location.marker_file).st_mode)
        assert mode == 0o600

    def test_init_twice_fails_and_keeps_marker(self):
        before = open(self.location.marker_file).read()
        with pytest.raises(AlreadyInitialized):
            init_location(self.location, self.executor, use_utc=False)
        assert open(self.location.marker_file).read() == before

    def test_init_write_failure(self):
        other = self.working_dir / "other"
        os.makedirs(other)
        with pytest.raises(PermissionDenied):
            init_location(BackupLocation(str(other)), FailingExecutor("printf"))

    def test_empty_marker_uses_defaults(self):
        with open(self.location.marker_file, "w"):
            pass
        config = import_marker(self.location, self.executor)
        assert config == MarkerConfig(use_utc=False, windows=RetentionWindows())

    def test_legacy_marker_overrides_some_windows(self):
        with open(self.location.marker_file, "w") as f:
            f.write('UTC="true"\nRETENTION_WIN_ALL=3600\nRETENTION_WIN_24H=86400\n')
        config = import_marker(self.location, self.executor)
        assert config.use_utc is True
        assert config.windows == RetentionWindows(all=3600, h24=86400)

    def test_invalid_window_value(self):
        with open(self.location.marker_file, "w") as f:
            f.write("RETENTION_WIN_01H=one day\n")
        with pytest.raises(InvalidMarker):
            import_marker(self.location, self.executor)

    def test_unknown_setting_is_ignored(self, caplog):
        with open(self.location.marker_file, "a") as f:
            f.write("COLOR=blue\n")
        config = import_marker(self.location, self.executor)
        assert config.use_utc is True
        assert "ignoring unknown backup marker setting COLOR" in caplog.text
