"""Tests for the restore pipeline (pg_backctl/services/restore_controller.py).

Docker, Compose and S3 are replaced with in-memory fakes from conftest; the
data directory work (extract, signals, restore_command, chown) runs for
real against tmp_path.
"""

import gzip
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from pg_backctl.exceptions import (
    BackupNotFoundError,
    ConfigurationError,
    ExitCode,
    InsufficientDiskSpaceError,
    InvalidRangeError,
    InvalidStateTransitionError,
    MissingArgumentError,
    MissingCredentialError,
    ModeConflictError,
    NoBackupFoundError,
    RestoreFailedError,
    UnsafeVolumeError,
    UsageConflictError,
)
from pg_backctl.schemas.request import AwsCredentials, RestoreMode, RestoreRequest
from pg_backctl.services.restore_controller import (
    RestoreModeController,
    RestoreState,
    select_mode,
)

GENERATION = "backups/20250101T000000"
CREDENTIALS = AwsCredentials(access_key="AKIAEXAMPLE", secret_key="secret", region="us-east-1")


@pytest.fixture
def staging(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def make_request(compose_file, owner, staging):
    """Factory for RestoreRequest with an S3 source and test-friendly defaults."""

    def _make(**overrides) -> RestoreRequest:
        values = dict(
            service="db",
            compose_file=compose_file,
            volume_name="pgdata",
            data_owner=owner,
            s3_url="s3://bucket/backups",
            s3_endpoint="http://minio:9000",
            credentials=CREDENTIALS,
            readiness_wait_seconds=0,
            staging_root=staging,
        )
        values.update(overrides)
        return RestoreRequest(**values)

    return _make


@pytest.fixture
def s3_generation(store, base_tar, wal_tar):
    store.add(f"{GENERATION}/base.tar.gz", base_tar)
    store.add(f"{GENERATION}/pg_wal.tar.gz", wal_tar)
    return store


def _controller(request, lifecycle, volumes, store, probe):
    return RestoreModeController(
        request,
        lifecycle=lifecycle,
        volumes=volumes,
        store=store,
        probe=probe,
        sleep=AsyncMock(),
    )


def _active_restore_commands(data_dir):
    content = (data_dir / "postgresql.conf").read_text()
    return [line for line in content.splitlines() if line.startswith("restore_command")]


class TestSelectMode:
    """Test suite for select_mode()."""

    def test_single_modes(self, make_request):
        assert select_mode(make_request(standby=True)) is RestoreMode.STANDBY
        assert select_mode(make_request(override_volume=True)) is RestoreMode.OVERRIDE_VOLUME
        assert select_mode(make_request(new_volume_name="pgdata2")) is RestoreMode.NEW_VOLUME

    @pytest.mark.parametrize(
        "flags",
        [
            {"standby": True, "override_volume": True},
            {"standby": True, "new_volume_name": "pgdata2"},
            {"override_volume": True, "new_volume_name": "pgdata2"},
            {"standby": True, "override_volume": True, "new_volume_name": "pgdata2"},
        ],
    )
    def test_conflicting_modes(self, make_request, flags):
        with pytest.raises(ModeConflictError) as exc_info:
            select_mode(make_request(**flags))
        assert exc_info.value.exit_code == ExitCode.USAGE

    def test_no_mode(self, make_request):
        with pytest.raises(MissingArgumentError):
            select_mode(make_request())


class TestPreflight:
    """Failures detected before the service is touched."""

    @pytest.mark.asyncio
    async def test_mode_conflict_never_stops_service(self, make_request, lifecycle, volumes, store, probe):
        controller = _controller(
            make_request(standby=True, override_volume=True), lifecycle, volumes, store, probe
        )

        with pytest.raises(ModeConflictError) as exc_info:
            await controller.run()

        assert exc_info.value.exit_code == 14
        assert lifecycle.calls == []
        assert controller.state is RestoreState.FAILED

    @pytest.mark.asyncio
    async def test_missing_credentials(self, make_request, lifecycle, volumes, s3_generation, probe):
        request = make_request(override_volume=True, credentials=AwsCredentials(access_key="a"))

        with pytest.raises(MissingCredentialError) as exc_info:
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert exc_info.value.exit_code == ExitCode.MISSING_ENV
        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, make_request, lifecycle, volumes, s3_generation, probe):
        request = make_request(override_volume=True, s3_endpoint=None)

        with pytest.raises(MissingArgumentError):
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

    @pytest.mark.asyncio
    async def test_local_and_s3_sources_conflict(
        self, make_request, lifecycle, volumes, store, probe, local_backup
    ):
        request = make_request(override_volume=True, local_path=local_backup)

        with pytest.raises(UsageConflictError):
            await _controller(request, lifecycle, volumes, store, probe).run()

    @pytest.mark.asyncio
    async def test_local_source_without_wal_archive(
        self, make_request, lifecycle, volumes, probe, local_backup
    ):
        (local_backup / "pg_wal.tar.gz").unlink()
        request = make_request(override_volume=True, s3_url=None, local_path=local_backup)

        with pytest.raises(BackupNotFoundError) as exc_info:
            await _controller(request, lifecycle, volumes, None, probe).run()

        assert exc_info.value.exit_code == ExitCode.RESTORE_FAILED
        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_new_volume_same_as_existing(self, make_request, lifecycle, volumes, s3_generation, probe):
        request = make_request(new_volume_name="pgdata")

        with pytest.raises(UsageConflictError):
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_missing_volume(self, make_request, lifecycle, volumes, s3_generation, probe):
        request = make_request(override_volume=True, volume_name="nodata")

        with pytest.raises(UnsafeVolumeError) as exc_info:
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert exc_info.value.exit_code == ExitCode.UNSAFE_VOLUME
        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_insufficient_disk_space(self, make_request, lifecycle, volumes, s3_generation, make_probe):
        request = make_request(override_volume=True)

        with pytest.raises(InsufficientDiskSpaceError) as exc_info:
            await _controller(request, lifecycle, volumes, s3_generation, make_probe(available_gb=1)).run()

        assert exc_info.value.exit_code == ExitCode.DISK_SPACE
        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_missing_config_file(self, make_request, lifecycle, volumes, s3_generation, probe, tmp_path):
        request = make_request(override_volume=True, pg_hba_file=tmp_path / "missing_pg_hba.conf")

        with pytest.raises(ConfigurationError) as exc_info:
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert exc_info.value.exit_code == ExitCode.MISSING_CONF

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["missing.yml", "compose.txt"])
    async def test_invalid_compose_file(self, make_request, lifecycle, volumes, s3_generation, probe, tmp_path, name):
        compose = tmp_path / name
        if name.endswith(".txt"):
            compose.write_text("services: {}\n")
        request = make_request(override_volume=True, compose_file=compose)

        with pytest.raises(ConfigurationError, match="Invalid compose file"):
            await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_interrupted_upload_falls_back_to_complete_generation(
        self, make_request, lifecycle, volumes, s3_generation, probe
    ):
        newer = datetime(2025, 1, 2, tzinfo=UTC)
        s3_generation.add("backups/20250102T000000/backup.sha256", b"digest", last_modified=newer)
        s3_generation.add("backups/20250102T000000/backup.sha256.info", b"info", last_modified=newer)
        controller = _controller(make_request(override_volume=True), lifecycle, volumes, s3_generation, probe)

        descriptor = await controller.preflight()

        assert descriptor.location == GENERATION
        assert descriptor.base_archive == "base.tar.gz"
        assert lifecycle.calls == []

    @pytest.mark.asyncio
    async def test_empty_bucket(self, make_request, lifecycle, volumes, store, probe):
        request = make_request(override_volume=True)

        with pytest.raises(NoBackupFoundError) as exc_info:
            await _controller(request, lifecycle, volumes, store, probe).run()

        assert exc_info.value.exit_code == ExitCode.RESTORE_FAILED
        assert lifecycle.calls == []


class TestOverrideVolume:
    """End-to-end restore into the existing volume."""

    @pytest.mark.asyncio
    async def test_restore_from_object_store(
        self, make_request, lifecycle, volumes, s3_generation, probe, staging
    ):
        data_dir = volumes.root / "pgdata"
        (data_dir / "stale_file").write_text("old")
        controller = _controller(make_request(override_volume=True), lifecycle, volumes, s3_generation, probe)

        result = await controller.run()

        assert result.state == "completed"
        assert result.mode == "override_volume"
        assert result.backup_location == GENERATION
        assert result.data_directory == str(data_dir)
        assert controller.state is RestoreState.COMPLETED

        assert not (data_dir / "stale_file").exists()
        assert (data_dir / "PG_VERSION").is_file()
        assert (data_dir / "pg_wal" / "000000010000000000000002").is_file()
        assert (data_dir / "recovery.signal").is_file()
        assert not (data_dir / "standby.signal").exists()
        assert _active_restore_commands(data_dir) == [
            "restore_command = 'cp /var/lib/postgresql/data/pg_wal/%f %p'"
        ]

        assert lifecycle.actions == ["stop", "start"]
        # Staging directory removed after the run
        assert list(staging.iterdir()) == []
        controller._sleep.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_repeated_restore_keeps_one_restore_command(
        self, make_request, lifecycle, volumes, s3_generation, probe
    ):
        request = make_request(override_volume=True)

        await _controller(request, lifecycle, volumes, s3_generation, probe).run()
        await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert len(_active_restore_commands(volumes.root / "pgdata")) == 1

    @pytest.mark.asyncio
    async def test_explicit_backup_path(self, make_request, lifecycle, volumes, s3_generation, probe, base_tar, wal_tar):
        s3_generation.add("backups/20240101T000000/base.tar.gz", base_tar)
        s3_generation.add("backups/20240101T000000/pg_wal.tar.gz", wal_tar)
        request = make_request(override_volume=True, backup_path="backups/20240101T000000")

        result = await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert result.backup_location == "backups/20240101T000000"

    @pytest.mark.asyncio
    async def test_local_source(self, make_request, lifecycle, volumes, probe, local_backup):
        request = make_request(override_volume=True, s3_url=None, local_path=local_backup)

        result = await _controller(request, lifecycle, volumes, None, probe).run()

        data_dir = volumes.root / "pgdata"
        assert result.backup_location == str(local_backup)
        assert (data_dir / "PG_VERSION").is_file()
        assert (data_dir / "recovery.signal").is_file()
        # The local backup is read in place and left intact
        assert (local_backup / "base.tar.gz").is_file()

    @pytest.mark.asyncio
    async def test_corrupt_archive_cleans_staging(
        self, make_request, lifecycle, volumes, store, probe, staging
    ):
        store.add(f"{GENERATION}/base.tar.gz", b"not a tarball")
        store.add(f"{GENERATION}/pg_wal.tar.gz", b"not a tarball")
        controller = _controller(make_request(override_volume=True), lifecycle, volumes, store, probe)

        with pytest.raises(RestoreFailedError):
            await controller.run()

        assert controller.state is RestoreState.FAILED
        assert list(staging.iterdir()) == []

    @pytest.mark.asyncio
    async def test_primary_configuration_steps(
        self, make_request, lifecycle, volumes, s3_generation, probe, tmp_path
    ):
        pg_hba = tmp_path / "pg_hba.conf"
        pg_hba.write_text("host all all 0.0.0.0/0 scram-sha-256\n")
        conf = tmp_path / "custom.conf"
        conf.write_text("max_connections = 200\n")
        scripts = tmp_path / "init"
        scripts.mkdir()
        (scripts / "02_grants.sh").write_text("echo grants\n")
        (scripts / "01_schema.sql").write_text("CREATE TABLE t (id int);\n")
        (scripts / "README.md").write_text("not a script\n")
        request = make_request(
            override_volume=True,
            pg_hba_file=pg_hba,
            postgresql_conf_file=conf,
            init_scripts_dir=scripts,
        )

        await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert lifecycle.calls == [
            ("stop",),
            ("start",),
            ("copy_into", "pg_hba.conf", "/var/lib/postgresql/data/pg_hba.conf"),
            ("exec", ["psql", "-U", "postgres", "-c", "SELECT pg_reload_conf();"], None),
            ("copy_into", "01_schema.sql", "/tmp/01_schema.sql"),
            ("exec", ["psql", "-v", "ON_ERROR_STOP=1", "-U", "postgres", "-f", "/tmp/01_schema.sql"], None),
            ("exec", ["rm", "-f", "/tmp/01_schema.sql"], None),
            ("copy_into", "02_grants.sh", "/tmp/02_grants.sh"),
            ("exec", ["bash", "/tmp/02_grants.sh"], None),
            ("exec", ["rm", "-f", "/tmp/02_grants.sh"], None),
            ("copy_into", "custom.conf", "/var/lib/postgresql/data/postgresql.conf"),
            ("restart",),
        ]

    @pytest.mark.asyncio
    async def test_first_boot_config(self, make_request, lifecycle, volumes, s3_generation, probe, tmp_path):
        first_boot = tmp_path / "first_boot.conf"
        first_boot.write_text("shared_buffers = 256MB\n")
        request = make_request(override_volume=True, first_boot_config=first_boot)

        await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        assert lifecycle.calls == [
            ("stop",),
            ("start",),
            ("copy_into", "first_boot.conf", "/var/lib/postgresql/data/postgresql.conf"),
            ("restart",),
        ]


class TestStandby:
    """Standby restores stay in recovery and skip primary configuration."""

    @pytest.mark.asyncio
    async def test_standby_signals_and_no_primary_steps(
        self, make_request, lifecycle, volumes, s3_generation, probe, tmp_path
    ):
        pg_hba = tmp_path / "pg_hba.conf"
        pg_hba.write_text("host all all 0.0.0.0/0 trust\n")
        request = make_request(standby=True, pg_hba_file=pg_hba)

        result = await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        data_dir = volumes.root / "pgdata"
        assert result.mode == "standby"
        assert (data_dir / "standby.signal").is_file()
        assert (data_dir / "recovery.signal").is_file()
        assert lifecycle.actions == ["stop", "start"]


class TestNewVolume:
    """Restores into a fresh volume with a compose rewrite."""

    @pytest.mark.asyncio
    async def test_restore_into_new_volume(self, make_request, lifecycle, volumes, s3_generation, probe):
        (volumes.root / "pgdata" / "PG_VERSION").write_text("15\n")
        request = make_request(new_volume_name="pgdata_restored")

        result = await _controller(request, lifecycle, volumes, s3_generation, probe).run()

        new_dir = volumes.root / "pgdata_restored"
        assert result.data_directory == str(new_dir)
        assert (new_dir / "PG_VERSION").read_text() == "16\n"
        assert (new_dir / "recovery.signal").is_file()
        # Old volume left untouched
        assert (volumes.root / "pgdata" / "PG_VERSION").read_text() == "15\n"
        assert volumes.rewrites == [("db", "pgdata", "pgdata_restored")]
        assert volumes.restored == []
        assert lifecycle.actions == ["stop", "start", "stop", "start"]

    @pytest.mark.asyncio
    async def test_failure_after_rewrite_restores_compose_file(
        self, make_request, lifecycle, volumes, s3_generation, probe
    ):
        lifecycle.fail_on = "start"
        controller = _controller(
            make_request(new_volume_name="pgdata_restored"), lifecycle, volumes, s3_generation, probe
        )

        with pytest.raises(RestoreFailedError) as exc_info:
            await controller.run()

        assert exc_info.value.exit_code == ExitCode.RESTORE_FAILED
        assert controller.state is RestoreState.FAILED
        assert len(volumes.restored) == 1
        assert volumes.restored[0].name.startswith("docker-compose.yml.backup.")


class TestWalSegments:
    """WAL fetched segment by segment from an archive prefix."""

    def _manifest(self):
        return json.dumps(
            {"WAL-Ranges": [{"Timeline": 1, "Start-LSN": "0/2000028", "End-LSN": "0/4000100"}]}
        ).encode()

    @pytest.mark.asyncio
    async def test_missing_segments_are_reported(self, make_request, lifecycle, volumes, store, probe, base_tar):
        store.add(f"{GENERATION}/base.tar.gz", base_tar)
        store.add(f"{GENERATION}/backup_manifest", self._manifest())
        store.add("archive/wal/000000010000000000000002.gz", gzip.compress(b"seg2"))
        store.add("archive/wal/000000010000000000000003", b"seg3")
        request = make_request(override_volume=True, wal_archive_prefix="archive/wal/")

        result = await _controller(request, lifecycle, volumes, store, probe).run()

        pg_wal = volumes.root / "pgdata" / "pg_wal"
        assert (pg_wal / "000000010000000000000002").read_bytes() == b"seg2"
        assert (pg_wal / "000000010000000000000003").read_bytes() == b"seg3"
        assert result.missing_wal_segments == ["000000010000000000000004"]
        assert result.state == "completed"

    @pytest.mark.asyncio
    async def test_wal_prefix_without_backup_manifest(
        self, make_request, lifecycle, volumes, store, probe, base_tar
    ):
        live_file = volumes.root / "pgdata" / "LIVE_DATA"
        live_file.write_text("keep me")
        store.add(f"{GENERATION}/base.tar.gz", base_tar)
        store.add("archive/wal/000000010000000000000002.gz", gzip.compress(b"seg2"))
        request = make_request(override_volume=True, wal_archive_prefix="archive/wal/")

        with pytest.raises(BackupNotFoundError, match="backup_manifest"):
            await _controller(request, lifecycle, volumes, store, probe).run()

        assert lifecycle.actions == []
        assert live_file.read_text() == "keep me"
        assert sorted(p.name for p in live_file.parent.iterdir()) == ["LIVE_DATA"]

    @pytest.mark.asyncio
    async def test_wal_range_across_log_boundary_fails_before_stop(
        self, make_request, lifecycle, volumes, store, probe, base_tar, staging
    ):
        live_file = volumes.root / "pgdata" / "LIVE_DATA"
        live_file.write_text("keep me")
        manifest = json.dumps(
            {"WAL-Ranges": [{"Timeline": 1, "Start-LSN": "0/FF000028", "End-LSN": "1/01000100"}]}
        ).encode()
        store.add(f"{GENERATION}/base.tar.gz", base_tar)
        store.add(f"{GENERATION}/backup_manifest", manifest)
        request = make_request(override_volume=True, wal_archive_prefix="archive/wal/")
        controller = _controller(request, lifecycle, volumes, store, probe)

        with pytest.raises(InvalidRangeError):
            await controller.run()

        assert lifecycle.actions == []
        assert live_file.read_text() == "keep me"
        assert list(staging.iterdir()) == []
        assert controller.state is RestoreState.FAILED

    @pytest.mark.asyncio
    async def test_wal_range_resolved_in_preflight(self, make_request, lifecycle, volumes, store, probe, base_tar):
        store.add(f"{GENERATION}/base.tar.gz", base_tar)
        store.add(f"{GENERATION}/backup_manifest", self._manifest())
        request = make_request(override_volume=True, wal_archive_prefix="archive/wal/")
        controller = _controller(request, lifecycle, volumes, store, probe)

        await controller.preflight()

        assert controller.wal_range.segment_names() == [
            "000000010000000000000002",
            "000000010000000000000003",
            "000000010000000000000004",
        ]
        assert lifecycle.calls == []


class TestStateMachine:
    """Test suite for restore state transitions."""

    def test_illegal_transition(self, make_request):
        controller = RestoreModeController(make_request(standby=True))

        with pytest.raises(InvalidStateTransitionError):
            controller._transition(RestoreState.COMPLETED)

    def test_terminal_states(self, make_request):
        controller = RestoreModeController(make_request(standby=True))
        controller._transition(RestoreState.STANDBY)
        controller._transition(RestoreState.COMPLETED)

        with pytest.raises(InvalidStateTransitionError):
            controller._transition(RestoreState.FAILED)
