"""Restore pipeline driven by a small mode state machine.

A restore runs in exactly one of three modes:

- standby: the restored cluster stays in recovery, tailing WAL
- override_volume: the existing data volume is wiped and restored in place
- new_volume: the service is pointed at a fresh volume which receives the
  restore; the old volume and compose definition are left untouched

Everything that can be checked without side effects (mode flags, source,
credentials, identifiers, config files, backup location, disk space) is
checked before the service is stopped.
"""

import asyncio
import logging
import tempfile
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pg_backctl.exceptions import (
    BackupNotFoundError,
    ConfigurationError,
    ExitCode,
    InvalidStateTransitionError,
    MissingArgumentError,
    MissingCredentialError,
    ModeConflictError,
    PgBackctlError,
    RestoreFailedError,
    UsageConflictError,
)
from pg_backctl.schemas.backup import (
    BACKUP_MANIFEST_FILE,
    BASE_ARCHIVES,
    WAL_ARCHIVES,
    BackupDescriptor,
    RestoreResult,
    WalSegmentRange,
)
from pg_backctl.schemas.request import RestoreMode, RestoreRequest, S3Location
from pg_backctl.services import data_directory, disk_space
from pg_backctl.services.backup_locator import BackupLocator
from pg_backctl.services.disk_space import FilesystemProbe, LocalFilesystemProbe
from pg_backctl.services.object_store import LocalObjectStore, ObjectStore, S3ObjectStore, folder_prefix
from pg_backctl.services.service_lifecycle import (
    ComposeServiceLifecycle,
    ServiceLifecycle,
    require_commands,
)
from pg_backctl.services.volume_manager import VolumeManager
from pg_backctl.services.wal_range import find_segment_key, range_from_backup_manifest
from pg_backctl.utils.cleanup import CleanupRegistry
from pg_backctl.utils.error_handling import log_and_continue
from pg_backctl.utils.file_operations import remove_tree
from pg_backctl.utils.validators import (
    ValidationError,
    build_psql_file_command,
    validate_compose_file_path,
    validate_service_name,
    validate_volume_name,
)

logger = logging.getLogger(__name__)


class RestoreState(str, Enum):
    UNSELECTED = "unselected"
    STANDBY = "standby"
    OVERRIDE_VOLUME = "override_volume"
    NEW_VOLUME = "new_volume"
    COMPLETED = "completed"
    FAILED = "failed"


_MODE_STATES = {
    RestoreMode.STANDBY: RestoreState.STANDBY,
    RestoreMode.OVERRIDE_VOLUME: RestoreState.OVERRIDE_VOLUME,
    RestoreMode.NEW_VOLUME: RestoreState.NEW_VOLUME,
}

_TRANSITIONS = {
    RestoreState.UNSELECTED: {
        RestoreState.STANDBY,
        RestoreState.OVERRIDE_VOLUME,
        RestoreState.NEW_VOLUME,
        RestoreState.FAILED,
    },
    RestoreState.STANDBY: {RestoreState.COMPLETED, RestoreState.FAILED},
    RestoreState.OVERRIDE_VOLUME: {RestoreState.COMPLETED, RestoreState.FAILED},
    RestoreState.NEW_VOLUME: {RestoreState.COMPLETED, RestoreState.FAILED},
    RestoreState.COMPLETED: set(),
    RestoreState.FAILED: set(),
}

INIT_SCRIPT_SUFFIXES = (".sql", ".sh")
CONTAINER_TMP = "/tmp"


def select_mode(request: RestoreRequest) -> RestoreMode:
    """Pick the single active restore mode.

    Raises:
        ModeConflictError: More than one mode directive is active
        MissingArgumentError: No mode directive is active
    """
    active = [
        mode
        for mode, enabled in (
            (RestoreMode.STANDBY, request.standby),
            (RestoreMode.OVERRIDE_VOLUME, request.override_volume),
            (RestoreMode.NEW_VOLUME, bool(request.new_volume_name)),
        )
        if enabled
    ]
    if len(active) > 1:
        raise ModeConflictError(
            "Restore modes are mutually exclusive, got: " + ", ".join(m.value for m in active)
        )
    if not active:
        raise MissingArgumentError(
            "A restore mode is required: standby, override volume or new volume name"
        )
    return active[0]


class RestoreModeController:
    """Validates a restore request and runs the restore pipeline."""

    def __init__(
        self,
        request: RestoreRequest,
        lifecycle: Optional[ServiceLifecycle] = None,
        volumes: Optional[VolumeManager] = None,
        store: Optional[ObjectStore] = None,
        probe: Optional[FilesystemProbe] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.request = request
        self._lifecycle = lifecycle
        self._volumes = volumes
        self._store = store
        self.probe = probe or LocalFilesystemProbe()
        self._sleep = sleep
        self.state = RestoreState.UNSELECTED
        self.cleanup = CleanupRegistry()
        self.mode: Optional[RestoreMode] = None
        self.missing_wal_segments: List[str] = []
        self.wal_range: Optional[WalSegmentRange] = None
        self._compose_backup: Optional[Path] = None

    # Collaborators are built lazily so preflight failures never touch Docker

    @property
    def lifecycle(self) -> ServiceLifecycle:
        if self._lifecycle is None:
            require_commands("docker")
            self._lifecycle = ComposeServiceLifecycle(
                self.request.compose_file,
                self.request.service,
                compose_command=self.request.compose_command,
                compose_project=self.request.compose_project,
            )
        return self._lifecycle

    @property
    def volumes(self) -> VolumeManager:
        if self._volumes is None:
            self._volumes = VolumeManager(self.request.compose_file, self.request.compose_project)
        return self._volumes

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            if self.request.uses_object_store:
                location = S3Location.from_url(self.request.s3_url)
                self._store = S3ObjectStore(
                    location.bucket,
                    self.request.credentials,
                    endpoint=self.request.s3_endpoint,
                )
            else:
                self._store = LocalObjectStore(self.request.local_path)
        return self._store

    def _transition(self, target: RestoreState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Illegal restore state transition {self.state.value} -> {target.value}"
            )
        logger.debug("Restore state %s -> %s", self.state.value, target.value)
        self.state = target

    def _fail(self) -> None:
        if self.state not in (RestoreState.FAILED, RestoreState.COMPLETED):
            self._transition(RestoreState.FAILED)

    # Preflight

    def _check_request(self) -> None:
        request = self.request

        if request.local_path and request.s3_url:
            raise UsageConflictError("Local path and S3 source are mutually exclusive")
        if not request.local_path and not request.s3_url:
            raise MissingArgumentError("A backup source is required: local path or S3 URL")

        if request.uses_object_store:
            if not request.credentials.complete:
                raise MissingCredentialError(
                    "S3 restore requires AWS_ACCESS_KEY, AWS_SECRET_KEY and AWS_REGION"
                )
            if not request.s3_endpoint:
                raise MissingArgumentError("S3 restore requires an endpoint URL")
        else:
            local = Path(request.local_path)
            if not any((local / name).is_file() for name in BASE_ARCHIVES):
                raise BackupNotFoundError(f"No base archive ({', '.join(BASE_ARCHIVES)}) in {local}")
            if not any((local / name).is_file() for name in WAL_ARCHIVES):
                raise BackupNotFoundError(f"No WAL archive ({', '.join(WAL_ARCHIVES)}) in {local}")

        for field_name in ("service", "compose_file", "volume_name"):
            if not getattr(request, field_name):
                raise MissingArgumentError(f"Restore requires {field_name}")
        validate_service_name(request.service)
        validate_volume_name(request.volume_name)
        try:
            validate_compose_file_path(str(request.compose_file), strict=True)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid compose file {request.compose_file}: {e}") from e

        if self.mode is RestoreMode.NEW_VOLUME:
            validate_volume_name(request.new_volume_name)
            if request.new_volume_name == request.volume_name:
                raise UsageConflictError(
                    f"New volume name must differ from the existing volume ({request.volume_name})"
                )

        for field_name in ("first_boot_config", "pg_hba_file", "postgresql_conf_file"):
            path = getattr(request, field_name)
            if path is not None and not Path(path).is_file():
                raise ConfigurationError(f"{field_name} not found: {path}")
        if request.init_scripts_dir is not None and not Path(request.init_scripts_dir).is_dir():
            raise ConfigurationError(f"init_scripts_dir not found: {request.init_scripts_dir}")

    def _search_prefix(self) -> str:
        if self.request.search_prefix:
            return self.request.search_prefix
        return folder_prefix(S3Location.from_url(self.request.s3_url).prefix)

    async def _locate(self) -> BackupDescriptor:
        if not self.request.uses_object_store:
            return await BackupLocator(self.store).describe("")

        locator = BackupLocator(self.store)
        location = await locator.locate(self.request.backup_path, self._search_prefix())
        descriptor = await locator.describe(location)
        if descriptor.base_archive is None:
            raise BackupNotFoundError(f"No base archive found in {location}")
        return descriptor

    async def _check_disk_space(self, descriptor: BackupDescriptor) -> None:
        # Estimate is the stored (compressed) generation size plus the margin,
        # checked separately on the target and staging filesystems
        if self.request.uses_object_store:
            size = descriptor.size_bytes or None
        else:
            size = self.probe.size_of(Path(self.request.local_path))
        required = disk_space.required_gb(size, self.request.disk_margin_gb)

        target = await self.volumes.mountpoint(self.request.volume_name)
        disk_space.check(target, required, probe=self.probe)
        if self.request.uses_object_store:
            disk_space.check(self._staging_parent(), required, probe=self.probe)

    def _staging_parent(self) -> Path:
        return Path(self.request.staging_root or tempfile.gettempdir())

    async def _resolve_wal_range(self, descriptor: BackupDescriptor) -> Optional[WalSegmentRange]:
        """WAL range to fetch segment by segment, or None when not needed.

        Only a generation without a WAL archive and a configured archive
        prefix needs one; it comes from the generation's backup_manifest.
        """
        if descriptor.wal_archive or not self.request.wal_archive_prefix:
            return None
        if BACKUP_MANIFEST_FILE not in descriptor.files:
            raise BackupNotFoundError(
                f"Cannot resolve WAL range: {BACKUP_MANIFEST_FILE} missing from {descriptor.location or 'backup'}"
            )

        key = f"{folder_prefix(descriptor.location)}{BACKUP_MANIFEST_FILE}"
        with tempfile.TemporaryDirectory(prefix="pg_backctl-manifest-", dir=self._staging_parent()) as tmp:
            manifest_path = await self.store.get(key, Path(tmp) / BACKUP_MANIFEST_FILE)
            manifest_text = manifest_path.read_text(encoding="utf-8")
        return range_from_backup_manifest(manifest_text, self.request.wal_segment_size)

    async def preflight(self) -> BackupDescriptor:
        """Run every side-effect-free check and resolve the backup to use."""
        self.mode = select_mode(self.request)
        logger.info("Restore mode: %s", self.mode.value)
        self._check_request()
        descriptor = await self._locate()
        self.wal_range = await self._resolve_wal_range(descriptor)
        await self._check_disk_space(descriptor)
        return descriptor

    # Pipeline

    async def run(self) -> RestoreResult:
        """Run preflight then the restore pipeline.

        Any failure moves the controller to FAILED, releases staging
        resources and propagates with its exit code.
        """
        start_time = time.monotonic()
        try:
            descriptor = await self.preflight()
            self._transition(_MODE_STATES[self.mode])
            data_dir = await self._run_pipeline(descriptor)
            self._transition(RestoreState.COMPLETED)
        except PgBackctlError as e:
            self._fail()
            await self._rollback()
            if e.exit_code == ExitCode.UNKNOWN:
                raise RestoreFailedError(str(e)) from e
            raise
        except Exception as e:
            self._fail()
            await self._rollback()
            raise RestoreFailedError(f"Restore failed: {e}") from e
        finally:
            await self.cleanup.run_all()

        duration = time.monotonic() - start_time
        logger.info("Restore completed in %.1fs (mode %s)", duration, self.mode.value)
        return RestoreResult(
            mode=self.mode.value,
            state=self.state.value,
            backup_location=descriptor.location or str(self.request.local_path),
            data_directory=str(data_dir),
            missing_wal_segments=self.missing_wal_segments,
            duration_seconds=duration,
        )

    async def _rollback(self) -> None:
        if self._compose_backup is None:
            return
        try:
            await asyncio.to_thread(self.volumes.restore_compose_file, self._compose_backup)
            logger.info("Compose file restored from %s", self._compose_backup)
        except Exception as e:
            log_and_continue(logger, e, "Could not restore compose file", log_level="error")

    async def _run_pipeline(self, descriptor: BackupDescriptor) -> Path:
        request = self.request

        await self.lifecycle.stop()

        target_volume = request.volume_name
        if self.mode in (RestoreMode.OVERRIDE_VOLUME, RestoreMode.NEW_VOLUME):
            await self.volumes.require(request.volume_name)
        if self.mode is RestoreMode.NEW_VOLUME:
            target_volume = request.new_volume_name
            self._compose_backup = await asyncio.to_thread(
                self.volumes.rewrite_service_volume,
                request.service,
                request.volume_name,
                request.new_volume_name,
            )
            # Start/stop once so compose creates the empty volume
            await self.lifecycle.start()
            await self.lifecycle.stop()

        data_dir = await self.volumes.mountpoint(target_volume)
        await self._materialize(descriptor, data_dir)

        await self.lifecycle.start()
        if request.first_boot_config is not None:
            await self.lifecycle.copy_into_service(
                Path(request.first_boot_config),
                f"{request.data_directory}/{data_directory.POSTGRESQL_CONF}",
            )
            await asyncio.to_thread(data_directory.set_restore_command, data_dir, self._restore_command())
            await self.lifecycle.restart()
        logger.info("Waiting %.0fs for the database to become ready", request.readiness_wait_seconds)
        await self._sleep(request.readiness_wait_seconds)

        if self.mode is not RestoreMode.STANDBY:
            await self._configure_primary()

        return data_dir

    def _restore_command(self) -> str:
        return f"cp {self.request.data_directory}/pg_wal/%f %p"

    async def _materialize(self, descriptor: BackupDescriptor, data_dir: Path) -> None:
        request = self.request

        if request.uses_object_store:
            staging = Path(tempfile.mkdtemp(prefix="pg_backctl-restore-", dir=self._staging_parent()))
            self.cleanup.register(f"remove staging directory {staging}", lambda: remove_tree(staging))
            await self.store.get_recursive(descriptor.location, staging)
        else:
            staging = Path(request.local_path)

        await asyncio.to_thread(data_directory.wipe, data_dir)
        await asyncio.to_thread(data_directory.extract_base, staging / descriptor.base_archive, data_dir)

        if descriptor.wal_archive:
            await asyncio.to_thread(data_directory.extract_wal, staging / descriptor.wal_archive, data_dir)
        elif self.wal_range is not None:
            await self._fetch_wal_segments(self.wal_range, staging, data_dir)
        else:
            logger.warning("Backup has no WAL archive and no WAL archive prefix is configured")

        await asyncio.to_thread(
            data_directory.write_recovery_signal,
            data_dir,
            self.mode is RestoreMode.STANDBY,
        )
        await asyncio.to_thread(data_directory.set_restore_command, data_dir, self._restore_command())
        uid, gid = request.owner_ids
        await asyncio.to_thread(data_directory.chown_recursive, data_dir, uid, gid)

    async def _fetch_wal_segments(self, wal_range: WalSegmentRange, staging: Path, data_dir: Path) -> None:
        keys = [obj.key for obj in await self.store.list(self.request.wal_archive_prefix)]
        wal_dir = data_dir / "pg_wal"
        download_dir = staging / "wal"

        for segment in wal_range.segment_names():
            key = find_segment_key(segment, keys)
            if key is None:
                logger.warning("WAL segment %s not found under %s", segment, self.request.wal_archive_prefix)
                self.missing_wal_segments.append(segment)
                continue
            local = await self.store.get(key, download_dir / key.rsplit("/", 1)[-1])
            await asyncio.to_thread(data_directory.decompress_segment, local, wal_dir, segment)

        logger.info(
            "Fetched %d of %d WAL segments",
            len(wal_range) - len(self.missing_wal_segments),
            len(wal_range),
        )

    async def _configure_primary(self) -> None:
        request = self.request

        if request.pg_hba_file is not None:
            await self.lifecycle.copy_into_service(
                Path(request.pg_hba_file), f"{request.data_directory}/pg_hba.conf"
            )
            await self.lifecycle.exec_in_service(
                ["psql", "-U", request.db_user, "-c", "SELECT pg_reload_conf();"]
            )
            logger.info("Applied pg_hba.conf and reloaded configuration")

        if request.init_scripts_dir is not None:
            await self._run_init_scripts(Path(request.init_scripts_dir))

        if request.postgresql_conf_file is not None:
            await self.lifecycle.copy_into_service(
                Path(request.postgresql_conf_file),
                f"{request.data_directory}/{data_directory.POSTGRESQL_CONF}",
            )
            await self.lifecycle.restart()
            logger.info("Applied postgresql.conf and restarted the service")

    async def _run_init_scripts(self, scripts_dir: Path) -> None:
        scripts = sorted(
            path for path in scripts_dir.iterdir()
            if path.is_file() and path.suffix in INIT_SCRIPT_SUFFIXES
        )
        for script in scripts:
            container_path = f"{CONTAINER_TMP}/{script.name}"
            logger.info("Running init script %s", script.name)
            await self.lifecycle.copy_into_service(script, container_path)
            if script.suffix == ".sql":
                await self.lifecycle.exec_in_service(
                    build_psql_file_command(self.request.db_user, container_path)
                )
            else:
                await self.lifecycle.exec_in_service(["bash", container_path])
            await self.lifecycle.exec_in_service(["rm", "-f", container_path])
