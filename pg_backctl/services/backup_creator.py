"""Physical backups with pg_basebackup, run inside the database service."""

import asyncio
import bz2
import logging
import re
import shutil
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from pg_backctl.exceptions import (
    BackupFailedError,
    ConfigurationError,
    ExitCode,
    MissingArgumentError,
    MissingCredentialError,
    PgBackctlError,
    UsageConflictError,
)
from pg_backctl.schemas.backup import BackupResult, RetentionResult
from pg_backctl.schemas.request import BackupRequest, S3Location
from pg_backctl.services import checksum_manager, disk_space, retention
from pg_backctl.services.disk_space import FilesystemProbe, LocalFilesystemProbe
from pg_backctl.services.object_store import (
    LocalObjectStore,
    ObjectStore,
    S3ObjectStore,
    folder_prefix,
    join_key,
)
from pg_backctl.services.service_lifecycle import (
    ComposeServiceLifecycle,
    ServiceLifecycle,
    require_commands,
)
from pg_backctl.utils.cleanup import CleanupRegistry
from pg_backctl.utils.error_handling import log_and_continue
from pg_backctl.utils.file_operations import remove_tree
from pg_backctl.utils.validators import (
    ValidationError,
    build_pg_basebackup_command,
    validate_compose_file_path,
    validate_compression,
    validate_service_name,
)

logger = logging.getLogger(__name__)

CONTAINER_BACKUP_DIR = "/tmp/backup"
LABEL_FORMAT = "%Y%m%dT%H%M%S"
BZIP2_LEVEL = 9

_LABEL_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def generate_label(now: Optional[datetime] = None) -> str:
    """Default backup label: UTC timestamp like 20250101T000000."""
    return (now or datetime.now(UTC)).strftime(LABEL_FORMAT)


def compress_tar_bzip2(tar_path: Path) -> Path:
    """Replace ``x.tar`` with ``x.tar.bz2``; the partial output is removed on failure."""
    bz2_path = tar_path.with_name(f"{tar_path.name}.bz2")
    try:
        with open(tar_path, "rb") as src, bz2.open(bz2_path, "wb", compresslevel=BZIP2_LEVEL) as dst:
            shutil.copyfileobj(src, dst)
    except OSError as e:
        bz2_path.unlink(missing_ok=True)
        raise BackupFailedError(f"Compression failed for {tar_path.name}: {e}")
    tar_path.unlink()
    return bz2_path


class BackupCreator:
    """Creates one backup generation and applies retention afterwards."""

    def __init__(
        self,
        request: BackupRequest,
        lifecycle: Optional[ServiceLifecycle] = None,
        store: Optional[ObjectStore] = None,
        probe: Optional[FilesystemProbe] = None,
    ):
        self.request = request
        self._lifecycle = lifecycle
        self._store = store
        self.probe = probe or LocalFilesystemProbe()
        self.cleanup = CleanupRegistry()

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
                self._store = LocalObjectStore(self.request.backup_path)
        return self._store

    @property
    def db_host(self) -> str:
        return self.request.db_host or self.request.service

    def _check_request(self) -> None:
        request = self.request

        if not request.service or not request.compose_file:
            raise MissingArgumentError("Backup requires service and compose_file")
        validate_service_name(request.service)
        try:
            validate_compose_file_path(str(request.compose_file), strict=True)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid compose file {request.compose_file}: {e}") from e

        if request.backup_path and request.s3_url:
            raise UsageConflictError(
                "Local backup path and S3 destination are mutually exclusive. Choose one destination."
            )
        if not request.backup_path and not request.s3_url:
            raise MissingArgumentError("A backup destination is required: local path or S3 URL")

        if request.uses_object_store:
            if not request.credentials.complete:
                raise MissingCredentialError(
                    "Missing AWS credentials. Set AWS_ACCESS_KEY, AWS_SECRET_KEY and AWS_REGION"
                )
            if not request.s3_endpoint:
                raise MissingArgumentError("S3 backup requires both an S3 URL and an endpoint")

        validate_compression(request.compression)
        if request.label is not None and not _LABEL_RE.match(request.label):
            raise ValidationError(f"Invalid backup label: {request.label}")

    async def _measure_dataset(self) -> Optional[int]:
        """Size of the live data directory, or None when it cannot be measured."""
        try:
            output = await self.lifecycle.exec_in_service(["du", "-sb", self.request.data_directory])
            return int(output.split()[0])
        except (PgBackctlError, ValueError, IndexError) as e:
            log_and_continue(logger, e, "Could not measure database size")
            return None

    async def preflight(self) -> Path:
        """Validate the request and check disk space at the destination.

        Returns:
            Directory that receives the backup files (or their staging parent)
        """
        self._check_request()

        if self.request.backup_path:
            target = Path(self.request.backup_path)
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise UsageConflictError(f"Cannot create backup directory {target}: {e}")
        else:
            target = Path(self.request.staging_root or tempfile.gettempdir())

        size = await self._measure_dataset()
        required = disk_space.required_gb(size, self.request.disk_margin_gb)
        disk_space.check(target, required, probe=self.probe)
        return target

    async def run(self) -> BackupResult:
        start_time = time.monotonic()
        label = self.request.label or generate_label()
        try:
            target = await self.preflight()
            result = await self._run_backup(target, label, start_time)
        except PgBackctlError as e:
            logger.error(
                "Backup failed: %s",
                e,
                extra={"event_type": "backup_failed", "backup_label": label, "exit_code": int(e.exit_code)},
            )
            if e.exit_code == ExitCode.UNKNOWN:
                raise BackupFailedError(str(e)) from e
            raise
        except Exception as e:
            logger.error("Backup failed: %s", e, extra={"event_type": "backup_failed", "backup_label": label})
            raise BackupFailedError(f"Backup failed: {e}") from e
        finally:
            await self.cleanup.run_all()
        return result

    async def _run_backup(self, target: Path, label: str, start_time: float) -> BackupResult:
        request = self.request
        logger.info(
            "Starting backup from %s:%s as user %s (label %s, compression %s)",
            self.db_host,
            request.db_port,
            request.db_user,
            label,
            request.compression,
            extra={"event_type": "backup_started", "backup_label": label},
        )

        staging_action = None
        if request.uses_object_store:
            staging = Path(tempfile.mkdtemp(prefix="pg_backctl-backup-", dir=target))
            staging_action = self.cleanup.register(
                f"remove staging directory {staging}", lambda: remove_tree(staging)
            )
            backup_dir = staging / label
        else:
            backup_dir = target / label
            if backup_dir.exists() and any(backup_dir.iterdir()):
                raise UsageConflictError(f"Backup {backup_dir} already exists")
        backup_dir.mkdir(parents=True, exist_ok=True)

        await self._create_from_service(backup_dir)

        if request.compression == "bzip2":
            for tar_path in sorted(backup_dir.glob("*.tar")):
                logger.info("Compressing %s with bzip2", tar_path.name)
                await asyncio.to_thread(compress_tar_bzip2, tar_path)

        manifest = await asyncio.to_thread(checksum_manager.generate, backup_dir, label)
        await asyncio.to_thread(checksum_manager.write, backup_dir, manifest)

        size_bytes = await asyncio.to_thread(self.probe.size_of, backup_dir)
        file_count = sum(1 for path in backup_dir.rglob("*") if path.is_file())

        if request.uses_object_store:
            location = S3Location.from_url(request.s3_url)
            await self.store.put_recursive(backup_dir, join_key(location.prefix, label))
            destination = f"{request.s3_url.rstrip('/')}/{label}"
            await self.cleanup.run(staging_action)
            retention_prefix = folder_prefix(location.prefix)
        else:
            destination = str(backup_dir)
            retention_prefix = ""

        retention_result = await self._apply_retention(retention_prefix)

        duration = time.monotonic() - start_time
        logger.info(
            "Backup completed successfully: %s (%d bytes, %d files, %.1fs)",
            destination,
            size_bytes,
            file_count,
            duration,
            extra={
                "event_type": "backup_completed",
                "backup_label": label,
                "duration_seconds": round(duration, 1),
                "backup_size_bytes": size_bytes,
                "file_count": file_count,
                "compression": request.compression,
                "destination": destination,
                "status": "success",
            },
        )
        return BackupResult(
            label=label,
            destination=destination,
            compression=request.compression,
            file_count=file_count,
            size_bytes=size_bytes,
            duration_seconds=duration,
            retention=retention_result,
        )

    async def _create_from_service(self, backup_dir: Path) -> None:
        request = self.request
        lifecycle = self.lifecycle

        await lifecycle.exec_in_service(["mkdir", "-p", CONTAINER_BACKUP_DIR])
        container_cleanup = self.cleanup.register(
            f"remove {CONTAINER_BACKUP_DIR} in {request.service}",
            lambda: lifecycle.exec_in_service(["rm", "-rf", CONTAINER_BACKUP_DIR]),
        )

        logger.info("Running pg_basebackup...")
        command = build_pg_basebackup_command(
            self.db_host,
            request.db_port,
            request.db_user,
            CONTAINER_BACKUP_DIR,
            compression=request.compression,
        )
        env = {"PGPASSWORD": request.db_password} if request.db_password else None
        await lifecycle.exec_in_service(command, env=env)

        await lifecycle.copy_from_service(f"{CONTAINER_BACKUP_DIR}/.", backup_dir)
        await self.cleanup.run(container_cleanup)
        logger.info("Backup files copied to %s", backup_dir)

    async def _apply_retention(self, prefix: str) -> Optional[RetentionResult]:
        policy = self.request.retention
        if policy.is_noop:
            logger.info("No retention policy configured, keeping all backups")
            return None
        try:
            return await retention.prune(self.store, prefix, policy)
        except PgBackctlError as e:
            log_and_continue(logger, e, "Retention pass failed, backup kept", log_level="error")
            return None
