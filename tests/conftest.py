"""Pytest configuration and fixtures."""

import io
import os
import tarfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from pg_backctl.exceptions import StorageError, UnsafeVolumeError
from pg_backctl.schemas.backup import ObjectInfo
from pg_backctl.services.object_store import ObjectStore
from pg_backctl.services.service_lifecycle import ServiceLifecycle

GIB = 1024**3

POSTGRESQL_CONF_SAMPLE = (
    "listen_addresses = '*'\n"
    "#archive_command = ''\t\t# command to use to archive a WAL file\n"
    "#restore_command = ''\t\t# command to use to restore an archived WAL file\n"
    "max_connections = 100\n"
)

WAL_SEGMENT = "000000010000000000000002"


def make_tar(files: Dict[str, bytes], mode: str = "w:gz") -> bytes:
    """Build an in-memory tar archive from {member name: content}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o600
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def base_archive(mode: str = "w:gz") -> bytes:
    return make_tar(
        {
            "PG_VERSION": b"16\n",
            "postgresql.conf": POSTGRESQL_CONF_SAMPLE.encode(),
            "global/pg_control": b"\x00" * 64,
        },
        mode,
    )


def wal_archive(mode: str = "w:gz") -> bytes:
    return make_tar({WAL_SEGMENT: b"\x01" * 128}, mode)


class InMemoryObjectStore(ObjectStore):
    """Object store keeping objects in a dict; records deletes."""

    def __init__(self):
        self.objects: Dict[str, tuple[bytes, datetime]] = {}
        self.deleted: List[str] = []
        self.failing_prefixes: set[str] = set()
        self.list_calls: List[str] = []

    def add(self, key: str, data: bytes = b"x", last_modified: Optional[datetime] = None) -> None:
        self.objects[key] = (data, last_modified or datetime(2025, 1, 1, tzinfo=UTC))

    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        self.list_calls.append(prefix)
        return [
            ObjectInfo(key=key, last_modified=modified, size=len(data))
            for key, (data, modified) in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    async def get(self, key: str, destination: Path) -> Path:
        if key not in self.objects:
            raise StorageError(f"Object not found: {key}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.objects[key][0])
        return destination

    async def put(self, source: Path, key: str) -> None:
        self.add(key, Path(source).read_bytes(), datetime.now(UTC))

    async def delete(self, keys: List[str]) -> None:
        for key in keys:
            if any(key.startswith(prefix) for prefix in self.failing_prefixes):
                raise StorageError(f"Access denied: {key}")
        for key in keys:
            self.objects.pop(key, None)
            self.deleted.append(key)


class RecordingLifecycle(ServiceLifecycle):
    """ServiceLifecycle fake recording every call in order."""

    def __init__(self, exec_outputs: Optional[Dict[str, str]] = None, copy_out_files: Optional[Dict[str, bytes]] = None):
        self.calls: List[tuple] = []
        self.exec_outputs = exec_outputs or {}
        self.copy_out_files = copy_out_files or {}
        self.fail_on: Optional[str] = None

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self.fail_on and call[0] == self.fail_on:
            from pg_backctl.exceptions import CommandFailedError

            raise CommandFailedError(["docker", "compose", call[0]], 1, "boom")

    @property
    def actions(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def stop(self) -> None:
        self._record("stop")

    async def start(self) -> None:
        self._record("start")

    async def restart(self) -> None:
        self._record("restart")

    async def exec_in_service(self, args, env=None) -> str:
        self._record("exec", list(args), env)
        return self.exec_outputs.get(args[0], "")

    async def copy_into_service(self, source: Path, destination: str) -> None:
        self._record("copy_into", Path(source).name, destination)

    async def copy_from_service(self, source: str, destination: Path) -> None:
        self._record("copy_from", source, str(destination))
        for name, content in self.copy_out_files.items():
            (Path(destination) / name).write_bytes(content)


class FakeVolumeManager:
    """Volume manager mapping volume names to directories under tmp_path."""

    def __init__(self, root: Path, existing: tuple = ("pgdata",)):
        self.root = root
        self.existing = set(existing)
        self.rewrites: List[tuple] = []
        self.restored: List[Path] = []
        for name in existing:
            (root / name).mkdir(parents=True, exist_ok=True)

    async def require(self, volume_name: str) -> str:
        if volume_name not in self.existing:
            raise UnsafeVolumeError(f"Volume {volume_name} does not exist")
        return volume_name

    async def mountpoint(self, volume_name: str) -> Path:
        if volume_name not in self.existing:
            raise UnsafeVolumeError(f"Volume {volume_name} does not exist")
        return self.root / volume_name

    def rewrite_service_volume(self, service_name: str, old_name: str, new_name: str) -> Path:
        self.rewrites.append((service_name, old_name, new_name))
        # Compose creates the volume on the next start
        self.existing.add(new_name)
        (self.root / new_name).mkdir(parents=True, exist_ok=True)
        return self.root / "docker-compose.yml.backup.20250101-000000"

    def restore_compose_file(self, backup_path: Path) -> None:
        self.restored.append(backup_path)


class FakeProbe:
    """FilesystemProbe with fixed answers."""

    def __init__(self, available_bytes: int = 100 * GIB, size_bytes: int = 1024):
        self.available_bytes = available_bytes
        self.size_bytes = size_bytes
        self.probed: List[Path] = []

    def size_of(self, path: Path) -> int:
        return self.size_bytes

    def available_space(self, path: Path) -> int:
        self.probed.append(Path(path))
        return self.available_bytes


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def lifecycle():
    return RecordingLifecycle()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def volumes(tmp_path):
    return FakeVolumeManager(tmp_path / "volumes")


@pytest.fixture
def compose_file(tmp_path):
    path = tmp_path / "docker-compose.yml"
    path.write_text(
        "services:\n"
        "  db:\n"
        "    image: postgres:16\n"
        "    volumes:\n"
        "      - pgdata:/var/lib/postgresql/data\n"
        "volumes:\n"
        "  pgdata:\n"
    )
    return path


@pytest.fixture
def owner():
    """uid:gid of the test process, so chown succeeds without root."""
    return f"{os.getuid()}:{os.getgid()}"


@pytest.fixture
def make_probe():
    """Factory for FakeProbe with custom free space (GiB) and dataset size (bytes)."""

    def _make(available_gb: int = 100, size_bytes: int = 1024) -> FakeProbe:
        return FakeProbe(available_bytes=available_gb * GIB, size_bytes=size_bytes)

    return _make


@pytest.fixture
def tar_builder():
    return make_tar


@pytest.fixture
def base_tar():
    return base_archive()


@pytest.fixture
def wal_tar():
    return wal_archive()


@pytest.fixture
def local_backup(tmp_path, base_tar, wal_tar):
    """A downloaded backup generation folder on the local filesystem."""
    folder = tmp_path / "backup" / "20250101T000000"
    folder.mkdir(parents=True)
    (folder / "base.tar.gz").write_bytes(base_tar)
    (folder / "pg_wal.tar.gz").write_bytes(wal_tar)
    return folder
