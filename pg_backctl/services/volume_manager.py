"""Docker volume lookup and compose volume rewrites."""

import asyncio
import logging
import os
import re
from io import StringIO
from pathlib import Path
from typing import Any, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from pg_backctl.exceptions import ConfigurationError, UnsafeVolumeError
from pg_backctl.utils.file_operations import (
    atomic_file_write,
    create_timestamped_backup,
    restore_from_backup,
)
from pg_backctl.utils.validators import validate_service_name, validate_volume_name

logger = logging.getLogger(__name__)

# Initialize ruamel.yaml for round-trip preservation
yaml = YAML()
yaml.preserve_quotes = True
yaml.width = 4096  # Prevent line wrapping
yaml.indent(mapping=2, sequence=2, offset=0)


def compose_project_name(compose_file: Path, compose_project: Optional[str] = None) -> str:
    """Project name Docker Compose uses to prefix volume names.

    Defaults to the compose file's directory name, normalised the way
    Compose does it (lower case, only ``[a-z0-9_-]``).
    """
    name = compose_project or Path(compose_file).resolve().parent.name
    return re.sub(r"[^a-z0-9_-]", "", name.lower())


def _replace_volume_reference(entry: Any, old_name: str, new_name: str) -> tuple[Any, bool]:
    """Swap the volume source in one service ``volumes`` entry.

    Handles short syntax (``pgdata:/var/lib/postgresql/data[:mode]``) and
    long syntax (mapping with ``source``).
    """
    if isinstance(entry, str):
        source, sep, rest = entry.partition(":")
        if sep and source == old_name:
            return f"{new_name}:{rest}", True
        return entry, False

    if hasattr(entry, "get") and entry.get("source") == old_name:
        entry["source"] = new_name
        return entry, True

    return entry, False


class VolumeManager:
    """Resolves compose volumes to Docker volumes and host paths."""

    def __init__(
        self,
        compose_file: Path,
        compose_project: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.compose_file = Path(compose_file)
        self.project = compose_project_name(self.compose_file, compose_project)
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            docker_host = os.environ.get("DOCKER_HOST", "unix:///var/run/docker.sock")
            self._client = docker.DockerClient(base_url=docker_host)
        return self._client

    def full_volume_name(self, volume_name: str) -> str:
        """Docker volume name for a compose volume (``<project>_<name>``)."""
        return f"{self.project}_{validate_volume_name(volume_name)}"

    async def _get_volume(self, volume_name: str) -> Optional[Any]:
        # Project-prefixed name first, then the bare name for external volumes
        for candidate in (self.full_volume_name(volume_name), volume_name):
            try:
                return await asyncio.to_thread(self.client.volumes.get, candidate)
            except NotFound:
                continue
            except (APIError, DockerException) as e:
                raise UnsafeVolumeError(f"Cannot inspect volume {candidate}: {e}")
        return None

    async def require(self, volume_name: str) -> str:
        """Return the Docker name of an existing volume.

        Raises:
            UnsafeVolumeError: If the volume does not exist
        """
        volume = await self._get_volume(volume_name)
        if volume is None:
            raise UnsafeVolumeError(
                f"Volume {volume_name} ({self.full_volume_name(volume_name)}) does not exist"
            )
        logger.info("Found volume %s", volume.name)
        return volume.name

    async def mountpoint(self, volume_name: str) -> Path:
        """Host path backing a volume."""
        volume = await self._get_volume(volume_name)
        if volume is None:
            raise UnsafeVolumeError(f"Volume {volume_name} does not exist")
        mountpoint = volume.attrs.get("Mountpoint")
        if not mountpoint:
            raise UnsafeVolumeError(f"Volume {volume.name} has no mountpoint")
        return Path(mountpoint)

    def rewrite_service_volume(self, service_name: str, old_name: str, new_name: str) -> Path:
        """Point ``service_name`` at volume ``new_name`` instead of ``old_name``.

        A timestamped copy of the compose file is taken first and returned so
        the caller can put the original back. The new volume is declared in
        the top-level ``volumes`` mapping; the old declaration stays.
        """
        validate_service_name(service_name)
        validate_volume_name(old_name)
        validate_volume_name(new_name)

        try:
            with open(self.compose_file, "r") as f:
                compose_data = yaml.load(f)
        except (OSError, YAMLError) as e:
            raise ConfigurationError(f"Cannot read compose file {self.compose_file}: {e}")

        services = (compose_data or {}).get("services") or {}
        if service_name not in services:
            raise ConfigurationError(f"Service {service_name} not found in {self.compose_file}")

        service = services[service_name]
        volumes = service.get("volumes") or []
        replaced = False
        for index, entry in enumerate(volumes):
            new_entry, changed = _replace_volume_reference(entry, old_name, new_name)
            if changed:
                volumes[index] = new_entry
                replaced = True

        if not replaced:
            raise UnsafeVolumeError(
                f"Service {service_name} does not mount volume {old_name} in {self.compose_file}"
            )

        top_level = compose_data.get("volumes")
        if top_level is not None and new_name not in top_level:
            top_level[new_name] = None

        backup_path = create_timestamped_backup(self.compose_file)

        buffer = StringIO()
        yaml.dump(compose_data, buffer)
        atomic_file_write(self.compose_file, buffer.getvalue())

        logger.info(
            "Updated %s in %s: volume %s -> %s",
            service_name,
            self.compose_file,
            old_name,
            new_name,
        )
        return backup_path

    def restore_compose_file(self, backup_path: Path) -> None:
        """Put the compose file back from its timestamped copy."""
        restore_from_backup(backup_path, self.compose_file)
