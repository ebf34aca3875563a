"""Free-space preflight run before any destructive or space-consuming step."""

import logging
import math
import os
import shutil
from pathlib import Path
from typing import Optional, Protocol

from pg_backctl.exceptions import InsufficientDiskSpaceError

logger = logging.getLogger(__name__)

GIB = 1024**3
FALLBACK_REQUIRED_GB = 5
DEFAULT_MARGIN_GB = 2


class FilesystemProbe(Protocol):
    """Measures dataset size and free space; swapped out in tests."""

    def size_of(self, path: Path) -> int: ...

    def available_space(self, path: Path) -> int: ...


class LocalFilesystemProbe:
    """Probe backed by the local filesystem."""

    def size_of(self, path: Path) -> int:
        """Total size in bytes of the files under ``path`` (symlinks not followed)."""
        path = Path(path)
        if path.is_file():
            return path.lstat().st_size

        total = 0
        for dirpath, _dirnames, filenames in os.walk(path):
            for filename in filenames:
                try:
                    total += os.lstat(os.path.join(dirpath, filename)).st_size
                except OSError as e:
                    logger.debug("Skipping %s while measuring size: %s", filename, e)
        return total

    def available_space(self, path: Path) -> int:
        return shutil.disk_usage(_nearest_existing(Path(path))).free


def _nearest_existing(path: Path) -> Path:
    """Closest existing ancestor of ``path`` (the path itself when present)."""
    candidate = path.absolute()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


def required_gb(
    dataset_size_bytes: Optional[int],
    margin_gb: int = DEFAULT_MARGIN_GB,
    fallback_gb: int = FALLBACK_REQUIRED_GB,
) -> int:
    """Whole GiB needed to hold the dataset plus a safety margin.

    When the dataset size cannot be measured the fallback minimum is used.
    """
    if dataset_size_bytes is None:
        logger.warning(
            "Could not determine backup size, requiring fallback minimum of %dGB",
            fallback_gb,
        )
        return fallback_gb
    return math.ceil(dataset_size_bytes / GIB) + margin_gb


def check(
    target_dir: Path,
    required: int,
    probe: Optional[FilesystemProbe] = None,
) -> int:
    """Ensure ``target_dir`` has at least ``required`` GiB free.

    Returns:
        Available GiB (rounded down)

    Raises:
        InsufficientDiskSpaceError: When available < required
    """
    probe = probe or LocalFilesystemProbe()
    available = probe.available_space(Path(target_dir)) // GIB

    if available < required:
        logger.error(
            "Insufficient disk space in %s: available %dGB, required %dGB",
            target_dir,
            available,
            required,
        )
        raise InsufficientDiskSpaceError(str(target_dir), available, required)

    logger.info("Disk space check passed for %s: available %dGB, required %dGB", target_dir, available, required)
    return available
