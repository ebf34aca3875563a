"""Materialise a base backup into a PostgreSQL data directory.

All functions operate on a host path (the volume mountpoint) and block;
callers run them through ``asyncio.to_thread``.
"""

import bz2
import gzip
import logging
import os
import re
import shutil
import tarfile
from pathlib import Path

from pg_backctl.exceptions import RestoreFailedError

logger = logging.getLogger(__name__)

RECOVERY_SIGNAL = "recovery.signal"
STANDBY_SIGNAL = "standby.signal"
POSTGRESQL_CONF = "postgresql.conf"
DEFAULT_RESTORE_COMMAND = "cp /var/lib/postgresql/data/pg_wal/%f %p"

_ACTIVE_RESTORE_COMMAND = re.compile(r"^\s*restore_command\s*=", re.MULTILINE)
_TEMPLATE_RESTORE_COMMAND = re.compile(r"^#\s*restore_command\s*=\s*''.*$", re.MULTILINE)


def wipe(data_dir: Path) -> None:
    """Remove everything inside ``data_dir`` but keep the directory itself."""
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    removed = 0
    for child in data_dir.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        removed += 1
    logger.info("Cleared %d entries from %s", removed, data_dir)


def extract_archive(archive: Path, destination: Path) -> int:
    """Extract a tar archive (plain, gzip or bzip2) into ``destination``.

    Returns:
        Number of members extracted

    Raises:
        RestoreFailedError: If the archive cannot be read
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            members = tar.getmembers()
            tar.extractall(destination, filter="tar")
    except (tarfile.TarError, OSError) as e:
        raise RestoreFailedError(f"Failed to extract {archive}: {e}")
    logger.info("Extracted %d entries from %s into %s", len(members), archive.name, destination)
    return len(members)


def extract_base(archive: Path, data_dir: Path) -> int:
    return extract_archive(archive, data_dir)


def extract_wal(archive: Path, data_dir: Path) -> int:
    """Extract a ``pg_wal.tar.*`` archive into ``<data_dir>/pg_wal``."""
    return extract_archive(archive, Path(data_dir) / "pg_wal")


def decompress_segment(source: Path, wal_dir: Path, segment: str) -> Path:
    """Write WAL segment ``segment`` into ``wal_dir`` from a .gz, .bz2 or raw file."""
    wal_dir = Path(wal_dir)
    wal_dir.mkdir(parents=True, exist_ok=True)
    target = wal_dir / segment

    if source.suffix == ".gz":
        opener = gzip.open
    elif source.suffix == ".bz2":
        opener = bz2.open
    else:
        shutil.copyfile(source, target)
        return target

    try:
        with opener(source, "rb") as src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except (OSError, EOFError) as e:
        raise RestoreFailedError(f"Failed to decompress WAL segment {source.name}: {e}")
    return target


def write_recovery_signal(data_dir: Path, standby: bool = False) -> list[Path]:
    """Create ``recovery.signal`` (and ``standby.signal`` for a standby)."""
    names = [RECOVERY_SIGNAL, STANDBY_SIGNAL] if standby else [RECOVERY_SIGNAL]
    written = []
    for name in names:
        path = Path(data_dir) / name
        path.touch()
        written.append(path)
    logger.info("Wrote recovery marker(s): %s", ", ".join(names))
    return written


def set_restore_command(data_dir: Path, command: str = DEFAULT_RESTORE_COMMAND) -> bool:
    """Ensure ``postgresql.conf`` carries exactly one active restore_command.

    The commented template line shipped with PostgreSQL is replaced when
    present, otherwise the directive is appended. An existing active
    directive is left alone.

    Returns:
        True when the file was changed
    """
    conf_path = Path(data_dir) / POSTGRESQL_CONF
    content = conf_path.read_text(encoding="utf-8") if conf_path.exists() else ""
    directive = f"restore_command = '{command}'"

    if _ACTIVE_RESTORE_COMMAND.search(content):
        logger.info("restore_command already set in %s, leaving it", conf_path)
        return False

    if _TEMPLATE_RESTORE_COMMAND.search(content):
        content = _TEMPLATE_RESTORE_COMMAND.sub(lambda _m: directive, content, count=1)
    else:
        if content and not content.endswith("\n"):
            content += "\n"
        content += f"{directive}\n"

    conf_path.write_text(content, encoding="utf-8")
    logger.info("Set restore_command in %s", conf_path)
    return True


def chown_recursive(path: Path, uid: int, gid: int) -> None:
    """Give ``path`` and everything below it to ``uid:gid`` (symlinks not followed)."""
    os.chown(path, uid, gid, follow_symlinks=False)
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            os.chown(os.path.join(dirpath, name), uid, gid, follow_symlinks=False)
    logger.info("Changed ownership of %s to %d:%d", path, uid, gid)
