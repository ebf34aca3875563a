"""Safe file operations for compose files and other operator-owned configs.

Every rewrite of an operator file goes through a timestamped backup and an
atomic write, so a failed run can put the original back.
"""

import os
import shutil
from pathlib import Path
from datetime import datetime
import logging
from pg_backctl.exceptions import OperationFailedError
from pg_backctl.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


class FileOperationError(OperationFailedError):
    """Base exception for file operation errors."""

    pass


class BackupError(FileOperationError):
    """Raised when backup creation fails."""

    pass


class AtomicWriteError(FileOperationError):
    """Raised when atomic write fails."""

    pass


def create_timestamped_backup(file_path: Path) -> Path:
    """
    Create a timestamped backup of a file.

    Backup filename format: {original}.backup.{timestamp}
    Example: docker-compose.yml.backup.20250112-134525

    Args:
        file_path: Path to file to backup

    Returns:
        Path: Path to created backup file

    Raises:
        BackupError: If backup creation fails
    """
    try:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup_path = file_path.parent / f"{file_path.name}.backup.{timestamp}"

        shutil.copy2(file_path, backup_path)

        if backup_path.stat().st_size != file_path.stat().st_size:
            raise BackupError(f"Backup file size mismatch: {backup_path}")

        logger.info(f"Created backup: {sanitize_log_message(str(backup_path))}")
        return backup_path

    except BackupError:
        raise
    except Exception as e:
        raise BackupError(f"Failed to create backup of {file_path}: {e}")


def atomic_file_write(file_path: Path, content: str) -> bool:
    """
    Write file atomically to prevent corruption.

    The content goes to a temp file in the same directory which then
    replaces the target, keeping the original's permissions and ownership.

    Args:
        file_path: Path to target file
        content: Content to write

    Returns:
        bool: True if successful

    Raises:
        AtomicWriteError: If write fails
    """
    temp_path = None
    try:
        original_stat = file_path.stat() if file_path.exists() else None

        temp_path = file_path.parent / f".{file_path.name}.tmp.{os.getpid()}"
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(content)

        written_size = temp_path.stat().st_size
        expected_size = len(content.encode("utf-8"))
        if written_size != expected_size:
            raise AtomicWriteError(
                f"Temp file size mismatch: written={written_size}, expected={expected_size}"
            )

        if original_stat:
            try:
                os.chmod(temp_path, original_stat.st_mode)
                os.chown(temp_path, original_stat.st_uid, original_stat.st_gid)
            except (OSError, PermissionError) as e:
                logger.warning(
                    f"Could not preserve ownership/permissions: {sanitize_log_message(str(e))}"
                )

        temp_path.replace(file_path)

        logger.info(f"Atomic write successful: {sanitize_log_message(str(file_path))}")
        return True

    except Exception as e:
        if temp_path and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.error(
                    f"Failed to clean up temp file {sanitize_log_message(str(temp_path))}: {sanitize_log_message(str(cleanup_error))}"
                )

        raise AtomicWriteError(f"Atomic write failed for {file_path}: {e}")


def restore_from_backup(backup_path: Path, target_path: Path) -> bool:
    """
    Restore a file from backup.

    Args:
        backup_path: Path to backup file
        target_path: Path to restore to

    Returns:
        bool: True if successful

    Raises:
        FileOperationError: If restore fails
    """
    if not backup_path.exists():
        raise FileOperationError(f"Backup file does not exist: {backup_path}")

    try:
        shutil.copy2(backup_path, target_path)
    except OSError as e:
        raise FileOperationError(f"Failed to restore from backup: {e}")

    logger.info(
        f"Restored {sanitize_log_message(str(target_path))} from backup {sanitize_log_message(str(backup_path))}"
    )
    return True


def remove_tree(path: Path) -> None:
    """Remove a staging directory, ignoring one that is already gone."""
    if path.exists():
        shutil.rmtree(path)
        logger.debug(f"Removed {sanitize_log_message(str(path))}")
