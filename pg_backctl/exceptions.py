"""Custom exceptions and exit codes for pg_backctl.

Every error raised by the backup and restore pipelines carries a stable
numeric exit code so that automation wrapping the CLI can branch on the
failure kind without parsing messages.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes (stable contract for automation)."""

    OK = 0
    MISSING_CMD = 10  # Required command not found
    MISSING_ENV = 11  # Missing required environment variable / credential
    MISSING_ARG = 12  # Missing required argument
    MISSING_CONF = 13  # Missing or invalid configuration
    USAGE = 14  # Usage error (bad arg combination)
    BACKUP_FAILED = 15  # Backup operation failed
    DISK_SPACE = 16  # Insufficient disk space
    RESTORE_FAILED = 17  # Restore operation failed
    UNSAFE_VOLUME = 18  # Unsafe volume operation
    UNKNOWN = 99  # Unknown error


class PgBackctlError(Exception):
    """Base class for all pg_backctl errors."""

    exit_code: ExitCode = ExitCode.UNKNOWN


class MissingDependencyError(PgBackctlError):
    """Raised when a required external command is not available."""

    exit_code = ExitCode.MISSING_CMD


class MissingCredentialError(PgBackctlError):
    """Raised when object storage credentials are not configured."""

    exit_code = ExitCode.MISSING_ENV


class MissingArgumentError(PgBackctlError):
    """Raised when a required argument is absent."""

    exit_code = ExitCode.MISSING_ARG


class ConfigurationError(PgBackctlError):
    """Raised when a configuration file is missing or cannot be parsed."""

    exit_code = ExitCode.MISSING_CONF


class UsageConflictError(PgBackctlError):
    """Raised when mutually exclusive options are combined."""

    exit_code = ExitCode.USAGE


class ModeConflictError(UsageConflictError):
    """Raised when more than one restore mode directive is active.

    Detected before the restore touches the service, so the database is
    never stopped on a conflicting invocation.
    """


class NotFoundError(PgBackctlError):
    """Raised when a backup or one of its files cannot be located."""

    exit_code = ExitCode.RESTORE_FAILED


class NoBackupFoundError(NotFoundError):
    """Raised when auto-detection finds no usable backup under a prefix."""


class BackupNotFoundError(NotFoundError):
    """Raised when expected backup files are absent from a local path."""


class InsufficientDiskSpaceError(PgBackctlError):
    """Raised when the target filesystem cannot hold the dataset plus margin."""

    exit_code = ExitCode.DISK_SPACE

    def __init__(self, path: str, available_gb: int, required_gb: int):
        self.path = path
        self.available_gb = available_gb
        self.required_gb = required_gb
        super().__init__(
            f"Insufficient disk space in {path}. "
            f"Available: {available_gb}GB, Required: at least {required_gb}GB"
        )


class OperationFailedError(PgBackctlError):
    """Raised when a backup, restore, transfer or subprocess step fails."""

    exit_code = ExitCode.UNKNOWN


class BackupFailedError(OperationFailedError):
    """Raised when a backup pipeline step fails."""

    exit_code = ExitCode.BACKUP_FAILED


class RestoreFailedError(OperationFailedError):
    """Raised when a restore pipeline step fails."""

    exit_code = ExitCode.RESTORE_FAILED


class StorageError(OperationFailedError):
    """Raised when an object store call (list/get/put/delete) fails."""


class CommandFailedError(OperationFailedError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{' '.join(command)}' exited with {returncode}: {output.strip()}"
        )


class UnsafeVolumeError(PgBackctlError):
    """Raised when a volume operation would act on a missing or wrong volume."""

    exit_code = ExitCode.UNSAFE_VOLUME


class InvalidRangeError(PgBackctlError):
    """Raised when two WAL segment names do not form a valid range."""

    exit_code = ExitCode.RESTORE_FAILED


class InvalidStateTransitionError(PgBackctlError):
    """Raised when the restore state machine is driven out of order."""

    exit_code = ExitCode.UNKNOWN
