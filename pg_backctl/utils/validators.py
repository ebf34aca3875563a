"""Input validation and typed command builders for pg_backctl.

External commands are always assembled as argument lists and validated
before they reach ``asyncio.create_subprocess_exec``; nothing here is ever
passed through a shell.
"""

import re
from pathlib import Path
from typing import List, Optional

from pg_backctl.exceptions import ExitCode, PgBackctlError


class ValidationError(PgBackctlError):
    """Raised when validation fails."""

    exit_code = ExitCode.USAGE


SHELL_METACHARACTERS = ['$', '`', '\\', ';', '|', '&', '<', '>',
                        '(', ')', '{', '}', '*', '?', '!', '\n', '\r']

COMPRESSION_METHODS = ("gzip", "bzip2", "none")


def validate_volume_name(name: str) -> str:
    """Validate a Docker volume name for safe use in Docker commands.

    Args:
        name: Volume name to validate

    Returns:
        Validated name

    Raises:
        ValidationError: If name contains invalid characters or patterns
    """
    if not name:
        raise ValidationError("Volume name cannot be empty")

    # Reject names starting with dash (could be interpreted as flag)
    if name.startswith("-"):
        raise ValidationError("Volume name cannot start with dash")

    if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]*$', name):
        raise ValidationError(
            "Volume name must contain only alphanumeric characters, "
            "underscores, dashes, and dots"
        )

    if len(name) > 255:
        raise ValidationError("Volume name too long (max 255 characters)")

    return name


def validate_service_name(name: str) -> str:
    """Validate service name for safe use in Docker Compose commands.

    Args:
        name: Service name to validate

    Returns:
        Validated name

    Raises:
        ValidationError: If name contains invalid characters
    """
    if not name:
        raise ValidationError("Service name cannot be empty")

    if not re.match(r'^[a-zA-Z0-9_-]+$', name):
        raise ValidationError(
            "Service name must contain only alphanumeric characters, "
            "underscores, and dashes"
        )

    if name.startswith("-"):
        raise ValidationError("Service name cannot start with dash")

    if len(name) > 255:
        raise ValidationError("Service name too long (max 255 characters)")

    return name


def validate_compose_file_path(path: str, allowed_base: Optional[str] = None, strict: bool = True) -> Path:
    """Validate and resolve compose file path to prevent path traversal.

    Args:
        path: Path to compose file
        allowed_base: Optional base directory that must contain the file
        strict: Require the file to exist with a YAML extension

    Returns:
        Resolved absolute Path object

    Raises:
        ValidationError: If path is invalid or outside allowed directory
    """
    if not path:
        raise ValidationError("Compose file path cannot be empty")

    dangerous_patterns = ['..', '//', '\\', '\x00']
    if any(pattern in str(path) for pattern in dangerous_patterns):
        raise ValidationError("Compose file path contains forbidden patterns")

    try:
        file_path = Path(path).resolve(strict=strict)
    except (OSError, RuntimeError) as e:
        raise ValidationError(f"Invalid compose file path: {e}")

    if strict:
        if not file_path.is_file():
            raise ValidationError("Compose file path is not a file")

        if file_path.suffix not in ['.yml', '.yaml']:
            raise ValidationError("Compose file must have .yml or .yaml extension")

    if allowed_base:
        allowed_base_path = Path(allowed_base).resolve()
        try:
            file_path.relative_to(allowed_base_path)
        except ValueError:
            raise ValidationError(
                f"Compose file must be within {allowed_base} directory"
            )

    return file_path


def validate_docker_compose_command(command: str) -> List[str]:
    """Validate and parse the Docker Compose base command.

    Only allows 'docker compose' or 'docker-compose' as the base command.

    Args:
        command: Base command, e.g. "docker compose"

    Returns:
        List of validated command parts

    Raises:
        ValidationError: If command contains forbidden patterns
    """
    if not command or not command.strip():
        raise ValidationError("Docker compose command cannot be empty")

    if any(char in command for char in SHELL_METACHARACTERS):
        raise ValidationError("Docker compose command contains forbidden characters")

    parts = command.split()

    cmd_basename = parts[0].split('/')[-1]

    if cmd_basename == 'docker-compose':
        return parts

    if cmd_basename != 'docker':
        raise ValidationError("Command must start with 'docker' or 'docker-compose'")

    if len(parts) < 2 or parts[1] not in ["compose", "compose-v2"]:
        raise ValidationError("Command must be 'docker compose' or 'docker-compose'")

    return parts


def validate_compression(method: str) -> str:
    """Validate a compression method name (gzip, bzip2 or none)."""
    if method not in COMPRESSION_METHODS:
        raise ValidationError(
            f"Unknown compression method: {method}. Use gzip, bzip2, or none."
        )
    return method


def build_docker_compose_command(
    base_command: List[str],
    compose_file: Path,
    action: str,
    service_name: str,
    compose_project: Optional[str] = None,
    action_args: Optional[List[str]] = None,
    trailing_args: Optional[List[str]] = None,
) -> List[str]:
    """Build a safe Docker Compose command using list-based construction.

    Args:
        base_command: Validated base command parts (e.g. ["docker", "compose"])
        compose_file: Path to compose file (already validated)
        action: Docker Compose action (up, stop, exec, cp, ...)
        service_name: Service name (already validated)
        compose_project: Optional compose project name
        action_args: Flags placed between the action and the service
        trailing_args: Arguments placed after the service (exec command)

    Returns:
        List of command parts ready for create_subprocess_exec()
    """
    allowed_actions = ["up", "down", "stop", "start", "restart", "exec", "cp", "ps"]
    if action not in allowed_actions:
        raise ValidationError(f"Invalid Docker Compose action: {action}")

    cmd = list(base_command)

    if compose_project:
        cmd.extend(["-p", validate_service_name(compose_project)])
    cmd.extend(["-f", str(compose_file)])

    cmd.append(action)

    for arg in action_args or []:
        if any(char in arg for char in ['$', '`', '\\', ';', '|', '&']):
            raise ValidationError(f"Invalid argument: {arg}")
    cmd.extend(action_args or [])

    if action != "cp":
        cmd.append(service_name)

    cmd.extend(trailing_args or [])

    return cmd


def build_pg_basebackup_command(
    host: str,
    port: int,
    user: str,
    target_dir: str,
    compression: str = "gzip",
) -> List[str]:
    """Build the pg_basebackup argument list run inside the database service.

    Args:
        host: Database host reachable from inside the service
        port: Database port
        user: Replication-capable database user
        target_dir: Directory inside the service receiving the tar files
        compression: gzip, bzip2 or none; bzip2 is applied afterwards

    Returns:
        Argument list for pg_basebackup
    """
    validate_compression(compression)
    if not re.match(r'^[a-zA-Z0-9_.-]+$', host):
        raise ValidationError(f"Invalid database host: {host}")
    if not re.match(r'^[a-zA-Z0-9_]+$', user):
        raise ValidationError(f"Invalid database user: {user}")
    if not 0 < int(port) < 65536:
        raise ValidationError(f"Invalid database port: {port}")

    cmd = [
        "pg_basebackup",
        "-h", host,
        "-p", str(port),
        "-U", user,
        "-D", target_dir,
        "-Ft",
    ]
    if compression == "gzip":
        cmd.append("-z")
    cmd.extend(["-P", "-v"])
    return cmd


def build_psql_file_command(user: str, script_path: str) -> List[str]:
    """Build a psql invocation that executes a SQL file and stops on error."""
    if not re.match(r'^[a-zA-Z0-9_]+$', user):
        raise ValidationError(f"Invalid database user: {user}")
    return ["psql", "-v", "ON_ERROR_STOP=1", "-U", user, "-f", script_path]
