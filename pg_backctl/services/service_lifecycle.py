"""Start, stop and exec into the database service through Docker Compose."""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pg_backctl.exceptions import CommandFailedError, MissingDependencyError
from pg_backctl.utils.security import redact_command
from pg_backctl.utils.validators import (
    build_docker_compose_command,
    validate_docker_compose_command,
    validate_service_name,
)

logger = logging.getLogger(__name__)


def require_commands(*commands: str) -> None:
    """Fail fast when a required executable is not on PATH."""
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if missing:
        raise MissingDependencyError(
            f"Required command(s) not found in PATH: {' '.join(missing)}. "
            "Please install before running pg_backctl."
        )


async def run_command(cmd: List[str]) -> str:
    """Run a command to completion and return its decoded stdout.

    There is no timeout; the exit code is the only failure signal.

    Raises:
        CommandFailedError: On a non-zero exit code
    """
    logger.debug("Running: %s", redact_command(cmd))
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout_bytes, stderr_bytes = await process.communicate()
    stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
    stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""

    if process.returncode != 0:
        # Redacted form only; argument lists may carry passwords
        raise CommandFailedError(redact_command(cmd).split(" "), process.returncode, stderr or stdout)
    return stdout


class ServiceLifecycle(ABC):
    """Operations the pipelines need on the database service."""

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def restart(self) -> None: ...

    @abstractmethod
    async def exec_in_service(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        """Run a command inside the service and return its stdout."""

    @abstractmethod
    async def copy_into_service(self, source: Path, destination: str) -> None: ...

    @abstractmethod
    async def copy_from_service(self, source: str, destination: Path) -> None: ...


class ComposeServiceLifecycle(ServiceLifecycle):
    """ServiceLifecycle implemented with ``docker compose`` subcommands."""

    def __init__(
        self,
        compose_file: Path,
        service: str,
        compose_command: str = "docker compose",
        compose_project: Optional[str] = None,
    ):
        self.compose_file = Path(compose_file)
        self.service = validate_service_name(service)
        self.base_command = validate_docker_compose_command(compose_command)
        self.compose_project = compose_project

    def _command(
        self,
        action: str,
        action_args: Optional[List[str]] = None,
        trailing_args: Optional[List[str]] = None,
    ) -> List[str]:
        return build_docker_compose_command(
            self.base_command,
            self.compose_file,
            action,
            self.service,
            compose_project=self.compose_project,
            action_args=action_args,
            trailing_args=trailing_args,
        )

    async def stop(self) -> None:
        logger.info("Stopping service %s", self.service)
        await run_command(self._command("down"))

    async def start(self) -> None:
        logger.info("Starting service %s", self.service)
        await run_command(self._command("up", action_args=["-d"]))

    async def restart(self) -> None:
        logger.info("Restarting service %s", self.service)
        await run_command(self._command("restart"))

    async def exec_in_service(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        trailing = list(args)
        if env:
            trailing = ["env", *(f"{key}={value}" for key, value in env.items()), *trailing]
        return await run_command(self._command("exec", action_args=["-T"], trailing_args=trailing))

    async def copy_into_service(self, source: Path, destination: str) -> None:
        logger.info("Copying %s into %s:%s", source, self.service, destination)
        await run_command(self._command("cp", trailing_args=[str(source), f"{self.service}:{destination}"]))

    async def copy_from_service(self, source: str, destination: Path) -> None:
        logger.info("Copying %s:%s to %s", self.service, source, destination)
        await run_command(self._command("cp", trailing_args=[f"{self.service}:{source}", str(destination)]))
