"""Command line interface: ``pg_backctl backup | restore | prune | verify``."""

import asyncio
import logging
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict

import click

from pg_backctl.config import load_backup_request, load_restore_request
from pg_backctl.exceptions import (
    ExitCode,
    MissingArgumentError,
    MissingCredentialError,
    PgBackctlError,
)
from pg_backctl.logging_config import configure_logging
from pg_backctl.schemas.backup import CHECKSUM_FILE
from pg_backctl.schemas.request import BackupRequest, S3Location
from pg_backctl.services import checksum_manager, retention
from pg_backctl.services.backup_creator import BackupCreator
from pg_backctl.services.object_store import (
    LocalObjectStore,
    ObjectStore,
    S3ObjectStore,
    folder_prefix,
)
from pg_backctl.services.restore_controller import RestoreModeController

logger = logging.getLogger(__name__)


def get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except (FileNotFoundError, KeyError) as e:
        logger.debug(f"Could not read version from pyproject.toml: {e}")
        return "0.0.0-dev"


def _fail(code: int, message: str) -> None:
    click.echo(f"Error {code}: {message}", err=True)
    sys.exit(code)


def _run(coro) -> Any:
    """Run a pipeline coroutine, mapping errors to exit codes."""
    try:
        return asyncio.run(coro)
    except PgBackctlError as e:
        logger.error("%s (exit code %d)", e, e.exit_code)
        _fail(int(e.exit_code), str(e))
    except Exception as e:
        logger.exception("Unexpected error")
        _fail(int(ExitCode.UNKNOWN), f"Unexpected error: {e}")


def _load(loader, ctx: click.Context, cli_values: Dict[str, Any]):
    try:
        return loader(cli_values, config_file=ctx.obj["config"], env_file=ctx.obj["env_file"])
    except PgBackctlError as e:
        _fail(int(e.exit_code), str(e))


def _credential_options(func):
    for option in reversed(
        [
            click.option("-a", "--aws-access-key", "aws_access_key", help="AWS access key"),
            click.option("-s", "--aws-secret-key", "aws_secret_key", help="AWS secret key"),
            click.option("-r", "--aws-region", "aws_region", help="AWS region"),
            click.option("-u", "--s3-url", "s3_url", help="S3 URL, e.g. s3://bucket/backups"),
            click.option("-e", "--s3-endpoint", "s3_endpoint", help="S3 endpoint URL"),
        ]
    ):
        func = option(func)
    return func


def _service_options(func):
    for option in reversed(
        [
            click.option("-n", "--service", help="Docker Compose service name"),
            click.option("-f", "--compose-file", type=click.Path(path_type=Path), help="Path to docker-compose file"),
            click.option("--compose-project", help="Compose project name (default: compose file directory)"),
            click.option("--compose-command", help="Compose command (default: 'docker compose')"),
        ]
    ):
        func = option(func)
    return func


@click.group()
@click.version_option(version=get_version(), prog_name="pg_backctl")
@click.option("-c", "--config", type=click.Path(path_type=Path), default=None, help="INI config file")
@click.option("--env-file", type=click.Path(path_type=Path), default=None, help=".env file (default: ./.env)")
@click.option("--log-level", default="INFO", show_default=True, help="Log level")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.option("--log-file", type=click.Path(), default=None, help="Also write JSON logs to this file")
@click.pass_context
def cli(ctx, config, env_file, log_level, json_logs, log_file):
    """Physical PostgreSQL backup and restore for Docker Compose services."""
    configure_logging(log_level, json_format=json_logs, log_file=log_file)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["env_file"] = env_file


@cli.command()
@_service_options
@_credential_options
@click.option("-P", "--backup-path", type=click.Path(path_type=Path), help="Local backup directory")
@click.option("-l", "--label", help="Backup label (default: UTC timestamp)")
@click.option("-C", "--compression", type=click.Choice(["gzip", "bzip2", "none"]), help="Compression method")
@click.option("-H", "--db-host", help="Database host (default: the service name)")
@click.option("-T", "--db-port", type=int, help="Database port")
@click.option("-U", "--db-user", help="Database user")
@click.option("--retention-count", type=int, help="Keep the newest N backups")
@click.option("--retention-days", type=int, help="Keep backups younger than N days")
@click.option("--disk-margin-gb", type=int, help="Extra free space required (GB)")
@click.pass_context
def backup(ctx, **options):
    """Create a base backup with pg_basebackup."""
    request = _load(load_backup_request, ctx, options)
    result = _run(BackupCreator(request).run())
    click.echo(f"Backup {result.label} written to {result.destination}")
    if result.retention is not None and result.retention.deleted:
        click.echo(f"Deleted {len(result.retention.deleted)} old backup(s)")


@cli.command()
@_service_options
@_credential_options
@click.option("-v", "--volume", "volume_name", help="Compose volume holding the data directory")
@click.option("--standby", is_flag=True, help="Restore as a standby (stays in recovery)")
@click.option("-o", "--override-volume", is_flag=True, help="Wipe and restore the existing volume")
@click.option("-N", "--new-volume", "new_volume_name", help="Restore into a new volume with this name")
@click.option("-L", "--local-path", type=click.Path(path_type=Path), help="Local backup folder")
@click.option("-b", "--backup-path", help="Explicit backup folder in the bucket")
@click.option("--search-prefix", help="Prefix searched for the latest backup")
@click.option("--wal-archive-prefix", help="Prefix holding archived WAL segments")
@click.option("--data-owner", help="uid:gid owning the data directory (default 999:999)")
@click.option("--first-boot-config", type=click.Path(path_type=Path), help="postgresql.conf applied on first boot")
@click.option("--pg-hba", "pg_hba_file", type=click.Path(path_type=Path), help="pg_hba.conf to install")
@click.option("--postgresql-conf", "postgresql_conf_file", type=click.Path(path_type=Path), help="postgresql.conf to install")
@click.option("--init-scripts", "init_scripts_dir", type=click.Path(path_type=Path), help="Directory of *.sql/*.sh scripts")
@click.option("-U", "--db-user", help="Database user for init scripts")
@click.option("--readiness-wait", "readiness_wait_seconds", type=float, help="Seconds to wait after start")
@click.option("--disk-margin-gb", type=int, help="Extra free space required (GB)")
@click.pass_context
def restore(ctx, **options):
    """Restore a base backup into the service's data volume."""
    # Unset flags must not mask values from the config file
    options = {key: value for key, value in options.items() if value is not False}
    request = _load(load_restore_request, ctx, options)
    result = _run(RestoreModeController(request).run())
    click.echo(f"Restore completed ({result.mode}) from {result.backup_location}")
    if result.missing_wal_segments:
        click.echo(f"Missing WAL segments: {', '.join(result.missing_wal_segments)}", err=True)


def _retention_store(request: BackupRequest) -> tuple[ObjectStore, str]:
    if request.s3_url:
        if not request.credentials.complete:
            raise MissingCredentialError("Missing AWS credentials. Set AWS_ACCESS_KEY, AWS_SECRET_KEY and AWS_REGION")
        if not request.s3_endpoint:
            raise MissingArgumentError("S3 requires an endpoint")
        location = S3Location.from_url(request.s3_url)
        store = S3ObjectStore(location.bucket, request.credentials, endpoint=request.s3_endpoint)
        return store, folder_prefix(location.prefix)
    if request.backup_path:
        return LocalObjectStore(request.backup_path), ""
    raise MissingArgumentError("A backup location is required: local path or S3 URL")


@cli.command()
@_credential_options
@click.option("-P", "--backup-path", type=click.Path(path_type=Path), help="Local backup directory")
@click.option("--retention-count", type=int, help="Keep the newest N backups")
@click.option("--retention-days", type=int, help="Keep backups younger than N days")
@click.pass_context
def prune(ctx, **options):
    """Delete backups outside the retention policy."""
    request = _load(load_backup_request, ctx, options)

    async def _prune():
        store, prefix = _retention_store(request)
        return await retention.prune(store, prefix, request.retention)

    result = _run(_prune())
    click.echo(f"Deleted {len(result.deleted)} backup(s), {len(result.failed)} failed")


@cli.command()
@click.argument("backup_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def verify(backup_dir):
    """Check a downloaded backup folder against its checksum manifest."""
    try:
        manifest = checksum_manager.read(backup_dir / CHECKSUM_FILE)
        result = checksum_manager.verify(backup_dir, manifest)
    except PgBackctlError as e:
        _fail(int(e.exit_code), str(e))
    if not result.ok:
        _fail(int(ExitCode.RESTORE_FAILED), f"Checksum mismatch: {', '.join(result.mismatches)}")
    click.echo(f"All {manifest.file_count} files match {CHECKSUM_FILE}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
