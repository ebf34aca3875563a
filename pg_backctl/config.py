"""Layered configuration loading.

Layers, later wins::

    process environment < .env file < INI config file < CLI options

Every layer is flattened to the same field names before merging, then the
result is validated into an immutable request model. Unset values (None)
never override a lower layer.
"""

import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values
from pydantic import ValidationError as PydanticValidationError

from pg_backctl.exceptions import ConfigurationError
from pg_backctl.schemas.request import (
    AwsCredentials,
    BackupRequest,
    RestoreRequest,
    RetentionPolicy,
)
from pg_backctl.utils.security import mask_sensitive

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"

# Environment / .env variable -> field
ENV_KEYS = {
    "AWS_ACCESS_KEY": "aws_access_key",
    "AWS_SECRET_KEY": "aws_secret_key",
    "AWS_REGION": "aws_region",
    "S3_BACKUP_URL": "s3_url",
    "S3_ENDPOINT": "s3_endpoint",
    "RETENTION_COUNT": "retention_count",
    "RETENTION_DAYS": "retention_days",
    "PGPASSWORD": "db_password",
}

# (section, key) -> field, shared by both commands
_COMMON_INI_KEYS = {
    ("database", "service"): "service",
    ("database", "compose_file"): "compose_file",
    ("database", "compose_project"): "compose_project",
    ("database", "compose_command"): "compose_command",
    ("database", "user"): "db_user",
    ("database", "data_directory"): "data_directory",
    ("s3", "url"): "s3_url",
    ("s3", "endpoint"): "s3_endpoint",
    ("s3", "access_key"): "aws_access_key",
    ("s3", "secret_key"): "aws_secret_key",
    ("s3", "region"): "aws_region",
}

RESTORE_INI_KEYS = {
    **_COMMON_INI_KEYS,
    ("database", "volume"): "volume_name",
    ("database", "data_owner"): "data_owner",
    ("s3", "backup_path"): "backup_path",
    ("s3", "search_prefix"): "search_prefix",
    ("s3", "wal_archive_prefix"): "wal_archive_prefix",
    ("restore", "standby"): "standby",
    ("restore", "override_volume"): "override_volume",
    ("restore", "new_volume"): "new_volume_name",
    ("restore", "local_path"): "local_path",
    ("restore", "first_boot_config"): "first_boot_config",
    ("restore", "pg_hba_file"): "pg_hba_file",
    ("restore", "postgresql_conf_file"): "postgresql_conf_file",
    ("restore", "init_scripts_dir"): "init_scripts_dir",
    ("restore", "readiness_wait"): "readiness_wait_seconds",
    ("restore", "disk_margin_gb"): "disk_margin_gb",
    ("restore", "staging_dir"): "staging_root",
}

BACKUP_INI_KEYS = {
    **_COMMON_INI_KEYS,
    ("database", "host"): "db_host",
    ("database", "port"): "db_port",
    ("database", "password"): "db_password",
    ("backup", "path"): "backup_path",
    ("backup", "label"): "label",
    ("backup", "compression"): "compression",
    ("backup", "disk_margin_gb"): "disk_margin_gb",
    ("backup", "staging_dir"): "staging_root",
    ("retention", "count"): "retention_count",
    ("retention", "days"): "retention_days",
}


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def read_environment(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Fields taken from the process environment."""
    environ = os.environ if environ is None else environ
    return {field: environ[key] for key, field in ENV_KEYS.items() if environ.get(key)}


def read_env_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Fields taken from a ``.env`` file; a missing default file is not an error."""
    if path is None:
        path = Path(DEFAULT_ENV_FILE)
        if not path.is_file():
            return {}
    elif not Path(path).is_file():
        raise ConfigurationError(f"Env file not found: {path}")

    values = dotenv_values(path)
    logger.debug("Loaded %d variables from %s", len(values), path)
    return {field: values[key] for key, field in ENV_KEYS.items() if values.get(key)}


def read_config_file(path: Path, keymap: Mapping[tuple[str, str], str]) -> Dict[str, Any]:
    """Fields taken from an INI config file.

    Inline ``#``/``;`` comments and surrounding quotes are stripped.
    Unknown sections and keys are ignored with a warning.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")

    parser = configparser.ConfigParser(
        inline_comment_prefixes=("#", ";"),
        interpolation=None,
    )
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}")

    result: Dict[str, Any] = {}
    for section in parser.sections():
        for key, raw in parser.items(section):
            field = keymap.get((section, key))
            if field is None:
                logger.warning("Ignoring unknown config key [%s] %s in %s", section, key, path)
                continue
            value = _strip_quotes(raw)
            if value != "":
                result[field] = value
    logger.info("Loaded configuration from %s", path)
    return result


def merge_layers(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge flat layers; later layers win, None never overrides."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is not None:
                merged[key] = value
    return merged


def _credentials(values: Mapping[str, Any]) -> AwsCredentials:
    return AwsCredentials(
        access_key=values.get("aws_access_key"),
        secret_key=values.get("aws_secret_key"),
        region=values.get("aws_region"),
    )


def _unset_if_zero(value: Any) -> Any:
    # 0 (or empty) disables that retention rule
    if value in (None, "", 0, "0"):
        return None
    return value


def _retention(values: Mapping[str, Any]) -> RetentionPolicy:
    return RetentionPolicy(
        keep_count=_unset_if_zero(values.get("retention_count")),
        keep_days=_unset_if_zero(values.get("retention_days")),
    )


def _layers(
    cli: Mapping[str, Any],
    keymap: Mapping[tuple[str, str], str],
    config_file: Optional[Path],
    env_file: Optional[Path],
    environ: Optional[Mapping[str, str]],
) -> Dict[str, Any]:
    layers = [read_environment(environ), read_env_file(env_file)]
    if config_file is not None:
        layers.append(read_config_file(config_file, keymap))
    layers.append(cli)
    values = merge_layers(*layers)
    if values.get("aws_access_key"):
        logger.debug("Using AWS access key %s", mask_sensitive(values["aws_access_key"]))
    return values


def load_restore_request(
    cli: Mapping[str, Any],
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RestoreRequest:
    """Build the immutable restore request from all configuration layers."""
    values = _layers(cli, RESTORE_INI_KEYS, config_file, env_file, environ)
    fields = {k: v for k, v in values.items() if k in RestoreRequest.model_fields}
    try:
        return RestoreRequest(**fields, credentials=_credentials(values))
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid restore configuration: {e}")


def load_backup_request(
    cli: Mapping[str, Any],
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BackupRequest:
    """Build the immutable backup request from all configuration layers."""
    values = _layers(cli, BACKUP_INI_KEYS, config_file, env_file, environ)
    fields = {k: v for k, v in values.items() if k in BackupRequest.model_fields}
    try:
        return BackupRequest(
            **fields,
            credentials=_credentials(values),
            retention=_retention(values),
        )
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid backup configuration: {e}")
