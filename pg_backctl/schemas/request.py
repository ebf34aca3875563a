"""Pydantic schemas for backup and restore invocations.

Requests are built once from layered configuration (see ``pg_backctl.config``)
and are immutable for the rest of the run.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class RestoreMode(str, Enum):
    """The three mutually exclusive restore modes."""

    STANDBY = "standby"
    OVERRIDE_VOLUME = "override_volume"
    NEW_VOLUME = "new_volume"


class AwsCredentials(BaseModel):
    """S3 credentials; all three values are required for remote storage."""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def complete(self) -> bool:
        return bool(self.access_key and self.secret_key and self.region)


class RetentionPolicy(BaseModel):
    """Keep the last N generations, or those newer than D days.

    When both are set the count wins and ``keep_days`` is ignored. When
    neither is set the policy is a no-op and nothing is ever deleted.
    """

    keep_count: Optional[int] = Field(default=None, gt=0)
    keep_days: Optional[int] = Field(default=None, gt=0)

    model_config = {"frozen": True}

    @property
    def is_noop(self) -> bool:
        return not self.keep_count and not self.keep_days


class S3Location(BaseModel):
    """Bucket plus key prefix parsed from an ``s3://bucket/prefix`` URL."""

    bucket: str
    prefix: str = ""

    model_config = {"frozen": True}

    @classmethod
    def from_url(cls, url: str) -> "S3Location":
        stripped = url[len("s3://"):] if url.startswith("s3://") else url
        bucket, _, prefix = stripped.partition("/")
        return cls(bucket=bucket, prefix=prefix.strip("/"))


class RestoreRequest(BaseModel):
    """Everything one restore invocation needs."""

    # Mode directives (exactly one must be active)
    standby: bool = False
    override_volume: bool = False
    new_volume_name: Optional[str] = None

    # Source: local path or object store
    local_path: Optional[Path] = None
    s3_url: Optional[str] = None
    s3_endpoint: Optional[str] = None
    credentials: AwsCredentials = Field(default_factory=AwsCredentials)
    backup_path: Optional[str] = None
    search_prefix: str = ""
    wal_archive_prefix: Optional[str] = None
    wal_segment_size: int = 16 * 1024 * 1024

    # Target
    service: Optional[str] = None
    compose_file: Optional[Path] = None
    compose_project: Optional[str] = None
    volume_name: Optional[str] = None
    compose_command: str = "docker compose"
    data_directory: str = "/var/lib/postgresql/data"
    data_owner: str = "999:999"

    # Post-start configuration
    first_boot_config: Optional[Path] = None
    pg_hba_file: Optional[Path] = None
    postgresql_conf_file: Optional[Path] = None
    init_scripts_dir: Optional[Path] = None
    db_user: str = "postgres"

    readiness_wait_seconds: float = 10.0
    disk_margin_gb: int = 2
    staging_root: Optional[Path] = None

    model_config = {"frozen": True}

    @field_validator("data_owner")
    @classmethod
    def _check_owner(cls, value: str) -> str:
        uid, sep, gid = value.partition(":")
        if not sep or not uid.isdigit() or not gid.isdigit():
            raise ValueError("data_owner must be 'uid:gid'")
        return value

    @property
    def owner_ids(self) -> tuple[int, int]:
        uid, _, gid = self.data_owner.partition(":")
        return int(uid), int(gid)

    @property
    def uses_object_store(self) -> bool:
        return self.s3_url is not None


class BackupRequest(BaseModel):
    """Everything one backup invocation needs."""

    service: Optional[str] = None
    compose_file: Optional[Path] = None
    compose_project: Optional[str] = None
    compose_command: str = "docker compose"

    backup_path: Optional[Path] = None
    s3_url: Optional[str] = None
    s3_endpoint: Optional[str] = None
    credentials: AwsCredentials = Field(default_factory=AwsCredentials)

    label: Optional[str] = None
    compression: str = "gzip"

    db_host: Optional[str] = None
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: Optional[str] = None
    data_directory: str = "/var/lib/postgresql/data"

    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    disk_margin_gb: int = 2
    staging_root: Optional[Path] = None

    model_config = {"frozen": True}

    @property
    def uses_object_store(self) -> bool:
        return self.s3_url is not None
