"""Pydantic schemas for requests, backup generations and results."""

from pg_backctl.schemas.backup import (
    BACKUP_ARTIFACTS,
    BACKUP_MANIFEST_FILE,
    BASE_ARCHIVES,
    CHECKSUM_FILE,
    CHECKSUM_INFO_FILE,
    WAL_ARCHIVES,
    BackupDescriptor,
    BackupResult,
    ChecksumManifest,
    ManifestEntry,
    ObjectInfo,
    RestoreResult,
    RetentionResult,
    VerifyResult,
    WalSegmentRange,
)
from pg_backctl.schemas.request import (
    AwsCredentials,
    BackupRequest,
    RestoreMode,
    RestoreRequest,
    RetentionPolicy,
    S3Location,
)

__all__ = [
    "BACKUP_ARTIFACTS",
    "BACKUP_MANIFEST_FILE",
    "BASE_ARCHIVES",
    "CHECKSUM_FILE",
    "CHECKSUM_INFO_FILE",
    "WAL_ARCHIVES",
    "BackupDescriptor",
    "BackupResult",
    "ChecksumManifest",
    "ManifestEntry",
    "ObjectInfo",
    "RestoreResult",
    "RetentionResult",
    "VerifyResult",
    "WalSegmentRange",
    "AwsCredentials",
    "BackupRequest",
    "RestoreMode",
    "RestoreRequest",
    "RetentionPolicy",
    "S3Location",
]
