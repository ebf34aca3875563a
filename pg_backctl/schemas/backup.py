"""Pydantic schemas describing backup generations and their artefacts."""

from datetime import datetime
from pathlib import PurePosixPath
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

# Artefacts written into a backup generation folder
BASE_ARCHIVES = ("base.tar.gz", "base.tar.bz2", "data.tar.bz2", "base.tar")
WAL_ARCHIVES = ("pg_wal.tar.gz", "pg_wal.tar.bz2", "pg_wal.tar")
CHECKSUM_FILE = "backup.sha256"
CHECKSUM_INFO_FILE = "backup.sha256.info"
BACKUP_MANIFEST_FILE = "backup_manifest"
BACKUP_ARTIFACTS = BASE_ARCHIVES + WAL_ARCHIVES + (
    CHECKSUM_FILE,
    CHECKSUM_INFO_FILE,
    BACKUP_MANIFEST_FILE,
)


class ObjectInfo(BaseModel):
    """One object returned by an object store listing."""

    key: str
    last_modified: datetime
    size: int = 0

    model_config = {"frozen": True}

    @property
    def name(self) -> str:
        """Final path segment of the key."""
        return PurePosixPath(self.key).name

    @property
    def parent(self) -> str:
        """Key of the containing folder ("" at the root)."""
        parent = str(PurePosixPath(self.key).parent)
        return "" if parent == "." else parent


class BackupDescriptor(BaseModel):
    """Identifies one backup generation in the backup store."""

    label: str
    location: str
    last_modified: Optional[datetime] = None
    files: frozenset[str] = Field(default_factory=frozenset)
    size_bytes: int = 0

    model_config = {"frozen": True}

    @property
    def base_archive(self) -> Optional[str]:
        """Name of the base archive in this generation, preferring gzip."""
        for name in BASE_ARCHIVES:
            if name in self.files:
                return name
        return None

    @property
    def wal_archive(self) -> Optional[str]:
        for name in WAL_ARCHIVES:
            if name in self.files:
                return name
        return None


class WalSegmentRange(BaseModel):
    """Inclusive range of WAL segments sharing one timeline+log prefix."""

    prefix: str = Field(min_length=16, max_length=16)
    start_ordinal: int = Field(ge=0, le=0xFFFFFFFF)
    end_ordinal: int = Field(ge=0, le=0xFFFFFFFF)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_order(self) -> "WalSegmentRange":
        if self.start_ordinal > self.end_ordinal:
            raise ValueError("start_ordinal must not exceed end_ordinal")
        return self

    def __len__(self) -> int:
        return self.end_ordinal - self.start_ordinal + 1

    def segment_names(self) -> List[str]:
        """All segment names in ascending ordinal order."""
        return [
            f"{self.prefix}{ordinal:08X}"
            for ordinal in range(self.start_ordinal, self.end_ordinal + 1)
        ]


class ManifestEntry(BaseModel):
    """One file in a checksum manifest."""

    relative_path: str
    hex_digest: str

    model_config = {"frozen": True}


class ChecksumManifest(BaseModel):
    """Content-addressed listing of every file in a backup generation."""

    entries: List[ManifestEntry] = Field(default_factory=list)
    algorithm: str = "sha256"
    generated_at: datetime
    label: Optional[str] = None

    @property
    def file_count(self) -> int:
        return len(self.entries)

    def digest_for(self, relative_path: str) -> Optional[str]:
        for entry in self.entries:
            if entry.relative_path == relative_path:
                return entry.hex_digest
        return None


class VerifyResult(BaseModel):
    """Outcome of verifying a manifest against files on disk."""

    ok: bool
    mismatches: List[str] = Field(default_factory=list)


class RetentionResult(BaseModel):
    """Generations removed (or not) by a retention run."""

    deleted: List[BackupDescriptor] = Field(default_factory=list)
    failed: List[BackupDescriptor] = Field(default_factory=list)


class BackupResult(BaseModel):
    """Summary of a completed backup run."""

    label: str
    destination: str
    compression: str
    file_count: int
    size_bytes: int
    duration_seconds: float
    retention: Optional[RetentionResult] = None


class RestoreResult(BaseModel):
    """Summary of a restore run."""

    mode: str
    state: str
    backup_location: str
    data_directory: str
    missing_wal_segments: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
