"""SHA-256 manifests for backup generations.

The manifest file is ``sha256sum`` compatible, so a generation can be
checked by hand with ``sha256sum -c backup.sha256`` from inside its folder.
"""

import hashlib
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from pg_backctl.exceptions import ConfigurationError
from pg_backctl.schemas.backup import (
    CHECKSUM_FILE,
    CHECKSUM_INFO_FILE,
    ChecksumManifest,
    ManifestEntry,
    VerifyResult,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
EXCLUDED_FILES = frozenset({CHECKSUM_FILE, CHECKSUM_INFO_FILE})


def file_digest(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _iter_files(root: Path):
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath) / filename
            relative = path.relative_to(root).as_posix()
            if relative in EXCLUDED_FILES:
                continue
            yield relative, path


def generate(root: Path, label: str | None = None) -> ChecksumManifest:
    """Compute a manifest for every file under ``root``.

    The manifest files themselves are skipped. Entries are sorted by their
    relative POSIX path.
    """
    root = Path(root)
    entries = [
        ManifestEntry(relative_path=relative, hex_digest=file_digest(path))
        for relative, path in sorted(_iter_files(root))
    ]
    logger.info("Generated checksums for %d files under %s", len(entries), root)
    return ChecksumManifest(
        entries=entries,
        generated_at=datetime.now(UTC),
        label=label,
    )


def write(root: Path, manifest: ChecksumManifest) -> tuple[Path, Path]:
    """Write ``backup.sha256`` and ``backup.sha256.info`` into ``root``.

    Returns:
        Paths of the checksum file and the info file
    """
    root = Path(root)
    checksum_path = root / CHECKSUM_FILE
    info_path = root / CHECKSUM_INFO_FILE

    lines = [f"{entry.hex_digest}  {entry.relative_path}\n" for entry in manifest.entries]
    checksum_path.write_text("".join(lines), encoding="utf-8")

    info = (
        f"Backup checksum manifest\n"
        f"Label: {manifest.label or '-'}\n"
        f"Algorithm: {manifest.algorithm}\n"
        f"Generated: {manifest.generated_at.isoformat()}\n"
        f"Files: {manifest.file_count}\n"
        f"\n"
        f"Verify with: cd <backup folder> && sha256sum -c {CHECKSUM_FILE}\n"
    )
    info_path.write_text(info, encoding="utf-8")

    logger.info("Wrote checksum manifest %s (%d entries)", checksum_path, manifest.file_count)
    return checksum_path, info_path


def read(path: Path) -> ChecksumManifest:
    """Parse a ``backup.sha256`` file.

    Raises:
        ConfigurationError: If the file is missing or a line is malformed
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Checksum manifest not found: {path}")

    entries = []
    for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        digest, sep, relative = line.partition("  ")
        # sha256sum binary mode marks the path with '*'
        if not sep:
            digest, sep, relative = line.partition(" *")
        if not sep or len(digest) != 64:
            raise ConfigurationError(f"Malformed checksum line {lineno} in {path}")
        entries.append(ManifestEntry(relative_path=relative, hex_digest=digest.lower()))

    generated_at = datetime.fromtimestamp(path.stat().st_mtime, UTC)
    return ChecksumManifest(entries=entries, generated_at=generated_at)


def verify(root: Path, manifest: ChecksumManifest) -> VerifyResult:
    """Recompute digests under ``root`` and compare with ``manifest``.

    Read-only. Files missing on disk count as mismatches; files on disk
    that the manifest does not mention are ignored.
    """
    root = Path(root)
    mismatches = []
    for entry in manifest.entries:
        path = root / entry.relative_path
        if not path.is_file():
            logger.warning("Checksum verification: missing file %s", entry.relative_path)
            mismatches.append(entry.relative_path)
            continue
        if file_digest(path) != entry.hex_digest:
            logger.warning("Checksum verification: digest mismatch for %s", entry.relative_path)
            mismatches.append(entry.relative_path)

    if mismatches:
        logger.error("Checksum verification failed for %d of %d files", len(mismatches), manifest.file_count)
    else:
        logger.info("Checksum verification passed for %d files", manifest.file_count)
    return VerifyResult(ok=not mismatches, mismatches=mismatches)
