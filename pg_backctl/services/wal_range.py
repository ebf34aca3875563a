"""WAL segment range arithmetic.

WAL segment file names are 24 hex characters: TTTTTTTTXXXXXXXXYYYYYYYY where
- T = timeline ID (8 hex digits)
- X = high 32 bits of the LSN (log file ID) (8 hex digits)
- Y = segment number within the log file (8 hex digits)

The first 16 characters form the range prefix; the last 8 are the ordinal
that is incremented when enumerating a range.
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from pg_backctl.exceptions import InvalidRangeError
from pg_backctl.schemas.backup import WalSegmentRange

logger = logging.getLogger(__name__)

SEGMENT_NAME_LENGTH = 24
PREFIX_LENGTH = 16
DEFAULT_SEGMENT_SIZE = 16 * 1024 * 1024
COMPRESSION_SUFFIXES = ("", ".gz", ".bz2")

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")


def parse_segment_name(name: str) -> tuple[str, int]:
    """Split a segment name into its 16-char prefix and integer ordinal.

    Raises:
        InvalidRangeError: If the name is not 24 hexadecimal characters
    """
    if len(name) != SEGMENT_NAME_LENGTH or not _HEX_RE.match(name):
        raise InvalidRangeError(
            f"Invalid WAL segment name {name!r}: expected {SEGMENT_NAME_LENGTH} hex characters"
        )
    prefix, ordinal_hex = name[:PREFIX_LENGTH], name[PREFIX_LENGTH:]
    try:
        ordinal = int(ordinal_hex, 16)
    except ValueError as e:
        raise InvalidRangeError(f"Cannot parse ordinal of WAL segment {name!r}: {e}")
    return prefix.upper(), ordinal


def resolve_range(start: str, end: str) -> WalSegmentRange:
    """Build the inclusive range between two segment names.

    Args:
        start: First segment name
        end: Last segment name

    Returns:
        WalSegmentRange sharing the prefix of both names

    Raises:
        InvalidRangeError: On differing prefixes, unparsable names, or end < start
    """
    start_prefix, start_ordinal = parse_segment_name(start)
    end_prefix, end_ordinal = parse_segment_name(end)

    if start_prefix != end_prefix:
        raise InvalidRangeError(
            f"WAL segments {start} and {end} do not share a timeline/log prefix"
        )
    if end_ordinal < start_ordinal:
        raise InvalidRangeError(f"WAL range end {end} precedes start {start}")

    try:
        return WalSegmentRange(
            prefix=start_prefix,
            start_ordinal=start_ordinal,
            end_ordinal=end_ordinal,
        )
    except PydanticValidationError as e:
        raise InvalidRangeError(str(e))


def segment_names(start: str, end: str) -> list[str]:
    """Every segment name from start to end inclusive, ascending."""
    return resolve_range(start, end).segment_names()


def lsn_to_int(lsn: str) -> int:
    """Convert an LSN like '0/2000028' to a 64-bit integer."""
    try:
        high, low = lsn.split("/")
        return (int(high, 16) << 32) + int(low, 16)
    except ValueError:
        raise InvalidRangeError(f"Invalid LSN: {lsn!r}")


def lsn_to_segment_name(lsn: str, timeline: int, segment_size: int = DEFAULT_SEGMENT_SIZE) -> str:
    """Name of the WAL segment containing ``lsn`` on ``timeline``."""
    segments_per_log = 0x100000000 // segment_size
    segment_number = lsn_to_int(lsn) // segment_size
    log_id = segment_number // segments_per_log
    ordinal = segment_number % segments_per_log
    return f"{timeline:08X}{log_id:08X}{ordinal:08X}"


def range_from_backup_manifest(
    manifest_text: str, segment_size: int = DEFAULT_SEGMENT_SIZE
) -> WalSegmentRange:
    """Derive the WAL range a base backup needs from its ``backup_manifest``.

    pg_basebackup writes a JSON manifest whose ``WAL-Ranges`` list holds the
    timeline plus start and end LSNs required for consistency. When several
    ranges are present (timeline switch during the backup) the last one wins,
    since that is the timeline recovery continues on.
    """
    try:
        manifest = json.loads(manifest_text)
        wal_range = manifest["WAL-Ranges"][-1]
        timeline = int(wal_range["Timeline"])
        start_lsn = wal_range["Start-LSN"]
        end_lsn = wal_range["End-LSN"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise InvalidRangeError(f"backup_manifest has no usable WAL-Ranges entry: {e}")

    start = lsn_to_segment_name(start_lsn, timeline, segment_size)
    end = lsn_to_segment_name(end_lsn, timeline, segment_size)
    logger.info("WAL range from backup manifest: %s -> %s", start, end)
    return resolve_range(start, end)


def find_segment_key(segment: str, keys: Iterable[str]) -> Optional[str]:
    """Find the store key holding ``segment``, compressed or not.

    Matches by suffix because remote keys may carry additional prefix
    segments (e.g. ``archive/wal/000000010000000000000030.gz``).
    """
    candidates = tuple(f"{segment}{suffix}" for suffix in COMPRESSION_SUFFIXES)
    for key in keys:
        name = key.rsplit("/", 1)[-1]
        if name in candidates:
            return key
    return None
