"""Locate backup generations in an object store."""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from pg_backctl.exceptions import NoBackupFoundError
from pg_backctl.schemas.backup import BACKUP_ARTIFACTS, BackupDescriptor, ObjectInfo
from pg_backctl.services.object_store import ObjectStore, folder_prefix
from pg_backctl.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


def is_usable(obj: ObjectInfo) -> bool:
    """True when the object is a recognised backup artefact."""
    return obj.name in BACKUP_ARTIFACTS


def _label_of(location: str) -> str:
    return location.rstrip("/").rsplit("/", 1)[-1] or location


def _newest_first(generations: List[BackupDescriptor]) -> List[BackupDescriptor]:
    return sorted(generations, key=lambda g: (g.last_modified, g.location), reverse=True)


class BackupLocator:
    """Resolves which backup generation to restore from."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def locate(self, explicit_path: Optional[str] = None, search_prefix: str = "") -> str:
        """Return the generation folder to restore.

        An explicit path is returned verbatim without touching the store.
        Otherwise the most recently modified complete generation (one holding
        a base archive) under ``search_prefix`` decides; equal timestamps fall
        back to the lexicographically greatest location. Folders left behind
        by an interrupted upload are skipped.

        Raises:
            NoBackupFoundError: If no complete generation exists under the prefix
        """
        if explicit_path:
            logger.info("Using explicit backup path: %s", sanitize_log_message(explicit_path))
            return explicit_path

        logger.info("Auto-detecting latest backup under prefix %r", search_prefix)
        generations = await self.list_generations(search_prefix)

        if not generations:
            await self._log_namespace_hint(search_prefix)
            raise NoBackupFoundError(f"No usable backup found under prefix {search_prefix!r}")

        latest = _newest_first(generations)[0]
        logger.info(
            "Latest backup: %s (modified %s)",
            latest.location,
            latest.last_modified.isoformat(),
        )
        return latest.location

    async def _log_namespace_hint(self, search_prefix: str) -> None:
        try:
            objects = await self.store.list("")
        except Exception as e:
            logger.warning("Could not list store root for diagnostics: %s", e)
            return
        top_level = sorted({obj.key.split("/", 1)[0] for obj in objects if "/" in obj.key})
        logger.error(
            "No backup found under %r. Top-level prefixes in the store: %s",
            search_prefix,
            ", ".join(f"{p}/" for p in top_level) or "(empty)",
        )

    async def describe(self, location: str) -> BackupDescriptor:
        """Build a descriptor for one generation folder."""
        folder = folder_prefix(location)
        objects = [obj for obj in await self.store.list(folder) if "/" not in obj.key[len(folder):]]
        return _descriptor(location.strip("/"), objects)

    async def list_generations(self, prefix: str = "") -> List[BackupDescriptor]:
        """Group stored artefacts by folder into generation descriptors.

        Only folders holding a base archive count as generations.
        """
        grouped: Dict[str, List[ObjectInfo]] = defaultdict(list)
        for obj in await self.store.list(prefix):
            if is_usable(obj):
                grouped[obj.parent].append(obj)

        generations = []
        for location, objects in grouped.items():
            descriptor = _descriptor(location, objects)
            if descriptor.base_archive is None:
                logger.debug("Ignoring %s: no base archive", location)
                continue
            generations.append(descriptor)
        return generations


def _descriptor(location: str, objects: List[ObjectInfo]) -> BackupDescriptor:
    return BackupDescriptor(
        label=_label_of(location),
        location=location,
        last_modified=max((obj.last_modified for obj in objects), default=None),
        files=frozenset(obj.name for obj in objects),
        size_bytes=sum(obj.size for obj in objects),
    )
