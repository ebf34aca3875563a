"""Retention policy for backup generations."""

import logging
from datetime import UTC, datetime, timedelta
from typing import List, Optional

from pg_backctl.schemas.backup import BackupDescriptor, RetentionResult
from pg_backctl.schemas.request import RetentionPolicy
from pg_backctl.services.backup_locator import BackupLocator
from pg_backctl.services.object_store import ObjectStore

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, UTC)


def _sort_key(backup: BackupDescriptor):
    return (backup.last_modified or _EPOCH, backup.location)


def apply(
    policy: RetentionPolicy,
    backups: List[BackupDescriptor],
    now: Optional[datetime] = None,
) -> List[BackupDescriptor]:
    """Return the generations the policy would delete. Pure.

    ``keep_count`` takes precedence over ``keep_days``. Without either the
    policy deletes nothing.
    """
    ordered = sorted(backups, key=_sort_key, reverse=True)

    if policy.keep_count:
        to_delete = ordered[policy.keep_count:]
        logger.info(
            "Retention: keeping newest %d of %d backups, %d to delete",
            policy.keep_count,
            len(ordered),
            len(to_delete),
        )
        return to_delete

    if policy.keep_days:
        now = now or datetime.now(UTC)
        max_age = timedelta(days=policy.keep_days)
        to_delete = [
            backup
            for backup in ordered
            if backup.last_modified is not None and now - backup.last_modified >= max_age
        ]
        logger.info(
            "Retention: keeping backups younger than %d days, %d of %d to delete",
            policy.keep_days,
            len(to_delete),
            len(ordered),
        )
        return to_delete

    logger.info("Retention: no policy configured, nothing to delete")
    return []


async def prune(store: ObjectStore, prefix: str, policy: RetentionPolicy) -> RetentionResult:
    """Delete the generations under ``prefix`` that fall outside ``policy``.

    A failed deletion is logged and recorded; the remaining ones still run.
    """
    result = RetentionResult()
    if policy.is_noop:
        logger.info("Retention: no policy configured, skipping prune of %r", prefix)
        return result

    generations = await BackupLocator(store).list_generations(prefix)
    for backup in apply(policy, generations):
        try:
            await store.delete_recursive(backup.location)
            logger.info("Deleted old backup %s", backup.location)
            result.deleted.append(backup)
        except Exception as e:
            logger.error("Failed to delete old backup %s: %s", backup.location, e)
            result.failed.append(backup)

    return result
