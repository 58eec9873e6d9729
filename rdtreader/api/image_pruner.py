"""Cleanup job that deletes stale, unreferenced test images.

An image is stale when it is older than the retention window and no test
record references it, e.g. left behind by a failed submission or a crash
between deleting a record and releasing its image. Images referenced by a
record are never touched. The job is idempotent and needs no locking against
normal traffic because it only removes files past the time threshold.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..datalake.records import TestRecordStore
from ..datalake.storage import FileSystemImageStore

logger = logging.getLogger(__name__)


@dataclass
class PruneStats:
    """Statistics from a pruning operation."""

    files_scanned: int = 0
    images_deleted: int = 0
    referenced_preserved: int = 0
    recent_preserved: int = 0
    bytes_freed: int = 0
    errors: int = 0


def prune_images(
    store: TestRecordStore,
    images: FileSystemImageStore,
    retention_days: int,
    dry_run: bool = False,
    now: datetime | None = None,
) -> PruneStats:
    """Delete unreferenced images older than ``retention_days``.

    Args:
        store: Record store used to find referenced images
        images: Image store to prune
        retention_days: Minimum age in days before an orphaned image is deleted
        dry_run: If True, only report what would be deleted

    Returns:
        PruneStats describing the run
    """
    if retention_days < 1:
        raise ValueError(f"retention_days must be >= 1, got {retention_days}")

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    referenced = store.referenced_images()
    stats = PruneStats()

    logger.info(
        "%sPruning images: root=%s retention=%d days cutoff=%s",
        "DRY RUN: " if dry_run else "",
        images.root,
        retention_days,
        cutoff.isoformat(),
    )

    for ref, path in images.iter_images():
        stats.files_scanned += 1
        if ref in referenced:
            stats.referenced_preserved += 1
            continue
        try:
            stat = path.stat()
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            if modified >= cutoff:
                stats.recent_preserved += 1
                continue
            if dry_run:
                logger.info("[DRY RUN] Would delete orphaned image %s (%d bytes)", ref, stat.st_size)
            else:
                path.unlink(missing_ok=True)
                logger.info("Deleted orphaned image %s (%d bytes)", ref, stat.st_size)
            stats.images_deleted += 1
            stats.bytes_freed += stat.st_size
        except OSError as exc:
            logger.error("Error pruning %s: %s", path, exc)
            stats.errors += 1

    logger.info(
        "%sPruning complete: scanned=%d deleted=%d referenced=%d recent=%d freed=%d bytes errors=%d",
        "DRY RUN " if dry_run else "",
        stats.files_scanned,
        stats.images_deleted,
        stats.referenced_preserved,
        stats.recent_preserved,
        stats.bytes_freed,
        stats.errors,
    )
    return stats


__all__ = ["PruneStats", "prune_images"]
