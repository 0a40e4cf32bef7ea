"""Bound the number of backups kept in the Drive folder."""
from __future__ import annotations

import logging
from typing import List

from core.drive_api import DriveClient, RemoteFile
from core.snapshot import select_snapshots

logger = logging.getLogger(__name__)


def snapshots_to_delete(files: List[RemoteFile], max_kept: int) -> List[RemoteFile]:
    """Return the oldest backups beyond ``max_kept``; none when unlimited."""

    if max_kept <= 0:
        return []
    backups = select_snapshots(files)
    excess = len(backups) - max_kept
    if excess <= 0:
        return []
    return backups[:excess]


async def prune(client: DriveClient, max_kept: int) -> List[RemoteFile]:
    """Delete the oldest backups so that at most ``max_kept`` remain.

    ``0`` keeps every backup. Files not following the backup naming
    convention are never touched.
    """

    if max_kept <= 0:
        return []
    files = await client.list_snapshots()
    doomed = snapshots_to_delete(files, max_kept)
    for item in doomed:
        await client.delete(item.id)
        logger.info("[Retention] Deleted old backup: %s", item.name)
    return doomed


__all__ = ["prune", "snapshots_to_delete"]
