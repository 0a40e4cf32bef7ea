"""Last-writer-wins reconciliation of a remote snapshot into the local store."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

import db
from core import conflicts
from core.snapshot import COLLECTIONS, parse_instant

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


@dataclass
class MergeStats:
    added: int = 0
    updated: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"added": self.added, "updated": self.updated}


@dataclass
class MergePlan:
    """Decisions for one collection computed from a single local read."""

    to_add: List[Record] = field(default_factory=list)
    to_update: List[Record] = field(default_factory=list)
    replaced: List[Record] = field(default_factory=list)

    @property
    def stats(self) -> MergeStats:
        return MergeStats(added=len(self.to_add), updated=len(self.to_update))


def remote_wins(local: Mapping[str, Any], remote: Mapping[str, Any]) -> bool:
    """Return ``True`` when ``remote`` should overwrite ``local``.

    The remote record must carry a usable ``updatedAt`` strictly newer than
    the local one; a local record without a usable timestamp always loses.
    Equal timestamps keep the local record.
    """

    remote_time = parse_instant(remote.get("updatedAt"))
    if remote_time is None:
        return False
    local_time = parse_instant(local.get("updatedAt"))
    return local_time is None or remote_time > local_time


def plan_merge(
    local_records: Sequence[Mapping[str, Any]],
    remote_records: Sequence[Mapping[str, Any]],
    key: str = "id",
) -> MergePlan:
    """Decide, per remote record, whether it is added, updated or ignored."""

    local_index: Dict[str, Mapping[str, Any]] = {}
    for item in local_records:
        value = item.get(key)
        if value not in (None, ""):
            local_index[str(value)] = item

    plan = MergePlan()
    for remote in remote_records:
        if not isinstance(remote, Mapping):
            logger.warning("[Merge] Ignoring non-object record: %r", remote)
            continue
        value = remote.get(key)
        if value in (None, ""):
            logger.warning("[Merge] Ignoring remote record without %s", key)
            continue
        local = local_index.get(str(value))
        if local is None:
            plan.to_add.append(dict(remote))
            local_index[str(value)] = remote
        elif remote_wins(local, remote):
            plan.to_update.append(dict(remote))
            plan.replaced.append(dict(local))
            local_index[str(value)] = remote
    return plan


async def merge_collection(
    writer: db.BulkWriter,
    collection: str,
    remote_records: Sequence[Mapping[str, Any]],
) -> MergeStats:
    """Merge ``remote_records`` into ``collection`` through ``writer``.

    Local-only records are left alone; nothing is ever deleted.
    """

    key = db.record_key(collection)
    remote_records = [
        item
        for item in remote_records
        if not (isinstance(item, Mapping) and db.is_device_local(collection, item))
    ]
    local_records = await writer.get_all(collection)
    plan = plan_merge(local_records, remote_records, key)

    for local, remote in zip(plan.replaced, plan.to_update):
        conflicts.record(collection, str(remote.get(key)), local, remote)

    await writer.put_many(collection, plan.to_add + plan.to_update)
    stats = plan.stats
    logger.info(
        "[Merge] %s: %d added, %d updated", collection, stats.added, stats.updated
    )
    return stats


async def merge_all(
    store: db.RecordStore,
    collections: Mapping[str, Sequence[Mapping[str, Any]]],
) -> Dict[str, MergeStats]:
    """Merge every known collection of a parsed snapshot.

    Runs under the store's exclusive writer so application writes cannot
    interleave with the merge.
    """

    results: Dict[str, MergeStats] = {}
    async with store.exclusive() as writer:
        for collection in COLLECTIONS:
            results[collection] = await merge_collection(
                writer, collection, collections.get(collection, [])
            )
    return results


async def restore_full(
    store: db.RecordStore,
    collections: Mapping[str, Sequence[Mapping[str, Any]]],
) -> Dict[str, int]:
    """Replace local data with the snapshot contents.

    Each collection is cleared and every snapshot record inserted as-is.
    Device-local settings survive the restore untouched.
    """

    restored: Dict[str, int] = {}
    async with store.exclusive() as writer:
        for collection in COLLECTIONS:
            if collection == db.SETTINGS_COLLECTION:
                await writer.clear(
                    collection, keep=lambda item: db.is_device_local(db.SETTINGS_COLLECTION, item)
                )
            else:
                await writer.clear(collection)
            records = [
                dict(item)
                for item in collections.get(collection, [])
                if isinstance(item, Mapping) and not db.is_device_local(collection, item)
            ]
            restored[collection] = await writer.put_many(collection, records)
    logger.info("[Merge] Restored snapshot: %s", restored)
    return restored


__all__ = [
    "MergePlan",
    "MergeStats",
    "merge_all",
    "merge_collection",
    "plan_merge",
    "remote_wins",
    "restore_full",
]
