"""Record of local records overwritten by newer remote versions during a merge."""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional

from core import app_paths
from core.snapshot import format_instant

_LOGGER = logging.getLogger("invoiceapp.sync.conflicts")
_HANDLER_CONFIGURED = False
_CONFLICTS: Deque[Dict[str, object]] = deque(maxlen=50)
_LOCK = threading.Lock()


def _ensure_logger() -> logging.Logger:
    global _HANDLER_CONFIGURED
    if _HANDLER_CONFIGURED:
        return _LOGGER
    _HANDLER_CONFIGURED = True
    _LOGGER.setLevel(logging.INFO)
    try:
        file_handler = logging.FileHandler(app_paths.logs_path("conflicts.log"), encoding="utf-8")
    except OSError as exc:  # pragma: no cover - depends on filesystem permissions
        logging.getLogger(__name__).warning("[Merge] Overwrite log unavailable: %s", exc)
        return _LOGGER
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    _LOGGER.addHandler(file_handler)
    return _LOGGER


def changed_fields(local: Mapping[str, Any], remote: Mapping[str, Any]) -> List[str]:
    """Return the fields whose values differ, ignoring ``updatedAt``."""

    keys = set(local) | set(remote)
    keys.discard("updatedAt")
    return sorted(key for key in keys if local.get(key) != remote.get(key))


def record(
    collection: str,
    record_id: str,
    local: Mapping[str, Any],
    remote: Mapping[str, Any],
    *,
    source: str = "merge",
    context: Optional[Mapping[str, object]] = None,
) -> None:
    """Log an overwrite and append it to the in-memory cache.

    Overwrites that only move ``updatedAt`` forward are not recorded.
    """

    fields = changed_fields(local, remote)
    if not fields:
        return
    payload: Dict[str, object] = {
        "collection": collection,
        "record_id": record_id,
        "fields": fields,
        "local_updated_at": local.get("updatedAt"),
        "remote_updated_at": remote.get("updatedAt"),
        "timestamp": format_instant(),
        "source": source,
    }
    if context:
        payload.update(dict(context))

    logger = _ensure_logger()
    try:
        logger.info("%s", json.dumps(payload, ensure_ascii=False, sort_keys=True))
    except TypeError:  # pragma: no cover - non-serialisable context values
        logger.info("collection=%s record_id=%s fields=%s", collection, record_id, fields)

    with _LOCK:
        _CONFLICTS.appendleft(payload)


def recent(limit: int = 10) -> List[Dict[str, object]]:
    """Return the most recent overwrite entries."""

    with _LOCK:
        return list(list(_CONFLICTS)[:limit])


def clear() -> None:
    """Remove all cached entries."""

    with _LOCK:
        _CONFLICTS.clear()


__all__ = ["changed_fields", "record", "recent", "clear"]
