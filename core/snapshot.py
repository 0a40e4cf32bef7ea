"""Snapshot document codec and backup naming convention."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

from core.errors import FormatError

COLLECTIONS: Sequence[str] = ("clients", "services", "timeEntries", "invoices", "settings")
FORMAT_VERSION = 2

SNAPSHOT_PREFIX = "backup-"
SNAPSHOT_SUFFIX = ".json"
SNAPSHOT_NAME_PATTERN = re.compile(r"^backup-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z\.json$")

Collections = Dict[str, List[Dict[str, Any]]]

_Named = TypeVar("_Named")


@dataclass(frozen=True)
class Snapshot:
    """A parsed backup document."""

    exported_at: Optional[str]
    version: Optional[int]
    collections: Collections


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_instant(value: Optional[datetime] = None) -> str:
    """Render ``value`` as ``YYYY-MM-DDTHH:MM:SS.sssZ`` in UTC."""

    value = _utc(value or datetime.now(timezone.utc))
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_instant(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning ``None`` when it is unusable."""

    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _utc(parsed)


def snapshot_name(instant: Optional[datetime] = None) -> str:
    """Return the remote file name for a snapshot taken at ``instant``."""

    stamp = format_instant(instant).replace(":", "-").replace(".", "-")
    return f"{SNAPSHOT_PREFIX}{stamp}{SNAPSHOT_SUFFIX}"


def is_snapshot_name(name: object) -> bool:
    return isinstance(name, str) and bool(SNAPSHOT_NAME_PATTERN.match(name))


def _name_of(item: Any) -> str:
    if isinstance(item, Mapping):
        return str(item.get("name", ""))
    return str(getattr(item, "name", ""))


def select_snapshots(files: Iterable[_Named]) -> List[_Named]:
    """Keep files following the naming convention, oldest first."""

    matching = [item for item in files if is_snapshot_name(_name_of(item))]
    matching.sort(key=_name_of)
    return matching


def latest_snapshot(files: Iterable[_Named]) -> Optional[_Named]:
    matching = select_snapshots(files)
    return matching[-1] if matching else None


def serialize(
    collections: Mapping[str, Sequence[Mapping[str, Any]]],
    exported_at: Optional[str] = None,
    version: int = FORMAT_VERSION,
) -> str:
    """Serialise every known collection into one backup document."""

    document: Dict[str, Any] = {
        "exportedAt": exported_at or format_instant(),
        "version": version,
    }
    for name in COLLECTIONS:
        document[name] = [dict(record) for record in collections.get(name, ())]
    return json.dumps(document, indent=2, ensure_ascii=False)


def parse_document(content: Union[str, bytes]) -> Snapshot:
    """Parse and validate a backup document.

    Only the top level is validated: the document must be a JSON object and
    each known collection must be present as an array. Records themselves are
    passed through untouched.
    """

    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError("Invalid backup format: content is not UTF-8 text") from exc
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as exc:
        raise FormatError("Invalid JSON format") from exc

    if not isinstance(data, dict):
        raise FormatError("Invalid backup format: data must be an object")

    missing = [name for name in COLLECTIONS if not isinstance(data.get(name), list)]
    if missing:
        raise FormatError(f"Invalid backup format: missing {', '.join(missing)}")

    version = data.get("version")
    return Snapshot(
        exported_at=data.get("exportedAt") if isinstance(data.get("exportedAt"), str) else None,
        version=version if isinstance(version, int) else None,
        collections={name: list(data[name]) for name in COLLECTIONS},
    )


def parse(content: Union[str, bytes]) -> Collections:
    """Return the collections contained in a backup document."""

    return parse_document(content).collections


__all__ = [
    "COLLECTIONS",
    "FORMAT_VERSION",
    "SNAPSHOT_NAME_PATTERN",
    "Collections",
    "Snapshot",
    "format_instant",
    "parse_instant",
    "snapshot_name",
    "is_snapshot_name",
    "select_snapshots",
    "latest_snapshot",
    "serialize",
    "parse",
    "parse_document",
]
