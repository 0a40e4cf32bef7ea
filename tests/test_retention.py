from __future__ import annotations

from typing import List

import pytest

from core import retention
from core.drive_api import RemoteFile


class _FakeClient:
    def __init__(self, names: List[str]) -> None:
        self.files = [RemoteFile(id=f"id-{index}", name=name) for index, name in enumerate(names)]
        self.deleted: List[str] = []

    async def list_snapshots(self) -> List[RemoteFile]:
        return list(self.files)

    async def delete(self, file_id: str) -> None:
        self.deleted.append(file_id)
        self.files = [item for item in self.files if item.id != file_id]


def _names(count: int) -> List[str]:
    days = [3, 1, 5, 2, 4][:count]
    return [f"backup-2025-01-0{day}T00-00-00-000Z.json" for day in days]


@pytest.mark.asyncio
async def test_prune_keeps_the_newest_snapshots():
    client = _FakeClient(_names(5))

    removed = await retention.prune(client, 3)

    assert sorted(item.name for item in removed) == [
        "backup-2025-01-01T00-00-00-000Z.json",
        "backup-2025-01-02T00-00-00-000Z.json",
    ]
    assert sorted(item.name for item in client.files) == [
        "backup-2025-01-03T00-00-00-000Z.json",
        "backup-2025-01-04T00-00-00-000Z.json",
        "backup-2025-01-05T00-00-00-000Z.json",
    ]


@pytest.mark.asyncio
async def test_prune_zero_keeps_everything():
    client = _FakeClient(_names(5))

    assert await retention.prune(client, 0) == []
    assert client.deleted == []


@pytest.mark.asyncio
async def test_prune_below_cap_is_a_noop():
    client = _FakeClient(_names(2))

    assert await retention.prune(client, 3) == []
    assert len(client.files) == 2


@pytest.mark.asyncio
async def test_prune_never_touches_foreign_files():
    client = _FakeClient(_names(4) + ["notes.txt", "backup-manual.json"])

    await retention.prune(client, 1)

    assert sorted(item.name for item in client.files) == [
        "backup-2025-01-05T00-00-00-000Z.json",
        "backup-manual.json",
        "notes.txt",
    ]


def test_snapshots_to_delete_orders_oldest_first():
    files = [RemoteFile(id=str(index), name=name) for index, name in enumerate(_names(5))]

    doomed = retention.snapshots_to_delete(files, 2)

    assert [item.name for item in doomed] == [
        "backup-2025-01-01T00-00-00-000Z.json",
        "backup-2025-01-02T00-00-00-000Z.json",
        "backup-2025-01-03T00-00-00-000Z.json",
    ]
