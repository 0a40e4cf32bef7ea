from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from core import auto_sync
from core.auto_sync import AutoSaveController
from core.errors import AuthRequired, NetworkFailure

DEBOUNCE = 0.05


class _Pusher:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Optional[Exception] = None
        self.during_push = None

    async def __call__(self) -> None:
        self.calls += 1
        if self.during_push is not None:
            callback, self.during_push = self.during_push, None
            callback()
        if self.error is not None:
            raise self.error


async def _settle(controller: AutoSaveController) -> None:
    await asyncio.sleep(DEBOUNCE * 4)
    await controller.wait_idle()


def _controller(pusher: _Pusher, statuses: Optional[List[str]] = None, lost: Optional[List[str]] = None):
    controller = AutoSaveController(
        pusher,
        debounce_seconds=DEBOUNCE,
        status_callback=(lambda status, payload: statuses.append(status)) if statuses is not None else None,
        auth_lost_callback=lost.append if lost is not None else None,
    )
    controller.enable()
    return controller


@pytest.mark.asyncio
async def test_burst_of_writes_is_coalesced_into_one_push():
    pusher = _Pusher()
    controller = _controller(pusher)

    for _ in range(5):
        controller.mark_dirty()
    assert controller.pending
    await _settle(controller)

    assert pusher.calls == 1
    assert not controller.dirty
    assert controller.state.last_push_at is not None


@pytest.mark.asyncio
async def test_writes_spaced_beyond_debounce_each_push():
    pusher = _Pusher()
    controller = _controller(pusher)

    for _ in range(3):
        controller.mark_dirty()
        await _settle(controller)

    assert pusher.calls == 3


@pytest.mark.asyncio
async def test_disabled_controller_only_tracks_dirty_state():
    pusher = _Pusher()
    controller = _controller(pusher)
    controller.disable()

    controller.mark_dirty()
    await _settle(controller)

    assert pusher.calls == 0
    assert controller.dirty
    assert not controller.pending

    controller.enable()
    await _settle(controller)
    assert pusher.calls == 1


@pytest.mark.asyncio
async def test_timer_fire_without_changes_reports_idle():
    pusher = _Pusher()
    statuses: List[str] = []
    controller = _controller(pusher, statuses)

    assert await controller.on_timer_fire() is False
    assert pusher.calls == 0
    assert statuses == [auto_sync.STATUS_IDLE]


@pytest.mark.asyncio
async def test_failed_push_keeps_changes_dirty():
    pusher = _Pusher()
    pusher.error = NetworkFailure("offline")
    statuses: List[str] = []
    controller = _controller(pusher, statuses)

    controller.mark_dirty()
    await _settle(controller)

    assert pusher.calls == 1
    assert controller.dirty
    assert controller.enabled
    assert controller.state.last_error == "offline"
    assert statuses == [auto_sync.STATUS_OFFLINE]


@pytest.mark.asyncio
async def test_unexpected_error_never_escapes_the_timer():
    pusher = _Pusher()
    pusher.error = KeyError("boom")
    statuses: List[str] = []
    controller = _controller(pusher, statuses)

    controller.mark_dirty()
    await _settle(controller)

    assert statuses == [auto_sync.STATUS_ERROR]
    pusher.error = None
    controller.mark_dirty()
    await _settle(controller)
    assert pusher.calls == 2
    assert not controller.dirty


@pytest.mark.asyncio
async def test_auth_failure_disables_autosave_and_notifies():
    pusher = _Pusher()
    pusher.error = AuthRequired("Authorization expired. Please sign in again.")
    statuses: List[str] = []
    lost: List[str] = []
    controller = _controller(pusher, statuses, lost)

    controller.mark_dirty()
    await _settle(controller)

    assert not controller.enabled
    assert controller.dirty
    assert statuses == [auto_sync.STATUS_REAUTHORISE]
    assert lost == ["Authorization expired. Please sign in again."]

    controller.mark_dirty()
    await _settle(controller)
    assert pusher.calls == 1


@pytest.mark.asyncio
async def test_write_during_push_keeps_flag_and_schedules_another_push():
    pusher = _Pusher()
    controller = _controller(pusher)
    pusher.during_push = controller.mark_dirty

    controller.mark_dirty()
    assert await controller.flush() is True
    assert controller.dirty

    await _settle(controller)
    assert pusher.calls == 2
    assert not controller.dirty


@pytest.mark.asyncio
async def test_flush_without_changes_does_not_push():
    pusher = _Pusher()
    controller = _controller(pusher)

    assert await controller.flush() is False
    assert pusher.calls == 0
