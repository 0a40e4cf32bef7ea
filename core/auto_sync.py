"""Debounced automatic backup of local changes to Google Drive."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from core.errors import AuthRequired, SyncError
from core.snapshot import format_instant

logger = logging.getLogger(__name__)

STATUS_SYNCED = "synced"
STATUS_OFFLINE = "offline"
STATUS_REAUTHORISE = "reauthorize"
STATUS_ERROR = "error"
STATUS_IDLE = "idle"

StatusPayload = Dict[str, object]
StatusCallback = Callable[[str, StatusPayload], None]
AuthLostCallback = Callable[[str], None]
PushCallable = Callable[[], Awaitable[object]]


@dataclass
class AutoSaveState:
    dirty: bool = False
    generation: int = 0
    last_push_at: Optional[str] = None
    last_error: Optional[str] = None


class AutoSaveController:
    """Coalesce bursts of local writes into a single backup push.

    Every write calls :meth:`mark_dirty`, which restarts the debounce timer.
    When the timer fires the push runs under a lock, so at most one push is
    in flight. The dirty flag survives failed pushes and pushes that raced a
    newer write.
    """

    def __init__(
        self,
        push: PushCallable,
        *,
        debounce_seconds: float = 2.0,
        status_callback: Optional[StatusCallback] = None,
        auth_lost_callback: Optional[AuthLostCallback] = None,
    ) -> None:
        self._push = push
        self._debounce = max(0.0, float(debounce_seconds))
        self._status_callback = status_callback
        self._auth_lost_callback = auth_lost_callback
        self._state = AutoSaveState()
        self._enabled = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._push_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def dirty(self) -> bool:
        return self._state.dirty

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def state(self) -> AutoSaveState:
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def enable(self) -> None:
        self._enabled = True
        if self._state.dirty:
            self._schedule()

    def disable(self) -> None:
        self._enabled = False
        self._cancel_timer()

    def mark_dirty(self) -> None:
        """Record a local write and restart the debounce timer."""

        self._state.dirty = True
        self._state.generation += 1
        if self._enabled:
            self._schedule()

    async def flush(self) -> bool:
        """Push immediately if there are unsaved changes."""

        self._cancel_timer()
        return await self._run_push()

    async def on_timer_fire(self) -> bool:
        if not self._state.dirty:
            logger.debug("[Backup] Auto-backup skipped: no changes since last backup")
            self._notify_status(STATUS_IDLE, {})
            return False
        if not self._enabled:
            logger.debug("[Backup] Auto-backup skipped: autosave disabled")
            return False
        return await self._run_push()

    async def wait_idle(self) -> None:
        """Wait for pushes started by the timer to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self._cancel_timer()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _schedule(self) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[Backup] No running event loop; backup deferred")
            return
        self._timer = loop.call_later(self._debounce, self._fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.on_timer_fire())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_push(self) -> bool:
        async with self._push_lock:
            if not self._state.dirty:
                return False
            generation = self._state.generation
            try:
                await self._push()
            except AuthRequired as exc:
                logger.warning("[Backup] Auto-backup disabled: %s", exc)
                self._state.last_error = str(exc)
                self.disable()
                self._notify_status(STATUS_REAUTHORISE, {"message": str(exc)})
                self._notify_auth_lost(str(exc))
                return False
            except SyncError as exc:
                logger.error("[Backup] Auto-backup failed: %s", exc)
                self._state.last_error = str(exc)
                self._notify_status(STATUS_OFFLINE, {"message": str(exc)})
                return False
            except Exception as exc:
                logger.exception("[Backup] Auto-backup failed unexpectedly")
                self._state.last_error = str(exc)
                self._notify_status(STATUS_ERROR, {"message": "unexpected failure"})
                return False

            if self._state.generation == generation:
                self._state.dirty = False
            self._state.last_push_at = format_instant()
            self._state.last_error = None
            self._notify_status(STATUS_SYNCED, {"dirty": self._state.dirty})
            return True

    def _notify_status(self, status: str, payload: StatusPayload) -> None:
        if self._status_callback:
            try:
                self._status_callback(status, payload)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Auto-backup status callback failed", exc_info=True)

    def _notify_auth_lost(self, message: str) -> None:
        if self._auth_lost_callback:
            try:
                self._auth_lost_callback(message)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Auth-lost callback failed", exc_info=True)


__all__ = [
    "AutoSaveController",
    "AutoSaveState",
    "STATUS_SYNCED",
    "STATUS_OFFLINE",
    "STATUS_REAUTHORISE",
    "STATUS_ERROR",
    "STATUS_IDLE",
]
