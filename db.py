"""SQLite-backed local record store for InvoiceApp."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from core import app_paths
from core.snapshot import COLLECTIONS, FORMAT_VERSION, format_instant

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
DEFAULT_DB_PATH = Path(
    os.environ.get("INVOICEAPP_DB_PATH", str(app_paths.data_path("invoiceapp.db")))
).resolve()

SCHEMA_VERSION = FORMAT_VERSION
SETTINGS_COLLECTION = "settings"

# Collections keyed by something other than ``id``.
KEY_FIELDS: Dict[str, str] = {SETTINGS_COLLECTION: "key"}

# Settings that describe this device's Drive session. They are never
# exported, never replaced by a restore and never schedule a backup.
ACCESS_TOKEN_KEY = "googleDriveAccessToken"
TOKEN_EXPIRY_KEY = "googleDriveTokenExpiry"
REFRESH_TOKEN_KEY = "googleDriveRefreshToken"
FOLDER_ID_KEY = "googleDriveFolderId"
LAST_BACKUP_KEY = "lastBackupTime"

DEVICE_LOCAL_SETTINGS = frozenset(
    {ACCESS_TOKEN_KEY, TOKEN_EXPIRY_KEY, REFRESH_TOKEN_KEY, FOLDER_ID_KEY, LAST_BACKUP_KEY}
)

WriteListener = Callable[[str, str], None]


class StoreError(RuntimeError):
    """Raised when the local SQLite store cannot complete an operation."""


def record_key(collection: str) -> str:
    """Return the field identifying records of ``collection``."""

    return KEY_FIELDS.get(collection, "id")


def record_id(collection: str, record: Mapping[str, Any]) -> Optional[str]:
    value = record.get(record_key(collection))
    if value is None or value == "":
        return None
    return str(value)


def is_device_local(collection: str, record: Mapping[str, Any]) -> bool:
    return collection == SETTINGS_COLLECTION and record.get("key") in DEVICE_LOCAL_SETTINGS


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise StoreError(f"Unknown collection: {collection}")


class RecordStore:
    """Keyed JSON records, one SQLite table per collection.

    Reads and writes run on a worker thread with a fresh connection per call.
    Application writes go through :meth:`put` and :meth:`delete`, which stamp
    ``updatedAt`` and notify write listeners. Merge and restore use
    :meth:`exclusive`, which blocks application writes and skips listeners.
    """

    def __init__(self, path: Optional[Path | str] = None) -> None:
        self.path = Path(path or DEFAULT_DB_PATH).resolve()
        self._schema_lock = threading.Lock()
        self._schema_ready = False
        self._write_lock = asyncio.Lock()
        self._listeners: List[WriteListener] = []
        self._listener_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for collection in COLLECTIONS:
            conn.execute(
                f'CREATE TABLE IF NOT EXISTS "{collection}" (\n'
                "        id TEXT PRIMARY KEY,\n"
                "        updated_at TEXT,\n"
                "        payload TEXT NOT NULL\n"
                "    )"
            )
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _ensure_database(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
            try:
                self._ensure_schema(conn)
                conn.commit()
            finally:
                conn.close()
            self._schema_ready = True

    def _connect(self) -> sqlite3.Connection:
        self._ensure_database()
        return sqlite3.connect(self.path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database {self.path}: {exc}") from exc
        try:
            conn.execute("BEGIN")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Database operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Blocking helpers (run on a worker thread)
    # ------------------------------------------------------------------
    @staticmethod
    def _select_all(conn: sqlite3.Connection, collection: str) -> List[Dict[str, Any]]:
        rows = conn.execute(f'SELECT payload FROM "{collection}" ORDER BY rowid').fetchall()
        return [json.loads(row[0]) for row in rows]

    @staticmethod
    def _upsert(conn: sqlite3.Connection, collection: str, key: str, record: Mapping[str, Any]) -> None:
        conn.execute(
            f'INSERT OR REPLACE INTO "{collection}" (id, updated_at, payload) VALUES (?, ?, ?)',
            (key, record.get("updatedAt"), json.dumps(record, ensure_ascii=False)),
        )

    def _read_all_sync(self, collection: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            return self._select_all(conn, collection)

    def _read_one_sync(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute(f'SELECT payload FROM "{collection}" WHERE id = ?', (key,)).fetchone()
        return json.loads(row[0]) if row else None

    @classmethod
    def _write_rows(cls, conn: sqlite3.Connection, collection: str, records: Sequence[Mapping[str, Any]]) -> int:
        written = 0
        for record in records:
            key = record_id(collection, record)
            if key is None:
                logger.warning("Skipping %s record without %s", collection, record_key(collection))
                continue
            cls._upsert(conn, collection, key, record)
            written += 1
        return written

    @classmethod
    def _clear_rows(
        cls,
        conn: sqlite3.Connection,
        collection: str,
        keep: Optional[Callable[[Dict[str, Any]], bool]],
    ) -> int:
        if keep is None:
            return conn.execute(f'DELETE FROM "{collection}"').rowcount
        removed = 0
        for record in cls._select_all(conn, collection):
            if keep(record):
                continue
            conn.execute(f'DELETE FROM "{collection}" WHERE id = ?', (record_id(collection, record),))
            removed += 1
        return removed

    def _write_many_sync(self, collection: str, records: Sequence[Mapping[str, Any]]) -> int:
        with self._transaction() as conn:
            return self._write_rows(conn, collection, records)

    def _delete_sync(self, collection: str, key: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(f'DELETE FROM "{collection}" WHERE id = ?', (key,))
            return cursor.rowcount > 0

    def _begin_bulk(self) -> sqlite3.Connection:
        # Used from several worker threads, one call at a time.
        try:
            self._ensure_database()
            conn = sqlite3.connect(self.path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database {self.path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise StoreError(f"Database operation failed: {exc}") from exc
        return conn

    @staticmethod
    def _end_bulk(conn: sqlite3.Connection, commit: bool) -> None:
        try:
            if commit:
                conn.commit()
            else:
                conn.rollback()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Write listeners
    # ------------------------------------------------------------------
    def add_write_listener(self, listener: WriteListener) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_write_listener(self, listener: WriteListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify_write(self, collection: str, key: str) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(collection, key)
            except Exception:
                logger.exception("Write listener raised an exception")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        await asyncio.to_thread(self._ensure_database)

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        return await asyncio.to_thread(self._read_all_sync, collection)

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        _check_collection(collection)
        return await asyncio.to_thread(self._read_one_sync, collection, str(key))

    async def put(
        self,
        collection: str,
        record: Mapping[str, Any],
        *,
        notify: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Insert or replace ``record`` as an application write.

        ``updatedAt`` is always stamped with the current instant and a
        missing identifier is generated. Listeners are notified unless the
        record is a device-local setting or ``notify`` is ``False``.
        """

        _check_collection(collection)
        stored = dict(record)
        key_field = record_key(collection)
        if not stored.get(key_field):
            if collection == SETTINGS_COLLECTION:
                raise StoreError("Settings records require a key")
            stored[key_field] = str(uuid.uuid4())
        now = format_instant()
        if collection != SETTINGS_COLLECTION:
            stored.setdefault("createdAt", now)
        stored["updatedAt"] = now

        async with self._write_lock:
            await asyncio.to_thread(self._write_many_sync, collection, [stored])

        if notify is None:
            notify = not is_device_local(collection, stored)
        if notify:
            self._notify_write(collection, str(stored[key_field]))
        return stored

    async def delete(self, collection: str, key: str, *, notify: Optional[bool] = None) -> bool:
        _check_collection(collection)
        async with self._write_lock:
            removed = await asyncio.to_thread(self._delete_sync, collection, str(key))
        if notify is None:
            notify = not (collection == SETTINGS_COLLECTION and key in DEVICE_LOCAL_SETTINGS)
        if removed and notify:
            self._notify_write(collection, str(key))
        return removed

    async def get_setting(self, key: str, default: Any = None) -> Any:
        record = await self.get(SETTINGS_COLLECTION, key)
        if record is None:
            return default
        return record.get("value", default)

    async def set_setting(self, key: str, value: Any, *, notify: Optional[bool] = None) -> None:
        await self.put(SETTINGS_COLLECTION, {"key": key, "value": value}, notify=notify)

    async def delete_setting(self, key: str, *, notify: Optional[bool] = None) -> bool:
        return await self.delete(SETTINGS_COLLECTION, key, notify=notify)

    async def export_collections(self) -> Dict[str, List[Dict[str, Any]]]:
        """Read every collection, leaving out device-local settings."""

        exported: Dict[str, List[Dict[str, Any]]] = {}
        for collection in COLLECTIONS:
            records = await self.get_all(collection)
            exported[collection] = [
                record for record in records if not is_device_local(collection, record)
            ]
        return exported

    async def is_empty(self) -> bool:
        for collection in ("clients", "services", "invoices"):
            if await self.get_all(collection):
                return False
        return True

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["BulkWriter"]:
        """Hold the write lock for a merge or restore.

        Everything written through the yielded :class:`BulkWriter` shares one
        SQLite transaction: it is committed when the block exits normally
        and rolled back if anything raises, so a failed restore leaves the
        previous data in place. Application writes issued meanwhile wait
        until the block exits.
        """

        async with self._write_lock:
            conn = await asyncio.to_thread(self._begin_bulk)
            try:
                yield BulkWriter(conn)
            except BaseException:
                await asyncio.to_thread(self._end_bulk, conn, False)
                raise
            await asyncio.to_thread(self._end_bulk, conn, True)


class BulkWriter:
    """Write access handed out by :meth:`RecordStore.exclusive`.

    Records are stored exactly as given: no timestamp stamping and no
    listener notifications.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def _run(self, operation: Callable[..., Any], *args: Any) -> Any:
        def call() -> Any:
            try:
                return operation(self._conn, *args)
            except sqlite3.Error as exc:
                raise StoreError(f"Database operation failed: {exc}") from exc

        return await asyncio.to_thread(call)

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        return await self._run(RecordStore._select_all, collection)

    async def put_many(self, collection: str, records: Sequence[Mapping[str, Any]]) -> int:
        _check_collection(collection)
        if not records:
            return 0
        return await self._run(RecordStore._write_rows, collection, list(records))

    async def clear(
        self,
        collection: str,
        *,
        keep: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> int:
        _check_collection(collection)
        return await self._run(RecordStore._clear_rows, collection, keep)


__all__ = [
    "RecordStore",
    "BulkWriter",
    "StoreError",
    "WriteListener",
    "DEFAULT_DB_PATH",
    "SETTINGS_COLLECTION",
    "DEVICE_LOCAL_SETTINGS",
    "ACCESS_TOKEN_KEY",
    "TOKEN_EXPIRY_KEY",
    "REFRESH_TOKEN_KEY",
    "FOLDER_ID_KEY",
    "LAST_BACKUP_KEY",
    "record_key",
    "record_id",
    "is_device_local",
]
