"""Google Drive backup and synchronisation for the InvoiceApp record store."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import db
import settings
from core import merge, retention, snapshot
from core.auto_sync import AuthLostCallback, AutoSaveController, StatusCallback
from core.drive_api import DriveClient, RemoteFile, ServiceFactory, folder_name_for
from core.errors import NotFound, SyncConfigurationError, SyncError
from core.google_credentials import CredentialManager, GoogleOAuthProvider, OAuthProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, Optional[str]], OAuthProvider]


@dataclass
class PushResult:
    """Outcome of uploading one snapshot."""

    file_id: str
    name: str
    exported_at: str
    pruned: int = 0


@dataclass
class SyncResult:
    """Summary of a merge or restore pass."""

    action: str
    message: str
    backup_name: Optional[str] = None
    file_id: Optional[str] = None
    stats: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def added(self) -> int:
        return sum(item.get("added", 0) for item in self.stats.values())

    @property
    def updated(self) -> int:
        return sum(item.get("updated", 0) for item in self.stats.values())


@dataclass
class BackupStatus:
    is_configured: bool
    config_source: Optional[str]
    client_id: Optional[str]
    is_authorized: bool
    is_enabled: bool
    environment: str
    folder_name: str
    last_backup_time: Optional[str]
    dirty: bool
    local_empty: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_provider(client_id: str, client_secret: Optional[str]) -> OAuthProvider:
    return GoogleOAuthProvider(client_id, client_secret)


class BackupSync:
    """The sync engine: one instance per process, injected where needed.

    Holds the credential, the Drive client and the autosave scheduler as
    fields. Operations log failures and re-raise them as :class:`SyncError`
    subclasses carrying a message suitable for the user.
    """

    def __init__(
        self,
        store: db.RecordStore,
        config: Optional[settings.SyncConfig] = None,
        *,
        environment: Optional[str] = None,
        provider_factory: Optional[ProviderFactory] = None,
        service_factory: Optional[ServiceFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        status_callback: Optional[StatusCallback] = None,
        auth_lost_callback: Optional[AuthLostCallback] = None,
    ) -> None:
        self.store = store
        self.config = config or settings.SyncConfig()
        self.environment = environment or settings.detect_environment()
        self.folder_name = folder_name_for(self.environment)
        self._provider_factory = provider_factory or _default_provider
        self._service_factory = service_factory
        self._clock = clock or _utc_now
        self.credentials: Optional[CredentialManager] = None
        self.client: Optional[DriveClient] = None
        self._client_id: Optional[str] = None
        self._config_source: Optional[str] = None
        self._listening = False
        self.autosave = AutoSaveController(
            self.push_snapshot,
            debounce_seconds=self.config.debounce_seconds,
            status_callback=status_callback,
            auth_lost_callback=auth_lost_callback,
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    async def _ensure_components(self) -> None:
        manual = await self.store.get_setting(settings.MANUAL_CLIENT_ID_KEY)
        client_id, source = settings.resolve_client_id(manual)
        if not client_id:
            raise SyncConfigurationError(
                "Google OAuth client id is not configured. Set it in the settings first."
            )
        self._config_source = source
        if self.credentials is not None and client_id == self._client_id:
            return
        logger.info("[Backup] Using Google OAuth client id from %s configuration", source)
        provider = self._provider_factory(client_id, settings.client_secret())
        self.credentials = CredentialManager(
            self.store,
            provider,
            lookahead_seconds=self.config.renewal_lookahead_seconds,
            clock=self._clock,
        )
        self.client = DriveClient(
            self.credentials,
            self.store,
            folder_name=self.folder_name,
            service_factory=self._service_factory,
        )
        self._client_id = client_id

    def _require_client(self) -> DriveClient:
        if self.client is None:
            raise SyncConfigurationError("Google Drive backup is not configured.")
        return self.client

    def _on_local_write(self, collection: str, key: str) -> None:
        self.autosave.mark_dirty()

    async def initialize(self) -> BackupStatus:
        """Prepare the engine at start-up and resume autosave when signed in."""

        await self.store.initialize()
        if not self._listening:
            self.store.add_write_listener(self._on_local_write)
            self._listening = True
        try:
            await self._ensure_components()
        except SyncConfigurationError:
            logger.info("[Backup] Google OAuth client id not configured")
            return await self.status()
        assert self.credentials is not None
        if await self.credentials.load():
            self.autosave.enable()
            logger.info("[Backup] Auto-backup enabled with Google Drive")
        return await self.status()

    async def connect(self) -> BackupStatus:
        """Sign in interactively and turn autosave on."""

        await self._ensure_components()
        assert self.credentials is not None and self.client is not None
        try:
            await self.credentials.authorize(interactive=True)
            await self.client.ensure_folder()
        except SyncError as exc:
            logger.error("[Backup] Failed to connect to Google Drive: %s", exc)
            raise
        self.autosave.enable()
        logger.info("[Backup] Auto-backup enabled to Google Drive (%s)", self.folder_name)
        return await self.status()

    async def disconnect(self) -> None:
        self.autosave.disable()
        if self.credentials is not None:
            await self.credentials.invalidate()
            return
        for key in (db.ACCESS_TOKEN_KEY, db.TOKEN_EXPIRY_KEY, db.REFRESH_TOKEN_KEY, db.FOLDER_ID_KEY):
            await self.store.delete_setting(key)

    async def close(self) -> None:
        self.autosave.close()
        await self.autosave.wait_idle()
        if self._listening:
            self.store.remove_write_listener(self._on_local_write)
            self._listening = False

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------
    async def _retention_count(self) -> int:
        value = await self.store.get_setting(settings.RETENTION_SETTING_KEY)
        if value in (None, ""):
            return self.config.retention_count
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            logger.warning("[Retention] Invalid maxBackups setting %r", value)
            return self.config.retention_count

    async def _prune_quietly(self, client: DriveClient) -> List[RemoteFile]:
        try:
            return await retention.prune(client, await self._retention_count())
        except (SyncError, db.StoreError) as exc:
            logger.warning("[Retention] Failed to clean up old backups: %s", exc)
            return []

    async def push_snapshot(self) -> PushResult:
        """Upload the current local data as a new backup file."""

        client = self._require_client()
        now = self._clock()
        exported_at = snapshot.format_instant(now)
        name = snapshot.snapshot_name(now)
        try:
            collections = await self.store.export_collections()
            content = snapshot.serialize(collections, exported_at=exported_at)
            file_id = await client.upload(name, content)
            await self.store.set_setting(db.LAST_BACKUP_KEY, exported_at)
        except SyncError as exc:
            logger.error("[Backup] Backup failed: %s", exc)
            raise
        except db.StoreError as exc:
            logger.error("[Backup] Backup failed reading local data: %s", exc)
            raise SyncError(f"Backup failed: {exc}") from exc

        logger.info("[Backup] Backup saved: %s", name)
        pruned = await self._prune_quietly(client)
        return PushResult(file_id=file_id, name=name, exported_at=exported_at, pruned=len(pruned))

    # ------------------------------------------------------------------
    # Listing, merge and restore
    # ------------------------------------------------------------------
    async def list_backups(self) -> List[RemoteFile]:
        """Return backup files in the Drive folder, newest first."""

        files = await self._require_client().list_snapshots()
        return list(reversed(snapshot.select_snapshots(files)))

    async def has_backups(self) -> bool:
        if self.credentials is None or not self.credentials.is_authorized:
            return False
        try:
            return bool(await self.list_backups())
        except SyncError as exc:
            logger.error("[Backup] Failed to check for backups: %s", exc)
            return False

    async def _download(self, backup: RemoteFile) -> snapshot.Collections:
        content = await self._require_client().download(backup.id)
        return snapshot.parse(content)

    async def _latest(self) -> Optional[Tuple[RemoteFile, snapshot.Collections]]:
        backups = await self.list_backups()
        if not backups:
            logger.info("[Backup] No backup files found in Google Drive")
            return None
        latest = backups[0]
        logger.info("[Backup] Loading latest backup: %s", latest.name)
        return latest, await self._download(latest)

    async def merge_latest(self) -> SyncResult:
        """Merge the newest Drive backup into local data (last writer wins)."""

        try:
            found = await self._latest()
            if found is None:
                return SyncResult(action="noop", message="No backup files found in Google Drive.")
            latest, collections = found
            stats = await merge.merge_all(self.store, collections)
        except SyncError as exc:
            logger.error("[Backup] Failed to merge backup from Google Drive: %s", exc)
            raise
        except db.StoreError as exc:
            logger.error("[Backup] Failed to merge backup from Google Drive: %s", exc)
            raise SyncError(f"Merge failed: {exc}") from exc

        result = SyncResult(
            action="merge",
            message=f"Merged {latest.name} from Google Drive.",
            backup_name=latest.name,
            file_id=latest.id,
            stats={name: item.to_dict() for name, item in stats.items()},
        )
        logger.info("[Backup] %s (%d added, %d updated)", result.message, result.added, result.updated)
        return result

    async def _restore(self, backup: RemoteFile) -> SyncResult:
        try:
            collections = await self._download(backup)
            restored = await merge.restore_full(self.store, collections)
        except SyncError as exc:
            logger.error("[Backup] Failed to restore %s: %s", backup.name, exc)
            raise
        except db.StoreError as exc:
            logger.error("[Backup] Failed to restore %s: %s", backup.name, exc)
            raise SyncError(f"Restore failed: {exc}") from exc
        return SyncResult(
            action="restore",
            message=f"Restored {backup.name} from Google Drive.",
            backup_name=backup.name,
            file_id=backup.id,
            stats={name: {"added": count, "updated": 0} for name, count in restored.items()},
        )

    async def restore_latest(self) -> SyncResult:
        """Replace local data with the newest Drive backup."""

        try:
            backups = await self.list_backups()
        except SyncError as exc:
            logger.error("[Backup] Failed to load backup from Google Drive: %s", exc)
            raise
        if not backups:
            return SyncResult(action="noop", message="No backup files found in Google Drive.")
        return await self._restore(backups[0])

    async def restore_backup(self, file_id: str) -> SyncResult:
        """Replace local data with a specific Drive backup."""

        try:
            backups = await self.list_backups()
        except SyncError as exc:
            logger.error("[Backup] Failed to load backup from Google Drive: %s", exc)
            raise
        for backup in backups:
            if backup.id == file_id:
                return await self._restore(backup)
        raise NotFound(f"Backup {file_id} was not found in Google Drive.")

    # ------------------------------------------------------------------
    # Manual export/import
    # ------------------------------------------------------------------
    async def export_data(self) -> str:
        collections = await self.store.export_collections()
        return snapshot.serialize(collections, exported_at=snapshot.format_instant(self._clock()))

    async def import_data(self, content: str, clear_existing: bool = True) -> Dict[str, Dict[str, int]]:
        """Import a backup document; nothing is written if it is malformed."""

        collections = snapshot.parse(content)
        try:
            if clear_existing:
                restored = await merge.restore_full(self.store, collections)
                return {name: {"added": count, "updated": 0} for name, count in restored.items()}
            stats = await merge.merge_all(self.store, collections)
        except db.StoreError as exc:
            logger.error("[Backup] Failed to import data: %s", exc)
            raise SyncError(f"Import failed: {exc}") from exc
        return {name: item.to_dict() for name, item in stats.items()}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    async def status(self) -> BackupStatus:
        manual = await self.store.get_setting(settings.MANUAL_CLIENT_ID_KEY)
        client_id, source = settings.resolve_client_id(manual)
        return BackupStatus(
            is_configured=bool(client_id),
            config_source=source,
            client_id=client_id,
            is_authorized=bool(self.credentials and self.credentials.is_authorized),
            is_enabled=self.autosave.enabled,
            environment=self.environment,
            folder_name=self.folder_name,
            last_backup_time=await self.store.get_setting(db.LAST_BACKUP_KEY),
            dirty=self.autosave.dirty,
            local_empty=await self.store.is_empty(),
        )


__all__ = [
    "BackupStatus",
    "BackupSync",
    "PushResult",
    "SyncResult",
]
