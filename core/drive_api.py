"""Google Drive API helpers for InvoiceApp backups."""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

import db
from core.errors import AuthExpired, NetworkFailure, NotFound
from core.google_credentials import CredentialManager

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
JSON_MIME_TYPE = "application/json"
PROD_FOLDER_NAME = "InvoiceApp"
DEV_FOLDER_NAME = "InvoiceApp-dev"

ServiceFactory = Callable[[str], Any]


@dataclass(frozen=True)
class RemoteFile:
    """Metadata of a file inside the application folder."""

    id: str
    name: str
    modified_at: Optional[str] = None
    created_at: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RemoteFile":
        size = payload.get("size")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            modified_at=payload.get("modifiedTime"),
            created_at=payload.get("createdTime"),
            size=int(size) if size not in (None, "") else None,
        )


def folder_name_for(environment: str) -> str:
    return DEV_FOLDER_NAME if environment == "dev" else PROD_FOLDER_NAME


def build_service(access_token: str):
    """Build a Drive v3 client bound to ``access_token``."""

    credentials = Credentials(token=access_token)
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", 0)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


class DriveClient:
    """List, upload, download and delete snapshots in the app folder.

    The blocking ``googleapiclient`` requests run on a worker thread and go
    through :meth:`CredentialManager.call`, so every request benefits from
    proactive renewal and the single 401 retry. The cached service wraps one
    ``httplib2.Http`` connection, so requests are executed one at a time.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        store: db.RecordStore,
        *,
        folder_name: str = PROD_FOLDER_NAME,
        service_factory: Optional[ServiceFactory] = None,
    ) -> None:
        self._credentials = credentials
        self._store = store
        self.folder_name = folder_name
        self._service_factory = service_factory or build_service
        self._service = None
        self._service_token: Optional[str] = None
        self._folder_id: Optional[str] = None
        self._folder_lock = asyncio.Lock()
        self._request_lock = asyncio.Lock()
        credentials.add_invalidation_listener(self.forget_folder)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    def _service_for(self, access_token: str):
        if self._service is None or self._service_token != access_token:
            self._service = self._service_factory(access_token)
            self._service_token = access_token
        return self._service

    def _execute(self, access_token: str, prepare: Callable[[Any], Any]) -> Any:
        service = self._service_for(access_token)
        try:
            return prepare(service).execute()
        except HttpError as exc:
            status = _http_status(exc)
            if status == 401:
                raise AuthExpired("Google Drive rejected the access token") from exc
            if status == 404:
                raise NotFound(f"Google Drive resource not found: {exc}") from exc
            raise NetworkFailure(f"Google Drive request failed ({status}): {exc}") from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise NetworkFailure(f"Google Drive is unreachable: {exc}") from exc

    async def _request(self, prepare: Callable[[Any], Any]) -> Any:
        async def operation(access_token: str) -> Any:
            async with self._request_lock:
                return await asyncio.to_thread(self._execute, access_token, prepare)

        return await self._credentials.call(operation)

    # ------------------------------------------------------------------
    # Folder resolution
    # ------------------------------------------------------------------
    def forget_folder(self) -> None:
        self._folder_id = None
        self._service = None
        self._service_token = None

    async def _verify_folder(self, folder_id: str) -> bool:
        try:
            metadata = await self._request(
                lambda service: service.files().get(
                    fileId=folder_id, fields="id, name, mimeType, trashed"
                )
            )
        except NotFound:
            return False
        return (
            metadata.get("mimeType") == FOLDER_MIME_TYPE
            and metadata.get("name") == self.folder_name
            and not metadata.get("trashed", False)
        )

    async def ensure_folder(self) -> str:
        """Return the application folder id, creating the folder if needed."""

        async with self._folder_lock:
            if self._folder_id:
                return self._folder_id

            saved_id = await self._store.get_setting(db.FOLDER_ID_KEY)
            if saved_id:
                if await self._verify_folder(str(saved_id)):
                    self._folder_id = str(saved_id)
                    return self._folder_id
                logger.info("[Drive] Saved folder %s not usable, resolving again", saved_id)
                await self._store.delete_setting(db.FOLDER_ID_KEY)

            query = " and ".join(
                [
                    f"name = '{_escape_query(self.folder_name)}'",
                    f"mimeType = '{FOLDER_MIME_TYPE}'",
                    "trashed = false",
                ]
            )
            response = await self._request(
                lambda service: service.files().list(
                    q=query, spaces="drive", fields="files(id, name)"
                )
            )
            files = response.get("files", [])
            if files:
                folder_id = str(files[0]["id"])
                logger.info("[Drive] Found existing folder: %s", self.folder_name)
            else:
                metadata = {"name": self.folder_name, "mimeType": FOLDER_MIME_TYPE}
                created = await self._request(
                    lambda service: service.files().create(body=metadata, fields="id")
                )
                folder_id = str(created["id"])
                logger.info("[Drive] Created new folder: %s", self.folder_name)

            self._folder_id = folder_id
            await self._store.set_setting(db.FOLDER_ID_KEY, folder_id)
            return folder_id

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------
    async def list_snapshots(self) -> List[RemoteFile]:
        """Return every file in the app folder, newest first."""

        folder_id = await self.ensure_folder()
        query = f"'{folder_id}' in parents and trashed = false"

        files: List[RemoteFile] = []
        page_token: Optional[str] = None
        while True:
            token = page_token
            response = await self._request(
                lambda service: service.files().list(
                    q=query,
                    spaces="drive",
                    fields="nextPageToken, files(id, name, createdTime, modifiedTime, size)",
                    orderBy="modifiedTime desc",
                    pageToken=token,
                )
            )
            files.extend(RemoteFile.from_api(item) for item in response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        files.sort(key=lambda item: item.modified_at or "", reverse=True)
        return files

    async def upload(self, name: str, content: str, mime_type: str = JSON_MIME_TYPE) -> str:
        """Create a new file; existing files with the same name are kept."""

        folder_id = await self.ensure_folder()
        payload = content.encode("utf-8")
        metadata = {"name": name, "parents": [folder_id]}

        def prepare(service):
            media = MediaIoBaseUpload(io.BytesIO(payload), mimetype=mime_type, resumable=False)
            return service.files().create(body=metadata, media_body=media, fields="id, name")

        created = await self._request(prepare)
        logger.info("[Drive] Uploaded file: %s", name)
        return str(created["id"])

    async def download(self, file_id: str) -> str:
        raw = await self._request(lambda service: service.files().get_media(fileId=file_id))
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return str(raw)

    async def delete(self, file_id: str) -> None:
        await self._request(lambda service: service.files().delete(fileId=file_id))
        logger.info("[Drive] Deleted file: %s", file_id)


__all__ = [
    "DriveClient",
    "RemoteFile",
    "FOLDER_MIME_TYPE",
    "PROD_FOLDER_NAME",
    "DEV_FOLDER_NAME",
    "build_service",
    "folder_name_for",
]
