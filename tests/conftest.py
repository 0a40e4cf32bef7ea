from __future__ import annotations

import os
import re
import sys
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

os.environ.setdefault("INVOICEAPP_HOME", tempfile.mkdtemp(prefix="invoiceapp-tests-"))
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httplib2
import pytest
from googleapiclient.errors import HttpError

import db
from core.google_credentials import TokenGrant

FOLDER_MIME = "application/vnd.google-apps.folder"
_BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


class _FakeRequest:
    def __init__(self, service: "FakeDriveService", callback):
        self._service = service
        self._callback = callback

    def execute(self):
        service = self._service
        with service._active_lock:
            service.active += 1
            service.max_active = max(service.max_active, service.active)
        try:
            if service.delay:
                time.sleep(service.delay)
            service.requests += 1
            if service.failures:
                failure = service.failures.pop(0)
                if isinstance(failure, int):
                    raise HttpError(httplib2.Response({"status": failure}), b"{}")
                raise failure
            return self._callback()
        finally:
            with service._active_lock:
                service.active -= 1


class _FakeFiles:
    def __init__(self, service: "FakeDriveService") -> None:
        self._service = service

    def list(self, q: str, spaces: str = "drive", fields: str = "", orderBy: Optional[str] = None, pageToken: Optional[str] = None):  # noqa: N803 - API compatibility
        return _FakeRequest(self._service, lambda: self._service._handle_list(q, pageToken))

    def get(self, fileId: str, fields: str = ""):  # noqa: N803 - API compatibility
        return _FakeRequest(self._service, lambda: self._service._handle_get(fileId))

    def get_media(self, fileId: str):  # noqa: N803 - API compatibility
        return _FakeRequest(self._service, lambda: self._service._handle_get_media(fileId))

    def create(self, body: Dict[str, Any], media_body=None, fields: str = ""):
        return _FakeRequest(self._service, lambda: self._service._handle_create(body, media_body))

    def delete(self, fileId: str):  # noqa: N803 - API compatibility
        return _FakeRequest(self._service, lambda: self._service._handle_delete(fileId))


class FakeDriveService:
    """In-memory stand-in for the Drive v3 ``files()`` resource."""

    def __init__(self, page_size: int = 100) -> None:
        self.files_by_id: Dict[str, Dict[str, Any]] = {}
        self.failures: List[Any] = []
        self.tokens: List[str] = []
        self.page_size = page_size
        self.requests = 0
        self.created_folders = 0
        self._counter = 0
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._active_lock = threading.Lock()

    def factory(self, access_token: str) -> "FakeDriveService":
        self.tokens.append(access_token)
        return self

    def files(self) -> _FakeFiles:  # noqa: D401 - API compatibility
        return _FakeFiles(self)

    # Helpers used by tests ------------------------------------------
    def add_file(self, name: str, content: str = "", parents: Optional[List[str]] = None, **extra: Any) -> str:
        with self._lock:
            self._counter += 1
            file_id = f"file-{self._counter}"
            stamp = _BASE_TIME + timedelta(seconds=self._counter)
            entry = {
                "id": file_id,
                "name": name,
                "mimeType": extra.pop("mimeType", "application/json"),
                "parents": list(parents or []),
                "trashed": False,
                "content": content,
                "createdTime": stamp.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "modifiedTime": stamp.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                "size": str(len(content.encode("utf-8"))),
            }
            entry.update(extra)
            self.files_by_id[file_id] = entry
        return file_id

    def add_folder(self, name: str, **extra: Any) -> str:
        return self.add_file(name, mimeType=FOLDER_MIME, **extra)

    def names_in(self, folder_id: str) -> List[str]:
        return sorted(
            item["name"]
            for item in self.files_by_id.values()
            if folder_id in item["parents"] and not item["trashed"]
        )

    # Internal handlers ----------------------------------------------
    def _handle_list(self, query: str, page_token: Optional[str]) -> Dict[str, Any]:
        parent = re.match(r"'([^']+)' in parents", query)
        name = re.search(r"name = '([^']+)'", query)
        matches = []
        for item in self.files_by_id.values():
            if item["trashed"]:
                continue
            if parent and parent.group(1) not in item["parents"]:
                continue
            if name and (item["name"] != name.group(1) or item["mimeType"] != FOLDER_MIME):
                continue
            matches.append(item)
        matches.sort(key=lambda item: item["modifiedTime"], reverse=True)

        start = int(page_token or 0)
        page = matches[start : start + self.page_size]
        response: Dict[str, Any] = {
            "files": [
                {key: item[key] for key in ("id", "name", "createdTime", "modifiedTime", "size")}
                for item in page
            ]
        }
        if start + self.page_size < len(matches):
            response["nextPageToken"] = str(start + self.page_size)
        return response

    def _missing(self) -> HttpError:
        return HttpError(httplib2.Response({"status": 404}), b"{}")

    def _handle_get(self, file_id: str) -> Dict[str, Any]:
        item = self.files_by_id.get(file_id)
        if item is None:
            raise self._missing()
        return {key: item[key] for key in ("id", "name", "mimeType", "trashed")}

    def _handle_get_media(self, file_id: str) -> bytes:
        item = self.files_by_id.get(file_id)
        if item is None:
            raise self._missing()
        return item["content"].encode("utf-8")

    def _handle_create(self, body: Dict[str, Any], media_body) -> Dict[str, Any]:
        if body.get("mimeType") == FOLDER_MIME:
            self.created_folders += 1
            file_id = self.add_folder(body["name"])
        else:
            content = media_body.getbytes(0, media_body.size()).decode("utf-8") if media_body else ""
            file_id = self.add_file(body["name"], content, parents=body.get("parents"))
        return {"id": file_id, "name": body["name"]}

    def _handle_delete(self, file_id: str) -> str:
        if self.files_by_id.pop(file_id, None) is None:
            raise self._missing()
        return ""


class FakeProvider:
    """OAuth provider handing out numbered tokens."""

    def __init__(self, expires_in: float = 3600, refresh_token: Optional[str] = "refresh-1") -> None:
        self.calls: List[tuple] = []
        self.expires_in = expires_in
        self.refresh_token = refresh_token
        self.error: Optional[Exception] = None

    def request_token(self, interactive: bool, refresh_token: Optional[str]) -> TokenGrant:
        self.calls.append((interactive, refresh_token))
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"token-{len(self.calls)}",
            expires_in=self.expires_in,
            refresh_token=self.refresh_token,
        )


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for name in (
        "INVOICEAPP_GOOGLE_CLIENT_ID",
        "INVOICEAPP_GOOGLE_CLIENT_SECRET",
        "INVOICEAPP_ENVIRONMENT",
        "INVOICEAPP_DEBOUNCE_MS",
        "INVOICEAPP_RETENTION_COUNT",
        "INVOICEAPP_RENEWAL_LOOKAHEAD_MS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> db.RecordStore:
    return db.RecordStore(tmp_path / "invoiceapp.db")


@pytest.fixture
def drive() -> FakeDriveService:
    return FakeDriveService()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
