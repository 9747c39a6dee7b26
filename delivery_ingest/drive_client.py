from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests
from dateutil import parser as date_parser
from google.cloud import secretmanager

from delivery_ingest.config import DriveSettings
from delivery_ingest.models import ChangesPage, DriveChange, DriveFile, FolderSegment


GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
FILE_FIELDS = "id,name,mimeType,parents,md5Checksum,webViewLink,size,createdTime,modifiedTime"
CHANGE_FIELDS = f"nextPageToken,newStartPageToken,changes(fileId,removed,file({FILE_FIELDS}))"
TOKEN_SAFETY_WINDOW = 60
DEFAULT_TIMEOUT = 60

logger = logging.getLogger(__name__)


class CredentialCache:
    """Access token plus expiry, owned by the client that authenticates with it."""

    def __init__(self, safety_window: int = TOKEN_SAFETY_WINDOW, clock: Callable[[], float] = time.time):
        self.safety_window = safety_window
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            return self._token is None or self._expires_at - self.safety_window <= now

    def get(self) -> Optional[str]:
        if self.is_expired():
            return None
        with self._lock:
            return self._token

    def store(self, token: str, expires_in: Optional[float]) -> None:
        with self._lock:
            self._token = token
            self._expires_at = self._clock() + (expires_in if expires_in else 3600)

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0


def _read_secret(secret_name: str) -> str:
    client = secretmanager.SecretManagerServiceClient()
    version = client.access_secret_version(name=f"{secret_name}/versions/latest")
    return version.payload.data.decode("utf-8").strip()


def _parse_timestamp(value: Optional[str]):
    if not value:
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, TypeError, OverflowError):
        return None


def _size(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def drive_file_from_json(data: Dict[str, Any]) -> DriveFile:
    return DriveFile(
        id=data.get("id"),
        name=data.get("name"),
        mime_type=data.get("mimeType"),
        parents=list(data.get("parents") or []),
        md5_checksum=data.get("md5Checksum"),
        web_view_link=data.get("webViewLink"),
        size=_size(data.get("size")),
        created_time=_parse_timestamp(data.get("createdTime")),
        modified_time=_parse_timestamp(data.get("modifiedTime")),
    )


def changes_page_from_json(data: Dict[str, Any]) -> ChangesPage:
    changes: list[DriveChange] = []
    for change in data.get("changes") or []:
        if not isinstance(change, dict):
            continue
        file_data = change.get("file")
        changes.append(
            DriveChange(
                file_id=change.get("fileId"),
                removed=bool(change.get("removed")),
                file=drive_file_from_json(file_data) if isinstance(file_data, dict) else None,
            )
        )
    return ChangesPage(
        changes=changes,
        next_page_token=data.get("nextPageToken"),
        new_start_page_token=data.get("newStartPageToken"),
    )


class DriveClient:
    """Google Drive v3 over REST: the remote file provider for polling and processing."""

    def __init__(
        self,
        settings: DriveSettings,
        credentials: Optional[CredentialCache] = None,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.settings = settings
        self.credentials = credentials or CredentialCache()
        self.session = session or requests.Session()
        self.timeout = timeout

    # -- auth ---------------------------------------------------------------

    def _refresh_token(self) -> str:
        if self.settings.refresh_secret_name:
            return _read_secret(self.settings.refresh_secret_name)
        if not self.settings.refresh_token:
            raise RuntimeError("Missing Google Drive refresh token")
        return self.settings.refresh_token

    def _access_token(self) -> str:
        token = self.credentials.get()
        if token:
            return token

        resp = self.session.post(
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self._refresh_token(),
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
            },
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        self.credentials.store(data["access_token"], data.get("expires_in"))
        return data["access_token"]

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{DRIVE_API_BASE}/{path}"
        for attempt in range(2):
            headers = {"Authorization": f"Bearer {self._access_token()}", "Accept": "application/json"}
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            if resp.status_code == 401 and attempt == 0:
                logger.info("Drive access token rejected; refreshing")
                self.credentials.invalidate()
                continue
            resp.raise_for_status()
            return resp
        raise RuntimeError("Drive request failed after token refresh")

    # -- change feed --------------------------------------------------------

    def get_start_token(self) -> str:
        resp = self._request("GET", "changes/startPageToken", params={"supportsAllDrives": "true"})
        token = resp.json().get("startPageToken")
        if not token:
            raise RuntimeError("Drive did not return a startPageToken")
        return token

    def get_changes_page(self, token: str) -> ChangesPage:
        resp = self._request(
            "GET",
            "changes",
            params={
                "pageToken": token,
                "fields": CHANGE_FIELDS,
                "includeItemsFromAllDrives": "true",
                "supportsAllDrives": "true",
                "restrictToMyDrive": "true",
                "spaces": "drive",
                "pageSize": 100,
            },
        )
        return changes_page_from_json(resp.json())

    # -- files --------------------------------------------------------------

    def get_file_ancestor(self, file_id: str) -> FolderSegment:
        resp = self._request(
            "GET",
            f"files/{file_id}",
            params={"fields": "id,name,parents", "supportsAllDrives": "true"},
        )
        data = resp.json()
        parents = data.get("parents") or []
        return FolderSegment(
            id=data.get("id") or "",
            name=data.get("name") or "",
            parent_id=parents[0] if parents else None,
        )

    def download_file(self, file_id: str) -> bytes:
        resp = self._request("GET", f"files/{file_id}", params={"alt": "media", "supportsAllDrives": "true"})
        return resp.content

    def move_file(self, file_id: str, dest_folder_id: str) -> None:
        resp = self._request(
            "GET",
            f"files/{file_id}",
            params={"fields": "id,parents", "supportsAllDrives": "true"},
        )
        parents = resp.json().get("parents") or []
        self._request(
            "PATCH",
            f"files/{file_id}",
            params={
                "addParents": dest_folder_id,
                "removeParents": ",".join(parents),
                "fields": "id,parents",
                "supportsAllDrives": "true",
            },
            json={},
        )

    def list_folder_children(self, folder_id: str, page_size: int = 100) -> list[DriveFile]:
        files: list[DriveFile] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "orderBy": "createdTime desc",
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
                "pageSize": page_size,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._request("GET", "files", params=params).json()
            files.extend(drive_file_from_json(item) for item in data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return files
