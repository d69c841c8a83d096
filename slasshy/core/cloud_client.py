import asyncio
import json
import os
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config import (
    GDRIVE_CLIENT_ID, GDRIVE_CLIENT_SECRET, GDRIVE_TOKENS_PATH, HTTP_TIMEOUT, HTTP_CONNECT_TIMEOUT, USER_AGENT,
)
from ..errors import CloudError, CloudAuthError
from ..utils.logger import get_logger

logger = get_logger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
VIDEO_MIMES = (
    "video/mp4",
    "video/x-matroska",
    "video/avi",
    "video/quicktime",
    "video/webm",
    "video/x-m4v",
    "video/x-ms-wmv",
    "video/x-flv",
    "video/mp2t",
)
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,parents"
PAGE_SIZE = 100
# Refresh this many seconds before the token actually expires
EXPIRY_MARGIN = 60


@dataclass
class DriveTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "Bearer"


@dataclass
class DriveFile:
    id: str
    name: str
    mime_type: str
    parents: List[str] = field(default_factory=list)
    size: Optional[int] = None
    modified_time: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DriveFile":
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            parents=list(data.get("parents") or []),
            size=int(size) if size not in (None, "") else None,
            modified_time=data.get("modifiedTime"),
        )

    @property
    def is_video(self) -> bool:
        return self.mime_type in VIDEO_MIMES


class GoogleDriveClient:
    """
    Minimal Drive v3 client for listing and streaming videos.
    Sign-in happens elsewhere; this client only loads, refreshes and stores tokens.
    """

    def __init__(self, tokens_path=GDRIVE_TOKENS_PATH, client_id: str = GDRIVE_CLIENT_ID,
                 client_secret: str = GDRIVE_CLIENT_SECRET, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.tokens_path = Path(tokens_path)
        self.client_id = client_id
        self.client_secret = client_secret
        self._tokens: Optional[DriveTokens] = self._load_tokens()
        self._refresh_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    # --- Tokens ---

    def _load_tokens(self) -> Optional[DriveTokens]:
        if not self.tokens_path.exists():
            return None
        try:
            with open(self.tokens_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return DriveTokens(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_at=data.get("expires_at"),
                token_type=data.get("token_type") or "Bearer",
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable Google Drive tokens at {self.tokens_path}: {e}")
            return None

    def _save_tokens(self):
        self.tokens_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.tokens_path, "w", encoding="utf-8") as f:
            json.dump(asdict(self._tokens), f, indent=2)

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None

    def store_tokens(self, tokens: DriveTokens):
        self._tokens = tokens
        self._save_tokens()
        logger.info("Google Drive tokens stored")

    def clear_tokens(self):
        self._tokens = None
        if self.tokens_path.exists():
            os.remove(self.tokens_path)
        logger.info("Google Drive tokens cleared")

    async def get_access_token(self) -> str:
        tokens = self._tokens
        if tokens is None:
            raise CloudAuthError("Not authenticated with Google Drive")
        if tokens.expires_at is None or time.time() < tokens.expires_at - EXPIRY_MARGIN:
            return tokens.access_token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            tokens = self._tokens
            if tokens is not None and tokens.expires_at is not None \
                    and time.time() < tokens.expires_at - EXPIRY_MARGIN:
                return tokens.access_token
            return await self._refresh()

    async def _refresh(self) -> str:
        tokens = self._tokens
        if tokens is None or not tokens.refresh_token:
            self._tokens = None
            raise CloudAuthError("Token expired and no refresh token available")

        logger.info("Refreshing Google Drive access token")
        try:
            response = await self._client.post(TOKEN_URL, data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": tokens.refresh_token,
                "grant_type": "refresh_token",
            })
        except httpx.HTTPError as e:
            raise CloudAuthError(f"Failed to refresh token: {e}") from e

        if response.status_code != 200:
            self._tokens = None
            raise CloudAuthError(f"Token refresh failed: {response.text}")

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError) as e:
            self._tokens = None
            raise CloudAuthError(f"Missing access_token in refresh response: {e}") from e

        tokens.access_token = access_token
        tokens.expires_at = int(time.time()) + int(payload.get("expires_in") or 3600)
        self._save_tokens()
        return access_token

    # --- API ---

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self.get_access_token()
        try:
            response = await self._client.get(
                f"{DRIVE_API_BASE}{path}", params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise CloudError(f"Drive request {path} failed: {e}") from e

        if response.status_code == 401:
            raise CloudAuthError("Drive rejected the access token")
        if response.status_code != 200:
            raise CloudError(f"Drive API error {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as e:
            raise CloudError(f"Failed to parse Drive response for {path}: {e}") from e
        if not isinstance(data, dict):
            raise CloudError(f"Unexpected Drive response for {path}")
        return data

    async def _list(self, query: str, order_by: Optional[str] = None) -> List[DriveFile]:
        files: List[DriveFile] = []
        page_token = None
        while True:
            params = {"q": query, "fields": f"files({FILE_FIELDS}),nextPageToken", "pageSize": PAGE_SIZE}
            if order_by:
                params["orderBy"] = order_by
            if page_token:
                params["pageToken"] = page_token
            data = await self._get("/files", params)
            files.extend(DriveFile.from_api(item) for item in data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    async def list_folders(self, parent_id: Optional[str] = None) -> List[DriveFile]:
        parent = parent_id or "root"
        return await self._list(
            f"'{parent}' in parents and mimeType = '{FOLDER_MIME}' and trashed = false", order_by="name"
        )

    async def list_video_files(self, folder_id: str, recursive: bool = False) -> List[DriveFile]:
        mimes = " or ".join(f"mimeType = '{m}'" for m in VIDEO_MIMES)
        files = await self._list(f"'{folder_id}' in parents and ({mimes}) and trashed = false")
        if recursive:
            for folder in await self.list_folders(folder_id):
                files.extend(await self.list_video_files(folder.id, recursive=True))
        return files

    async def get_stream_url(self, file_id: str) -> Tuple[str, str]:
        """(url, access token); the player sends the token as a Bearer header."""
        token = await self.get_access_token()
        return f"{DRIVE_API_BASE}/files/{file_id}?alt=media", token

    async def get_changes_start_token(self) -> str:
        data = await self._get("/changes/startPageToken")
        token = data.get("startPageToken")
        if not token:
            raise CloudError("Missing startPageToken in response")
        return token

    async def get_video_changes(self, page_token: str) -> Tuple[List[DriveFile], str]:
        """Video files added or changed since `page_token`, plus the token for the next check."""
        videos: List[DriveFile] = []
        current = page_token
        while True:
            data = await self._get("/changes", {
                "pageToken": current,
                "fields": f"changes(fileId,removed,file({FILE_FIELDS})),newStartPageToken,nextPageToken",
                "pageSize": PAGE_SIZE,
                "includeRemoved": "true",
                "spaces": "drive",
            })
            for change in data.get("changes") or []:
                if change.get("removed") or not change.get("file"):
                    continue
                item = DriveFile.from_api(change["file"])
                if item.is_video:
                    videos.append(item)

            if data.get("nextPageToken"):
                current = data["nextPageToken"]
            else:
                return videos, data.get("newStartPageToken") or current
