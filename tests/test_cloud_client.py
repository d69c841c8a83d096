import json
import re
import time

import httpx
import pytest
import pytest_asyncio

from slasshy.api.tmdb_client import TmdbClient
from slasshy.core.cloud_client import GoogleDriveClient, DriveTokens, FOLDER_MIME
from slasshy.core.image_cache import ImageCache
from slasshy.core.library_manager import LibraryManager
from slasshy.core.metadata_resolver import MetadataResolver
from slasshy.database.db import DatabaseManager
from slasshy.errors import CloudAuthError

PARENT = re.compile(r"'([^']+)' in parents")


class FakeDrive:
    """Drive v3 stand-in: a folder tree, a changes feed and the token endpoint."""

    def __init__(self):
        self.requests = []
        self.folders = {"root": [("f1", "Movies")], "f1": [("f2", "Shows")], "f2": []}
        self.videos = {
            "f1": [
                {"id": "v1", "name": "Heat.1995.mkv", "mimeType": "video/x-matroska", "parents": ["f1"],
                 "size": "1024"},
                {"id": "v2", "name": "Ronin.1998.mp4", "mimeType": "video/mp4", "parents": ["f1"]},
            ],
            "f2": [
                {"id": "v3", "name": "Show.S01E01.mkv", "mimeType": "video/x-matroska", "parents": ["f2"]},
            ],
        }
        self.changes = {
            "100": {"changes": [
                {"fileId": "v9", "removed": True},
                {"fileId": "d1", "file": {"id": "d1", "name": "notes.pdf", "mimeType": "application/pdf",
                                          "parents": ["f1"]}},
                {"fileId": "v4", "file": {"id": "v4", "name": "Collateral.2004.mkv",
                                          "mimeType": "video/x-matroska", "parents": ["f1"]}},
            ], "nextPageToken": "101"},
            "101": {"changes": [
                {"fileId": "v5", "file": {"id": "v5", "name": "Elsewhere.2010.mkv",
                                          "mimeType": "video/mp4", "parents": ["other"]}},
            ], "newStartPageToken": "200"},
            "200": {"changes": [], "newStartPageToken": "200"},
        }
        self.token_status = 200

    def handler(self, request: httpx.Request):
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="invalid_grant")
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

        if request.headers.get("Authorization") not in ("Bearer live", "Bearer fresh"):
            return httpx.Response(401)

        path = request.url.path
        params = request.url.params
        if path == "/drive/v3/changes/startPageToken":
            return httpx.Response(200, json={"startPageToken": "100"})
        if path == "/drive/v3/changes":
            return httpx.Response(200, json=self.changes[params["pageToken"]])
        if path == "/drive/v3/files":
            parent = PARENT.search(params["q"]).group(1)
            if FOLDER_MIME in params["q"]:
                items = [{"id": fid, "name": name, "mimeType": FOLDER_MIME, "parents": [parent]}
                         for fid, name in self.folders.get(parent, [])]
                return httpx.Response(200, json={"files": items})
            items = self.videos.get(parent, [])
            # One file per page
            start = int(params.get("pageToken") or 0)
            page = {"files": items[start:start + 1]}
            if start + 1 < len(items):
                page["nextPageToken"] = str(start + 1)
            return httpx.Response(200, json=page)
        return httpx.Response(404)


def write_tokens(path, **overrides):
    data = {"access_token": "live", "refresh_token": "r1", "expires_at": int(time.time()) + 3600,
            "token_type": "Bearer"}
    data.update(overrides)
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def drive():
    return FakeDrive()


@pytest_asyncio.fixture
async def make_client(tmp_path, drive):
    clients = []

    def build(**token_overrides):
        tokens_path = tmp_path / "gdrive_tokens.json"
        if not token_overrides.pop("missing", False):
            write_tokens(tokens_path, **token_overrides)
        client = GoogleDriveClient(tokens_path, "cid", "secret", transport=httpx.MockTransport(drive.handler))
        clients.append(client)
        return client

    yield build
    for client in clients:
        await client.aclose()


@pytest.mark.asyncio
async def test_valid_token_is_used_without_refresh(make_client, drive):
    client = make_client()
    assert client.is_authenticated
    assert await client.get_access_token() == "live"
    assert drive.requests == []


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_saved(make_client, drive, tmp_path):
    client = make_client(expires_at=int(time.time()) + 30)

    assert await client.get_access_token() == "fresh"

    refresh = drive.requests[0]
    assert refresh.method == "POST"
    body = dict(pair.split("=") for pair in refresh.content.decode().split("&"))
    assert body["grant_type"] == "refresh_token"
    assert body["refresh_token"] == "r1"
    saved = json.loads((tmp_path / "gdrive_tokens.json").read_text())
    assert saved["access_token"] == "fresh"
    assert saved["refresh_token"] == "r1"
    assert saved["expires_at"] > time.time() + 3000


@pytest.mark.asyncio
async def test_failed_refresh_signs_out(make_client, drive):
    drive.token_status = 400
    client = make_client(expires_at=int(time.time()) - 10)

    with pytest.raises(CloudAuthError):
        await client.get_access_token()
    assert not client.is_authenticated


@pytest.mark.asyncio
async def test_missing_tokens_raise_auth_error(make_client):
    client = make_client(missing=True)
    assert not client.is_authenticated
    with pytest.raises(CloudAuthError):
        await client.get_stream_url("v1")


@pytest.mark.asyncio
async def test_store_and_clear_tokens(make_client, tmp_path):
    client = make_client(missing=True)
    client.store_tokens(DriveTokens("live", "r1", int(time.time()) + 3600))
    assert client.is_authenticated
    assert (tmp_path / "gdrive_tokens.json").exists()

    client.clear_tokens()
    assert not client.is_authenticated
    assert not (tmp_path / "gdrive_tokens.json").exists()


@pytest.mark.asyncio
async def test_list_video_files_paginates_and_recurses(make_client):
    client = make_client()

    flat = await client.list_video_files("f1")
    assert [f.id for f in flat] == ["v1", "v2"]
    assert flat[0].size == 1024 and flat[1].size is None

    deep = await client.list_video_files("f1", recursive=True)
    assert [f.id for f in deep] == ["v1", "v2", "v3"]


@pytest.mark.asyncio
async def test_stream_url(make_client):
    client = make_client()
    url, token = await client.get_stream_url("v1")
    assert url == "https://www.googleapis.com/drive/v3/files/v1?alt=media"
    assert token == "live"


@pytest.mark.asyncio
async def test_video_changes_follow_pages(make_client):
    client = make_client()
    assert await client.get_changes_start_token() == "100"

    files, token = await client.get_video_changes("100")
    assert [f.id for f in files] == ["v4", "v5"]
    assert token == "200"


@pytest_asyncio.fixture
async def library(tmp_path):
    db = DatabaseManager(str(tmp_path / "test_library.db"), str(tmp_path / "image_cache"))
    await db.initialize()
    tmdb = TmdbClient("", transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    images = ImageCache(tmdb, tmp_path / "image_cache")
    manager = LibraryManager(db, MetadataResolver(tmdb, images, db), images)
    yield db, manager
    await tmdb.aclose()


@pytest.mark.asyncio
async def test_scan_cloud_folder_indexes_tree(make_client, library):
    db, manager = library
    client = make_client()
    await db.add_cloud_folder("f1", "Movies")

    results = await manager.scan_cloud_folder(client, "f1")
    assert sum(1 for r in results if r.changed) == 3

    movies = await db.get_library("movie", is_cloud=True)
    assert sorted(m.file_path for m in movies) == ["gdrive://v1", "gdrive://v2"]
    assert all(m.cloud_folder_id == "f1" for m in movies)
    shows = await db.get_library("tvshow")
    assert [s.title for s in shows] == ["Show"]
    # Cloud rows never take part in the folder diff
    assert await db.get_all_file_paths() == []

    again = await manager.scan_cloud_folder(client, "f1")
    assert again == []


@pytest.mark.asyncio
async def test_cloud_changes_index_tracked_folders_only(make_client, library):
    db, manager = library
    client = make_client()
    await db.add_cloud_folder("f1", "Movies")

    assert await manager.index_cloud_changes(client) == []
    assert await db.get_changes_token() == "100"

    results = await manager.index_cloud_changes(client)
    assert [r.title for r in results] == ["Collateral"]
    assert await db.get_changes_token() == "200"
    assert await db.cloud_file_exists("v4")
    assert not await db.cloud_file_exists("v5")
