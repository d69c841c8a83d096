import asyncio
import logging
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from slasshy.api.tmdb_client import TmdbClient
from slasshy.core.events import EventBus
from slasshy.core.folder_sync import FolderSynchronizer
from slasshy.core.image_cache import ImageCache
from slasshy.core.library_manager import LibraryManager
from slasshy.core.metadata_resolver import MetadataResolver
from slasshy.database.db import DatabaseManager
from slasshy.utils.file_scanner import FileScanner

BREAKING_BAD_ROUTES = {
    "/3/search/tv": {"results": [{
        "id": 1396, "name": "Breaking Bad", "first_air_date": "2008-01-20",
        "poster_path": "/bb.jpg", "popularity": 50.0,
    }]},
    "/3/tv/1396/season/1": {"episodes": [
        {"episode_number": 1, "name": "Pilot", "overview": "Walt", "still_path": "/s1.jpg"},
    ]},
}

def catalog_handler(routes):
    def handler(request):
        if request.url.host == "image.tmdb.org":
            return httpx.Response(200, content=b"J" * 512)
        return httpx.Response(200, json=routes.get(request.url.path, {"results": []}))
    return handler

async def _no_sleep(_seconds):
    return None

def touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0")
    return path

async def build_env(tmp_path, routes=None, credential=""):
    media = tmp_path / "M"
    media.mkdir(exist_ok=True)
    db = DatabaseManager(str(tmp_path / "test_library.db"), str(tmp_path / "image_cache"))
    await db.initialize()
    client = TmdbClient(credential, transport=httpx.MockTransport(catalog_handler(routes or {})), sleep=_no_sleep)
    images = ImageCache(client, tmp_path / "image_cache")
    resolver = MetadataResolver(client, images, db)
    library = LibraryManager(db, resolver, images)
    events = EventBus()
    recorded = []
    events.add_listener(lambda name, payload: recorded.append((name, payload)))
    roots = [str(media)]
    sync = FolderSynchronizer(db, library, events, roots=lambda: roots, initial_delay=0, interval=0.01)
    return SimpleNamespace(db=db, client=client, library=library, sync=sync, media=media,
                           events=recorded, roots=roots, cache=tmp_path / "image_cache")

@pytest_asyncio.fixture
async def env(tmp_path):
    environment = await build_env(tmp_path)
    yield environment
    await environment.client.aclose()

@pytest_asyncio.fixture
async def tmdb_env(tmp_path):
    environment = await build_env(tmp_path, BREAKING_BAD_ROUTES, credential="key")
    yield environment
    await environment.client.aclose()

async def _catalog_keys(db):
    return {FileScanner.normalize_path(p) for p in await db.get_all_file_paths()}

@pytest.mark.asyncio
async def test_episode_creates_series_with_metadata(tmdb_env):
    path = touch(tmdb_env.media / "Breaking.Bad.S01E01.Pilot.720p.mkv")

    report = await tmdb_env.sync.run_tick()
    assert report.added == 1 and report.failed == 0

    shows = await tmdb_env.db.get_library("tvshow")
    assert len(shows) == 1
    series = shows[0]
    assert series.title == "Breaking Bad"
    assert series.file_path == "tvshow://1396/breaking_bad"
    assert series.tmdb_id == "1396"
    assert series.poster_path == "image_cache/breaking_bad/breaking_bad_banner.jpg"

    episodes = await tmdb_env.db.get_episodes(series.id)
    assert len(episodes) == 1
    episode = episodes[0]
    assert episode.parent_id == series.id
    assert episode.file_path == str(path)
    assert (episode.season_number, episode.episode_number) == (1, 1)
    assert episode.title == "S01E01"
    assert episode.episode_title == "Pilot"
    assert episode.still_path == "image_cache/breaking_bad/breaking_bad_s1e1_banner.jpg"

    assert ("library-updated", {"type": "added", "title": "Breaking Bad S01E01"}) in tmdb_env.events
    assert ("scan-complete", {"movies_count": 0, "tv_count": 1}) in tmdb_env.events

@pytest.mark.asyncio
async def test_removed_episode_cleans_up_series_and_poster(tmdb_env):
    path = touch(tmdb_env.media / "Breaking.Bad.S01E01.Pilot.720p.mkv")
    await tmdb_env.sync.run_tick()
    poster = tmdb_env.cache / "breaking_bad" / "breaking_bad_banner.jpg"
    assert poster.exists()

    path.unlink()
    report = await tmdb_env.sync.run_tick()

    assert report.removed == 1
    assert report.series_removed == 1
    assert await tmdb_env.db.get_library("tvshow") == []
    assert not poster.exists()
    # The season cache still references the still
    assert (tmdb_env.cache / "breaking_bad" / "breaking_bad_s1e1_banner.jpg").exists()

@pytest.mark.asyncio
async def test_movie_sync_is_idempotent(env):
    touch(env.media / "Inception.2010.1080p.BluRay.x264.mkv")

    first = await env.sync.run_tick()
    assert first.added == 1
    movies = await env.db.get_library("movie")
    assert [(m.title, m.year) for m in movies] == [("Inception", 2010)]

    before = await env.db.get_library("movie")
    second = await env.sync.run_tick()
    assert (second.added, second.removed, second.failed) == (0, 0, 0)
    assert await env.db.get_library("movie") == before

@pytest.mark.asyncio
async def test_tick_matches_disk_after_mixed_changes(env):
    keep = touch(env.media / "Heat.1995.mkv")
    gone = touch(env.media / "Ronin.1998.mkv")
    touch(env.media / "Show" / "Show.S01E01.mkv")
    touch(env.media / "notes.txt")
    await env.sync.run_tick()

    gone.unlink()
    touch(env.media / "Show" / "Show.S01E02.mkv")
    touch(env.media / "Nested" / "Deeper" / "Collateral.2004.MP4")
    await env.sync.run_tick()

    disk = set(FileScanner.scan_roots(env.roots))
    assert await _catalog_keys(env.db) == disk
    assert FileScanner.normalize_path(str(keep)) in disk

@pytest.mark.asyncio
async def test_renamed_episode_is_relinked(env):
    old = touch(env.media / "Show" / "Show.S01E01.mkv")
    await env.sync.run_tick()
    series = (await env.db.get_library("tvshow"))[0]
    original = (await env.db.get_episodes(series.id))[0]
    await env.db.update_progress(original.id, 100.0, 1000.0)

    new = env.media / "Show" / "Show.S01E01.v2.mkv"
    old.rename(new)
    await env.sync.run_tick()

    episodes = await env.db.get_episodes(series.id)
    assert len(episodes) == 1
    assert episodes[0].id == original.id
    assert episodes[0].file_path == str(new)
    assert episodes[0].resume_position_seconds == 100.0

@pytest.mark.asyncio
async def test_duplicate_episode_file_is_skipped(env):
    touch(env.media / "Show" / "Show.S01E01.mkv")
    touch(env.media / "Show" / "Show.S01E01.720p.mkv")

    first = await env.sync.run_tick()
    assert first.added == 1
    assert first.skipped == 1
    series = (await env.db.get_library("tvshow"))[0]
    assert len(await env.db.get_episodes(series.id)) == 1

    second = await env.sync.run_tick()
    assert second.added == 0 and second.skipped == 1

@pytest.mark.asyncio
async def test_failed_path_is_logged_once_and_retried(env, monkeypatch, caplog):
    touch(env.media / "Broken.mkv")
    touch(env.media / "Fine.2001.mkv")
    original = env.library.index_file
    calls = []

    async def flaky(path, root=None):
        calls.append(path)
        if path.endswith("Broken.mkv"):
            raise OSError("disk on fire")
        return await original(path, root)

    monkeypatch.setattr(env.library, "index_file", flaky)
    caplog.set_level(logging.DEBUG, logger="slasshy.core.folder_sync")

    first = await env.sync.run_tick()
    second = await env.sync.run_tick()

    assert first.failed == 1 and first.added == 1
    assert second.failed == 1 and second.added == 0
    assert sum(1 for c in calls if c.endswith("Broken.mkv")) == 2
    warnings = [r for r in caplog.records
                if r.levelno == logging.WARNING and "Failed to index" in r.getMessage()]
    assert len(warnings) == 1

@pytest.mark.asyncio
async def test_bookkeeping_is_forgotten_when_files_go_away(env, monkeypatch, caplog):
    touch(env.media / "Show" / "Show.S01E01.mkv")
    duplicate = touch(env.media / "Show" / "Show.S01E01.x264.mkv")
    broken = touch(env.media / "Broken.mkv")
    original = env.library.index_file

    async def flaky(path, root=None):
        if path.endswith("Broken.mkv"):
            raise OSError("disk on fire")
        return await original(path, root)

    monkeypatch.setattr(env.library, "index_file", flaky)
    caplog.set_level(logging.DEBUG, logger="slasshy.core.folder_sync")

    first = await env.sync.run_tick()
    assert first.failed == 1 and first.skipped == 1
    assert len(env.sync._duplicates) == 1

    duplicate.unlink()
    broken.unlink()
    await env.sync.run_tick()
    assert env.sync._duplicates == {}
    assert env.sync._failed == set()

    # A path that comes back is reported afresh
    touch(env.media / "Broken.mkv")
    await env.sync.run_tick()
    warnings = [r for r in caplog.records
                if r.levelno == logging.WARNING and "Failed to index" in r.getMessage()]
    assert len(warnings) == 2

@pytest.mark.asyncio
async def test_missing_root_keeps_entries(env, tmp_path):
    touch(env.media / "Heat.1995.mkv")
    await env.sync.run_tick()

    env.media.rename(tmp_path / "unmounted")
    report = await env.sync.run_tick()

    assert report.removed == 0
    assert len(await env.db.get_library("movie")) == 1

@pytest.mark.asyncio
async def test_virtual_series_rows_are_not_diffed(env):
    series_id = await env.db.insert_series("Orphan", "tvshow://unknown/orphan")
    await env.db.insert_episode("S01E01", "/elsewhere/orphan.mkv", series_id, 1, 1)
    touch(env.media / "Heat.1995.mkv")

    report = await env.sync.run_tick()

    # The episode outside every root is removed, which empties the series
    assert report.removed == 1
    assert report.series_removed == 1
    assert await _catalog_keys(env.db) == set(FileScanner.scan_roots(env.roots))

@pytest.mark.asyncio
async def test_background_loop_runs_ticks(env):
    touch(env.media / "Heat.1995.mkv")
    env.sync.start()
    assert env.sync.running
    for _ in range(100):
        if await env.db.get_library("movie"):
            break
        await asyncio.sleep(0.02)
    await env.sync.stop()

    assert not env.sync.running
    assert len(await env.db.get_library("movie")) == 1
