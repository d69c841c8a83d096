import asyncio
import json
import os
import time

import pytest
import pytest_asyncio

from slasshy.config import AppConfig
from slasshy.core import playback_tracker
from slasshy.core.events import EventBus
from slasshy.core.playback_tracker import PlaybackTracker, ProgressSnapshot, build_lua_script
from slasshy.database.db import DatabaseManager
from slasshy.errors import PlayerLaunchError


class FakeProcess:
    """Stands in for mpv: runs for `polls` checks, writing `progress` to the sidecar on start."""

    launched = []

    def __init__(self, cmd, progress_file=None, progress=None, polls=2, **kwargs):
        self.cmd = cmd
        self.kwargs = kwargs
        self.pid = 4242
        self._polls = polls
        if progress is not None:
            progress_file.write_text(json.dumps(progress), encoding="utf-8")
        FakeProcess.launched.append(self)

    def poll(self):
        if self._polls > 0:
            self._polls -= 1
            return None
        return 0


def fake_popen(monkeypatch, progress_file=None, progress=None, polls=2):
    FakeProcess.launched = []

    def spawn(cmd, **kwargs):
        return FakeProcess(cmd, progress_file, progress, polls, **kwargs)

    monkeypatch.setattr(playback_tracker.subprocess, "Popen", spawn)


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "test_library.db"), str(tmp_path / "image_cache"))
    await manager.initialize()
    return manager


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "Inception.2010.mkv"
    path.write_bytes(b"\0")
    return path


@pytest.fixture
def tracker_factory(db, tmp_path):
    mpv = tmp_path / "mpv"
    mpv.write_text("")
    recorded = []
    events = EventBus()
    events.add_listener(lambda name, payload: recorded.append((name, payload)))

    def build(**config):
        tracker = PlaybackTracker(
            db, events, config=AppConfig(mpv_path=str(mpv), **config),
            progress_dir=tmp_path / "mpv_progress", poll_interval=0.01, flush_delay=0,
        )
        tracker.recorded = recorded
        return tracker

    return build


@pytest.mark.asyncio
async def test_resume_then_exit_updates_progress(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video), year=2010)
    await db.update_progress(media_id, 600.0, 8880.0)
    tracker = tracker_factory()
    fake_popen(monkeypatch, tracker.progress_file(media_id),
               {"position": 1200.0, "duration": 8880.0, "paused": False, "eof_reached": False, "quit_time": 1})

    session = await tracker.play(media_id, resume=True)
    assert tracker.sessions.get(media_id) is session
    assert session.pid == 4242

    cmd = FakeProcess.launched[0].cmd
    assert cmd[1] == f"--script={tracker.script_file(media_id)}"
    assert "--start=600" in cmd
    assert str(video) in cmd
    assert cmd.index("--start=600") < cmd.index(str(video))
    assert "--save-position-on-quit=no" in cmd and "--keep-open=no" in cmd

    result = await session.task
    assert result.final_position == 1200.0
    assert result.final_duration == 8880.0
    assert result.completed is False

    item = await db.get_media(media_id)
    assert item.resume_position_seconds == 1200.0
    assert item.duration_seconds == 8880.0
    assert item.last_watched is not None

    assert tracker.sessions.get(media_id) is None
    assert not tracker.script_file(media_id).exists()
    assert tracker.progress_file(media_id).exists()
    assert tracker.recorded[-1] == ("playback-ended", {
        "media_id": media_id, "title": "Inception", "final_position": 1200.0,
        "final_duration": 8880.0, "completed": False,
    })


@pytest.mark.asyncio
async def test_reaching_the_end_resets_position(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    tracker = tracker_factory()
    fake_popen(monkeypatch, tracker.progress_file(media_id),
               {"position": 8500.0, "duration": 8880.0, "paused": False, "eof_reached": False})

    session = await tracker.play(media_id, resume=False)
    result = await session.task

    assert result.completed is True
    info = await db.get_resume_info(media_id)
    assert info.has_progress is False
    assert info.position == 0.0
    assert "--start" not in " ".join(FakeProcess.launched[0].cmd)


@pytest.mark.asyncio
async def test_end_of_file_counts_as_completion(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    tracker = tracker_factory()
    # Credits skipped: EOF well below the threshold
    fake_popen(monkeypatch, tracker.progress_file(media_id),
               {"position": 8000.0, "duration": 8880.0, "paused": False, "eof_reached": True})

    session = await tracker.play(media_id, resume=False)
    result = await session.task

    assert (result.final_position, result.completed) == (8000.0, True)
    info = await db.get_resume_info(media_id)
    assert info.has_progress is False
    assert (await db.get_media(media_id)).duration_seconds == 8880.0


@pytest.mark.asyncio
async def test_exit_without_duration_keeps_progress(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    await db.update_progress(media_id, 300.0, 1000.0)
    tracker = tracker_factory()
    fake_popen(monkeypatch, tracker.progress_file(media_id),
               {"position": 0.0, "duration": 0.0, "paused": False, "eof_reached": True})

    session = await tracker.play(media_id)
    result = await session.task

    assert result.completed is False
    item = await db.get_media(media_id)
    assert item.resume_position_seconds == 300.0
    assert item.duration_seconds == 1000.0


@pytest.mark.asyncio
async def test_player_crash_without_sidecar(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    tracker = tracker_factory()
    # Leftover from an earlier session
    tracker.progress_dir.mkdir(parents=True)
    tracker.progress_file(media_id).write_text('{"position": 50, "duration": 100}')
    fake_popen(monkeypatch, polls=0)

    session = await tracker.play(media_id)
    result = await session.task

    assert (result.final_position, result.final_duration, result.completed) == (None, None, False)
    assert (await db.get_media(media_id)).resume_position_seconds == 0.0


@pytest.mark.asyncio
async def test_missing_file_is_a_launch_error(db, tmp_path, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Ghost", str(tmp_path / "gone.mkv"))
    tracker = tracker_factory()
    fake_popen(monkeypatch)

    with pytest.raises(PlayerLaunchError):
        await tracker.play(media_id)
    assert FakeProcess.launched == []
    assert tracker.sessions.list() == []


@pytest.mark.asyncio
async def test_spawn_failure_registers_no_session(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    tracker = tracker_factory()

    def broken(cmd, **kwargs):
        raise FileNotFoundError("mpv")

    monkeypatch.setattr(playback_tracker.subprocess, "Popen", broken)

    with pytest.raises(PlayerLaunchError):
        await tracker.play(media_id)
    assert tracker.sessions.get(media_id) is None
    assert not tracker.script_file(media_id).exists()


class FakeDrive:
    async def get_stream_url(self, file_id):
        return f"https://www.googleapis.com/drive/v3/files/{file_id}?alt=media", "tok"


@pytest.mark.asyncio
async def test_cloud_playback_uses_stream_url_and_cache(db, tmp_path, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Heat", "gdrive://abc", cloud_file_id="abc", cloud_folder_id="f1")
    tracker = tracker_factory(cloud_cache_enabled=True, cloud_cache_dir=str(tmp_path / "cache"),
                              cloud_cache_max_mb=512)
    tracker.cloud_client = FakeDrive()
    fake_popen(monkeypatch, polls=0)

    session = await tracker.play(media_id)
    await session.task

    cmd = FakeProcess.launched[0].cmd
    assert "https://www.googleapis.com/drive/v3/files/abc?alt=media" in cmd
    assert "--http-header-fields=Authorization: Bearer tok" in cmd
    assert "--cache=yes" in cmd
    assert "--demuxer-max-bytes=512MiB" in cmd
    assert "--demuxer-max-back-bytes=128MiB" in cmd
    assert f"--stream-record={tmp_path / 'cache' / f'{media_id}.mkv'}" in cmd


def test_lua_script_points_at_progress_file():
    script = build_lua_script("C:\\Users\\me\\mpv_progress\\7.json")
    assert 'local progress_file = "C:/Users/me/mpv_progress/7.json"' in script
    assert "mp.register_event(\"shutdown\"" in script
    assert '{"position":%.3f,"duration":%.3f' in script


def test_snapshot_completion():
    assert ProgressSnapshot(95.0, 100.0).completed
    assert ProgressSnapshot(10.0, 100.0, eof_reached=True).completed
    assert not ProgressSnapshot(94.0, 100.0).completed
    assert not ProgressSnapshot(0.0, 0.0, eof_reached=True).completed


@pytest.mark.asyncio
async def test_concurrent_play_launches_once(db, video, tracker_factory, monkeypatch):
    media_id = await db.insert_movie("Inception", str(video))
    tracker = tracker_factory()
    fake_popen(monkeypatch, polls=0)

    results = await asyncio.gather(tracker.play(media_id), tracker.play(media_id), return_exceptions=True)

    sessions = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, PlayerLaunchError)]
    assert len(sessions) == 1 and len(errors) == 1
    assert len(FakeProcess.launched) == 1
    await sessions[0].task

    # Free again once the session is over
    session = await tracker.play(media_id)
    await session.task
    assert len(FakeProcess.launched) == 2


def test_prune_stream_cache_removes_expired_recordings(tracker_factory, tmp_path):
    cache = tmp_path / "cache"
    (cache / "old_session").mkdir(parents=True)
    now = time.time()
    expired = now - 25 * 3600

    old = cache / "3.mkv"
    old.write_bytes(b"x" * 1000)
    nested = cache / "old_session" / "4.mkv"
    nested.write_bytes(b"y" * 24)
    fresh = cache / "5.mkv"
    fresh.write_bytes(b"z" * 10)
    for path in (old, nested):
        os.utime(path, (expired, expired))

    tracker = tracker_factory(cloud_cache_enabled=True, cloud_cache_dir=str(cache), cloud_cache_expiry_hours=24)
    assert tracker.prune_stream_cache(now=now) == (2, 1024)

    assert not old.exists()
    assert not (cache / "old_session").exists()
    assert fresh.exists()
    assert cache.exists()


def test_prune_stream_cache_skipped_when_disabled(tracker_factory, tmp_path):
    cache = tmp_path / "cache"
    cache.mkdir()
    old = cache / "3.mkv"
    old.write_bytes(b"x")
    os.utime(old, (0, 0))

    tracker = tracker_factory(cloud_cache_enabled=False, cloud_cache_dir=str(cache))
    assert tracker.prune_stream_cache() == (0, 0)
    assert old.exists()
