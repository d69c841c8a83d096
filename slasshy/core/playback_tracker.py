import asyncio
import json
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import aiofiles

from ..config import (
    AppConfig, PROGRESS_DIR, COMPLETE_THRESHOLD, MONITOR_POLL_INTERVAL, MONITOR_FINAL_FLUSH_DELAY,
)
from ..database.db import DatabaseManager
from ..errors import CloudError, PlayerLaunchError, StoreError
from ..utils.logger import get_logger
from .events import EventBus, PLAYBACK_ENDED

logger = get_logger(__name__)

# Hide the console window mpv would otherwise open on Windows
CREATE_NO_WINDOW = 0x08000000

LUA_TEMPLATE = r'''
-- Slasshy progress tracker for mpv
-- Saves the playback position to a JSON file periodically and on quit

local progress_file = "@PROGRESS_FILE@"
local save_interval = 2

local last_duration = 0
local last_position = 0

local function get_progress_data()
    local pos = mp.get_property_number("time-pos")
    local duration = mp.get_property_number("duration")
    local paused = mp.get_property_bool("pause") or false
    local eof = mp.get_property_bool("eof-reached") or false

    if duration and duration > 0 then
        last_duration = duration
    end
    local d_to_save = duration
    if not d_to_save or d_to_save <= 0 then d_to_save = last_duration end

    if pos and pos > 0 then
        last_position = pos
    end
    -- Properties can be gone during shutdown
    local p_to_save = pos
    if not p_to_save or p_to_save <= 0 then p_to_save = last_position end

    if d_to_save > 0 and p_to_save > d_to_save then
        p_to_save = d_to_save
    end

    return string.format(
        '{"position":%.3f,"duration":%.3f,"paused":%s,"eof_reached":%s,"quit_time":%d}',
        p_to_save,
        d_to_save,
        paused and "true" or "false",
        eof and "true" or "false",
        os.time()
    )
end

local function save_progress()
    local duration = mp.get_property_number("duration") or last_duration
    if not duration or duration <= 0 then return end

    local data = get_progress_data()
    local file = io.open(progress_file, "w")
    if file then
        file:write(data)
        file:close()
    end
end

mp.add_periodic_timer(save_interval, save_progress)

mp.observe_property("pause", "bool", function(name, value)
    save_progress()
end)

mp.register_event("seek", save_progress)
mp.register_event("shutdown", save_progress)
mp.register_event("end-file", function(event)
    save_progress()
end)

mp.register_event("file-loaded", function()
    -- Duration shows up shortly after load
    mp.add_timeout(1, save_progress)
end)

mp.msg.info("Slasshy progress tracker loaded.")
'''


def build_lua_script(progress_file: str) -> str:
    # Forward slashes keep Lua string escaping out of the way
    return LUA_TEMPLATE.replace("@PROGRESS_FILE@", str(progress_file).replace("\\", "/"))


@dataclass
class ProgressSnapshot:
    position: float
    duration: float
    paused: bool = False
    eof_reached: bool = False
    quit_time: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressSnapshot":
        return cls(
            position=float(data.get("position") or 0.0),
            duration=float(data.get("duration") or 0.0),
            paused=bool(data.get("paused", False)),
            eof_reached=bool(data.get("eof_reached", False)),
            quit_time=data.get("quit_time"),
        )

    @property
    def completed(self) -> bool:
        if self.duration <= 0:
            return False
        return self.position / self.duration >= COMPLETE_THRESHOLD or self.eof_reached


@dataclass
class PlaybackResult:
    final_position: Optional[float]
    final_duration: Optional[float]
    completed: bool


@dataclass
class PlaybackSession:
    media_id: int
    pid: int
    title: str
    start_time: float
    task: Optional[asyncio.Task] = None


class SessionRegistry:
    """Active playback sessions keyed by media id."""

    def __init__(self):
        self._sessions: Dict[int, PlaybackSession] = {}

    def register(self, session: PlaybackSession):
        self._sessions[session.media_id] = session

    def unregister(self, media_id: int) -> Optional[PlaybackSession]:
        return self._sessions.pop(media_id, None)

    def get(self, media_id: int) -> Optional[PlaybackSession]:
        return self._sessions.get(media_id)

    def list(self) -> List[PlaybackSession]:
        return sorted(self._sessions.values(), key=lambda s: s.start_time)

    def __contains__(self, media_id: int) -> bool:
        return media_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class PlaybackTracker:
    """
    Launches mpv for a catalog item and reconciles the progress it reports.

    mpv runs a generated Lua script that keeps `<progress_dir>/<id>.json`
    current. A monitor task per session copies that file into the catalog
    while the player runs and once more after it exits.
    """

    def __init__(self, db_manager: DatabaseManager, events: Optional[EventBus] = None,
                 sessions: Optional[SessionRegistry] = None, config: Optional[AppConfig] = None,
                 cloud_client=None, progress_dir=PROGRESS_DIR,
                 poll_interval: float = MONITOR_POLL_INTERVAL,
                 flush_delay: float = MONITOR_FINAL_FLUSH_DELAY):
        self._db = db_manager
        self._events = events
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.config = config or AppConfig()
        self.cloud_client = cloud_client
        self.progress_dir = Path(progress_dir)
        self.poll_interval = poll_interval
        self.flush_delay = flush_delay
        self._launching: Set[int] = set()

    def progress_file(self, media_id: int) -> Path:
        return self.progress_dir / f"{media_id}.json"

    def script_file(self, media_id: int) -> Path:
        return self.progress_dir / f"tracker_{media_id}.lua"

    def _find_executable(self, name: str) -> Optional[str]:
        """Find executable in PATH or common Windows locations."""
        path = shutil.which(name)
        if path:
            return path

        local_path = os.path.join(os.getcwd(), f"{name}.exe")
        if os.path.exists(local_path):
            return local_path

        for fallback in (r"C:\Program Files\mpv\mpv.exe", r"C:\mpv\mpv.exe"):
            if os.path.exists(fallback):
                return fallback
        return None

    def find_player(self) -> str:
        configured = self.config.mpv_path
        if configured:
            if os.path.exists(configured):
                return configured
            logger.warning(f"Configured mpv path does not exist: {configured}")
        found = self._find_executable("mpv")
        if not found:
            raise PlayerLaunchError("MPV path not set or invalid")
        return found

    async def read_progress(self, media_id: int) -> Optional[ProgressSnapshot]:
        path = self.progress_file(media_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
            data = json.loads(content)
        except (OSError, ValueError) as e:
            # mpv may be halfway through a write
            logger.debug(f"Unreadable progress file {path}: {e}")
            return None
        if not isinstance(data, dict):
            return None
        try:
            return ProgressSnapshot.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.debug(f"Invalid progress data in {path}: {e}")
            return None

    async def _write_script(self, media_id: int) -> Path:
        self.progress_dir.mkdir(parents=True, exist_ok=True)
        script = self.script_file(media_id)
        async with aiofiles.open(script, "w", encoding="utf-8") as f:
            await f.write(build_lua_script(str(self.progress_file(media_id))))
        return script

    def _cache_args(self, media_id: int) -> List[str]:
        if not self.config.cloud_cache_enabled or not self.config.cloud_cache_dir:
            return []
        max_mb = max(int(self.config.cloud_cache_max_mb), 4)
        record = Path(self.config.cloud_cache_dir) / f"{media_id}.mkv"
        return [
            "--cache=yes",
            f"--demuxer-max-bytes={max_mb}MiB",
            f"--demuxer-max-back-bytes={max_mb // 4}MiB",
            f"--stream-record={record}",
        ]

    def build_command(self, player: str, script: Path, target: str, start_position: float,
                      auth_token: Optional[str] = None, cache_args: Optional[List[str]] = None) -> List[str]:
        cmd = [player, f"--script={script}"]
        if start_position > 0:
            cmd.append(f"--start={int(start_position)}")
        cmd.append(target)
        cmd.extend(["--save-position-on-quit=no", "--keep-open=no"])
        if auth_token:
            cmd.append(f"--http-header-fields=Authorization: Bearer {auth_token}")
            cmd.extend(cache_args or [])
        return cmd

    async def _playback_target(self, media) -> tuple:
        if media.is_cloud:
            if not media.cloud_file_id:
                raise PlayerLaunchError("Cloud file ID not found")
            if self.cloud_client is None:
                raise PlayerLaunchError("Google Drive is not configured")
            try:
                url, token = await self.cloud_client.get_stream_url(media.cloud_file_id)
            except CloudError as e:
                raise PlayerLaunchError(f"Cloud stream unavailable: {e}") from e
            return url, token

        if not media.file_path or not os.path.exists(media.file_path):
            raise PlayerLaunchError(
                f"Video file not found: {media.file_path}. The file may have been moved or deleted. "
                "Try rescanning your library."
            )
        return media.file_path, None

    async def play(self, media_id: int, resume: bool = True) -> PlaybackSession:
        """Start mpv for `media_id` and return the tracked session."""
        if media_id in self.sessions or media_id in self._launching:
            raise PlayerLaunchError(f"Media {media_id} is already playing")

        # Claimed before the first await so a concurrent call sees it
        self._launching.add(media_id)
        try:
            return await self._launch(media_id, resume)
        finally:
            self._launching.discard(media_id)

    async def _launch(self, media_id: int, resume: bool) -> PlaybackSession:
        media = await self._db.get_media(media_id)
        resume_info = await self._db.get_resume_info(media_id)
        target, token = await self._playback_target(media)
        player = self.find_player()
        start_position = resume_info.position if resume and resume_info.has_progress else 0.0

        # A sidecar left by an earlier session must not be read back as this one
        stale = self.progress_file(media_id)
        if stale.exists():
            stale.unlink()
        script = await self._write_script(media_id)

        cmd = self.build_command(player, script, target, start_position, token,
                                 self._cache_args(media_id) if media.is_cloud else None)
        logger.info(f"Launching MPV for media {media_id} ({media.title}) at {start_position:.1f}s")
        logger.debug(f"MPV command: {cmd[0]} {cmd[1]} ... ({len(cmd)} args)")

        kwargs = {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
        if sys.platform == "win32":
            kwargs["creationflags"] = CREATE_NO_WINDOW
        try:
            process = subprocess.Popen(cmd, **kwargs)
        except OSError as e:
            script.unlink(missing_ok=True)
            raise PlayerLaunchError(f"Failed to start MPV: {e}") from e

        await self._db.update_last_watched(media_id)
        session = PlaybackSession(media_id, process.pid, media.title, time.time())
        self.sessions.register(session)
        session.task = asyncio.create_task(self._monitor(session, process), name=f"mpv-monitor-{media_id}")
        logger.info(f"MPV started with PID {process.pid}")
        return session

    async def _save_progress(self, media_id: int, snapshot: ProgressSnapshot):
        try:
            await self._db.update_progress(media_id, snapshot.position, snapshot.duration)
        except StoreError as e:
            logger.warning(f"Could not save progress for media {media_id}: {e}")

    async def _monitor(self, session: PlaybackSession, process) -> PlaybackResult:
        media_id = session.media_id
        logger.debug(f"Monitoring MPV process {session.pid} for media {media_id}")
        try:
            while process.poll() is None:
                await asyncio.sleep(self.poll_interval)
                snapshot = await self.read_progress(media_id)
                if snapshot and snapshot.duration > 0:
                    await self._save_progress(media_id, snapshot)

            # Give the shutdown handler time to flush
            await asyncio.sleep(self.flush_delay)
            final = await self.read_progress(media_id)

            if final is None:
                logger.info(f"No progress data found after MPV exit for media {media_id}")
                result = PlaybackResult(None, None, False)
            else:
                logger.info(
                    f"Final progress for media {media_id}: {final.position:.2f}s / {final.duration:.2f}s "
                    f"(EOF: {final.eof_reached})"
                )
                if final.duration > 0:
                    saved = final
                    if final.eof_reached:
                        # EOF below the threshold still clears the resume point
                        saved = ProgressSnapshot(final.duration, final.duration)
                    await self._save_progress(media_id, saved)
                else:
                    logger.warning(f"Invalid duration for media {media_id}, keeping stored progress")
                result = PlaybackResult(final.position, final.duration, final.completed)

            if self._events is not None:
                await self._events.emit(PLAYBACK_ENDED, {
                    "media_id": media_id,
                    "title": session.title,
                    "final_position": result.final_position,
                    "final_duration": result.final_duration,
                    "completed": result.completed,
                })
            logger.info(f"Playback ended for media {media_id}. Completed: {result.completed}")
            return result
        finally:
            self.script_file(media_id).unlink(missing_ok=True)
            self.sessions.unregister(media_id)

    def prune_stream_cache(self, now: Optional[float] = None) -> Tuple[int, int]:
        """
        Delete stream recordings older than `cloud_cache_expiry_hours` and the
        subdirectories they leave empty. Returns (files deleted, bytes freed).
        """
        cache_dir = self.config.cloud_cache_dir
        if not self.config.cloud_cache_enabled or not cache_dir or not os.path.isdir(cache_dir):
            return 0, 0

        cutoff = (time.time() if now is None else now) - self.config.cloud_cache_expiry_hours * 3600
        deleted, freed = 0, 0
        for dirpath, _, filenames in os.walk(cache_dir, topdown=False):
            for name in filenames:
                path = os.path.join(dirpath, name)
                try:
                    stat = os.stat(path)
                    if stat.st_mtime >= cutoff:
                        continue
                    os.remove(path)
                except OSError as e:
                    logger.warning(f"Could not remove cached stream {path}: {e}")
                    continue
                deleted += 1
                freed += stat.st_size
                logger.debug(f"Deleted expired stream cache file: {path}")

            if os.path.normpath(dirpath) != os.path.normpath(cache_dir) and not os.listdir(dirpath):
                os.rmdir(dirpath)

        if deleted:
            logger.info(f"Stream cache cleanup: {deleted} files deleted, {freed / (1024 * 1024):.1f} MB freed")
        return deleted, freed

    async def shutdown(self):
        """Stop monitoring; players keep running."""
        tasks = [s.task for s in self.sessions.list() if s.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
