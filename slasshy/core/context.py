import asyncio
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from ..api.tmdb_client import TmdbClient
from ..config import (
    AppConfig, CONFIG_PATH, DB_PATH, IMAGE_CACHE_DIR, PROGRESS_DIR, GDRIVE_TOKENS_PATH,
    load_config, save_config,
)
from ..database.db import DatabaseManager
from ..errors import CloudError, StoreError
from ..utils.logger import get_logger
from ..utils.media_analyzer import MediaAnalyzer
from .cloud_client import GoogleDriveClient
from .events import EventBus, LIBRARY_UPDATED
from .folder_sync import FolderSynchronizer
from .image_cache import ImageCache
from .library_manager import LibraryManager
from .metadata_resolver import MetadataResolver
from .playback_tracker import PlaybackTracker, SessionRegistry

logger = get_logger(__name__)


class IndexingContext:
    """
    Everything one running instance needs, built once and passed around:
    store, resolver, synchronizer, tracker and event bus.
    """

    def __init__(self, config: AppConfig, config_path: Path, db: DatabaseManager, tmdb: TmdbClient,
                 images: ImageCache, resolver: MetadataResolver, library: LibraryManager, events: EventBus,
                 sessions: SessionRegistry, tracker: PlaybackTracker, cloud: GoogleDriveClient):
        self.config = config
        self.config_path = config_path
        self.db = db
        self.tmdb = tmdb
        self.images = images
        self.resolver = resolver
        self.library = library
        self.events = events
        self.sessions = sessions
        self.tracker = tracker
        self.cloud = cloud
        self.sync = FolderSynchronizer(db, library, events, roots=self.media_roots)
        self._cloud_task: Optional[asyncio.Task] = None

    @classmethod
    async def create(cls, config_path=CONFIG_PATH, db_path=DB_PATH, image_cache_dir=IMAGE_CACHE_DIR,
                     progress_dir=PROGRESS_DIR, tokens_path=GDRIVE_TOKENS_PATH,
                     tmdb_transport: Optional[httpx.AsyncBaseTransport] = None,
                     drive_transport: Optional[httpx.AsyncBaseTransport] = None) -> "IndexingContext":
        config_path = Path(config_path)
        config = load_config(config_path)

        db = DatabaseManager(str(db_path), str(image_cache_dir))
        await db.initialize()

        tmdb = TmdbClient(config.tmdb_credential(), transport=tmdb_transport)
        images = ImageCache(tmdb, image_cache_dir)
        resolver = MetadataResolver(tmdb, images, db)
        ffprobe = MediaAnalyzer.find_ffprobe(config.ffprobe_path)
        if ffprobe is None:
            logger.info("ffprobe not found, durations will come from playback")
        library = LibraryManager(db, resolver, images, ffprobe)

        events = EventBus()
        sessions = SessionRegistry()
        cloud = GoogleDriveClient(tokens_path, transport=drive_transport)
        tracker = PlaybackTracker(db, events, sessions, config=config, cloud_client=cloud,
                                  progress_dir=progress_dir)

        if not resolver.enabled:
            logger.warning("No TMDB credential configured, metadata lookups are disabled")
        return cls(config, config_path, db, tmdb, images, resolver, library, events, sessions, tracker, cloud)

    def media_roots(self) -> List[str]:
        return [folder for folder in self.config.media_folders if folder]

    def update_config(self, **changes) -> AppConfig:
        """Apply and persist settings changes; the running services pick them up."""
        self.config = replace(self.config, **changes)
        save_config(self.config, self.config_path)
        self.tracker.config = self.config
        self.tmdb.set_credential(self.config.tmdb_credential())
        logger.info(f"Configuration updated: {', '.join(sorted(changes))}")
        return self.config

    # --- Background tasks ---

    def start(self):
        if self.config.file_watcher_enabled:
            self.sync.start()
        else:
            logger.info("Folder sync disabled in settings")
        if self._cloud_task is None:
            self._cloud_task = asyncio.create_task(self._cloud_loop(), name="cloud-changes")

    async def poll_cloud(self) -> int:
        """One check of the Drive changes feed; returns the number of new rows."""
        if not self.cloud.is_authenticated:
            return 0
        try:
            results = await self.library.index_cloud_changes(self.cloud)
        except (CloudError, StoreError) as e:
            logger.warning(f"Cloud change check failed: {e}")
            return 0

        added = [r for r in results if r.changed]
        for result in added:
            await self.events.emit(LIBRARY_UPDATED, {"type": "added", "title": result.title})
        return len(added)

    async def prune_stream_cache(self) -> Tuple[int, int]:
        """Expire old cloud stream recordings; returns (files deleted, bytes freed)."""
        try:
            return await asyncio.to_thread(self.tracker.prune_stream_cache)
        except OSError as e:
            logger.warning(f"Stream cache cleanup failed: {e}")
            return 0, 0

    async def _cloud_loop(self):
        while True:
            await self.prune_stream_cache()
            interval = max(self.config.cloud_scan_interval_minutes, 1) * 60
            await asyncio.sleep(interval)
            try:
                await self.poll_cloud()
            except Exception:
                logger.exception("Cloud change check crashed")

    async def stop(self):
        await self.sync.stop()
        if self._cloud_task is not None:
            self._cloud_task.cancel()
            try:
                await self._cloud_task
            except asyncio.CancelledError:
                pass
            self._cloud_task = None
        await self.tracker.shutdown()
        await self.tmdb.aclose()
        await self.cloud.aclose()
        logger.info("Indexing context stopped")
