import asyncio
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..config import SERIES_PATH_PREFIX
from ..database.db import DatabaseManager
from ..database.models import MediaItem, MEDIA_TVSHOW, MEDIA_EPISODE
from ..errors import AlreadyExistsError, ResolverError, StoreError
from ..utils.filename_parser import FilenameParser, ParsedMedia
from ..utils.format_utils import episode_code, slugify
from ..utils.logger import get_logger
from ..utils.media_analyzer import MediaAnalyzer
from .image_cache import ImageCache, movie_image_name, series_image_name
from .metadata_resolver import MetadataResolver, KIND_MOVIE, KIND_TV

logger = get_logger(__name__)

CLOUD_PATH_PREFIX = "gdrive://"

# Outcomes of indexing one path
ADDED = "added"
RELINKED = "relinked"
DUPLICATE = "duplicate"
EXISTS = "exists"


@dataclass
class IndexResult:
    status: str
    title: str
    kind: str
    media_id: Optional[int] = None
    existing_path: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.status in (ADDED, RELINKED)


def cloud_path(file_id: str) -> str:
    return f"{CLOUD_PATH_PREFIX}{file_id}"


class LibraryManager:
    """Per-path indexing pipeline shared by folder ticks, manual scans and cloud indexing."""

    def __init__(self, db_manager: DatabaseManager, resolver: MetadataResolver, images: ImageCache,
                 ffprobe_path: Optional[str] = None):
        self._db = db_manager
        self._resolver = resolver
        self._images = images
        self._ffprobe = ffprobe_path

    async def _probe_duration(self, path: str) -> float:
        if not self._ffprobe or path.startswith(CLOUD_PATH_PREFIX):
            return 0.0
        return await asyncio.to_thread(MediaAnalyzer.probe_duration, path, self._ffprobe)

    async def index_file(self, path: str, root: Optional[str] = None) -> IndexResult:
        """Parse and catalog one file on disk. Store errors other than duplicates propagate."""
        parsed = FilenameParser.parse(path, root)
        logger.debug(f"Parsed {path}: {parsed}")
        duration = await self._probe_duration(path)
        if parsed.is_episode:
            return await self.process_episode(parsed, path, duration)
        return await self.process_movie(parsed, path, duration)

    async def process_movie(self, parsed: ParsedMedia, path: str, duration: float = 0.0,
                            cloud_file_id: Optional[str] = None,
                            cloud_folder_id: Optional[str] = None) -> IndexResult:
        metadata = await self._resolver.resolve(parsed.title, KIND_MOVIE, parsed.year,
                                                movie_image_name(parsed.title))
        title = metadata.title if metadata and metadata.title else parsed.title
        year = metadata.year if metadata and metadata.year is not None else parsed.year

        try:
            movie_id = await self._db.insert_movie(
                title, path, year=year,
                overview=metadata.overview if metadata else None,
                poster_path=metadata.poster_path if metadata else None,
                tmdb_id=metadata.tmdb_id if metadata else None,
                duration=duration, cloud_file_id=cloud_file_id, cloud_folder_id=cloud_folder_id,
            )
        except AlreadyExistsError:
            logger.debug(f"Already indexed: {path}")
            return IndexResult(EXISTS, title, KIND_MOVIE)

        logger.info(f"Indexed movie: {title} ({year})")
        return IndexResult(ADDED, title, KIND_MOVIE, movie_id)

    async def _resolve_series(self, parsed: ParsedMedia, cloud_folder_id: Optional[str]) -> MediaItem:
        series_id = await self._db.find_series(None, parsed.title, parsed.year)
        if series_id is not None:
            logger.debug(f"Found existing series by title match (ID: {series_id})")
            return await self._db.get_media(series_id)

        metadata = await self._resolver.resolve(parsed.title, KIND_TV, parsed.year,
                                                series_image_name(parsed.title))
        title = metadata.title if metadata and metadata.title else parsed.title
        year = metadata.year if metadata and metadata.year is not None else parsed.year
        tmdb_id = metadata.tmdb_id if metadata else None

        series_id = await self._db.find_series(tmdb_id, title, year)
        if series_id is not None:
            existing = await self._db.get_media(series_id)
            if metadata and tmdb_id and (not existing.tmdb_id or not existing.poster_path):
                await self._db.update_metadata(series_id, metadata)
                logger.info(f"Backfilled metadata for series {series_id}: {title}")
                existing = await self._db.get_media(series_id)
            return existing

        virtual_path = f"{SERIES_PATH_PREFIX}{tmdb_id or 'unknown'}/{slugify(title)}"
        try:
            series_id = await self._db.insert_series(
                title, virtual_path, year=year,
                overview=metadata.overview if metadata else None,
                poster_path=metadata.poster_path if metadata else None,
                tmdb_id=tmdb_id, cloud_folder_id=cloud_folder_id,
            )
        except AlreadyExistsError:
            # Same external id and slug under a title the cascade did not match
            existing = await self._db.get_media_by_file_path(virtual_path)
            if existing is None:
                raise
            return existing
        return await self._db.get_media(series_id)

    @staticmethod
    def _on_disk(item: MediaItem) -> bool:
        if item.is_cloud:
            return True
        return os.path.exists(item.file_path)

    async def process_episode(self, parsed: ParsedMedia, path: str, duration: float = 0.0,
                              cloud_file_id: Optional[str] = None,
                              cloud_folder_id: Optional[str] = None) -> IndexResult:
        season = parsed.season if parsed.season is not None else 1
        episode = parsed.episode if parsed.episode is not None else 1
        code = episode_code(season, episode)

        series = await self._resolve_series(parsed, cloud_folder_id)
        label = f"{series.title} {code}"

        existing = await self._db.find_episode(series.id, season, episode)
        if existing is not None:
            if existing.file_path == path:
                return IndexResult(EXISTS, label, KIND_TV, existing.id)
            if self._on_disk(existing) or cloud_file_id:
                logger.info(f"Skipping {path}: {label} is already indexed as {existing.file_path}")
                return IndexResult(DUPLICATE, label, KIND_TV, existing.id, existing.file_path)
            await self._db.relink_episode(existing.id, path)
            return IndexResult(RELINKED, label, KIND_TV, existing.id)

        episode_title = overview = still = None
        if series.tmdb_id:
            try:
                info = await self._resolver.episode_metadata(series.tmdb_id, series.title, season, episode)
            except (ResolverError, OSError) as e:
                logger.warning(f"Episode metadata for {label} failed: {e}")
                info = None
            if info:
                episode_title, overview, still = info.episode_title, info.overview, info.still_path

        try:
            episode_id = await self._db.insert_episode(
                code, path, series.id, season, episode, duration=duration,
                episode_title=episode_title, overview=overview, still_path=still,
                cloud_file_id=cloud_file_id, cloud_folder_id=cloud_folder_id,
            )
        except AlreadyExistsError:
            logger.debug(f"Already indexed: {path}")
            return IndexResult(EXISTS, label, KIND_TV)

        logger.info(f"Indexed episode: {label} (series_id: {series.id})")
        return IndexResult(ADDED, label, KIND_TV, episode_id)

    # --- Removal and maintenance ---

    async def reclaim_images(self, candidates: Iterable[Optional[str]]) -> int:
        """Delete cached images from `candidates` that no row references any more."""
        candidates = [c for c in candidates if c]
        if not candidates:
            return 0
        referenced = await self._db.get_all_image_paths()
        removed = 0
        for path in candidates:
            if path not in referenced and self._images.delete(path):
                removed += 1
        return removed

    async def remove_file(self, path: str) -> Optional[str]:
        """Drop the row for a vanished file; returns its title, or None if it was not cataloged."""
        removed = await self._db.remove_media_by_file_path(path)
        if removed is None:
            return None
        await self.reclaim_images([removed.poster_path, removed.still_path])
        logger.info(f"Removed from library: {removed.title} ({path})")
        return removed.title

    async def cleanup_series(self) -> int:
        empty = await self._db.cleanup_empty_series()
        await self.reclaim_images(poster for _, poster in empty)
        return len(empty)

    async def merge_duplicates(self) -> int:
        merged = await self._db.merge_duplicate_series()
        if merged:
            await self.reclaim_orphans()
        return merged

    async def reclaim_orphans(self) -> int:
        referenced = await self._db.get_all_image_paths()
        return await asyncio.to_thread(self._images.reclaim_orphans, referenced)

    async def find_orphan_images(self) -> List[str]:
        referenced = await self._db.get_all_image_paths()
        return [str(p) for p in await asyncio.to_thread(self._images.find_orphans, referenced)]

    async def fix_match(self, media_id: int, id_or_url: str) -> MediaItem:
        """Re-point a movie or series (an episode fixes its series) at an explicit catalog id."""
        item = await self._db.get_media(media_id)
        if item.media_type == MEDIA_EPISODE and item.parent_id is not None:
            item = await self._db.get_media(item.parent_id)

        is_series = item.media_type == MEDIA_TVSHOW
        kind = KIND_TV if is_series else KIND_MOVIE
        image_name = series_image_name(item.title) if is_series else movie_image_name(item.title)

        metadata = await self._resolver.fetch_by_id(id_or_url, kind, image_name, replace=True)
        await self._db.update_metadata(item.id, metadata)
        logger.info(f"Fixed match for {item.id}: '{item.title}' -> '{metadata.title}' (TMDB {metadata.tmdb_id})")

        if is_series:
            if item.tmdb_id and item.tmdb_id != metadata.tmdb_id:
                await self._db.clear_cached_metadata_for_series(item.tmdb_id)
            await self._refresh_episodes(item.id, metadata.tmdb_id, metadata.title)

        if item.poster_path != metadata.poster_path:
            await self.reclaim_images([item.poster_path])
        return await self._db.get_media(item.id)

    async def _refresh_episodes(self, series_id: int, tmdb_id: Optional[str], title: str):
        if not tmdb_id:
            return
        for ep in await self._db.get_episodes(series_id):
            if ep.season_number is None or ep.episode_number is None:
                continue
            try:
                info = await self._resolver.episode_metadata(tmdb_id, title, ep.season_number, ep.episode_number)
            except (ResolverError, OSError) as e:
                logger.warning(f"Episode metadata refresh failed for {ep.id}: {e}")
                continue
            if info:
                await self._db.update_episode_metadata(ep.id, info.episode_title, info.overview, info.still_path)

    async def delete_media(self, ids: List[int], delete_files: bool = False) -> List[str]:
        """User-requested delete; optionally unlinks the files as well."""
        paths = await self._db.delete_media_entries(ids)
        if delete_files:
            for path in paths:
                try:
                    os.remove(path)
                    logger.info(f"Deleted file: {path}")
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Failed to delete {path}: {e}")
        await self.cleanup_series()
        await self.reclaim_orphans()
        return paths

    async def reset(self):
        """Wipe catalog data and the image cache."""
        await self._db.clear_all_data()
        await asyncio.to_thread(self._images.clear)
        logger.warning("Library reset: catalog and image cache cleared")

    # --- Cloud ---

    async def index_cloud_file(self, file, folder_id: str) -> IndexResult:
        parsed = FilenameParser.parse_name(file.name)
        path = cloud_path(file.id)
        if parsed.is_episode:
            return await self.process_episode(parsed, path, cloud_file_id=file.id, cloud_folder_id=folder_id)
        return await self.process_movie(parsed, path, cloud_file_id=file.id, cloud_folder_id=folder_id)

    async def _index_cloud_files(self, files, folder_for) -> List[IndexResult]:
        results = []
        for file in files:
            folder_id = folder_for(file)
            if folder_id is None:
                logger.debug(f"Skipping {file.name} (not in a tracked folder)")
                continue
            if await self._db.cloud_file_exists(file.id):
                continue
            try:
                results.append(await self.index_cloud_file(file, folder_id))
            except StoreError as e:
                logger.warning(f"Failed to index cloud file {file.name}: {e}")
        return results

    async def scan_cloud_folder(self, client, folder_id: str) -> List[IndexResult]:
        """Full listing of one tracked folder."""
        files = await client.list_video_files(folder_id, recursive=True)
        logger.info(f"Found {len(files)} video files in cloud folder {folder_id}")
        results = await self._index_cloud_files(files, lambda _file: folder_id)
        await self._db.update_cloud_folder_scanned(folder_id)
        return results

    async def index_cloud_changes(self, client) -> List[IndexResult]:
        """
        Index video files added to tracked folders since the stored changes token.
        The first call only records a start token.
        """
        token = await self._db.get_changes_token()
        if not token:
            token = await client.get_changes_start_token()
            await self._db.set_changes_token(token)
            logger.info("Cloud change tracking initialized")
            return []

        tracked = {folder.folder_id for folder in await self._db.get_cloud_folders()}
        if not tracked:
            logger.debug("No cloud folders configured, skipping change check")
            return []

        files, new_token = await client.get_video_changes(token)
        if new_token:
            await self._db.set_changes_token(new_token)
        if not files:
            return []

        def folder_for(file):
            return next((parent for parent in file.parents if parent in tracked), None)

        results = await self._index_cloud_files(files, folder_for)
        logger.info(f"Indexed {sum(1 for r in results if r.changed)} new cloud files")
        return results
