import asyncio
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Set

import aiofiles

from ..config import IMAGE_CACHE_DIR, MAX_IMAGE_DOWNLOADS
from ..errors import ResolverError
from ..utils.format_utils import slugify
from ..utils.logger import get_logger

logger = get_logger(__name__)

STORED_PREFIX = "image_cache/"
IMAGE_SIZES = ("w500", "w342", "w185", "original")
MIN_IMAGE_BYTES = 100


def series_image_name(title: str) -> str:
    slug = slugify(title) or "unknown"
    return f"{slug}/{slug}_banner.jpg"


def episode_image_name(series_title: str, season: int, episode: int) -> str:
    slug = slugify(series_title) or "unknown"
    return f"{slug}/{slug}_s{season}e{episode}_banner.jpg"


def movie_image_name(title: str) -> str:
    slug = slugify(title) or "unknown"
    return f"{slug}_banner.jpg"


class ImageCache:
    """
    Local cache of catalog artwork.
    Paths handed to the store are relative (`image_cache/<name>`) so the app-data
    directory can move without rewriting rows.
    """

    def __init__(self, client, cache_dir=IMAGE_CACHE_DIR, max_downloads: int = MAX_IMAGE_DOWNLOADS):
        self.client = client
        self.cache_dir = Path(cache_dir)
        self._semaphore = asyncio.Semaphore(max_downloads)

    def local_path(self, stored_path: str) -> Path:
        name = stored_path[len(STORED_PREFIX):] if stored_path.startswith(STORED_PREFIX) else stored_path
        return self.cache_dir / name

    def exists(self, stored_path: Optional[str]) -> bool:
        if not stored_path:
            return False
        path = self.local_path(stored_path)
        return path.is_file() and path.stat().st_size > MIN_IMAGE_BYTES

    async def cache(self, remote_path: Optional[str], name: str, replace: bool = False) -> Optional[str]:
        """
        Download `remote_path` into `name` and return the stored path, or None if no size worked.
        An existing file is reused unless `replace` is set.
        """
        if not remote_path:
            return None

        stored = f"{STORED_PREFIX}{name}"
        target = self.local_path(stored)
        if target.is_file():
            if target.stat().st_size > MIN_IMAGE_BYTES and not replace:
                return stored
            if target.stat().st_size <= MIN_IMAGE_BYTES:
                # Truncated leftover from an earlier run
                target.unlink()

        async with self._semaphore:
            for size in IMAGE_SIZES:
                try:
                    data = await self.client.download_image(remote_path, size)
                except ResolverError as e:
                    logger.debug(f"Image {remote_path} failed at size {size}: {e}")
                    continue
                if len(data) < MIN_IMAGE_BYTES:
                    logger.debug(f"Image {remote_path} too small at size {size} ({len(data)} bytes)")
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(target, "wb") as f:
                    await f.write(data)
                logger.debug(f"Cached {remote_path} ({size}) as {stored}")
                return stored

        if replace and target.is_file():
            logger.warning(f"Could not refresh image {remote_path}, keeping {stored}")
            return stored
        logger.warning(f"Could not cache image {remote_path}")
        return None

    def delete(self, stored_path: Optional[str]) -> bool:
        if not stored_path:
            return False
        path = self.local_path(stored_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete cached image {path}: {e}")
            return False
        self._prune_dir(path.parent)
        return True

    def _prune_dir(self, directory: Path):
        if directory == self.cache_dir or self.cache_dir not in directory.parents:
            return
        try:
            directory.rmdir()
        except OSError:
            pass  # not empty

    def find_orphans(self, referenced: Iterable[str]) -> List[Path]:
        """Cached files no row references any more."""
        if not self.cache_dir.exists():
            return []

        keep: Set[Path] = {self.local_path(p).resolve() for p in referenced if p}
        orphans = []
        for root, dirs, files in os.walk(self.cache_dir):
            for name in sorted(files):
                path = Path(root) / name
                if path.resolve() not in keep:
                    orphans.append(path)
        return orphans

    def reclaim_orphans(self, referenced: Iterable[str]) -> int:
        """Delete cached files no row references any more. Returns the number removed."""
        removed = 0
        for path in self.find_orphans(referenced):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete orphaned image {path}: {e}")
                continue
            self._prune_dir(path.parent)

        if removed:
            logger.info(f"Reclaimed {removed} orphaned images")
        return removed

    def clear(self):
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir, ignore_errors=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
