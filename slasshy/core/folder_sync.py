import asyncio
import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..config import SYNC_INITIAL_DELAY, SYNC_INTERVAL
from ..database.db import DatabaseManager
from ..utils.file_scanner import FileScanner
from ..utils.logger import get_logger
from .events import EventBus, LIBRARY_UPDATED, SCAN_COMPLETE
from .library_manager import LibraryManager, DUPLICATE

logger = get_logger(__name__)


@dataclass
class SyncReport:
    added: int = 0
    removed: int = 0
    failed: int = 0
    series_removed: int = 0
    skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.series_removed)


class FolderSynchronizer:
    """
    Polling sync of the configured roots against the catalog.
    Each tick diffs a disk snapshot against a catalog snapshot and applies
    additions, then removals, then empty-series cleanup.
    """

    def __init__(self, db_manager: DatabaseManager, library: LibraryManager, events: Optional[EventBus],
                 roots: Callable[[], Iterable[str]],
                 initial_delay: float = SYNC_INITIAL_DELAY, interval: float = SYNC_INTERVAL):
        self._db = db_manager
        self._library = library
        self._events = events
        self.roots = roots
        self.initial_delay = initial_delay
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self._failed: Set[str] = set()
        # normalized duplicate path -> normalized path of the row that owns its slot
        self._duplicates: Dict[str, str] = {}
        self._missing_roots: Set[str] = set()
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _available_roots(self, roots: List[str]) -> List[str]:
        available = []
        for root in roots:
            if os.path.isdir(root):
                if root in self._missing_roots:
                    self._missing_roots.discard(root)
                    logger.info(f"Media folder is available again: {root}")
                available.append(root)
            elif root not in self._missing_roots:
                self._missing_roots.add(root)
                logger.warning(f"Media folder not found, its entries are kept until it returns: {root}")
        return available

    async def _emit(self, name: str, payload: dict):
        if self._events is not None:
            await self._events.emit(name, payload)

    async def run_tick(self) -> SyncReport:
        async with self._tick_lock:
            return await self._run_tick()

    async def _run_tick(self) -> SyncReport:
        report = SyncReport()
        roots = [r for r in self.roots() if r]
        available = self._available_roots(roots)

        disk = await asyncio.to_thread(FileScanner.scan_roots, available)
        catalog = {FileScanner.normalize_path(p): p for p in await self._db.get_all_file_paths()}

        new = sorted(key for key in disk if key not in catalog)
        removed = sorted(
            key for key in catalog
            if key not in disk and not self._under_missing_root(catalog[key])
        )
        removed_keys = set(removed)
        if new or removed:
            logger.info(f"Sync: {len(new)} new, {len(removed)} removed")

        for key in new:
            path = disk[key]
            owner = self._duplicates.get(key)
            if owner is not None and owner in catalog and owner not in removed_keys:
                report.skipped += 1
                continue
            await self._apply_new(key, path, roots, report)

        stuck: Set[str] = set()
        for key in removed:
            path = catalog[key]
            try:
                title = await self._library.remove_file(path)
            except Exception as e:
                self._record_failure(key, f"Failed to remove {path}: {e}")
                report.failed += 1
                stuck.add(key)
                continue
            if title is not None:
                report.removed += 1
                await self._emit(LIBRARY_UPDATED, {"type": "removed", "title": title})

        try:
            report.series_removed = await self._library.cleanup_series()
        except Exception as e:
            logger.warning(f"Series cleanup failed: {e}")

        self._forget_missing(set(disk) | stuck)

        if report.changed or self._ticks == 0:
            movies, shows = await self._db.get_library_counts()
            await self._emit(SCAN_COMPLETE, {"movies_count": movies, "tv_count": shows})
        self._ticks += 1

        if report.changed or report.failed:
            logger.info(
                f"Sync complete: {report.added} added, {report.removed} removed, "
                f"{report.series_removed} empty series removed, {report.failed} failed"
            )
        return report

    async def _apply_new(self, key: str, path: str, roots: List[str], report: SyncReport):
        try:
            result = await self._library.index_file(path, FileScanner.find_root(path, roots) or None)
        except Exception as e:
            self._record_failure(key, f"Failed to index {path}: {e}")
            report.failed += 1
            return

        if key in self._failed:
            self._failed.discard(key)
            logger.info(f"Indexed {path} after earlier failures")

        if result.status == DUPLICATE:
            self._duplicates[key] = FileScanner.normalize_path(result.existing_path or "")
            report.skipped += 1
            return
        self._duplicates.pop(key, None)

        if result.changed:
            report.added += 1
            await self._emit(LIBRARY_UPDATED, {"type": "added", "title": result.title})

    def _under_missing_root(self, path: str) -> bool:
        return bool(self._missing_roots) and bool(FileScanner.find_root(path, self._missing_roots))

    def _forget_missing(self, live: Set[str]):
        """Drop failure and duplicate bookkeeping for paths that are gone."""
        self._failed &= live
        for key in [k for k in self._duplicates if k not in live]:
            del self._duplicates[key]

    def _record_failure(self, key: str, message: str):
        if key in self._failed:
            logger.debug(message)
        else:
            self._failed.add(key)
            logger.warning(message)

    async def _loop(self):
        await asyncio.sleep(self.initial_delay)
        logger.info(f"Folder sync started (every {self.interval:g}s)")
        while True:
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Folder sync tick crashed")
            await asyncio.sleep(self.interval)

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="folder-sync")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Folder sync stopped")
