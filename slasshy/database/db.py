import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

import aiosqlite

from .models import (
    MediaItem, Metadata, ResumeInfo, StreamingHistoryEntry, CachedEpisode, RemovedMedia, CloudFolder,
    MEDIA_MOVIE, MEDIA_TVSHOW, MEDIA_EPISODE,
)
from ..config import DB_PATH, IMAGE_CACHE_DIR, COMPLETE_THRESHOLD
from ..errors import NotFoundError, AlreadyExistsError, InvariantError
from ..utils.format_utils import format_hms
from ..utils.title_matching import normalize_for_store, titles_are_similar, first_word
from ..utils.logger import get_logger

logger = get_logger(__name__)

CHANGES_TOKEN_KEY = "gdrive_changes_token"

MEDIA_COLUMNS = """id, title, year, overview, poster_path, file_path, media_type, parent_id,
    season_number, episode_number, duration_seconds, resume_position_seconds, last_watched,
    tmdb_id, episode_title, still_path, is_cloud, cloud_file_id, cloud_folder_id"""


def _now() -> str:
    return datetime.now().isoformat()


def _row_to_media(row) -> MediaItem:
    return MediaItem(
        id=row['id'],
        title=row['title'],
        year=row['year'],
        overview=row['overview'],
        poster_path=row['poster_path'],
        file_path=row['file_path'],
        media_type=row['media_type'],
        parent_id=row['parent_id'],
        season_number=row['season_number'],
        episode_number=row['episode_number'],
        duration_seconds=row['duration_seconds'] or 0.0,
        resume_position_seconds=row['resume_position_seconds'] or 0.0,
        last_watched=row['last_watched'],
        tmdb_id=row['tmdb_id'],
        episode_title=row['episode_title'],
        still_path=row['still_path'],
        is_cloud=bool(row['is_cloud']),
        cloud_file_id=row['cloud_file_id'],
        cloud_folder_id=row['cloud_folder_id'],
    )


def _row_to_streaming(row) -> StreamingHistoryEntry:
    return StreamingHistoryEntry(
        id=row['id'],
        tmdb_id=row['tmdb_id'],
        media_type=row['media_type'],
        title=row['title'],
        poster_path=row['poster_path'],
        season=row['season'],
        episode=row['episode'],
        resume_position_seconds=row['resume_position_seconds'] or 0.0,
        duration_seconds=row['duration_seconds'] or 0.0,
        last_watched=row['last_watched'],
    )


class DatabaseManager:
    """
    Catalog store on SQLite.
    Every write goes through one lock so the catalog has a single writer;
    reads are single statements and run without it.
    """

    def __init__(self, db_path: str = str(DB_PATH), image_cache_dir: str = str(IMAGE_CACHE_DIR)):
        self.db_path = db_path
        self.image_cache_dir = image_cache_dir
        self._write_lock = asyncio.Lock()
        logger.debug(f"DatabaseManager initialized with path: {self.db_path}")

    @asynccontextmanager
    async def _connect(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA foreign_keys = ON")
            db.row_factory = aiosqlite.Row
            yield db

    async def initialize(self):
        logger.info("Initializing database...")
        async with self._write_lock:
            async with self._connect() as db:
                # Media table (movies, series headers and episodes)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS media (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        title TEXT NOT NULL,
                        year INTEGER,
                        overview TEXT,
                        poster_path TEXT,
                        file_path TEXT NOT NULL UNIQUE,
                        media_type TEXT NOT NULL,
                        parent_id INTEGER,
                        season_number INTEGER,
                        episode_number INTEGER,
                        duration_seconds REAL DEFAULT 0,
                        resume_position_seconds REAL DEFAULT 0,
                        last_watched TIMESTAMP DEFAULT NULL,
                        tmdb_id TEXT DEFAULT NULL,
                        date_added TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (parent_id) REFERENCES media (id) ON DELETE CASCADE
                    )
                """)

                # Migrations
                async with db.execute("PRAGMA table_info(media)") as cursor:
                    columns = [row[1] for row in await cursor.fetchall()]
                    if 'episode_title' not in columns:
                        await db.execute("ALTER TABLE media ADD COLUMN episode_title TEXT DEFAULT NULL")
                    if 'still_path' not in columns:
                        await db.execute("ALTER TABLE media ADD COLUMN still_path TEXT DEFAULT NULL")
                    if 'is_cloud' not in columns:
                        await db.execute("ALTER TABLE media ADD COLUMN is_cloud INTEGER DEFAULT 0")
                    if 'cloud_file_id' not in columns:
                        await db.execute("ALTER TABLE media ADD COLUMN cloud_file_id TEXT DEFAULT NULL")
                    if 'cloud_folder_id' not in columns:
                        await db.execute("ALTER TABLE media ADD COLUMN cloud_folder_id TEXT DEFAULT NULL")

                # Older databases may hold duplicate episodes; keep the oldest before indexing
                await db.execute("""
                    DELETE FROM media WHERE media_type = 'tvepisode'
                    AND season_number IS NOT NULL AND episode_number IS NOT NULL
                    AND id NOT IN (
                        SELECT MIN(id) FROM media WHERE media_type = 'tvepisode'
                        GROUP BY parent_id, season_number, episode_number
                    )
                """)
                await db.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_episode_unique
                    ON media (parent_id, season_number, episode_number)
                    WHERE media_type = 'tvepisode'
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_media_parent ON media (parent_id)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_media_tmdb ON media (tmdb_id)")

                # Season episode cache from the external catalog
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS cached_episode_metadata (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        series_tmdb_id TEXT NOT NULL,
                        season_number INTEGER NOT NULL,
                        episode_number INTEGER NOT NULL,
                        episode_title TEXT,
                        overview TEXT,
                        still_path TEXT,
                        air_date TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE(series_tmdb_id, season_number, episode_number)
                    )
                """)

                # Progress for remote content that is not in the catalog
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS streaming_history (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        tmdb_id TEXT NOT NULL,
                        media_type TEXT NOT NULL,
                        title TEXT NOT NULL,
                        poster_path TEXT,
                        season INTEGER,
                        episode INTEGER,
                        resume_position_seconds REAL DEFAULT 0,
                        duration_seconds REAL DEFAULT 0,
                        last_watched TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                await db.execute("""
                    DELETE FROM streaming_history WHERE id NOT IN (
                        SELECT MAX(id) FROM streaming_history
                        GROUP BY tmdb_id, media_type, COALESCE(season, -1), COALESCE(episode, -1)
                    )
                """)
                await db.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_streaming_unique
                    ON streaming_history (tmdb_id, media_type, COALESCE(season, -1), COALESCE(episode, -1))
                """)

                # Tracked cloud folders
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS cloud_folders (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        folder_id TEXT NOT NULL UNIQUE,
                        folder_name TEXT NOT NULL,
                        auto_scan INTEGER DEFAULT 1,
                        last_scanned TIMESTAMP,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS app_settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                await db.commit()

    # Insert Operations

    async def _insert_media(self, db, columns: Dict[str, object]) -> int:
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        try:
            cursor = await db.execute(
                f"INSERT INTO media ({names}) VALUES ({placeholders})", tuple(columns.values())
            )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise InvariantError(f"Invalid parent for {columns.get('file_path')}: {e}") from e
            raise AlreadyExistsError(f"Media already exists: {columns.get('file_path')}") from e
        await db.commit()
        return cursor.lastrowid

    async def insert_movie(self, title: str, file_path: str, year: Optional[int] = None,
                           overview: Optional[str] = None, poster_path: Optional[str] = None,
                           tmdb_id: Optional[str] = None, duration: float = 0.0,
                           cloud_file_id: Optional[str] = None, cloud_folder_id: Optional[str] = None) -> int:
        logger.debug(f"Adding movie: {title} (path: {file_path})")
        async with self._write_lock:
            async with self._connect() as db:
                movie_id = await self._insert_media(db, {
                    "title": title, "year": year, "overview": overview, "poster_path": poster_path,
                    "file_path": file_path, "media_type": MEDIA_MOVIE, "duration_seconds": duration,
                    "tmdb_id": tmdb_id, "is_cloud": 1 if cloud_file_id else 0,
                    "cloud_file_id": cloud_file_id, "cloud_folder_id": cloud_folder_id,
                })
        logger.info(f"New movie added: {title} (ID: {movie_id})")
        return movie_id

    async def insert_series(self, title: str, file_path: str, year: Optional[int] = None,
                            overview: Optional[str] = None, poster_path: Optional[str] = None,
                            tmdb_id: Optional[str] = None, cloud_folder_id: Optional[str] = None) -> int:
        logger.debug(f"Adding series: {title} (path: {file_path})")
        async with self._write_lock:
            async with self._connect() as db:
                series_id = await self._insert_media(db, {
                    "title": title, "year": year, "overview": overview, "poster_path": poster_path,
                    "file_path": file_path, "media_type": MEDIA_TVSHOW, "tmdb_id": tmdb_id,
                    "is_cloud": 1 if cloud_folder_id else 0, "cloud_folder_id": cloud_folder_id,
                })
        logger.info(f"New series added: {title} (ID: {series_id})")
        return series_id

    async def insert_episode(self, title: str, file_path: str, parent_id: int, season: int, episode: int,
                             duration: float = 0.0, episode_title: Optional[str] = None,
                             overview: Optional[str] = None, still_path: Optional[str] = None,
                             cloud_file_id: Optional[str] = None, cloud_folder_id: Optional[str] = None) -> int:
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute("SELECT media_type FROM media WHERE id = ?", (parent_id,)) as cursor:
                    parent = await cursor.fetchone()
                if not parent or parent['media_type'] != MEDIA_TVSHOW:
                    raise InvariantError(f"Parent {parent_id} of {file_path} is not a series")

                episode_id = await self._insert_media(db, {
                    "title": title, "file_path": file_path, "media_type": MEDIA_EPISODE,
                    "parent_id": parent_id, "season_number": season, "episode_number": episode,
                    "duration_seconds": duration, "episode_title": episode_title, "overview": overview,
                    "still_path": still_path, "is_cloud": 1 if cloud_file_id else 0,
                    "cloud_file_id": cloud_file_id, "cloud_folder_id": cloud_folder_id,
                })
        logger.debug(f"New episode added: {title} S{season:02d}E{episode:02d} (ID: {episode_id})")
        return episode_id

    # Lookups

    async def find_series(self, tmdb_id: Optional[str], title: str, year: Optional[int] = None) -> Optional[int]:
        """
        Resolve the series a new episode belongs to:
        external id, then normalized title with exact year, year +/- 1,
        title alone, and finally a fuzzy match on the first significant word.
        """
        async with self._connect() as db:
            # 1. External id
            if tmdb_id:
                async with db.execute(
                    "SELECT id FROM media WHERE tmdb_id = ? AND media_type = 'tvshow' ORDER BY id LIMIT 1",
                    (tmdb_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                    if row:
                        return row['id']

            async with db.execute(
                "SELECT id, title, year FROM media WHERE media_type = 'tvshow' ORDER BY id"
            ) as cursor:
                candidates = [(row['id'], normalize_for_store(row['title']), row['year'])
                              for row in await cursor.fetchall()]

        wanted = normalize_for_store(title)
        if not wanted:
            return None

        # 2-3. Title with exact year, then with the neighbouring years
        if year is not None:
            for series_id, norm, series_year in candidates:
                if norm == wanted and series_year == year:
                    return series_id
            for series_id, norm, series_year in candidates:
                if norm == wanted and series_year is not None and abs(series_year - year) <= 1:
                    return series_id

        # 4. Title only
        for series_id, norm, _ in candidates:
            if norm == wanted:
                return series_id

        # 5. Fuzzy on the first significant word
        word = first_word(wanted)
        if len(word) >= 3:
            for series_id, norm, _ in candidates:
                if norm.startswith(word) and titles_are_similar(wanted, norm):
                    logger.debug(f"Fuzzy series match for '{title}': ID {series_id}")
                    return series_id

        return None

    async def find_episode(self, parent_id: int, season: int, episode: int) -> Optional[MediaItem]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {MEDIA_COLUMNS} FROM media WHERE parent_id = ? AND season_number = ? "
                "AND episode_number = ? AND media_type = 'tvepisode'",
                (parent_id, season, episode)
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_media(row) if row else None

    async def get_media(self, media_id: int) -> MediaItem:
        async with self._connect() as db:
            async with db.execute(f"SELECT {MEDIA_COLUMNS} FROM media WHERE id = ?", (media_id,)) as cursor:
                row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Media {media_id} not found")
        return _row_to_media(row)

    async def get_media_by_file_path(self, file_path: str) -> Optional[MediaItem]:
        async with self._connect() as db:
            async with db.execute(f"SELECT {MEDIA_COLUMNS} FROM media WHERE file_path = ?", (file_path,)) as cursor:
                row = await cursor.fetchone()
                return _row_to_media(row) if row else None

    async def get_library(self, media_type: str, search: Optional[str] = None,
                          is_cloud: Optional[bool] = None) -> List[MediaItem]:
        sql = f"SELECT {MEDIA_COLUMNS} FROM media WHERE media_type = ?"
        params: list = [media_type]
        if is_cloud is True:
            sql += " AND is_cloud = 1"
        elif is_cloud is False:
            sql += " AND (is_cloud = 0 OR is_cloud IS NULL)"
        if search:
            sql += " AND title LIKE ?"
            params.append(f"%{search}%")
        sql += " ORDER BY title"

        async with self._connect() as db:
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                logger.debug(f"Fetched {len(rows)} {media_type} rows from database")
                return [_row_to_media(row) for row in rows]

    async def get_episodes(self, series_id: int) -> List[MediaItem]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {MEDIA_COLUMNS} FROM media WHERE parent_id = ? ORDER BY season_number, episode_number",
                (series_id,)
            ) as cursor:
                return [_row_to_media(row) for row in await cursor.fetchall()]

    async def get_all_file_paths(self) -> List[str]:
        """Paths of local movies and episodes; series headers and cloud rows are not on disk."""
        async with self._connect() as db:
            async with db.execute("""
                SELECT file_path FROM media
                WHERE media_type != 'tvshow'
                AND file_path NOT LIKE 'tvshow://%'
                AND COALESCE(is_cloud, 0) = 0
            """) as cursor:
                return [row['file_path'] for row in await cursor.fetchall()]

    async def get_library_counts(self) -> Tuple[int, int]:
        async with self._connect() as db:
            async with db.execute("""
                SELECT
                    SUM(CASE WHEN media_type = 'movie' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN media_type = 'tvshow' THEN 1 ELSE 0 END)
                FROM media
            """) as cursor:
                row = await cursor.fetchone()
                return (row[0] or 0, row[1] or 0)

    async def cloud_file_exists(self, cloud_file_id: str) -> bool:
        async with self._connect() as db:
            async with db.execute("SELECT 1 FROM media WHERE cloud_file_id = ?", (cloud_file_id,)) as cursor:
                return await cursor.fetchone() is not None

    # Metadata Updates

    async def update_metadata(self, media_id: int, metadata: Metadata):
        async with self._write_lock:
            async with self._connect() as db:
                await db.execute(
                    "UPDATE media SET title = ?, year = ?, overview = ?, poster_path = ?, tmdb_id = ? WHERE id = ?",
                    (metadata.title, metadata.year, metadata.overview, metadata.poster_path,
                     metadata.tmdb_id, media_id)
                )
                await db.commit()

    async def update_episode_metadata(self, episode_id: int, episode_title: Optional[str],
                                      overview: Optional[str], still_path: Optional[str]):
        async with self._write_lock:
            async with self._connect() as db:
                await db.execute(
                    "UPDATE media SET episode_title = ?, overview = ?, still_path = ? WHERE id = ?",
                    (episode_title, overview, still_path, episode_id)
                )
                await db.commit()

    async def relink_episode(self, episode_id: int, file_path: str):
        """Point an existing episode at its renamed or moved file."""
        async with self._write_lock:
            async with self._connect() as db:
                try:
                    await db.execute("UPDATE media SET file_path = ? WHERE id = ?", (file_path, episode_id))
                except sqlite3.IntegrityError as e:
                    raise AlreadyExistsError(f"Media already exists: {file_path}") from e
                await db.commit()
        logger.info(f"Episode {episode_id} relinked to {file_path}")

    # Progress Operations

    async def update_progress(self, media_id: int, position: float, duration: float):
        """
        Record playback progress. Reaching the completion threshold resets the
        position to 0; a zero duration never overwrites a known one, and the
        position is clamped to whichever duration ends up stored.
        """
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute("SELECT duration_seconds FROM media WHERE id = ?", (media_id,)) as cursor:
                    row = await cursor.fetchone()
                if not row:
                    raise NotFoundError(f"Media {media_id} not found")

                effective = duration if duration > 0 else (row['duration_seconds'] or 0.0)
                position = max(0.0, position)
                if effective > 0:
                    if position / effective >= COMPLETE_THRESHOLD:
                        position = 0.0
                    else:
                        position = min(position, effective)

                await db.execute(
                    "UPDATE media SET resume_position_seconds = ?, duration_seconds = ?, last_watched = ? WHERE id = ?",
                    (position, effective if effective > 0 else row['duration_seconds'], _now(), media_id)
                )
                await db.commit()
        logger.debug(f"Progress for {media_id}: {position:.1f}/{duration:.1f}")

    async def get_resume_info(self, media_id: int) -> ResumeInfo:
        async with self._connect() as db:
            async with db.execute(
                "SELECT resume_position_seconds, duration_seconds FROM media WHERE id = ?", (media_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Media {media_id} not found")

        position = row['resume_position_seconds'] or 0.0
        duration = row['duration_seconds'] or 0.0
        percent = (position / duration) * 100.0 if duration > 0 else 0.0

        # Finished items start over
        if percent >= COMPLETE_THRESHOLD * 100:
            return ResumeInfo(False, 0.0, duration, "00:00:00", 0.0)

        return ResumeInfo(
            has_progress=position > 0 and duration > 0,
            position=position,
            duration=duration,
            time_str=format_hms(position),
            progress_percent=percent,
        )

    async def _simple_write(self, sql: str, params: tuple = ()) -> int:
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount

    async def update_last_watched(self, media_id: int):
        await self._simple_write("UPDATE media SET last_watched = ? WHERE id = ?", (_now(), media_id))

    async def clear_progress(self, media_id: int):
        await self._simple_write("UPDATE media SET resume_position_seconds = 0 WHERE id = ?", (media_id,))

    async def get_watch_history(self, limit: int = 20) -> List[MediaItem]:
        """Recently watched movies and episodes; episodes carry their series' title, year, poster and id."""
        async with self._connect() as db:
            async with db.execute("""
                SELECT
                    m.id,
                    CASE WHEN m.media_type = 'tvepisode' THEN p.title ELSE m.title END AS title,
                    CASE WHEN m.media_type = 'tvepisode' THEN p.year ELSE m.year END AS year,
                    m.overview,
                    CASE WHEN m.media_type = 'tvepisode' THEN p.poster_path ELSE m.poster_path END AS poster_path,
                    m.file_path, m.media_type, m.parent_id, m.season_number, m.episode_number,
                    m.duration_seconds, m.resume_position_seconds, m.last_watched,
                    CASE WHEN m.media_type = 'tvepisode' THEN p.tmdb_id ELSE m.tmdb_id END AS tmdb_id,
                    m.episode_title, m.still_path, m.is_cloud, m.cloud_file_id, m.cloud_folder_id
                FROM media m
                LEFT JOIN media p ON m.parent_id = p.id
                WHERE m.last_watched IS NOT NULL
                  AND m.media_type IN ('movie', 'tvepisode')
                ORDER BY m.last_watched DESC
                LIMIT ?
            """, (limit,)) as cursor:
                return [_row_to_media(row) for row in await cursor.fetchall()]

    async def remove_from_watch_history(self, media_id: int):
        await self._simple_write(
            "UPDATE media SET last_watched = NULL, resume_position_seconds = 0 WHERE id = ?", (media_id,)
        )

    async def clear_all_watch_history(self) -> int:
        return await self._simple_write(
            "UPDATE media SET last_watched = NULL, resume_position_seconds = 0 WHERE last_watched IS NOT NULL"
        )

    # Streaming History

    async def save_streaming_progress(self, tmdb_id: str, media_type: str, title: str,
                                      poster_path: Optional[str], season: Optional[int], episode: Optional[int],
                                      position: float, duration: float):
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute("""
                    SELECT id FROM streaming_history
                    WHERE tmdb_id = ? AND media_type = ?
                    AND COALESCE(season, -1) = COALESCE(?, -1)
                    AND COALESCE(episode, -1) = COALESCE(?, -1)
                """, (tmdb_id, media_type, season, episode)) as cursor:
                    row = await cursor.fetchone()

                if row:
                    await db.execute("""
                        UPDATE streaming_history SET
                            title = ?,
                            poster_path = COALESCE(?, poster_path),
                            resume_position_seconds = ?,
                            duration_seconds = CASE WHEN ? > 0 THEN ? ELSE duration_seconds END,
                            last_watched = ?
                        WHERE id = ?
                    """, (title, poster_path, position, duration, duration, _now(), row['id']))
                else:
                    await db.execute("""
                        INSERT INTO streaming_history
                        (tmdb_id, media_type, title, poster_path, season, episode,
                         resume_position_seconds, duration_seconds, last_watched)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (tmdb_id, media_type, title, poster_path, season, episode, position, duration, _now()))
                await db.commit()

    async def get_streaming_history(self, limit: int = 20) -> List[StreamingHistoryEntry]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM streaming_history ORDER BY last_watched DESC LIMIT ?", (limit,)
            ) as cursor:
                return [_row_to_streaming(row) for row in await cursor.fetchall()]

    async def get_streaming_resume_info(self, tmdb_id: str, media_type: str, season: Optional[int] = None,
                                        episode: Optional[int] = None) -> Optional[StreamingHistoryEntry]:
        async with self._connect() as db:
            async with db.execute("""
                SELECT * FROM streaming_history
                WHERE tmdb_id = ? AND media_type = ?
                AND COALESCE(season, -1) = COALESCE(?, -1)
                AND COALESCE(episode, -1) = COALESCE(?, -1)
            """, (tmdb_id, media_type, season, episode)) as cursor:
                row = await cursor.fetchone()
                return _row_to_streaming(row) if row else None

    async def remove_from_streaming_history(self, entry_id: int):
        await self._simple_write("DELETE FROM streaming_history WHERE id = ?", (entry_id,))

    async def clear_all_streaming_history(self) -> int:
        return await self._simple_write("DELETE FROM streaming_history")

    # Season Cache

    async def save_cached_episodes(self, episodes: Iterable[CachedEpisode]):
        async with self._write_lock:
            async with self._connect() as db:
                await db.executemany("""
                    INSERT OR REPLACE INTO cached_episode_metadata
                    (series_tmdb_id, season_number, episode_number, episode_title, overview, still_path, air_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [(e.series_tmdb_id, e.season_number, e.episode_number, e.episode_title,
                       e.overview, e.still_path, e.air_date, _now()) for e in episodes])
                await db.commit()

    async def get_cached_episodes_for_season(self, series_tmdb_id: str, season_number: int) -> List[CachedEpisode]:
        async with self._connect() as db:
            async with db.execute("""
                SELECT series_tmdb_id, season_number, episode_number, episode_title, overview, still_path, air_date
                FROM cached_episode_metadata
                WHERE series_tmdb_id = ? AND season_number = ?
                ORDER BY episode_number
            """, (series_tmdb_id, season_number)) as cursor:
                return [CachedEpisode(
                    series_tmdb_id=row['series_tmdb_id'],
                    season_number=row['season_number'],
                    episode_number=row['episode_number'],
                    episode_title=row['episode_title'],
                    overview=row['overview'],
                    still_path=row['still_path'],
                    air_date=row['air_date'],
                ) for row in await cursor.fetchall()]

    async def clear_cached_metadata_for_series(self, series_tmdb_id: str) -> int:
        return await self._simple_write(
            "DELETE FROM cached_episode_metadata WHERE series_tmdb_id = ?", (series_tmdb_id,)
        )

    # Maintenance

    async def _merge_series_entries(self, db, ids: List[int]) -> int:
        """Fold a group of series rows into the one with the most complete metadata."""
        if len(ids) < 2:
            return 0

        placeholders = ", ".join("?" for _ in ids)
        async with db.execute(f"""
            SELECT id, title,
                (CASE WHEN tmdb_id IS NOT NULL AND tmdb_id != '' THEN 10 ELSE 0 END) +
                (CASE WHEN poster_path IS NOT NULL AND poster_path != '' THEN 5 ELSE 0 END) +
                (CASE WHEN overview IS NOT NULL AND overview != '' THEN 2 ELSE 0 END) +
                (CASE WHEN year IS NOT NULL THEN 1 ELSE 0 END) AS score
            FROM media WHERE id IN ({placeholders})
        """, ids) as cursor:
            scores = {row['id']: (row['score'], row['title']) for row in await cursor.fetchall()}

        # First id wins ties
        best_id, best_score = ids[0], -1
        for series_id in ids:
            score = scores.get(series_id, (0, ""))[0]
            if score > best_score:
                best_id, best_score = series_id, score

        logger.info(f"Keeping series ID {best_id} ({scores.get(best_id, (0, 'Unknown'))[1]}) as primary")

        merged = 0
        for series_id in ids:
            if series_id == best_id:
                continue

            # Watch state of a colliding episode moves to the survivor's copy if that one was never watched
            async with db.execute("""
                SELECT s.id AS keep_id, l.resume_position_seconds, l.duration_seconds, l.last_watched
                FROM media l JOIN media s
                    ON s.parent_id = ? AND s.media_type = 'tvepisode'
                    AND s.season_number = l.season_number AND s.episode_number = l.episode_number
                WHERE l.parent_id = ? AND l.media_type = 'tvepisode'
                AND (l.last_watched IS NOT NULL OR COALESCE(l.resume_position_seconds, 0) > 0)
                AND s.last_watched IS NULL AND COALESCE(s.resume_position_seconds, 0) = 0
            """, (best_id, series_id)) as cursor:
                carried = await cursor.fetchall()
            for row in carried:
                await db.execute(
                    """UPDATE media SET resume_position_seconds = ?, last_watched = ?,
                       duration_seconds = CASE WHEN duration_seconds > 0 THEN duration_seconds ELSE ? END
                       WHERE id = ?""",
                    (row['resume_position_seconds'], row['last_watched'], row['duration_seconds'], row['keep_id'])
                )
            if carried:
                logger.info(f"Carried watch progress of {len(carried)} episodes over to series {best_id}")

            # The survivor already owns these season/episode slots
            cursor = await db.execute("""
                DELETE FROM media
                WHERE parent_id = ? AND media_type = 'tvepisode'
                AND EXISTS (
                    SELECT 1 FROM media s
                    WHERE s.parent_id = ? AND s.media_type = 'tvepisode'
                    AND s.season_number = media.season_number
                    AND s.episode_number = media.episode_number
                )
            """, (series_id, best_id))
            if cursor.rowcount:
                logger.warning(f"Dropped {cursor.rowcount} duplicate episodes of series {series_id} while merging")

            cursor = await db.execute("UPDATE media SET parent_id = ? WHERE parent_id = ?", (best_id, series_id))
            logger.info(f"Moved {cursor.rowcount} episodes from series {series_id} to {best_id}")
            await db.execute("DELETE FROM media WHERE id = ?", (series_id,))
            merged += 1

        return merged

    async def merge_duplicate_series(self) -> int:
        """
        Consolidate duplicate series rows: same external id first, then same
        normalized title. Returns the number of rows merged away.
        """
        logger.info("Looking for duplicate series to merge...")
        merged = 0
        async with self._write_lock:
            async with self._connect() as db:
                # 1. Same external id
                async with db.execute("""
                    SELECT id, tmdb_id FROM media
                    WHERE media_type = 'tvshow' AND tmdb_id IS NOT NULL AND tmdb_id != ''
                    ORDER BY id
                """) as cursor:
                    by_tmdb: Dict[str, List[int]] = {}
                    for row in await cursor.fetchall():
                        by_tmdb.setdefault(row['tmdb_id'], []).append(row['id'])

                for tmdb_id, ids in by_tmdb.items():
                    if len(ids) > 1:
                        logger.info(f"Found {len(ids)} duplicates with TMDB ID: {tmdb_id}")
                        merged += await self._merge_series_entries(db, ids)

                # 2. Same normalized title among what is left
                async with db.execute("SELECT id, title FROM media WHERE media_type = 'tvshow' ORDER BY id") as cursor:
                    by_title: Dict[str, List[int]] = {}
                    for row in await cursor.fetchall():
                        by_title.setdefault(normalize_for_store(row['title']), []).append(row['id'])

                for title, ids in by_title.items():
                    if len(ids) > 1:
                        logger.info(f"Found {len(ids)} duplicates with title: {title}")
                        merged += await self._merge_series_entries(db, ids)

                await db.commit()

        if merged:
            logger.info(f"Merged {merged} duplicate series entries")
        else:
            logger.info("No duplicate series found")
        return merged

    async def find_duplicate_series(self) -> List[List[Tuple[int, str]]]:
        """Groups of (id, title) that merge_duplicate_series would fold together. Read-only."""
        async with self._connect() as db:
            async with db.execute("SELECT id, title, tmdb_id FROM media WHERE media_type = 'tvshow' ORDER BY id") as cursor:
                rows = [(row['id'], row['title'], row['tmdb_id']) for row in await cursor.fetchall()]

        groups: List[List[Tuple[int, str]]] = []
        grouped: Set[int] = set()
        by_tmdb: Dict[str, List[Tuple[int, str]]] = {}
        for series_id, title, tmdb_id in rows:
            if tmdb_id:
                by_tmdb.setdefault(tmdb_id, []).append((series_id, title))
        for members in by_tmdb.values():
            if len(members) > 1:
                groups.append(members)
                # Only the survivor stays in play for the title pass; it is not known here, keep the first
                grouped.update(series_id for series_id, _ in members[1:])

        by_title: Dict[str, List[Tuple[int, str]]] = {}
        for series_id, title, _ in rows:
            if series_id not in grouped:
                by_title.setdefault(normalize_for_store(title), []).append((series_id, title))
        groups.extend(members for members in by_title.values() if len(members) > 1)
        return groups

    async def find_empty_series(self) -> List[Tuple[int, str]]:
        async with self._connect() as db:
            async with db.execute("""
                SELECT m.id, m.title FROM media m
                WHERE m.media_type = 'tvshow'
                AND NOT EXISTS (SELECT 1 FROM media e WHERE e.parent_id = m.id)
                ORDER BY m.title
            """) as cursor:
                return [(row['id'], row['title']) for row in await cursor.fetchall()]

    async def cleanup_empty_series(self) -> List[Tuple[int, Optional[str]]]:
        """Delete series rows without episodes; returns (id, poster_path) of each."""
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute("""
                    SELECT m.id, m.poster_path FROM media m
                    WHERE m.media_type = 'tvshow'
                    AND NOT EXISTS (SELECT 1 FROM media e WHERE e.parent_id = m.id)
                """) as cursor:
                    empty = [(row['id'], row['poster_path']) for row in await cursor.fetchall()]

                for series_id, _ in empty:
                    await db.execute("DELETE FROM media WHERE id = ?", (series_id,))
                await db.commit()

        if empty:
            logger.info(f"Removed {len(empty)} empty series")
        return empty

    async def remove_media_by_file_path(self, file_path: str) -> Optional[RemovedMedia]:
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute(
                    "SELECT id, title, poster_path, still_path FROM media WHERE file_path = ?", (file_path,)
                ) as cursor:
                    row = await cursor.fetchone()
                if not row:
                    return None

                await db.execute("DELETE FROM media WHERE id = ?", (row['id'],))
                await db.commit()
                return RemovedMedia(row['id'], row['title'], row['poster_path'], row['still_path'])

    async def delete_media_entries(self, ids: List[int]) -> List[str]:
        """Delete rows (series cascade to episodes); returns the on-disk paths of everything deleted."""
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute(f"""
                    SELECT file_path FROM media
                    WHERE (id IN ({placeholders}) OR parent_id IN ({placeholders}))
                    AND media_type != 'tvshow' AND COALESCE(is_cloud, 0) = 0
                """, list(ids) + list(ids)) as cursor:
                    paths = [row['file_path'] for row in await cursor.fetchall()]

                await db.execute(f"DELETE FROM media WHERE id IN ({placeholders})", list(ids))
                await db.commit()
        return paths

    async def get_all_image_paths(self) -> Set[str]:
        """Every image path still referenced by the catalog or the season cache."""
        async with self._connect() as db:
            async with db.execute("""
                SELECT poster_path FROM media WHERE poster_path IS NOT NULL
                UNION SELECT still_path FROM media WHERE still_path IS NOT NULL
                UNION SELECT still_path FROM cached_episode_metadata WHERE still_path IS NOT NULL
            """) as cursor:
                return {row[0] for row in await cursor.fetchall()}

    async def clear_all_data(self) -> str:
        """Wipe the catalog, streaming history and season cache; returns the image cache dir to prune."""
        async with self._write_lock:
            async with self._connect() as db:
                await db.execute("DELETE FROM streaming_history")
                await db.execute("DELETE FROM media")
                await db.execute("DELETE FROM cached_episode_metadata")
                await db.commit()
        logger.warning("All library data cleared")
        return self.image_cache_dir

    # Cloud Folders and Settings

    async def add_cloud_folder(self, folder_id: str, folder_name: str):
        await self._simple_write(
            "INSERT OR REPLACE INTO cloud_folders (folder_id, folder_name, auto_scan) VALUES (?, ?, 1)",
            (folder_id, folder_name)
        )

    async def get_cloud_folders(self) -> List[CloudFolder]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT folder_id, folder_name, auto_scan, last_scanned FROM cloud_folders ORDER BY created_at, id"
            ) as cursor:
                return [CloudFolder(row['folder_id'], row['folder_name'], bool(row['auto_scan']), row['last_scanned'])
                        for row in await cursor.fetchall()]

    async def remove_cloud_folder(self, folder_id: str) -> int:
        """Stop tracking a folder and drop its media; returns the number of media rows removed."""
        async with self._write_lock:
            async with self._connect() as db:
                cursor = await db.execute("DELETE FROM media WHERE cloud_folder_id = ?", (folder_id,))
                removed = cursor.rowcount
                await db.execute("DELETE FROM cloud_folders WHERE folder_id = ?", (folder_id,))
                await db.commit()
        return removed

    async def update_cloud_folder_scanned(self, folder_id: str):
        await self._simple_write(
            "UPDATE cloud_folders SET last_scanned = ? WHERE folder_id = ?", (_now(), folder_id)
        )

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._connect() as db:
            async with db.execute("SELECT value FROM app_settings WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
                return row['value'] if row else None

    async def set_setting(self, key: str, value: str):
        await self._simple_write(
            "INSERT OR REPLACE INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)", (key, value, _now())
        )

    async def get_changes_token(self) -> Optional[str]:
        return await self.get_setting(CHANGES_TOKEN_KEY)

    async def set_changes_token(self, token: str):
        await self.set_setting(CHANGES_TOKEN_KEY, token)
