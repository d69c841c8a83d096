from dataclasses import dataclass
from typing import Optional

MEDIA_MOVIE = "movie"
MEDIA_TVSHOW = "tvshow"
MEDIA_EPISODE = "tvepisode"

@dataclass
class MediaItem:
    title: str
    file_path: str
    media_type: str
    id: Optional[int] = None
    year: Optional[int] = None
    overview: Optional[str] = None
    poster_path: Optional[str] = None
    parent_id: Optional[int] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    duration_seconds: float = 0.0
    resume_position_seconds: float = 0.0
    last_watched: Optional[str] = None
    tmdb_id: Optional[str] = None
    episode_title: Optional[str] = None
    still_path: Optional[str] = None
    is_cloud: bool = False
    cloud_file_id: Optional[str] = None
    cloud_folder_id: Optional[str] = None

    @property
    def progress_percent(self) -> float:
        if self.duration_seconds and self.duration_seconds > 0:
            return (self.resume_position_seconds or 0.0) / self.duration_seconds * 100.0
        return 0.0

    @property
    def is_virtual(self) -> bool:
        return self.media_type == MEDIA_TVSHOW

@dataclass
class Metadata:
    """Best-effort description of a title from the external catalog."""
    title: str
    year: Optional[int] = None
    overview: Optional[str] = None
    poster_path: Optional[str] = None
    tmdb_id: Optional[str] = None

@dataclass
class ResumeInfo:
    has_progress: bool
    position: float
    duration: float
    time_str: str
    progress_percent: float

@dataclass
class StreamingHistoryEntry:
    tmdb_id: str
    media_type: str
    title: str
    id: Optional[int] = None
    poster_path: Optional[str] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    resume_position_seconds: float = 0.0
    duration_seconds: float = 0.0
    last_watched: Optional[str] = None

    @property
    def progress_percent(self) -> float:
        if self.duration_seconds > 0:
            return self.resume_position_seconds / self.duration_seconds * 100.0
        return 0.0

@dataclass
class CachedEpisode:
    series_tmdb_id: str
    season_number: int
    episode_number: int
    episode_title: Optional[str] = None
    overview: Optional[str] = None
    still_path: Optional[str] = None
    air_date: Optional[str] = None

@dataclass
class RemovedMedia:
    id: int
    title: str
    poster_path: Optional[str] = None
    still_path: Optional[str] = None

@dataclass
class CloudFolder:
    folder_id: str
    folder_name: str
    auto_scan: bool = True
    last_scanned: Optional[str] = None
