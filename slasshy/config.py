import os
import json
import tempfile
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import List, Optional, Union
from dotenv import load_dotenv

from .errors import ConfigError

# Load environment variables from .env file
load_dotenv()

APP_NAME = "Slasshy"


def get_app_data_dir() -> Path:
    override = os.getenv("SLASSHY_DATA_DIR")
    if override:
        return Path(override)
    appdata = os.getenv("APPDATA")
    if appdata:
        return Path(appdata) / APP_NAME
    return Path.home() / f".{APP_NAME}"


# Base Paths
BASE_DIR = Path(__file__).parent.parent
APP_DATA_DIR = get_app_data_dir()
DB_PATH = APP_DATA_DIR / "media_library.db"
IMAGE_CACHE_DIR = APP_DATA_DIR / "image_cache"
PROGRESS_DIR = APP_DATA_DIR / "mpv_progress"
CONFIG_PATH = APP_DATA_DIR / "media_config.json"
GDRIVE_TOKENS_PATH = APP_DATA_DIR / "gdrive_tokens.json"
LOG_PATH = APP_DATA_DIR / "slasshy.log"

# Supported Formats (compared lowercase)
VIDEO_EXTENSIONS = {
    ".mkv", ".mp4", ".avi", ".mov", ".webm", ".m4v", ".wmv", ".flv", ".ts", ".m2ts"
}

# Virtual locator prefix for series rows
SERIES_PATH_PREFIX = "tvshow://"

# Playback Settings
COMPLETE_THRESHOLD = 0.95  # 95% watched marks as completed
MONITOR_POLL_INTERVAL = 0.5  # seconds
MONITOR_FINAL_FLUSH_DELAY = 0.3  # seconds

# Synchronizer Settings
SYNC_INITIAL_DELAY = float(os.getenv("SYNC_INITIAL_DELAY", "3"))
SYNC_INTERVAL = float(os.getenv("SYNC_INTERVAL", "5"))

# External catalog (TMDB)
TMDB_API_BASE = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p"
TMDB_DEFAULT_CREDENTIAL = os.getenv("TMDB_DEFAULT_CREDENTIAL", "")
USER_AGENT = "SlasshyMediaIndexer/1.0"
HTTP_TIMEOUT = 30.0
HTTP_CONNECT_TIMEOUT = 15.0
MAX_IMAGE_DOWNLOADS = 8

# Google Drive
GDRIVE_CLIENT_ID = os.getenv("GDRIVE_CLIENT_ID", "")
GDRIVE_CLIENT_SECRET = os.getenv("GDRIVE_CLIENT_SECRET", "")

# API server
API_HOST = os.getenv("SLASSHY_HOST", "127.0.0.1")
API_PORT = int(os.getenv("SLASSHY_PORT", "8787"))


@dataclass
class AppConfig:
    mpv_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    media_folders: List[str] = field(default_factory=list)
    tmdb_api_key: Optional[str] = None
    file_watcher_enabled: bool = True
    cloud_cache_enabled: bool = False
    cloud_cache_dir: Optional[str] = None
    cloud_cache_max_mb: int = 1024
    cloud_cache_expiry_hours: int = 24
    cloud_scan_interval_minutes: int = 5

    def tmdb_credential(self) -> str:
        """Configured TMDB key or token, falling back to the build default."""
        if self.tmdb_api_key and self.tmdb_api_key.strip():
            return self.tmdb_api_key.strip()
        return TMDB_DEFAULT_CREDENTIAL

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def save_config(config: AppConfig, path: Union[str, Path] = CONFIG_PATH):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Write next to the target, then swap in
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(config), f, indent=2)
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def load_config(path: Union[str, Path] = CONFIG_PATH) -> AppConfig:
    """
    Load the JSON configuration.
    A missing file is created with defaults on first run.
    """
    path = Path(path)
    if not path.exists():
        config = AppConfig()
        save_config(config, path)
        return config

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected an object")
    return AppConfig.from_dict(data)
