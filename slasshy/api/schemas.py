"""Request schemas"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr


class SettingsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their value"""

    model_config = ConfigDict(extra="forbid")

    mpv_path: Optional[StrictStr] = None
    ffprobe_path: Optional[StrictStr] = None
    media_folders: Optional[List[StrictStr]] = None
    tmdb_api_key: Optional[StrictStr] = None
    file_watcher_enabled: Optional[StrictBool] = None
    cloud_cache_enabled: Optional[StrictBool] = None
    cloud_cache_dir: Optional[StrictStr] = None
    cloud_cache_max_mb: Optional[StrictInt] = Field(default=None, ge=4)
    cloud_cache_expiry_hours: Optional[StrictInt] = Field(default=None, ge=1)
    cloud_scan_interval_minutes: Optional[StrictInt] = Field(default=None, ge=1)
