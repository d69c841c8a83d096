import json
import shutil
import subprocess
from typing import Optional

from .logger import get_logger

logger = get_logger(__name__)

PROBE_TIMEOUT = 30

class MediaAnalyzer:
    @staticmethod
    def find_ffprobe(configured: Optional[str] = None) -> Optional[str]:
        if configured and shutil.which(configured):
            return configured
        return shutil.which("ffprobe")

    @staticmethod
    def probe_duration(file_path: str, ffprobe_path: str = "ffprobe") -> float:
        """Use ffprobe to read the container duration in seconds; 0.0 when it cannot be determined."""
        logger.debug(f"Probing file: {file_path}")
        cmd = [
            ffprobe_path, "-v", "quiet", "-print_format", "json",
            "-show_format", file_path
        ]

        try:
            # Force UTF-8 encoding for Windows/WSL compatibility
            result = subprocess.run(cmd, capture_output=True, text=True, encoding='utf-8',
                                    timeout=PROBE_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"ffprobe failed for {file_path}: {e}")
            return 0.0

        if result.returncode != 0:
            logger.warning(f"Error probing {file_path}: {result.stderr.strip()}")
            return 0.0

        try:
            data = json.loads(result.stdout)
            duration = float(data.get("format", {}).get("duration", 0))
        except (ValueError, TypeError) as e:
            logger.warning(f"Unreadable ffprobe output for {file_path}: {e}")
            return 0.0

        logger.debug(f"Duration of {file_path}: {duration:.1f}s")
        return max(duration, 0.0)
