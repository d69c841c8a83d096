import os
from pathlib import Path
from typing import Dict, Iterable, List, Set
from ..config import VIDEO_EXTENSIONS
from .logger import get_logger

logger = get_logger(__name__)

class FileScanner:
    @staticmethod
    def is_video_file(path: str) -> bool:
        return os.path.splitext(path)[1].lower() in VIDEO_EXTENSIONS

    @staticmethod
    def normalize_path(path: str) -> str:
        """Comparison key for paths: lowercase with forward slashes."""
        return str(path).replace('\\', '/').lower()

    @staticmethod
    def get_video_files(directory: str) -> List[str]:
        """
        Get all video files under a directory (recursive, following symlinks).
        Unreadable directories are logged and skipped.
        """
        root = Path(directory)
        if not root.is_dir():
            logger.debug(f"Media folder not found or not a directory: {directory}")
            return []

        video_files = []
        visited: Set[str] = set()

        def on_error(err: OSError):
            logger.warning(f"Cannot read {err.filename}: {err.strerror}")

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error, followlinks=True):
            # Symlink loops resolve to a directory we already walked
            real = os.path.realpath(dirpath)
            if real in visited:
                dirnames[:] = []
                continue
            visited.add(real)

            for name in filenames:
                if FileScanner.is_video_file(name):
                    video_files.append(os.path.join(dirpath, name))

        return sorted(video_files)

    @staticmethod
    def scan_roots(roots: Iterable[str]) -> Dict[str, str]:
        """Snapshot of every video under the roots, keyed by normalized path."""
        snapshot: Dict[str, str] = {}
        for root in roots:
            for file_path in FileScanner.get_video_files(root):
                snapshot.setdefault(FileScanner.normalize_path(file_path), file_path)
        return snapshot

    @staticmethod
    def find_root(path: str, roots: Iterable[str]) -> str:
        """Longest configured root containing the path, or '' when none does."""
        key = FileScanner.normalize_path(path)
        best = ''
        for root in roots:
            root_key = FileScanner.normalize_path(root).rstrip('/')
            if key.startswith(root_key + '/') and len(root) > len(best):
                best = root
        return best
