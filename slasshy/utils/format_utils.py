import re

_SLUG_RE = re.compile(r'[^a-z0-9]+')


def format_hms(seconds: float) -> str:
    s = max(0, int(seconds))
    hours = s // 3600
    minutes = (s % 3600) // 60
    seconds = s % 60
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def slugify(title: str) -> str:
    """Lowercase, non-alphanumerics collapsed to single underscores, trimmed."""
    slug = _SLUG_RE.sub('_', title.lower())
    return slug.strip('_')


def episode_code(season: int, episode: int) -> str:
    return f"S{season:02d}E{episode:02d}"
