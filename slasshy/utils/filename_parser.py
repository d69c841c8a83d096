import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import List, Optional, Tuple, Union

from .logger import get_logger

logger = get_logger(__name__)

STRUCTURE_SEASON = "season"
STRUCTURE_TV = "tv"
STRUCTURE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class FolderContext:
    series_name: Optional[str] = None
    series_year: Optional[int] = None
    season: Optional[int] = None
    structure: str = STRUCTURE_UNKNOWN

    @property
    def is_tv(self) -> bool:
        return self.structure != STRUCTURE_UNKNOWN


@dataclass(frozen=True)
class ParsedMedia:
    title: str
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    episode_end: Optional[int] = None

    @property
    def kind(self) -> str:
        return "movie" if self.episode is None else "episode"

    @property
    def is_episode(self) -> bool:
        return self.kind == "episode"


@dataclass(frozen=True)
class ParsedMovie(ParsedMedia):
    pass


@dataclass(frozen=True)
class ParsedEpisode(ParsedMedia):
    """Episode found through an explicit marker in the filename."""


@dataclass(frozen=True)
class ParsedFolderEpisode(ParsedMedia):
    """Episode whose series and season come from the folder layout."""


ParseResult = Union[ParsedMovie, ParsedEpisode, ParsedFolderEpisode]


def _junk(*patterns: str, flags=re.IGNORECASE) -> List[re.Pattern]:
    return [re.compile(p, flags) for p in patterns]


class FilenameParser:
    """
    Classifies a video path as a movie or an episode.
    Folder layout is consulted first since it is more reliable than release noise in filenames.
    """

    SEASON_FOLDER_PATTERNS = [
        re.compile(r'^Season\s*(\d{1,2})$', re.IGNORECASE),
        re.compile(r'^S(\d{1,2})$', re.IGNORECASE),
        re.compile(r'^Series\s*(\d{1,2})$', re.IGNORECASE),
        re.compile(r'^Staffel\s*(\d{1,2})$', re.IGNORECASE),  # German
        re.compile(r'^Saison\s*(\d{1,2})$', re.IGNORECASE),   # French
    ]

    TV_INDICATORS = [
        re.compile(r'\bseason\b', re.IGNORECASE),
        re.compile(r'\bseries\b', re.IGNORECASE),
        re.compile(r'\bcomplete\b', re.IGNORECASE),
        re.compile(r'\bs\d{1,2}$', re.IGNORECASE),
        re.compile(r'\btvshow\b', re.IGNORECASE),
    ]

    TV_PATH_KEYWORDS = ("tv shows", "tv series", "series", "shows")

    FOLDER_YEAR_RE = re.compile(r'^(.+?)\s*[\(\[]?\s*((?:19|20)\d{2})\s*[\)\]]?\s*$')
    FOLDER_CLEANUP = [
        re.compile(r'\s*\[.*?\]\s*'),
        # Parentheses unless they hold a year
        re.compile(r'\s*\((?!(?:19|20)\d{2}\)).*?\)\s*'),
    ]

    CODEC_RE = re.compile(r'[xh]\.?26[45]', re.IGNORECASE)

    STRICT_PATTERNS = [
        # Show.Name.S01E02(-E03)
        re.compile(r'^(?P<title>.+?)[.\s_-]+S(?P<season>\d{1,2})E(?P<episode>\d{1,3})(?:-?E(?P<episode_end>\d{1,3}))?', re.IGNORECASE),
        # Show.Name.S01.E02
        re.compile(r'^(?P<title>.+?)[.\s_-]+S(?P<season>\d{1,2})\.E(?P<episode>\d{1,3})', re.IGNORECASE),
        # Show Name Season 1 Episode 2
        re.compile(r'^(?P<title>.+?)[.\s_-]+Season\s*(?P<season>\d{1,2})[.\s_-]+Episode\s*(?P<episode>\d{1,3})', re.IGNORECASE),
        # Show Name 1x02
        re.compile(r'^(?P<title>.+?)[.\s_-]+(?P<season>\d{1,2})x(?P<episode>\d{2,3})', re.IGNORECASE),
    ]

    LOOSE_PATTERNS = [
        re.compile(r'^(?P<title>.+?)[.\s_-]+E(?P<episode>\d{1,3})(?:[.\s_-]|$)', re.IGNORECASE),
        re.compile(r'^(?P<title>.+?)[.\s_-]+Ep\.?\s*(?P<episode>\d{1,3})', re.IGNORECASE),
    ]

    FOLDER_EPISODE_PATTERNS = [
        re.compile(r'E?(?P<episode>\d{1,3})', re.IGNORECASE),
        re.compile(r'-\s*(?P<episode>\d{1,3})\s*-', re.IGNORECASE),
        re.compile(r'(?P<episode>\d{2,3})', re.IGNORECASE),
    ]

    STRICT_MAX_EPISODE = 100
    LOOSE_MAX_EPISODE = 50
    FOLDER_MAX_EPISODE = 999

    YEAR_ONLY_RE = re.compile(r'^(19[3-9]\d|20\d{2})$')
    YEAR_RE = re.compile(r'\b(19[3-9]\d|20\d{2})\b')

    GENERIC_TITLES = ("episode", "ep", "part", "chapter", "vol", "volume")

    JUNK_PATTERNS = (
        # Resolution
        _junk(r'\b1080p\b', r'\b720p\b', r'\b2160p\b', r'\b4k\b', r'\buhd\b',
              r'\b480p\b', r'\b576p\b', r'\bhd\b', r'\bsd\b', r'\bfhd\b')
        # Source
        + _junk(r'\bbluray\b', r'\bblu-ray\b', r'\bbdrip\b', r'\bbrip\b',
                r'\bremux\b', r'\bweb-?dl\b', r'\bweb-?rip\b', r'\bwebrip\b',
                r'\bhdrip\b', r'\bdvdrip\b', r'\bdvdscr\b', r'\bhdtv\b',
                r'\bpdtv\b', r'\bdsr\b', r'\bhdcam\b', r'\bcam\b',
                r'\bts\b', r'\btelesync\b', r'\bscreener\b', r'\br5\b',
                r'\bamzn\b', r'\bnf\b', r'\bnetflix\b',
                r'\batvp\b', r'\bdsnp\b', r'\bhmax\b', r'\bhulu\b')
        # HDR / video
        + _junk(r'\bimax\b', r'\bsdr\b', r'\bhdr\b', r'\bhdr10\b',
                r'\bhdr10\+\b', r'\bdolby\s?vision\b', r'\bdv\b',
                r'\b10bit\b', r'\b8bit\b', r'\bhi10p\b')
        # Codec
        + _junk(r'\bavc\b', r'\bhevc\b', r'\bx264\b', r'\bx265\b',
                r'\bh\.?264\b', r'\bh\.?265\b', r'\bxvid\b', r'\bdivx\b',
                r'\bvc-?1\b', r'\bav1\b', r'\bmpeg\d?\b')
        # Audio
        + _junk(r'\bdts-?hd(\.?ma)?\b', r'\bdts\b', r'\btruehd\b', r'\batmos\b',
                r'\bddp?\d*\.?\d*\b', r'\bdd\d*\.?\d*\b', r'\bflac\b', r'\baac\b',
                r'\bac3\b', r'\beac3\b', r'\bmp3\b', r'\blpcm\b',
                r'\b5[\s.]1\b', r'\b7[\s.]1\b', r'\b2[\s.]0\b', r'\bstereo\b',
                r'\bmono\b', r'\bsurround\b')
        # Subtitles
        + _junk(r'\besub\b', r'\bsub(bed|s)?\b', r'\bsrt\b',
                r'\bforced\b', r'\bcc\b', r'\bsdh\b')
        # Language
        + _junk(r'\bmulti\b', r'\bhindi\b', r'\benglish\b', r'\bdual\s?audio\b',
                r'\btamil\b', r'\btelugu\b', r'\bspanish\b', r'\bfrench\b',
                r'\bgerman\b', r'\bitalian\b', r'\bjapanese\b', r'\bkorean\b',
                r'\bchinese\b', r'\brussian\b', r'\barabic\b', r'\bportuguese\b',
                r'\beng\b', r'\bhin\b', r'\bjpn\b', r'\bkor\b')
        # Release info
        + _junk(r'\brepack\b', r'\bproper\b', r'\breal\b', r'\brip\b',
                r'\bopen\s?matte\b', r'\bextended\b', r'\bunrated\b',
                r'\bdc\b', r"\bdirector'?s?\s?cut\b", r'\btheatrical\b',
                r'\buncut\b', r'\bspecial\s?edition\b', r'\bcomplete\b',
                r'\bfinal\s?cut\b', r'\bcriterion\b', r'\bremastered\b',
                r'\brestored\b', r'\banniversary\b', r'\bultimate\b')
        # Bracketed tags, trailing -GROUP and leading GROUP -
        + _junk(r'\[.*?\]', r'\(.*?\)', r'\b-\s*\w+$', r'^\w+\s*-\s*')
        # Release groups
        + _junk(r'\byify\b', r'\byts\b', r'\brarbg\b', r'\bettv\b',
                r'\beztv\b', r'\btigole\b', r'\bqxr\b', r'\bsparks\b',
                r'\bgalaxy\s?rg\b', r'\bpahe\b', r'\bpsa\b',
                r'\bMeGusta\b', r'\bfgt\b', r'\blol\b', r'\baxxo\b')
        # Sites and handles
        + _junk(r'\bwww\.\w+\.\w+\b', r'\b@\w+\b')
        + _junk(r'\bBT4G\b', r'\bMkvCinemas\b', flags=0)
    )

    MULTI_SEPARATOR_RE = re.compile(r'[-_]{2,}')
    MULTI_SPACE_RE = re.compile(r'\s{2,}')

    # --- public API -------------------------------------------------------

    @classmethod
    def parse(cls, path: str, root: Optional[str] = None) -> ParseResult:
        """
        Parse a full file path.
        If `root` is given, only folders below it count as TV keywords.
        """
        segments = cls._split(path)
        filename = segments[-1] if segments else ""
        stem = cls._stem(filename)
        context = cls.analyze_folder(path, root)

        result = cls._parse_stem(stem, context)
        logger.debug(f"Parsed '{filename}' as {result.kind}: title='{result.title}', "
                     f"year={result.year}, season={result.season}, episode={result.episode}")
        return result

    @classmethod
    def parse_name(cls, filename: str) -> ParseResult:
        """Parse a bare filename with no folder context (remote files)."""
        return cls._parse_stem(cls._stem(filename), FolderContext())

    @classmethod
    def analyze_folder(cls, path: str, root: Optional[str] = None) -> FolderContext:
        segments = cls._split(path)
        dirs = segments[:-1]
        if not dirs:
            return FolderContext()

        parent_name = dirs[-1]

        # 1. Season folder: series lives in the grandparent
        for pattern in cls.SEASON_FOLDER_PATTERNS:
            match = pattern.match(parent_name)
            if match:
                series_name, series_year = None, None
                if len(dirs) >= 2:
                    series_name, series_year = cls.extract_series_name(dirs[-2])
                return FolderContext(series_name, series_year, int(match.group(1)), STRUCTURE_SEASON)

        # 2. TV keywords on the parent
        name, year = cls.extract_series_name(parent_name)
        for pattern in cls.TV_INDICATORS:
            if pattern.search(parent_name):
                return FolderContext(name, year, None, STRUCTURE_TV)

        # 3. TV keywords on any ancestor below the root
        for segment in cls._relative_dirs(dirs, root):
            lowered = segment.lower()
            if any(keyword in lowered for keyword in cls.TV_PATH_KEYWORDS):
                return FolderContext(name, year, None, STRUCTURE_TV)

        return FolderContext()

    @classmethod
    def extract_series_name(cls, folder_name: str) -> Tuple[str, Optional[int]]:
        """'Breaking Bad (2008)' -> ('Breaking Bad', 2008)"""
        cleaned = cls.clean_folder_name(folder_name)
        # Trailing tags like '[1080p]' can hide the year until they are cleaned
        for candidate in (folder_name, cleaned):
            match = cls.FOLDER_YEAR_RE.match(candidate)
            if match:
                name = match.group(1).strip()
                if name:
                    return cls.clean_folder_name(name), int(match.group(2))
        return cleaned, None

    @classmethod
    def clean_folder_name(cls, name: str) -> str:
        result = name
        for pattern in cls.FOLDER_CLEANUP:
            result = pattern.sub(' ', result)
        return ' '.join(result.split())

    @classmethod
    def extract_year(cls, title: str) -> Tuple[str, Optional[int]]:
        """
        Split a release year off a title.
        A title that is nothing but a year is kept as the title ('1899').
        """
        trimmed = title.strip()
        if cls.YEAR_ONLY_RE.match(trimmed):
            return trimmed, None

        match = cls.YEAR_RE.search(title)
        if match:
            before = title[:match.start()].strip()
            if len(before) >= 2:
                return before, int(match.group(1))
        return title, None

    @classmethod
    def clean_junk(cls, title: str) -> str:
        result = title
        for pattern in cls.JUNK_PATTERNS:
            result = pattern.sub(' ', result)
        result = cls.MULTI_SEPARATOR_RE.sub(' ', result)
        result = cls.MULTI_SPACE_RE.sub(' ', result)
        return result.strip('-._ ').strip()

    # --- internals --------------------------------------------------------

    @staticmethod
    def _split(path: str) -> List[str]:
        return [s for s in str(path).replace('\\', '/').split('/') if s]

    @staticmethod
    def _stem(filename: str) -> str:
        return PurePosixPath(filename).stem if filename else ""

    @classmethod
    def _relative_dirs(cls, dirs: List[str], root: Optional[str]) -> List[str]:
        if not root:
            return dirs
        root_parts = [s.lower() for s in cls._split(root)]
        lowered = [s.lower() for s in dirs]
        if lowered[:len(root_parts)] == root_parts:
            return dirs[len(root_parts):]
        return dirs

    @staticmethod
    def _clean_title(raw: str) -> str:
        return raw.replace('.', ' ').replace('_', ' ').strip()

    @classmethod
    def _is_generic(cls, title: str) -> bool:
        lower = title.lower()
        return any(lower == g or lower.startswith(f"{g} ") for g in cls.GENERIC_TITLES)

    @classmethod
    def best_title(cls, title: str, context: FolderContext) -> str:
        series_name = context.series_name
        if not series_name:
            return title
        if len(title) < 3 or cls._is_generic(title):
            return series_name
        if title.lower() in series_name.lower():
            return series_name
        return title

    @classmethod
    def _parse_stem(cls, stem: str, context: FolderContext) -> ParseResult:
        parsed = cls._try_episode(stem, context)
        if parsed:
            return parsed

        if context.is_tv:
            parsed = cls._try_folder_episode(stem, context)
            if parsed:
                return parsed

        return cls._parse_movie(stem)

    @classmethod
    def _title_from_match(cls, raw: str) -> Tuple[str, Optional[int]]:
        title, year = cls.extract_year(cls._clean_title(raw))
        return cls.clean_junk(title), year

    @classmethod
    def _try_episode(cls, stem: str, context: FolderContext) -> Optional[ParsedEpisode]:
        for pattern in cls.STRICT_PATTERNS:
            match = pattern.search(stem)
            if not match:
                continue
            title, year = cls._title_from_match(match.group('title'))
            if len(title) < 2:
                continue

            episode = int(match.group('episode'))
            if episode > cls.STRICT_MAX_EPISODE:
                logger.debug(f"Skipping suspicious episode number {episode} in '{stem}'")
                continue

            end = match.groupdict().get('episode_end')
            return ParsedEpisode(
                title=cls.best_title(title, context),
                year=year if year is not None else context.series_year,
                season=int(match.group('season')),
                episode=episode,
                episode_end=int(end) if end else None,
            )

        # Loose markers only inside TV folders, and never next to a codec token
        if not context.is_tv or cls.CODEC_RE.search(stem):
            return None

        for pattern in cls.LOOSE_PATTERNS:
            match = pattern.search(stem)
            if not match:
                continue
            title, year = cls._title_from_match(match.group('title'))
            if len(title) < 2:
                continue

            episode = int(match.group('episode'))
            if episode == 0 or episode > cls.LOOSE_MAX_EPISODE:
                continue

            return ParsedEpisode(
                title=cls.best_title(title, context),
                year=year if year is not None else context.series_year,
                season=context.season or 1,
                episode=episode,
            )

        return None

    @classmethod
    def _try_folder_episode(cls, stem: str, context: FolderContext) -> Optional[ParsedFolderEpisode]:
        if not context.series_name:
            return None

        for pattern in cls.FOLDER_EPISODE_PATTERNS:
            match = pattern.search(stem)
            if not match:
                continue
            episode = int(match.group('episode'))
            if 0 < episode <= cls.FOLDER_MAX_EPISODE:
                return ParsedFolderEpisode(
                    title=context.series_name,
                    year=context.series_year,
                    season=context.season or 1,
                    episode=episode,
                )
        return None

    @classmethod
    def _parse_movie(cls, stem: str) -> ParsedMovie:
        spaced = stem.replace('.', ' ').replace('_', ' ')
        title, year = cls.extract_year(spaced)
        return ParsedMovie(title=cls.clean_junk(title), year=year)
