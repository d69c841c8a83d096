import re
from typing import Any, Dict, List, Optional, Tuple

from ..api.tmdb_client import TmdbClient
from ..database.models import CachedEpisode, Metadata
from ..errors import ResolverError
from ..utils.logger import get_logger
from ..utils.title_matching import (
    title_similarity, SIMILARITY_EXACT, SIMILARITY_STRONG, SIMILARITY_DECENT, SIMILARITY_WEAK,
)
from .image_cache import ImageCache, episode_image_name, movie_image_name, series_image_name

logger = get_logger(__name__)

KIND_MOVIE = "movie"
KIND_TV = "tv"

# Candidate scoring
POPULARITY_CAP = 100.0
VOTE_COUNT_CAP = 10000.0
POSTER_BONUS = 500.0
BACKDROP_BONUS = 100.0
STRICT_MIN_SCORE = 1000.0
SHORT_TITLE_PENALTY = 300.0


def other_kind(kind: str) -> str:
    return KIND_TV if kind == KIND_MOVIE else KIND_MOVIE


def item_title(item: Dict[str, Any]) -> str:
    return item.get("title") or item.get("name") or ""


def item_original_title(item: Dict[str, Any]) -> str:
    return item.get("original_title") or item.get("original_name") or ""


def item_year(item: Dict[str, Any]) -> Optional[int]:
    date = item.get("release_date") or item.get("first_air_date") or ""
    head = date.split("-")[0]
    return int(head) if head.isdigit() else None


def has_image(item: Dict[str, Any]) -> bool:
    return bool(item.get("poster_path") or item.get("backdrop_path"))


class TitleVariations:
    """Alternate spellings of a search title, most literal first."""

    TRAILING_TAG = re.compile(r'\s*[\[\(][^\]\)]*[\]\)]\s*$')
    TRAILING_GROUP = re.compile(r'\s+-\s*[A-Za-z0-9]+\s*$')
    EXTRACTORS = [
        re.compile(r'^(.+?)\s*[Ss]\d+[Ee]\d+'),
        re.compile(r'^(.+?)\s*\d{1,2}x\d{1,2}'),
        re.compile(r'^(.+?)\s*[\.\s](?:19|20)\d{2}'),
    ]
    LEADING_THE = re.compile(r'^the\s+(.+)', re.IGNORECASE)

    @classmethod
    def minimal_clean(cls, title: str) -> str:
        """Strip a trailing bracketed tag and a trailing ` - GROUP` suffix only."""
        cleaned = cls.TRAILING_TAG.sub('', title)
        cleaned = cls.TRAILING_GROUP.sub('', cleaned)
        return cleaned.strip()

    @classmethod
    def build(cls, title: str) -> List[str]:
        variations = [title]

        def add(value: str):
            if value and value not in variations:
                variations.append(value)

        minimal = cls.minimal_clean(title)
        if minimal != title:
            add(minimal)

        spaced = " ".join(title.replace('.', ' ').replace('_', ' ').split())
        add(spaced)

        for pattern in cls.EXTRACTORS:
            match = pattern.match(spaced)
            if match:
                extracted = match.group(1).strip()
                if len(extracted) >= 2:
                    add(extracted)

        for value in list(variations):
            match = cls.LEADING_THE.match(value)
            if match:
                add(match.group(1))

        for value in list(variations):
            if '&' in value:
                add(value.replace('&', 'and'))
            if ' and ' in value.lower():
                add(value.replace(' and ', ' & ').replace(' And ', ' & ').replace(' AND ', ' & '))

        seen = set()
        result = []
        for value in variations:
            key = value.lower().strip()
            if not key or len(value) < 2 or key in seen:
                continue
            seen.add(key)
            result.append(value)
        return result


def is_reasonable_match(query: str, result_title: str) -> bool:
    """Acceptance check for a first-word search: equality, containment or shared first token."""
    q = query.lower()
    r = result_title.lower()
    if q == r or q in r or r in q:
        return True
    if query.isdigit():
        return q in r
    q_words, r_words = q.split(), r.split()
    return bool(q_words) and bool(r_words) and q_words[0] == r_words[0]


def score_candidate(item: Dict[str, Any], search_title: str, search_year: Optional[int]) -> float:
    title = item_title(item)
    popularity = item.get("popularity") or 0.0
    vote_average = item.get("vote_average") or 0.0
    vote_count = item.get("vote_count") or 0

    score = min(popularity, POPULARITY_CAP) * 0.5
    score += vote_average * 10.0
    score += min(float(vote_count), VOTE_COUNT_CAP) * 0.01

    if item.get("poster_path"):
        score += POSTER_BONUS
    if item.get("backdrop_path"):
        score += BACKDROP_BONUS

    similarity = max(title_similarity(search_title, title),
                     title_similarity(search_title, item_original_title(item)))
    if similarity >= SIMILARITY_EXACT:
        score += 3000.0
    elif similarity >= SIMILARITY_STRONG:
        score += 2000.0 + similarity * 500.0
    elif similarity >= SIMILARITY_DECENT:
        score += 1000.0 + similarity * 500.0
    elif similarity >= SIMILARITY_WEAK:
        score += similarity * 500.0
    else:
        score -= 500.0

    if search_year is not None:
        year = item_year(item)
        if year is not None:
            diff = abs(search_year - year)
            if diff == 0:
                score += 1000.0
            elif diff == 1:
                score += 500.0
            elif diff <= 2:
                score += 200.0
            elif diff > 5:
                score -= 300.0

    if len(title) < 3 and similarity < 0.9:
        score -= SHORT_TITLE_PENALTY

    return score


def find_best_match(results: List[Dict[str, Any]], search_title: str, search_year: Optional[int],
                    strict: bool) -> Optional[Dict[str, Any]]:
    if not results:
        return None

    # Stable sort keeps API order among equal scores
    scored = sorted(((score_candidate(item, search_title, search_year), index, item)
                     for index, item in enumerate(results)), key=lambda s: (-s[0], s[1]))
    score, _, best = scored[0]

    if strict:
        similarity = title_similarity(search_title, item_title(best))
        if similarity < SIMILARITY_WEAK and score < STRICT_MIN_SCORE:
            logger.debug(f"Best match '{item_title(best)}' rejected (similarity {similarity:.2f}, score {score:.1f})")
            return None
    return best


def score_multi_candidate(item: Dict[str, Any], search_title: str, preferred: str) -> float:
    score = (item.get("popularity") or 0.0) * 0.3 + (item.get("vote_count") or 0) * 0.1
    if item.get("media_type") == preferred:
        score += 500.0
    if has_image(item):
        score += 1000.0

    title = item_title(item).lower()
    query = search_title.lower()
    if title == query:
        score += 2000.0
    elif title in query or query in title:
        score += 500.0
    return score


class MetadataResolver:
    """
    Best-effort lookup of catalog metadata for parsed titles.
    Remote failures are logged and reported as "no match" so indexing can
    always fall back to the parsed values.
    """

    IMDB_ID = re.compile(r'(tt\d+)')
    TMDB_URL = re.compile(r'themoviedb\.org/(movie|tv)/(\d+)')

    def __init__(self, client: TmdbClient, images: ImageCache, db=None):
        self.client = client
        self.images = images
        self.db = db

    @property
    def enabled(self) -> bool:
        return self.client.has_credential

    # --- Search ---

    async def _search(self, kind: str, query: str, year: Optional[int], strict: bool) -> Optional[Dict[str, Any]]:
        try:
            data = await self.client.search(kind, query, year)
        except ResolverError as e:
            logger.warning(f"TMDB {kind} search for '{query}' failed: {e}")
            return None

        results = data.get("results") or []
        logger.debug(f"'{query}' as {kind} (year: {year}): {len(results)} results")
        best = find_best_match(results, query, year, strict)
        if best is None:
            return None
        if strict and not has_image(best):
            logger.debug(f"Best match '{item_title(best)}' has no images, skipping in strict mode")
            return None
        return best

    async def _search_multi(self, query: str, preferred: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.client.search_multi(query)
        except ResolverError as e:
            logger.warning(f"TMDB multi-search for '{query}' failed: {e}")
            return None

        candidates = [item for item in data.get("results") or []
                      if item.get("media_type") in (KIND_MOVIE, KIND_TV)]
        if not candidates:
            return None

        best = max(enumerate(candidates),
                   key=lambda pair: (score_multi_candidate(pair[1], query, preferred), -pair[0]))[1]
        logger.debug(f"Best multi-search result for '{query}': '{item_title(best)}'")
        return best

    async def _find_candidate(self, title: str, kind: str, year: Optional[int]) -> Optional[Dict[str, Any]]:
        variations = TitleVariations.build(title)
        alt = other_kind(kind)
        logger.debug(f"Title variations for '{title}': {variations}")

        # 1. Typed search with year
        if year is not None:
            for variation in variations:
                item = await self._search(kind, variation, year, strict=True)
                if item:
                    return item

        # 2. Typed search without year
        for variation in variations:
            item = await self._search(kind, variation, None, strict=True)
            if item:
                return item

        # 3. The other kind
        for variation in variations:
            item = await self._search(alt, variation, year, strict=True)
            if item:
                return item

        # 4. Multi-search
        for variation in variations:
            item = await self._search_multi(variation, kind)
            if item:
                return item

        # 5. First significant word, for numeric or very long titles
        if any(len(v.split()) > 1 for v in variations):
            for variation in variations:
                words = variation.split()
                if len(words) < 2:
                    continue
                first = words[0]
                if len(first) < 3 and not first.isdigit():
                    continue
                for search_kind in (kind, alt):
                    item = await self._search(search_kind, first, None, strict=False)
                    if item and is_reasonable_match(first, item_title(item)):
                        return item

        # 6. Relaxed
        for variation in variations:
            item = await self._search(kind, variation, None, strict=False)
            if item:
                return item

        return None

    async def _to_metadata(self, item: Dict[str, Any], image_name: str, replace: bool = False) -> Metadata:
        remote = item.get("poster_path") or item.get("backdrop_path")
        poster = await self.images.cache(remote, image_name, replace=replace) if remote else None
        return Metadata(
            title=item_title(item) or item_original_title(item),
            year=item_year(item),
            overview=item.get("overview") or None,
            poster_path=poster,
            tmdb_id=str(item["id"]) if item.get("id") is not None else None,
        )

    def _default_image_name(self, title: str, kind: str) -> str:
        return series_image_name(title) if kind == KIND_TV else movie_image_name(title)

    async def resolve(self, title: str, kind: str, year: Optional[int] = None,
                      image_name: Optional[str] = None) -> Optional[Metadata]:
        """Search the catalog for `title`; returns None when nothing matches or the catalog is unavailable."""
        if not self.enabled:
            logger.debug(f"No TMDB credential configured, skipping lookup for '{title}'")
            return None
        if not title or not title.strip():
            return None

        logger.info(f"Searching TMDB for '{title}' (type: {kind}, year: {year})")
        try:
            item = await self._find_candidate(title, kind, year)
            if item is None:
                logger.info(f"No TMDB match for '{title}'")
                return None
            metadata = await self._to_metadata(item, image_name or self._default_image_name(title, kind))
        except (ResolverError, OSError) as e:
            logger.warning(f"Metadata lookup for '{title}' failed: {e}")
            return None

        logger.info(f"Matched '{title}' to '{metadata.title}' ({metadata.year}, TMDB {metadata.tmdb_id})")
        return metadata

    # --- Fix match ---

    def parse_id_input(self, value: str) -> Tuple[str, str, Optional[str]]:
        """Returns (id, source, kind hint) for a numeric id, IMDb id or TMDB URL."""
        value = value.strip()
        if value.isdigit():
            return value, "tmdb", None
        match = self.IMDB_ID.search(value)
        if match:
            return match.group(1), "imdb", None
        match = self.TMDB_URL.search(value)
        if match:
            return match.group(2), "tmdb", match.group(1)
        return value, "tmdb", None

    async def fetch_by_id(self, id_or_url: str, kind: str, image_name: Optional[str] = None,
                          replace: bool = False) -> Metadata:
        """Metadata for an explicit id; raises ResolverError when the catalog has no such entry."""
        if not self.enabled:
            raise ResolverError("No TMDB credential configured")
        tmdb_id, source, hint = self.parse_id_input(id_or_url)
        kind = hint or kind
        logger.info(f"Fetching TMDB metadata by id {tmdb_id} (source: {source})")

        if source == "imdb":
            found = await self.client.find_by_imdb(tmdb_id)
            for key, found_kind in (("movie_results", KIND_MOVIE), ("tv_results", KIND_TV)):
                results = found.get(key) or []
                if results:
                    tmdb_id, kind = str(results[0]["id"]), found_kind
                    break
            else:
                raise ResolverError(f"No match found for IMDb id {tmdb_id}")

        try:
            item = await self.client.details(kind, tmdb_id)
        except ResolverError as e:
            logger.debug(f"No {kind} with id {tmdb_id} ({e}), trying {other_kind(kind)}")
            try:
                item = await self.client.details(other_kind(kind), tmdb_id)
            except ResolverError as alt_error:
                raise ResolverError(f"Failed to fetch metadata for id {tmdb_id}") from alt_error
            kind = other_kind(kind)

        title = item_title(item) or item_original_title(item)
        return await self._to_metadata(item, image_name or self._default_image_name(title, kind), replace)

    # --- Episodes ---

    async def season_episodes(self, series_tmdb_id: str, season: int, series_title: str) -> List[CachedEpisode]:
        """
        Episode list of one season. Served from the store when cached,
        otherwise fetched once and cached together with the stills.
        """
        if self.db is not None:
            cached = await self.db.get_cached_episodes_for_season(series_tmdb_id, season)
            if cached:
                for episode in cached:
                    if episode.still_path and not self.images.exists(episode.still_path):
                        episode.still_path = None
                return cached

        if not self.enabled:
            return []

        try:
            data = await self.client.season(series_tmdb_id, season)
        except ResolverError as e:
            logger.warning(f"Could not fetch season {season} of TMDB {series_tmdb_id}: {e}")
            return []

        episodes = []
        for raw in data.get("episodes") or []:
            number = raw.get("episode_number")
            if number is None:
                continue
            still = None
            if raw.get("still_path"):
                still = await self.images.cache(raw["still_path"], episode_image_name(series_title, season, number))
            episodes.append(CachedEpisode(
                series_tmdb_id=series_tmdb_id,
                season_number=season,
                episode_number=number,
                episode_title=raw.get("name") or f"Episode {number}",
                overview=raw.get("overview") or None,
                still_path=still,
                air_date=raw.get("air_date"),
            ))

        if episodes and self.db is not None:
            await self.db.save_cached_episodes(episodes)
        logger.info(f"Fetched {len(episodes)} episodes for season {season} of '{series_title}'")
        return episodes

    async def episode_metadata(self, series_tmdb_id: str, series_title: str, season: int,
                               episode: int) -> Optional[CachedEpisode]:
        for cached in await self.season_episodes(series_tmdb_id, season, series_title):
            if cached.episode_number == episode:
                return cached
        return None
