import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from ..config import (
    TMDB_API_BASE, TMDB_IMAGE_BASE, USER_AGENT, HTTP_TIMEOUT, HTTP_CONNECT_TIMEOUT,
)
from ..errors import RetryableHTTPError, TerminalHTTPError
from ..utils.logger import get_logger

logger = get_logger(__name__)

MAX_ATTEMPTS = 5
IMAGE_ATTEMPTS = 3
BACKOFF_BASE = 0.5
BACKOFF_CAP = 10.0
RETRY_AFTER_CAP = 30.0


def is_access_token(credential: str) -> bool:
    """v4 read access tokens are JWTs; anything else is a v3 api key."""
    return credential.startswith("eyJ")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


class BackoffWait(wait_base):
    """
    Exponential backoff with jitter.
    A Retry-After hint carried by the failed attempt wins over the computed delay.
    """

    def __init__(self, base: float = BACKOFF_BASE, cap: float = BACKOFF_CAP,
                 retry_after_cap: float = RETRY_AFTER_CAP, jitter: float = 0.3):
        self.base = base
        self.cap = cap
        self.retry_after_cap = retry_after_cap
        self.jitter = jitter

    def __call__(self, retry_state) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            retry_after = getattr(outcome.exception(), "retry_after", None)
            if retry_after is not None:
                return min(retry_after, self.retry_after_cap)

        delay = min(self.cap, self.base * (2 ** (retry_state.attempt_number - 1)))
        return delay * random.uniform(1 - self.jitter, 1 + self.jitter)


class TmdbClient:
    """Thin async client for The Movie Database v3 API."""

    def __init__(self, credential: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 base_url: str = TMDB_API_BASE, image_base_url: str = TMDB_IMAGE_BASE):
        self.credential = credential or ""
        self.base_url = base_url.rstrip("/")
        self.image_base_url = image_base_url.rstrip("/")
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    def set_credential(self, credential: str):
        self.credential = credential or ""

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)

    async def aclose(self):
        await self.client.aclose()

    def _auth(self, params: Dict[str, Any]) -> Dict[str, str]:
        if is_access_token(self.credential):
            return {"Authorization": f"Bearer {self.credential}"}
        params["api_key"] = self.credential
        return {}

    async def _get_once(self, url: str, params: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        try:
            response = await self.client.get(url, params=params, headers=headers)
        except httpx.TransportError as e:
            # Timeouts, refused and reset connections
            raise RetryableHTTPError(f"{type(e).__name__} for {url}: {e}") from e

        status = response.status_code
        if status == 429:
            raise RetryableHTTPError(
                f"Rate limited on {url}", status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise RetryableHTTPError(f"HTTP {status} for {url}", status_code=status)
        if status >= 400:
            raise TerminalHTTPError(f"HTTP {status} for {url}", status_code=status)
        return response

    def _retrying(self, attempts: int) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=BackoffWait(),
            retry=retry_if_exception_type(RetryableHTTPError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state):
        error = retry_state.outcome.exception()
        logger.debug(f"TMDB request failed (attempt {retry_state.attempt_number}): {error}")

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET `path` relative to the API base and decode the JSON body, retrying transient failures."""
        params = dict(params or {})
        headers = self._auth(params)
        url = f"{self.base_url}/{path.lstrip('/')}"

        async for attempt in self._retrying(MAX_ATTEMPTS):
            with attempt:
                response = await self._get_once(url, params, headers)

        try:
            data = response.json()
        except ValueError as e:
            raise TerminalHTTPError(f"Malformed JSON from {url}: {e}", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise TerminalHTTPError(f"Unexpected payload from {url}", status_code=response.status_code)
        return data

    # --- Endpoints ---

    async def search(self, kind: str, query: str, year: Optional[int] = None) -> Dict[str, Any]:
        """Search movies (`kind='movie'`) or series (`kind='tv'`)."""
        params: Dict[str, Any] = {"query": query, "include_adult": "false", "language": "en-US"}
        if year:
            params["primary_release_year" if kind == "movie" else "first_air_date_year"] = year
        return await self.get_json(f"search/{kind}", params)

    async def search_multi(self, query: str) -> Dict[str, Any]:
        return await self.get_json("search/multi", {
            "query": query, "include_adult": "false", "language": "en-US",
        })

    async def details(self, kind: str, tmdb_id: str) -> Dict[str, Any]:
        return await self.get_json(f"{kind}/{tmdb_id}", {"language": "en-US"})

    async def season(self, tv_id: str, season_number: int) -> Dict[str, Any]:
        return await self.get_json(f"tv/{tv_id}/season/{season_number}", {"language": "en-US"})

    async def find_by_imdb(self, imdb_id: str) -> Dict[str, Any]:
        return await self.get_json(f"find/{imdb_id}", {"external_source": "imdb_id"})

    async def download_image(self, remote_path: str, size: str = "w500") -> bytes:
        """Raw image bytes for `remote_path` (e.g. `/abc.jpg`) at the given size."""
        url = f"{self.image_base_url}/{size}{remote_path}"
        async for attempt in self._retrying(IMAGE_ATTEMPTS):
            with attempt:
                response = await self._get_once(url, {}, {})
        return response.content
