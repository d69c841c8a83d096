import httpx
import pytest
import pytest_asyncio

from slasshy.api.tmdb_client import TmdbClient, parse_retry_after
from slasshy.errors import RetryableHTTPError, TerminalHTTPError

class Recorder:
    """Collects requests and plays back queued responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.sleeps = []

    def handler(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def sleep(self, seconds):
        self.sleeps.append(seconds)

def make_client(recorder, credential="abc123"):
    return TmdbClient(credential, transport=httpx.MockTransport(recorder.handler), sleep=recorder.sleep)

@pytest_asyncio.fixture
async def ok_recorder():
    recorder = Recorder([httpx.Response(200, json={"results": []})])
    yield recorder

@pytest.mark.asyncio
async def test_api_key_goes_in_query(ok_recorder):
    client = make_client(ok_recorder, "abc123")
    await client.search("movie", "Inception", 2010)
    await client.aclose()

    request = ok_recorder.requests[0]
    assert request.url.path == "/3/search/movie"
    assert request.url.params["api_key"] == "abc123"
    assert request.url.params["query"] == "Inception"
    assert request.url.params["primary_release_year"] == "2010"
    assert request.url.params["include_adult"] == "false"
    assert "Authorization" not in request.headers
    assert request.headers["User-Agent"] == "SlasshyMediaIndexer/1.0"

@pytest.mark.asyncio
async def test_access_token_goes_in_header(ok_recorder):
    client = make_client(ok_recorder, "eyJhbGciOi.token")
    await client.search("tv", "Dark", 2017)
    await client.aclose()

    request = ok_recorder.requests[0]
    assert request.headers["Authorization"] == "Bearer eyJhbGciOi.token"
    assert "api_key" not in request.url.params
    assert request.url.params["first_air_date_year"] == "2017"

@pytest.mark.asyncio
async def test_server_errors_are_retried_with_backoff():
    recorder = Recorder([
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"id": 1}),
    ])
    client = make_client(recorder)
    data = await client.details("movie", "1")
    await client.aclose()

    assert data == {"id": 1}
    assert len(recorder.requests) == 3
    assert len(recorder.sleeps) == 2
    assert 0.35 <= recorder.sleeps[0] <= 0.65
    assert 0.7 <= recorder.sleeps[1] <= 1.3

@pytest.mark.asyncio
async def test_retry_after_is_honored_and_capped():
    recorder = Recorder([
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(429, headers={"Retry-After": "120"}),
        httpx.Response(200, json={"ok": True}),
    ])
    client = make_client(recorder)
    await client.get_json("configuration")
    await client.aclose()

    assert recorder.sleeps == [2.0, 30.0]

@pytest.mark.asyncio
async def test_retries_stop_after_five_attempts():
    recorder = Recorder([httpx.Response(500)])
    client = make_client(recorder)
    with pytest.raises(RetryableHTTPError) as exc:
        await client.get_json("movie/1")
    await client.aclose()

    assert exc.value.status_code == 500
    assert len(recorder.requests) == 5
    assert len(recorder.sleeps) == 4
    assert all(delay <= 13.0 for delay in recorder.sleeps)

@pytest.mark.asyncio
async def test_timeouts_are_retryable():
    recorder = Recorder([
        httpx.ConnectTimeout("timed out"),
        httpx.Response(200, json={"results": []}),
    ])
    client = make_client(recorder)
    data = await client.search_multi("Dark")
    await client.aclose()

    assert data == {"results": []}
    assert len(recorder.requests) == 2

@pytest.mark.asyncio
async def test_client_errors_are_terminal():
    recorder = Recorder([httpx.Response(404, json={"status_message": "not found"})])
    client = make_client(recorder)
    with pytest.raises(TerminalHTTPError) as exc:
        await client.details("tv", "999")
    await client.aclose()

    assert exc.value.status_code == 404
    assert len(recorder.requests) == 1
    assert recorder.sleeps == []

@pytest.mark.asyncio
async def test_malformed_json_is_terminal():
    recorder = Recorder([httpx.Response(200, content=b"<html>nope</html>")])
    client = make_client(recorder)
    with pytest.raises(TerminalHTTPError):
        await client.season("1396", 1)
    await client.aclose()
    assert len(recorder.requests) == 1

@pytest.mark.asyncio
async def test_find_by_imdb_uses_external_source(ok_recorder):
    client = make_client(ok_recorder)
    await client.find_by_imdb("tt1375666")
    await client.aclose()

    request = ok_recorder.requests[0]
    assert request.url.path == "/3/find/tt1375666"
    assert request.url.params["external_source"] == "imdb_id"

@pytest.mark.asyncio
async def test_download_image_uses_three_attempts():
    recorder = Recorder([httpx.Response(503)])
    client = make_client(recorder)
    with pytest.raises(RetryableHTTPError):
        await client.download_image("/poster.jpg", "w342")
    await client.aclose()

    assert len(recorder.requests) == 3
    assert str(recorder.requests[0].url) == "https://image.tmdb.org/t/p/w342/poster.jpg"

def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
