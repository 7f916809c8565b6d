"""Tests for the upstream fetch orchestrator."""

import asyncio

import httpx
import pytest

from vodproxy.domain_cache import DomainPreferenceCache
from vodproxy.exceptions import InvalidUrlError, UpstreamFetchError, UpstreamTimeoutError
from vodproxy.fetcher import (
    USER_AGENTS,
    ResourceKind,
    UpstreamFetcher,
    direct_strategies,
    redact_url,
)

EDGE_URL = "https://edge.example.org"
TARGET = "https://x.example.com/vod/index.m3u8?sig=secret"


class RecordingHandler:
    """MockTransport handler that records requests and replies from a callback."""

    def __init__(self, reply):
        self.reply = reply
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    @property
    def edge_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "edge.example.org"]

    @property
    def direct_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host != "edge.example.org"]


class StallingStream(httpx.AsyncByteStream):
    """Response body that sends a first chunk and then fails."""

    def __init__(self, error: httpx.HTTPError):
        self.error = error

    async def __aiter__(self):
        yield b"#EXTM3U\n"
        raise self.error


def _make_fetcher(handler, cache=None, edge_proxy_url=EDGE_URL, edge_proxy_secret="") -> UpstreamFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamFetcher(
        http_client=client,
        domain_cache=cache or DomainPreferenceCache(),
        edge_proxy_url=edge_proxy_url,
        edge_proxy_secret=edge_proxy_secret,
    )


def _fetch_body(fetcher: UpstreamFetcher, url: str = TARGET, **kwargs) -> bytes:
    """Run a fetch to completion and return the body."""

    async def run() -> bytes:
        response = await fetcher.fetch(url, **kwargs)
        try:
            return await response.aread()
        finally:
            await response.aclose()

    return asyncio.run(run())


def _edge_only(request: httpx.Request) -> httpx.Response:
    """Origin refuses everything; the edge proxy serves it."""
    if request.url.host == "edge.example.org":
        return httpx.Response(200, text="#EXTM3U\n")
    return httpx.Response(403)


class TestDirectStrategies:
    """Test suite for the declarative strategy list."""

    def test_strategy_order(self):
        """Test user agents crossed with origin referer then no referer."""
        strategies = direct_strategies("https://x.example.com/a/b.ts")

        assert len(strategies) == len(USER_AGENTS) * 2
        assert strategies[0].user_agent == USER_AGENTS[0]
        assert strategies[0].referer == "https://x.example.com/"
        assert strategies[1].user_agent == USER_AGENTS[0]
        assert strategies[1].referer is None
        assert strategies[-1].user_agent == USER_AGENTS[-1]
        assert not any(s.via_edge for s in strategies)

    def test_build_headers(self):
        """Test header construction with and without Referer."""
        with_referer, without_referer = direct_strategies("https://x.example.com/a.ts")[:2]

        assert with_referer.build_headers()["Referer"] == "https://x.example.com/"
        assert "Referer" not in without_referer.build_headers()
        assert without_referer.build_headers("bytes=0-99")["Range"] == "bytes=0-99"

    def test_redact_url(self):
        """Test that query strings are removed and long URLs truncated."""
        assert redact_url(TARGET) == "https://x.example.com/vod/index.m3u8"
        long_url = "https://x.example.com/" + "a" * 200
        assert redact_url(long_url).endswith("...")
        assert len(redact_url(long_url)) == 103


class TestUpstreamFetcher:
    """Test suite for the fetch orchestrator."""

    def test_first_direct_attempt_succeeds(self):
        """Test that a 2xx on the first attempt ends the matrix."""
        handler = RecordingHandler(lambda request: httpx.Response(200, text="ok"))
        fetcher = _make_fetcher(handler)

        assert _fetch_body(fetcher) == b"ok"
        assert len(handler.requests) == 1
        request = handler.requests[0]
        assert request.headers["User-Agent"] == USER_AGENTS[0]
        assert request.headers["Referer"] == "https://x.example.com/"
        assert str(request.url) == TARGET

    def test_falls_through_strategies_until_success(self):
        """Test that attempts continue in order until one works."""
        def reply(request):
            if "Referer" in request.headers:
                return httpx.Response(403)
            return httpx.Response(200, text="ok")

        handler = RecordingHandler(reply)
        fetcher = _make_fetcher(handler)

        assert _fetch_body(fetcher) == b"ok"
        assert len(handler.requests) == 2
        assert "Referer" not in handler.requests[1].headers
        assert handler.edge_requests == []

    def test_edge_fallback_marks_domain(self):
        """Test 403 direct, edge success, then later requests skip direct fetch."""
        cache = DomainPreferenceCache()
        handler = RecordingHandler(_edge_only)
        fetcher = _make_fetcher(handler, cache=cache)

        assert _fetch_body(fetcher) == b"#EXTM3U\n"
        assert len(handler.direct_requests) == len(USER_AGENTS) * 2
        assert len(handler.edge_requests) == 1
        assert cache.needs_edge_proxy("x.example.com") is True

        handler.requests.clear()
        _fetch_body(fetcher, "https://x.example.com/other/seg1.ts", kind=ResourceKind.SEGMENT)

        assert handler.direct_requests == []
        assert len(handler.edge_requests) == 1

    def test_edge_url_carries_target_and_key(self):
        """Test the edge proxy request format."""
        handler = RecordingHandler(_edge_only)
        fetcher = _make_fetcher(handler, edge_proxy_secret="k3y")

        _fetch_body(fetcher)
        edge_request = handler.edge_requests[0]

        assert edge_request.url.path == "/proxy"
        assert edge_request.url.params["url"] == TARGET
        assert edge_request.url.params["key"] == "k3y"

    def test_all_forbidden_without_edge_proxy(self):
        """Test that 403 everywhere with no edge proxy is a 502 carrying 403."""
        handler = RecordingHandler(lambda request: httpx.Response(403))
        fetcher = _make_fetcher(handler, edge_proxy_url="")

        with pytest.raises(UpstreamFetchError) as exc_info:
            _fetch_body(fetcher)

        assert exc_info.value.status_code == 502
        assert exc_info.value.upstream_status == 403
        assert len(handler.requests) == len(USER_AGENTS) * 2

    def test_edge_fallback_failure(self):
        """Test that a failing edge proxy leaves the domain unmarked."""
        cache = DomainPreferenceCache()
        handler = RecordingHandler(
            lambda request: httpx.Response(502 if request.url.host == "edge.example.org" else 403)
        )
        fetcher = _make_fetcher(handler, cache=cache)

        with pytest.raises(UpstreamFetchError) as exc_info:
            _fetch_body(fetcher)

        assert exc_info.value.upstream_status == 403
        assert cache.needs_edge_proxy("x.example.com") is False
        assert cache.get_stats()["x.example.com"]["fail_count"] == 1

    def test_non_403_failures_skip_edge_proxy(self):
        """Test that only refusals with 403 trigger the edge fallback."""
        handler = RecordingHandler(lambda request: httpx.Response(404))
        fetcher = _make_fetcher(handler)

        with pytest.raises(UpstreamFetchError) as exc_info:
            _fetch_body(fetcher)

        assert exc_info.value.upstream_status == 404
        assert handler.edge_requests == []

    def test_timeouts_reported_distinctly(self):
        """Test that attempts that all time out raise a 504 error."""
        def reply(request):
            raise httpx.ReadTimeout("timed out", request=request)

        handler = RecordingHandler(reply)
        fetcher = _make_fetcher(handler)

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            _fetch_body(fetcher)

        assert exc_info.value.status_code == 504
        assert len(handler.requests) == len(USER_AGENTS) * 2

    def test_network_errors_give_generic_failure(self):
        """Test that connection failures raise a 502 without upstream status."""
        def reply(request):
            raise httpx.ConnectError("refused", request=request)

        fetcher = _make_fetcher(RecordingHandler(reply))

        with pytest.raises(UpstreamFetchError) as exc_info:
            _fetch_body(fetcher)

        assert exc_info.value.status_code == 502
        assert exc_info.value.upstream_status is None

    def test_cached_edge_failure_falls_back_to_direct(self):
        """Test that a failing cached edge route does not block direct fetching."""
        cache = DomainPreferenceCache()
        cache.mark_needs_edge_proxy("x.example.com")
        handler = RecordingHandler(
            lambda request: httpx.Response(500 if request.url.host == "edge.example.org" else 200, text="ok")
        )
        fetcher = _make_fetcher(handler, cache=cache)

        assert _fetch_body(fetcher) == b"ok"
        assert len(handler.edge_requests) == 1
        assert len(handler.direct_requests) == 1
        assert cache.needs_edge_proxy("x.example.com") is False

    def test_segment_timeout_and_range(self):
        """Test that segment fetches use the longer timeout and forward Range."""
        handler = RecordingHandler(lambda request: httpx.Response(206, content=b"\x47" * 10))
        fetcher = _make_fetcher(handler)

        body = _fetch_body(
            fetcher,
            "https://x.example.com/vod/seg1.ts",
            kind=ResourceKind.SEGMENT,
            range_header="bytes=0-9",
        )

        request = handler.requests[0]
        assert body == b"\x47" * 10
        assert request.headers["Range"] == "bytes=0-9"
        assert request.extensions["timeout"]["read"] == 25.0

    def test_playlist_timeout(self):
        """Test that playlist fetches use the playlist timeout."""
        handler = RecordingHandler(lambda request: httpx.Response(200, text="#EXTM3U"))
        fetcher = _make_fetcher(handler)

        _fetch_body(fetcher)

        assert handler.requests[0].extensions["timeout"]["read"] == 20.0

    def test_stalled_playlist_body_tries_next_strategy(self):
        """Test that a playlist body that times out counts as a failed attempt."""
        def reply(request):
            if "Referer" in request.headers:
                return httpx.Response(200, stream=StallingStream(httpx.ReadTimeout("stalled")))
            return httpx.Response(200, text="#EXTM3U\n")

        handler = RecordingHandler(reply)
        fetcher = _make_fetcher(handler)

        assert _fetch_body(fetcher) == b"#EXTM3U\n"
        assert len(handler.requests) == 2

    def test_stalled_playlist_bodies_give_timeout(self):
        """Test that playlist bodies that always stall raise a 504 error."""
        handler = RecordingHandler(
            lambda request: httpx.Response(200, stream=StallingStream(httpx.ReadTimeout("stalled")))
        )
        fetcher = _make_fetcher(handler, edge_proxy_url="")

        with pytest.raises(UpstreamTimeoutError):
            _fetch_body(fetcher)
        assert len(handler.requests) == len(USER_AGENTS) * 2

    def test_dropped_playlist_body_gives_fetch_error(self):
        """Test that a connection dropped mid-body raises a 502 error."""
        handler = RecordingHandler(
            lambda request: httpx.Response(200, stream=StallingStream(httpx.ReadError("reset")))
        )
        fetcher = _make_fetcher(handler, edge_proxy_url="")

        with pytest.raises(UpstreamFetchError) as exc_info:
            _fetch_body(fetcher)
        assert exc_info.value.status_code == 502

    @pytest.mark.parametrize("url", ["", "ftp://x.example.com/a.ts", "/relative/a.ts", "https://"])
    def test_invalid_url_rejected(self, url):
        """Test that only absolute http(s) URLs are fetched."""
        handler = RecordingHandler(lambda request: httpx.Response(200))
        fetcher = _make_fetcher(handler)

        with pytest.raises(InvalidUrlError):
            _fetch_body(fetcher, url)
        assert handler.requests == []

    def test_source_url(self):
        """Test that edge responses resolve against the requested URL."""
        fetcher = _make_fetcher(RecordingHandler(lambda request: httpx.Response(200)))
        edge_response = httpx.Response(200, request=httpx.Request("GET", f"{EDGE_URL}/proxy?url=x"))
        origin_response = httpx.Response(
            200, request=httpx.Request("GET", "https://cdn2.example.com/moved/index.m3u8")
        )

        assert fetcher.source_url(edge_response, TARGET) == TARGET
        assert fetcher.source_url(origin_response, TARGET) == "https://cdn2.example.com/moved/index.m3u8"
