"""Upstream fetching with rotating identities and an edge proxy fallback."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

import httpx

from vodproxy.domain_cache import DomainPreferenceCache
from vodproxy.exceptions import InvalidUrlError, UpstreamFetchError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

USER_AGENTS = (
    "AptvPlayer/1.4.10",
    "Dalvik/2.1.0 (Linux; U; Android 12; Pixel 6 Build/SD1A.210817.023)",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15",
)

ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"


class ResourceKind(str, Enum):
    """Kind of upstream resource; decides the per-attempt timeout."""

    PLAYLIST = "playlist"
    SEGMENT = "segment"


@dataclass(frozen=True)
class FetchStrategy:
    """One way of asking the origin for a resource."""

    name: str
    via_edge: bool = False
    user_agent: Optional[str] = None
    referer: Optional[str] = None

    def build_headers(self, range_header: Optional[str] = None) -> dict[str, str]:
        """Request headers for a direct attempt."""
        headers = {"Accept": "*/*", "Accept-Language": ACCEPT_LANGUAGE}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if self.referer:
            headers["Referer"] = self.referer
        if range_header:
            headers["Range"] = range_header
        return headers


EDGE_STRATEGY = FetchStrategy(name="edge-proxy", via_edge=True)


def direct_strategies(url: str) -> list[FetchStrategy]:
    """
    Ordered direct-fetch strategies: every user agent with the origin as
    Referer, then without a Referer.
    """
    parsed = urlparse(url)
    referers = (f"{parsed.scheme}://{parsed.netloc}/", None)
    return [
        FetchStrategy(
            name=f"direct[ua={index},referer={'origin' if referer else 'none'}]",
            user_agent=user_agent,
            referer=referer,
        )
        for index, user_agent in enumerate(USER_AGENTS)
        for referer in referers
    ]


def redact_url(url: str, max_length: int = 100) -> str:
    """Strip the query string and truncate a URL for log lines."""
    parsed = urlparse(url)
    redacted = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    if len(redacted) > max_length:
        redacted = redacted[:max_length] + "..."
    return redacted


def validate_target_url(url: str) -> str:
    """
    Ensure a target URL is an absolute http(s) URL.

    Raises:
        InvalidUrlError: If it is not
    """
    parsed = urlparse(url.strip()) if url else None
    if parsed is None or parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidUrlError()
    return url.strip()


@dataclass
class _AttemptLog:
    """Failures collected while working through the strategy list."""

    last_status: Optional[int] = None
    statuses: tuple[int, ...] = ()
    timed_out: bool = False
    last_error: Optional[str] = None

    def record_status(self, status_code: int) -> None:
        self.last_status = status_code
        self.statuses = self.statuses + (status_code,)

    @property
    def all_forbidden(self) -> bool:
        return bool(self.statuses) and all(code == 403 for code in self.statuses)


class UpstreamFetcher:
    """
    Retrieves playlists and segments from the origin.

    Attempts are awaited one at a time in strategy order and the first 2xx
    response wins. Domains that refuse every direct attempt with 403 are
    retried once through the edge proxy; if that works, the domain is
    remembered in the preference cache and later requests start there.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        domain_cache: DomainPreferenceCache,
        edge_proxy_url: str = "",
        edge_proxy_secret: str = "",
        playlist_timeout: float = 20.0,
        segment_timeout: float = 25.0,
    ):
        self.http_client = http_client
        self.domain_cache = domain_cache
        self.edge_proxy_url = edge_proxy_url.rstrip("/")
        self.edge_proxy_secret = edge_proxy_secret
        self.timeouts = {
            ResourceKind.PLAYLIST: playlist_timeout,
            ResourceKind.SEGMENT: segment_timeout,
        }

    @property
    def edge_enabled(self) -> bool:
        return bool(self.edge_proxy_url)

    def build_edge_url(self, target_url: str) -> str:
        """Build the edge proxy URL that fetches ``target_url`` on our behalf."""
        params = {"url": target_url}
        if self.edge_proxy_secret:
            params["key"] = self.edge_proxy_secret
        return str(httpx.URL(f"{self.edge_proxy_url}/proxy", params=params))

    def source_url(self, response: httpx.Response, requested_url: str) -> str:
        """
        URL the response body actually came from, after redirects.

        Responses served by the edge proxy report the edge URL, so the
        requested upstream URL is used for them instead.
        """
        final_url = str(response.url)
        if self.edge_enabled and final_url.startswith(self.edge_proxy_url):
            return requested_url
        return final_url

    async def _attempt(
        self,
        strategy: FetchStrategy,
        url: str,
        kind: ResourceKind,
        range_header: Optional[str],
    ) -> httpx.Response:
        """Send one request and return the open streamed response."""
        if strategy.via_edge:
            request_url = self.build_edge_url(url)
            headers = {"Range": range_header} if range_header else {}
        else:
            request_url = url
            headers = strategy.build_headers(range_header)

        request = self.http_client.build_request(
            "GET",
            request_url,
            headers=headers,
            timeout=httpx.Timeout(self.timeouts[kind]),
        )
        return await self.http_client.send(request, stream=True, follow_redirects=True)

    async def _try(
        self,
        strategy: FetchStrategy,
        url: str,
        kind: ResourceKind,
        range_header: Optional[str],
        attempts: _AttemptLog,
    ) -> Optional[httpx.Response]:
        """Run one strategy; return the response on success, else record why it failed."""
        try:
            response = await self._attempt(strategy, url, kind, range_header)
        except httpx.TimeoutException:
            attempts.timed_out = True
            attempts.last_error = "timeout"
            logger.debug(f"[FETCH] {strategy.name} timed out: {redact_url(url)}")
            return None
        except httpx.HTTPError as e:
            attempts.last_error = f"{type(e).__name__}: {e}"
            logger.debug(f"[FETCH] {strategy.name} failed: {attempts.last_error}, url={redact_url(url)}")
            return None

        if response.is_success:
            # Playlists are small; a body that stalls or drops fails this attempt
            if kind is ResourceKind.PLAYLIST:
                try:
                    await response.aread()
                except httpx.TimeoutException:
                    await response.aclose()
                    attempts.timed_out = True
                    attempts.last_error = "timeout"
                    logger.debug(f"[FETCH] {strategy.name} body timed out: {redact_url(url)}")
                    return None
                except httpx.HTTPError as e:
                    await response.aclose()
                    attempts.last_error = f"{type(e).__name__}: {e}"
                    logger.debug(f"[FETCH] {strategy.name} body failed: {attempts.last_error}, url={redact_url(url)}")
                    return None
            logger.debug(f"[FETCH] {strategy.name} succeeded: status={response.status_code}")
            return response

        attempts.record_status(response.status_code)
        logger.debug(f"[FETCH] {strategy.name} rejected: status={response.status_code}, url={redact_url(url)}")
        await response.aclose()
        return None

    async def fetch(
        self,
        url: str,
        kind: ResourceKind = ResourceKind.PLAYLIST,
        range_header: Optional[str] = None,
    ) -> httpx.Response:
        """
        Fetch an upstream resource.

        The returned response is opened in streaming mode; the caller must
        read it and close it (``aread``/``aiter_bytes`` then ``aclose``).
        Playlist bodies are already read, so ``aread`` returns them at once.

        Args:
            url: Absolute upstream URL
            kind: Playlist or segment, selects the per-attempt timeout
            range_header: Optional client Range header to forward

        Returns:
            Successful (2xx) upstream response

        Raises:
            InvalidUrlError: If the URL is not an absolute http(s) URL
            UpstreamTimeoutError: If every failed attempt timed out
            UpstreamFetchError: If every attempt failed otherwise
        """
        url = validate_target_url(url)
        domain = urlparse(url).hostname or ""
        attempts = _AttemptLog()

        if self.edge_enabled and self.domain_cache.needs_edge_proxy(domain):
            logger.info(f"[FETCH] Using cached edge proxy preference for {domain}")
            response = await self._try(EDGE_STRATEGY, url, kind, range_header, _AttemptLog())
            if response is not None:
                return response
            self.domain_cache.mark_edge_failed(domain)
            logger.warning(f"[FETCH] Cached edge proxy route failed for {domain}, trying direct")

        for strategy in direct_strategies(url):
            response = await self._try(strategy, url, kind, range_header, attempts)
            if response is not None:
                self.domain_cache.mark_direct_ok(domain)
                return response

        if attempts.all_forbidden and self.edge_enabled:
            logger.info(f"[FETCH] Direct fetch refused with 403 for {domain}, trying edge proxy")
            response = await self._try(EDGE_STRATEGY, url, kind, range_header, _AttemptLog())
            if response is not None:
                self.domain_cache.mark_needs_edge_proxy(domain)
                logger.info(f"[FETCH] Edge proxy fallback succeeded for {domain}")
                return response
            self.domain_cache.mark_edge_failed(domain)
            logger.error(f"[FETCH] Edge proxy fallback failed for {domain}")

        if attempts.timed_out and attempts.last_status is None:
            logger.error(f"[FETCH] Timeout fetching upstream: domain={domain}, url={redact_url(url)}")
            raise UpstreamTimeoutError()

        logger.error(
            f"[FETCH] All fetch attempts failed: domain={domain}, url={redact_url(url)}, "
            f"last_status={attempts.last_status}, last_error={attempts.last_error}"
        )
        raise UpstreamFetchError(upstream_status=attempts.last_status)
