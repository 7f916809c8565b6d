"""Main FastAPI application for the HLS playlist proxy."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from vodproxy.ad_filter import filter_segments
from vodproxy.config import settings
from vodproxy.domain_cache import DomainPreferenceCache
from vodproxy.exceptions import InvalidPlaybackTokenError, InvalidUrlError, MissingTokenError
from vodproxy.fetcher import ResourceKind, UpstreamFetcher, redact_url, validate_target_url
from vodproxy.m3u8_rewriter import M3U8Rewriter
from vodproxy.models import AdFilterConfig
from vodproxy.playback_token import PlaybackTokenSigner
from vodproxy.playlist_parser import parse_playlist, playlist_base_url

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/mp2t"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}

PREFLIGHT_HEADERS = {**CORS_HEADERS, "Access-Control-Max-Age": "86400"}

# Global HTTP client for upstream requests
http_client: httpx.AsyncClient | None = None

# Global fetcher, created with the HTTP client
upstream_fetcher: UpstreamFetcher | None = None

# Process-wide domain preferences, shared by every request
domain_cache = DomainPreferenceCache(ttl_seconds=settings.domain_preference_ttl_seconds)

token_signer = PlaybackTokenSigner(
    secret=settings.token_secret,
    ttl_seconds=settings.playback_token_ttl_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan (startup and shutdown)."""
    global http_client, upstream_fetcher

    # Startup
    logger.info(f"Starting HLS playlist proxy (environment={settings.environment})")
    http_client = httpx.AsyncClient(
        limits=httpx.Limits(
            max_keepalive_connections=settings.http_max_keepalive_connections,
            max_connections=settings.http_max_connections,
        ),
        follow_redirects=True,
    )
    upstream_fetcher = UpstreamFetcher(
        http_client=http_client,
        domain_cache=domain_cache,
        edge_proxy_url=settings.edge_proxy_url,
        edge_proxy_secret=settings.edge_proxy_secret,
        playlist_timeout=settings.playlist_fetch_timeout_seconds,
        segment_timeout=settings.segment_fetch_timeout_seconds,
    )
    logger.info(
        f"HTTP client initialized with playlist_timeout={settings.playlist_fetch_timeout_seconds}s, "
        f"segment_timeout={settings.segment_fetch_timeout_seconds}s, "
        f"edge_proxy={'enabled' if settings.edge_proxy_url else 'disabled'}"
    )

    yield

    # Shutdown
    logger.info("Shutting down HLS playlist proxy")
    if http_client:
        await http_client.aclose()
        logger.info("HTTP client closed")
    upstream_fetcher = None


# Initialize FastAPI app
app = FastAPI(
    title="HLS Playlist Proxy",
    description="Proxies HLS playlists and segments behind signed playback tokens, with optional ad filtering",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ExceptionGroup)
async def exception_group_handler(request: Request, exc: ExceptionGroup):
    """
    Handle ExceptionGroup exceptions raised while streaming segments.

    When a player disconnects mid-segment, httpx.StreamClosed ends up
    wrapped in an ExceptionGroup by Starlette's task group. The response
    has already started, so there is nothing left to send.
    """
    if any(isinstance(e, (httpx.StreamClosed, httpx.ReadError)) for e in exc.exceptions):
        logger.debug(f"Stream closed by client: {request.url.path}")
        return

    logger.error(f"Unhandled ExceptionGroup: {exc}")
    raise exc


def get_fetcher() -> UpstreamFetcher:
    """Dependency returning the process-wide upstream fetcher."""
    if upstream_fetcher is None:
        raise RuntimeError("Upstream fetcher is not initialized; application lifespan has not started")
    return upstream_fetcher


def get_token_signer() -> PlaybackTokenSigner:
    """Dependency returning the playback token signer."""
    return token_signer


def get_ad_filter_config() -> AdFilterConfig:
    """Dependency returning the ad filter configuration for this request."""
    return AdFilterConfig(
        enabled=True,
        filter_discontinuity_sections=True,
        filter_discontinuity=settings.ad_filter_discontinuity,
        max_ad_section_duration=settings.ad_filter_max_section_duration,
        min_main_content_segments=settings.ad_filter_min_main_content_segments,
    )


def _verify_token(signer: PlaybackTokenSigner, token: Optional[str]) -> str:
    """Verify a playback token and return the upstream URL it embeds."""
    if not token:
        raise MissingTokenError()
    try:
        payload = signer.verify(token)
    except InvalidPlaybackTokenError as e:
        logger.warning(
            f"[PROXY] Token verification failed: reason={e.reason}, "
            f"token_length={len(token)}, token_prefix={token[:20]}..."
        )
        raise
    return validate_target_url(payload.url)


def _get_content_type(url: str, upstream_type: Optional[str] = None) -> str:
    """
    Determine Content-Type for a proxied resource.

    Args:
        url: Upstream URL
        upstream_type: Content-Type reported by the upstream, if any

    Returns:
        Appropriate Content-Type header value
    """
    path_lower = httpx.URL(url).path.lower()

    if path_lower.endswith(".m3u8"):
        return PLAYLIST_MEDIA_TYPE
    elif path_lower.endswith(".ts"):
        return SEGMENT_MEDIA_TYPE
    elif path_lower.endswith(".m4s"):
        return "video/iso.segment"
    elif path_lower.endswith(".mp4"):
        return "video/mp4"
    elif path_lower.endswith(".key"):
        return "application/octet-stream"

    # Segments are often served disguised as images; only trust media types
    if upstream_type and upstream_type.split("/", 1)[0].strip().lower() in ("video", "audio"):
        return upstream_type
    return SEGMENT_MEDIA_TYPE


def _is_playlist(url: str, content_type: str, text: str) -> bool:
    """Check whether an upstream body is an M3U8 playlist."""
    return (
        "mpegurl" in content_type.lower()
        or httpx.URL(url).path.lower().endswith(".m3u8")
        or text.lstrip("\ufeff").lstrip().startswith("#EXTM3U")
    )


@app.options("/api/proxy/m3u8", include_in_schema=False)
@app.options("/api/proxy/ts", include_in_schema=False)
async def proxy_preflight() -> Response:
    """Answer CORS preflight requests for the proxy routes."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=PREFLIGHT_HEADERS)


@app.get(
    "/api/proxy/m3u8",
    summary="Proxy HLS playlist",
    description="Fetch the playlist embedded in a playback token, filter ads and rewrite its URIs",
)
async def proxy_playlist(
    token: Optional[str] = Query(None, description="Playback token"),
    ad_free: bool = Query(False, alias="adFree", description="Remove ad segments"),
    fetcher: UpstreamFetcher = Depends(get_fetcher),
    signer: PlaybackTokenSigner = Depends(get_token_signer),
    ad_config: AdFilterConfig = Depends(get_ad_filter_config),
) -> Response:
    """
    Proxy an HLS playlist to the client.

    This endpoint:
    1. Verifies the playback token and extracts the upstream URL
    2. Fetches the playlist through the direct/edge fetch strategies
    3. Optionally marks and removes ad segments
    4. Rewrites every URI to a tokenized proxy URL
    """
    target_url = _verify_token(signer, token)
    logger.info(f"[M3U8] Request: url={redact_url(target_url)}, ad_free={ad_free}")

    upstream = await fetcher.fetch(target_url, ResourceKind.PLAYLIST)
    try:
        body = await upstream.aread()
    finally:
        await upstream.aclose()

    content_type = upstream.headers.get("Content-Type", "")
    text = body.decode("utf-8", errors="replace")

    if not _is_playlist(target_url, content_type, text):
        logger.info(f"[M3U8] Not a playlist, passing through: content_type={content_type}")
        return Response(
            content=body,
            media_type=content_type or "application/octet-stream",
            headers={"Access-Control-Allow-Origin": "*"},
        )

    # Relative URIs resolve against the final URL after redirects
    base_url = playlist_base_url(fetcher.source_url(upstream, target_url))

    segments = None
    response_headers = {
        **CORS_HEADERS,
        "Cache-Control": "no-cache, no-store, must-revalidate",
    }

    if ad_free and "#EXTINF" in text:
        parsed = parse_playlist(text, base_url)
        result = filter_segments(parsed, ad_config)
        segments = parsed.segments
        if result.filtered_segments:
            response_headers["X-Ad-Filter-Total"] = str(result.total_segments)
            response_headers["X-Ad-Filter-Removed"] = str(result.filtered_segments)
            logger.info(
                f"[M3U8] Ad filter removed {result.filtered_segments}/{result.total_segments} segments"
            )

    rewriter = M3U8Rewriter(signer=signer)
    rewritten = rewriter.rewrite_manifest(text, base_url=base_url, ad_free=ad_free, segments=segments)
    logger.info(f"[M3U8] Playlist rewritten: {len(body)} -> {len(rewritten)} bytes")

    return Response(content=rewritten, media_type=PLAYLIST_MEDIA_TYPE, headers=response_headers)


@app.get(
    "/api/proxy/ts",
    summary="Proxy HLS segment",
    description="Stream a segment, key or other resource from the upstream",
)
async def proxy_segment(
    request: Request,
    token: Optional[str] = Query(None, description="Playback token"),
    url: Optional[str] = Query(None, description="Upstream URL (legacy)"),
    fetcher: UpstreamFetcher = Depends(get_fetcher),
    signer: PlaybackTokenSigner = Depends(get_token_signer),
) -> Response:
    """
    Stream a resource from the upstream without buffering it.

    The token form is preferred; the legacy ``url`` form can be disabled
    with ALLOW_LEGACY_URL_PARAM=false.
    """
    if token:
        target_url = _verify_token(signer, token)
    elif url and settings.allow_legacy_url_param:
        target_url = validate_target_url(url)
    elif settings.allow_legacy_url_param:
        raise InvalidUrlError("URL parameter is required")
    else:
        raise MissingTokenError()

    range_header = request.headers.get("Range")
    logger.info(f"[TS] Request: url={redact_url(target_url)}, range={range_header}")

    upstream = await fetcher.fetch(target_url, ResourceKind.SEGMENT, range_header=range_header)

    response_headers = {
        **CORS_HEADERS,
        "Cache-Control": "public, max-age=31536000",
    }

    # Content-Length only matches the streamed bytes when the body is not re-encoded
    content_length = upstream.headers.get("Content-Length")
    if content_length and not upstream.headers.get("Content-Encoding"):
        response_headers["Content-Length"] = content_length

    if "Content-Range" in upstream.headers:
        response_headers["Content-Range"] = upstream.headers["Content-Range"]
        response_headers["Accept-Ranges"] = upstream.headers.get("Accept-Ranges", "bytes")

    async def body() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes(chunk_size=65536):
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        body(),
        status_code=upstream.status_code,
        media_type=_get_content_type(target_url, upstream.headers.get("Content-Type")),
        headers=response_headers,
    )


@app.get(
    "/api/proxy/domains",
    summary="Domain preferences",
    description="Domains currently routed through the edge proxy",
)
async def domain_preferences() -> dict:
    """Debug view of the domain preference cache."""
    domain_cache.cleanup_expired()
    return {"domains": domain_cache.get_stats()}


@app.get(
    "/health",
    summary="Health check",
    description="Health check endpoint",
)
async def health_check() -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "domains": domain_cache.get_domain_count(),
        "version": VERSION,
    }


def run() -> None:
    """Run the proxy with uvicorn."""
    uvicorn.run(
        "vodproxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
