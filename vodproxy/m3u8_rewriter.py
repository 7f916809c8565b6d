"""HLS M3U8 playlist rewriter that hides upstream URLs behind playback tokens."""

import re
from typing import Optional, Sequence
from urllib.parse import urlencode

from vodproxy.models import Segment
from vodproxy.playback_token import PlaybackTokenSigner
from vodproxy.playlist_parser import DISCONTINUITY_TAG, resolve_url

# Tags that belong to the next segment and are dropped along with it
SEGMENT_TAG_PREFIXES = ("#EXTINF:", "#EXT-X-BYTERANGE:", "#EXT-X-PROGRAM-DATE-TIME:")

PLAYLIST_PATTERN = re.compile(r"\.m3u8\b", re.IGNORECASE)


def is_playlist_uri(uri: str) -> bool:
    """Check whether a URI points at a nested playlist."""
    return bool(PLAYLIST_PATTERN.search(uri))


class M3U8Rewriter:
    """Rewrites M3U8 playlists so every resource is fetched through the proxy."""

    # Pattern to match URI attribute in #EXT-X-KEY, #EXT-X-MAP and #EXT-X-MEDIA tags
    URI_PATTERN = re.compile(r'URI="([^"]+)"')

    def __init__(
        self,
        signer: PlaybackTokenSigner,
        playlist_endpoint: str = "/api/proxy/m3u8",
        segment_endpoint: str = "/api/proxy/ts",
    ):
        """
        Initialize the rewriter.

        Args:
            signer: Mints a playback token for every rewritten URI
            playlist_endpoint: Proxy path for nested playlists
            segment_endpoint: Proxy path for segments, keys and other resources
        """
        self.signer = signer
        self.playlist_endpoint = playlist_endpoint.rstrip("/")
        self.segment_endpoint = segment_endpoint.rstrip("/")

    def rewrite_manifest(
        self,
        content: str,
        base_url: str,
        ad_free: bool = False,
        segments: Optional[Sequence[Segment]] = None,
    ) -> str:
        """
        Rewrite a playlist, dropping ad segments and proxying all URIs.

        Args:
            content: Original M3U8 playlist content
            base_url: Base URL for resolving relative URIs
            ad_free: Carry the ad-free flag to nested playlists
            segments: Parsed segments in playlist order; segments with
                ``is_ad`` set are removed. The n-th URI line of the content
                is the n-th segment.

        Returns:
            Rewritten M3U8 playlist
        """
        # Each entry is (kind, text); kind is "segment", "discontinuity" or "tag"
        entries: list[tuple[str, str]] = []
        # Positions in entries of tags belonging to the upcoming segment
        pending_tag_positions: list[int] = []
        segment_position = 0
        removed = 0

        for line in content.split("\n"):
            stripped = line.strip()

            if stripped.startswith(SEGMENT_TAG_PREFIXES):
                pending_tag_positions.append(len(entries))
                entries.append(("tag", line))
                continue

            if stripped == DISCONTINUITY_TAG:
                entries.append(("discontinuity", line))
                continue

            if not stripped or stripped.startswith("#"):
                entries.append(("tag", self._rewrite_line(line, base_url, ad_free)))
                continue

            segment = None
            if segments is not None and segment_position < len(segments):
                segment = segments[segment_position]
            segment_position += 1

            if segment is not None and segment.is_ad:
                for position in reversed(pending_tag_positions):
                    del entries[position]
                pending_tag_positions = []
                removed += 1
                continue

            pending_tag_positions = []
            entries.append(("segment", self._rewrite_line(line, base_url, ad_free)))

        if removed:
            entries = self._collapse_discontinuities(entries)

        return "\n".join(text for _, text in entries)

    @staticmethod
    def _collapse_discontinuities(entries: list[tuple[str, str]]) -> list[tuple[str, str]]:
        """
        Drop discontinuity markers left dangling by removed segments.

        A marker survives only if a kept segment comes before it, another
        kept segment comes after it, and no other marker was kept since the
        previous segment.
        """
        result: list[tuple[str, str]] = []
        seen_segment = False
        pending_position: Optional[int] = None

        for kind, text in entries:
            if kind == "discontinuity":
                if not seen_segment or pending_position is not None:
                    continue
                pending_position = len(result)
                result.append((kind, text))
            elif kind == "segment":
                seen_segment = True
                pending_position = None
                result.append((kind, text))
            else:
                result.append((kind, text))

        if pending_position is not None:
            del result[pending_position]

        return result

    def _rewrite_line(self, line: str, base_url: str, ad_free: bool) -> str:
        """
        Rewrite a single line from the playlist.

        Args:
            line: Original line from playlist
            base_url: Base URL for resolving relative URIs
            ad_free: Whether nested playlists should be filtered too

        Returns:
            Rewritten line
        """
        stripped = line.strip()

        if not stripped:
            return line

        # Handle tags carrying a URI attribute (keys, init sections, renditions)
        if stripped.startswith("#"):
            if 'URI="' in stripped:
                return self._rewrite_uri_attribute(stripped, base_url, ad_free)
            return line

        return self.proxy_url(stripped, base_url, ad_free)

    def _rewrite_uri_attribute(self, line: str, base_url: str, ad_free: bool) -> str:
        """Rewrite the URI="..." attribute of a tag to a proxied URI."""

        def replace_uri(match: re.Match) -> str:
            proxied_uri = self.proxy_url(match.group(1), base_url, ad_free)
            return f'URI="{proxied_uri}"'

        return self.URI_PATTERN.sub(replace_uri, line)

    def proxy_url(self, uri: str, base_url: str, ad_free: bool = False) -> str:
        """
        Turn a playlist URI into a tokenized proxy URL.

        Args:
            uri: Original URI (relative or absolute)
            base_url: Base URL for resolving relative URIs
            ad_free: Append ``adFree=true`` to nested playlist URLs

        Returns:
            Proxy URL carrying a fresh playback token
        """
        absolute_url = resolve_url(uri, base_url)
        token = self.signer.mint(absolute_url, is_preview=False)

        if is_playlist_uri(uri):
            params = {"token": token}
            if ad_free:
                params["adFree"] = "true"
            return f"{self.playlist_endpoint}?{urlencode(params)}"

        return f"{self.segment_endpoint}?{urlencode({'token': token})}"
