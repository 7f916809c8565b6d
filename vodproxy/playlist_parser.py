"""M3U8 media playlist parsing into segments and discontinuity sections."""

import re
from urllib.parse import urljoin, urlparse

from vodproxy.models import DiscontinuitySection, ParsedPlaylist, Segment

EXTINF_PATTERN = re.compile(r"#EXTINF:\s*([\d.]+)")

DISCONTINUITY_TAG = "#EXT-X-DISCONTINUITY"


def playlist_base_url(url: str) -> str:
    """
    Return the directory of a playlist URL, used to resolve relative URIs.

    >>> playlist_base_url("https://cdn.example.com/vod/1/index.m3u8?t=abc")
    'https://cdn.example.com/vod/1/'
    """
    parsed = urlparse(url)
    path = parsed.path
    last_slash = path.rfind("/")
    base_path = path[: last_slash + 1] if last_slash >= 0 else "/"
    return f"{parsed.scheme}://{parsed.netloc}{base_path}"


def resolve_url(uri: str, base_url: str) -> str:
    """
    Resolve a playlist URI to an absolute URL.

    Args:
        uri: URI as written in the playlist (absolute, root-relative or relative)
        base_url: URL of the playlist, or its directory

    Returns:
        Absolute URL
    """
    uri = uri.strip()
    if uri.startswith(("http://", "https://")):
        return uri
    return urljoin(base_url, uri)


def parse_playlist(content: str, base_url: str) -> ParsedPlaylist:
    """
    Parse playlist text into segments grouped by discontinuity section.

    A duration tag that is never followed by a URI is dropped. Noisy
    upstream playlists are tolerated rather than rejected.

    Args:
        content: Raw M3U8 text
        base_url: Base URL for resolving relative segment URIs

    Returns:
        ParsedPlaylist with segments in playlist order and sections in index order
    """
    segments: list[Segment] = []
    current_duration = 0.0
    is_discontinuity = False
    section_index = 0

    for raw_line in content.split("\n"):
        line = raw_line.strip()

        if line.startswith("#EXTINF:"):
            match = EXTINF_PATTERN.match(line)
            if match:
                try:
                    current_duration = float(match.group(1))
                except ValueError:
                    current_duration = 0.0
        elif line == DISCONTINUITY_TAG:
            is_discontinuity = True
            section_index += 1
        elif line and not line.startswith("#"):
            segments.append(
                Segment(
                    duration=current_duration,
                    url=resolve_url(line, base_url),
                    is_discontinuity=is_discontinuity,
                    section_index=section_index,
                    original_line=line,
                )
            )
            current_duration = 0.0
            is_discontinuity = False

    sections_by_index: dict[int, DiscontinuitySection] = {}
    for segment in segments:
        section = sections_by_index.get(segment.section_index)
        if section is None:
            section = DiscontinuitySection(index=segment.section_index)
            sections_by_index[segment.section_index] = section
        section.segments.append(segment)

    sections = sorted(sections_by_index.values(), key=lambda s: s.index)
    return ParsedPlaylist(segments=segments, sections=sections)
