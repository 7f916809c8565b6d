"""
Advertisement detection for HLS media playlists.

Detection runs in two passes. The section pass compares whole
discontinuity sections against the main content (the longest section)
and catches structural ad breaks. The segment pass then checks the
remaining segments one by one against domain and keyword blacklists,
catching ad URLs embedded inside otherwise legitimate sections.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

from vodproxy.models import (
    AdFilterConfig,
    DiscontinuitySection,
    FilterResult,
    ParsedPlaylist,
    Segment,
)

logger = logging.getLogger(__name__)

# Sections shorter than this are ads wherever they appear
SHORT_SECTION_SECONDS = 30.0
# First/last sections shorter than this are pre-roll/post-roll
BOUNDARY_SECTION_SECONDS = 90.0

DEFAULT_AD_FILTER_CONFIG = AdFilterConfig()


def extract_url_patterns(segments: Iterable[Segment]) -> set[str]:
    """
    Fingerprint segments by hostname plus first path component.

    >>> sorted(extract_url_patterns([Segment(1.0, "https://cdn.a.com/vod/1.ts")]))
    ['cdn.a.com/vod']
    """
    patterns: set[str] = set()
    for segment in segments:
        parsed = urlparse(segment.url)
        if not parsed.hostname:
            continue
        path_parts = [part for part in parsed.path.split("/") if part]
        if path_parts:
            patterns.add(f"{parsed.hostname}/{path_parts[0]}")
        else:
            patterns.add(parsed.hostname)
    return patterns


def url_patterns_match(main_patterns: set[str], other_patterns: set[str]) -> bool:
    """Check whether two fingerprints overlap by pattern or by hostname."""
    if not main_patterns or not other_patterns:
        # Nothing to compare, assume the same origin
        return True

    if main_patterns & other_patterns:
        return True

    main_hosts = {pattern.split("/", 1)[0] for pattern in main_patterns}
    other_hosts = {pattern.split("/", 1)[0] for pattern in other_patterns}
    return bool(main_hosts & other_hosts)


def _find_main_section(sections: list[DiscontinuitySection]) -> DiscontinuitySection:
    """Return the longest section; the earliest one wins a tie."""
    main_section = sections[0]
    for section in sections[1:]:
        if section.total_duration > main_section.total_duration:
            main_section = section
    return main_section


def analyze_ad_sections(
    sections: list[DiscontinuitySection],
    config: AdFilterConfig = DEFAULT_AD_FILTER_CONFIG,
) -> list[DiscontinuitySection]:
    """
    Flag discontinuity sections that look like ad breaks.

    The longest section is taken as main content. Any other section no
    longer than ``max_ad_section_duration`` is an ad if its URL fingerprint
    differs from the main content, if it is shorter than 30s, or if it is
    the first or last section and shorter than 90s.

    If the sections left unflagged hold fewer than
    ``min_main_content_segments`` segments, every flag is cleared again.

    Args:
        sections: Sections in playlist order (mutated in place)
        config: Ad filter configuration

    Returns:
        The same list of sections
    """
    if len(sections) <= 1:
        return sections

    main_section = _find_main_section(sections)
    main_patterns = extract_url_patterns(main_section.segments)
    last_position = len(sections) - 1

    for position, section in enumerate(sections):
        if section is main_section:
            section.is_ad = False
            continue

        duration = section.total_duration
        if duration > config.max_ad_section_duration:
            section.is_ad = False
            continue

        patterns_differ = not url_patterns_match(
            main_patterns, extract_url_patterns(section.segments)
        )
        at_boundary = position == 0 or position == last_position

        section.is_ad = (
            patterns_differ
            or duration < SHORT_SECTION_SECONDS
            or (at_boundary and duration < BOUNDARY_SECTION_SECONDS)
        )

    main_content_segments = sum(len(s.segments) for s in sections if not s.is_ad)
    if main_content_segments < config.min_main_content_segments:
        flagged = [s.index for s in sections if s.is_ad]
        logger.warning(
            f"[AD-FILTER] Section filtering disabled: only {main_content_segments} segments "
            f"would remain (minimum {config.min_main_content_segments}), "
            f"flagged sections={flagged}"
        )
        for section in sections:
            section.is_ad = False

    return sections


def hostname_matches(hostname: str, entry: str) -> bool:
    """
    Check a blacklist entry against the labels of a hostname.

    The entry must start at a label boundary, so ``ad.`` matches
    ``ad.example.com`` and ``cdn.ad.example.com`` but not ``road.example.com``.
    """
    entry = entry.lower()
    return hostname.startswith(entry) or f".{entry}" in hostname


def is_ad_segment(segment: Segment, config: AdFilterConfig = DEFAULT_AD_FILTER_CONFIG) -> bool:
    """Check a single segment URL against the blacklists and duration floor."""
    url_lower = segment.url.lower()
    hostname = urlparse(segment.url).hostname or ""

    for domain in config.domain_blacklist:
        if hostname_matches(hostname, domain):
            return True

    for keyword in config.keyword_blacklist:
        if keyword.lower() in url_lower:
            return True

    if config.min_segment_duration > 0 and segment.duration < config.min_segment_duration:
        return True

    return False


def filter_segments(
    playlist: ParsedPlaylist,
    config: Optional[AdFilterConfig] = None,
) -> FilterResult:
    """
    Mark ad segments in a parsed playlist.

    Args:
        playlist: Parsed playlist (segments are mutated in place)
        config: Ad filter configuration, defaults to DEFAULT_AD_FILTER_CONFIG

    Returns:
        FilterResult listing the segments marked as ads
    """
    config = config or DEFAULT_AD_FILTER_CONFIG

    if not config.enabled:
        return FilterResult()

    result = FilterResult(
        total_segments=len(playlist.segments),
        sections=playlist.sections,
    )

    # Pass 1: whole discontinuity sections
    if config.filter_discontinuity_sections and len(playlist.sections) > 1:
        analyze_ad_sections(playlist.sections, config)
        for section in playlist.sections:
            if section.is_ad:
                for segment in section.segments:
                    segment.is_ad = True

    # Pass 2: individual segments
    for position, segment in enumerate(playlist.segments):
        if segment.is_ad:
            continue
        if position < config.skip_first_segments:
            segment.is_ad = True
        elif config.filter_discontinuity and segment.is_discontinuity:
            segment.is_ad = True
        elif is_ad_segment(segment, config):
            segment.is_ad = True

    result.ad_segments = [segment for segment in playlist.segments if segment.is_ad]

    if result.ad_segments:
        logger.info(
            f"[AD-FILTER] Marked {result.filtered_segments}/{result.total_segments} segments as ads "
            f"across {len(playlist.sections)} sections"
        )

    return result
