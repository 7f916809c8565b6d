"""Data models for the playlist proxy."""

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


@dataclass
class Segment:
    """One media segment of a playlist: an #EXTINF tag plus its URI line."""

    duration: float
    url: str  # resolved absolute URL
    is_discontinuity: bool = False
    is_ad: bool = False
    section_index: int = 0
    original_line: str = ""


@dataclass
class DiscontinuitySection:
    """Consecutive segments between two #EXT-X-DISCONTINUITY markers."""

    index: int
    segments: list[Segment] = field(default_factory=list)
    is_ad: bool = False

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)


@dataclass
class ParsedPlaylist:
    """Result of parsing a media playlist."""

    segments: list[Segment]
    sections: list[DiscontinuitySection]


@dataclass
class FilterResult:
    """Outcome of running the ad filter over a parsed playlist."""

    total_segments: int = 0
    ad_segments: list[Segment] = field(default_factory=list)
    sections: list[DiscontinuitySection] = field(default_factory=list)

    @property
    def filtered_segments(self) -> int:
        return len(self.ad_segments)


DEFAULT_DOMAIN_BLACKLIST = (
    "ad.", "ads.", "adserver.", "advertising.",
    "doubleclick.", "googlesyndication.",
    "adnxs.", "adsrvr.", "adform.",
    "taboola.", "outbrain.",
)

DEFAULT_KEYWORD_BLACKLIST = (
    "/ad/", "/ads/", "/advert/", "/advertising/",
    "preroll", "midroll", "postroll",
    "commercial", "sponsor",
    "guanggao", "gg_", "_gg",
)


class AdFilterConfig(BaseModel):
    """Immutable ad filter configuration, supplied per request."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    # Segments whose hostname has a label starting with one of these are ads
    domain_blacklist: tuple[str, ...] = DEFAULT_DOMAIN_BLACKLIST
    # Segments whose URL contains one of these keywords are ads
    keyword_blacklist: tuple[str, ...] = DEFAULT_KEYWORD_BLACKLIST
    # Segments shorter than this (seconds) are ads; 0 disables the rule
    min_segment_duration: float = Field(0.0, ge=0)
    # Drop the first N segments (pre-roll)
    skip_first_segments: int = Field(0, ge=0)
    # Drop every segment that starts a discontinuity (legacy behaviour)
    filter_discontinuity: bool = False
    # Classify whole discontinuity sections
    filter_discontinuity_sections: bool = True
    # Sections longer than this (seconds) are never ads
    max_ad_section_duration: float = Field(120.0, gt=0)
    # Section filtering is undone if fewer segments than this would remain
    min_main_content_segments: int = Field(10, ge=0)


class PlaybackTokenPayload(BaseModel):
    """Claims carried by a signed playback token."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    is_preview: bool = Field(False, alias="isPreview")
    iat: Optional[int] = None
    exp: int

    @field_validator("url")
    @classmethod
    def validate_url_not_empty(cls, v: str) -> str:
        """Ensure the embedded URL is present."""
        if not v or not v.strip():
            raise ValueError("Token URL cannot be empty")
        return v.strip()

    def is_expired(self, current_time: float) -> bool:
        """Check if the token has expired."""
        return current_time >= self.exp
