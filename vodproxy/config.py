"""Configuration management for the playlist proxy."""

import logging
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Only ever used outside production; see Settings.check_token_secret
DEVELOPMENT_TOKEN_SECRET = "vodproxy-development-secret-do-not-use-in-production"

PRODUCTION_ENVIRONMENTS = {"production", "prod"}


class ConfigurationError(RuntimeError):
    """Raised when the service cannot start with the given configuration."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = "development"

    # Playback Token Configuration
    playback_token_secret: Optional[str] = None
    playback_token_ttl_seconds: int = 10800  # 3 hours

    # Edge Proxy Configuration
    edge_proxy_url: str = ""
    edge_proxy_secret: str = ""

    # Upstream Fetch Configuration
    playlist_fetch_timeout_seconds: float = 20.0
    segment_fetch_timeout_seconds: float = 25.0  # segments are larger
    domain_preference_ttl_seconds: int = 300  # 5 minutes

    # Legacy /api/proxy/ts?url=... form
    allow_legacy_url_param: bool = True

    # Ad Filter Configuration
    ad_filter_max_section_duration: float = 120.0
    ad_filter_min_main_content_segments: int = 10
    ad_filter_discontinuity: bool = False

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # HTTP Client Configuration
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 20

    @model_validator(mode="after")
    def check_token_secret(self) -> "Settings":
        """Refuse to run a production-like environment without a signing secret."""
        if not self.playback_token_secret and self.is_production:
            raise ConfigurationError(
                "PLAYBACK_TOKEN_SECRET must be set when ENVIRONMENT is production"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in PRODUCTION_ENVIRONMENTS

    @property
    def token_secret(self) -> str:
        """Signing secret for playback tokens, falling back to the development value."""
        if self.playback_token_secret:
            return self.playback_token_secret
        logger.warning("PLAYBACK_TOKEN_SECRET is not set, using the development secret")
        return DEVELOPMENT_TOKEN_SECRET


# Global settings instance
settings = Settings()
