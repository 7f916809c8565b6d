"""Signed, time-limited playback tokens that hide upstream URLs from clients."""

import time
from typing import Callable

import jwt
from pydantic import ValidationError

from vodproxy.exceptions import InvalidPlaybackTokenError, MissingTokenError
from vodproxy.models import PlaybackTokenPayload

TOKEN_ALGORITHM = "HS256"

# Expiry is checked against the signer's own clock
DECODE_OPTIONS = {"verify_exp": False, "verify_iat": False, "verify_nbf": False}


class PlaybackTokenSigner:
    """
    Mints and verifies HS256 playback tokens.

    Tokens are compact JWTs carrying ``{url, isPreview, iat, exp}``.
    Nothing is stored server-side: a token is valid if its signature
    matches and ``exp`` lies in the future.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 10800,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the signer.

        Args:
            secret: HMAC secret shared by every process that verifies tokens
            ttl_seconds: Token lifetime (default: 3 hours)
            clock: Time source returning epoch seconds
        """
        if not secret:
            raise ValueError("Playback token secret cannot be empty")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def mint(self, url: str, is_preview: bool = False) -> str:
        """
        Create a token embedding an absolute upstream URL.

        Args:
            url: Resolved absolute URL the token grants access to
            is_preview: Whether the token was issued for preview playback

        Returns:
            Compact signed token string
        """
        now = int(self._clock())
        payload = {
            "url": url,
            "isPreview": is_preview,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> PlaybackTokenPayload:
        """
        Verify a token and return its claims.

        Raises:
            MissingTokenError: If no token was given
            InvalidPlaybackTokenError: If the token is malformed, forged or expired
        """
        if not token:
            raise MissingTokenError()

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options=DECODE_OPTIONS,
            )
        except jwt.InvalidSignatureError:
            raise InvalidPlaybackTokenError("Invalid playback token signature")
        except jwt.InvalidAlgorithmError:
            raise InvalidPlaybackTokenError("Unsupported playback token algorithm")
        except jwt.InvalidTokenError:
            raise InvalidPlaybackTokenError("Malformed playback token")

        try:
            payload = PlaybackTokenPayload.model_validate(claims)
        except ValidationError:
            raise InvalidPlaybackTokenError("Malformed playback token")

        if payload.is_expired(self._clock()):
            raise InvalidPlaybackTokenError("Playback token has expired")

        return payload
