"""Custom exceptions for the playlist proxy."""

from typing import Optional

from fastapi import HTTPException, status


class MissingTokenError(HTTPException):
    """Raised when a proxy request carries no playback token."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Valid playback token required",
        )


class InvalidPlaybackTokenError(HTTPException):
    """Raised when a playback token is malformed, forged or expired."""

    def __init__(self, reason: str = "Invalid or expired playback token"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=reason,
        )
        self.reason = reason


class InvalidUrlError(HTTPException):
    """Raised when the target URL is missing or not an http(s) URL."""

    def __init__(self, message: str = "Invalid URL format"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message,
        )


class UpstreamFetchError(HTTPException):
    """Raised when every fetch attempt against the origin has failed."""

    def __init__(self, upstream_status: Optional[int] = None):
        if upstream_status is not None:
            detail = f"Failed to fetch upstream resource: {upstream_status}"
        else:
            detail = "Failed to fetch upstream resource"
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
        )
        self.upstream_status = upstream_status


class UpstreamTimeoutError(HTTPException):
    """Raised when the origin did not answer within the per-attempt timeout."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Upstream request timeout",
        )
