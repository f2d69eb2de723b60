"""Exception taxonomy shared by the StreamShield services."""

from __future__ import annotations

from pydantic import ValidationError

__all__ = [
    "CredentialRevoked",
    "PlatformError",
    "RateLimited",
    "RemoteStoreError",
    "ResourceMissing",
    "StreamShieldError",
    "SyncError",
    "TransientNetworkError",
    "ValidationError",
]


class StreamShieldError(Exception):
    """Base class for every error raised by StreamShield."""


class PlatformError(StreamShieldError):
    """A Spotify Web API call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(PlatformError):
    """Network blip or server error; retried on the next natural poll."""


class RateLimited(TransientNetworkError):
    """Spotify answered 429; no calls until *retry_after* seconds pass."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limited, retry in {retry_after:.0f}s", status_code=429)
        self.retry_after = retry_after


class CredentialRevoked(PlatformError):
    """The access token was rejected.  Callers must force a logout."""


class ResourceMissing(PlatformError):
    """The requested playlist (or other resource) no longer exists."""


class RemoteStoreError(StreamShieldError):
    """A remote repository operation failed."""


class SyncError(StreamShieldError):
    """A user-initiated sync failed and should be reported to the user."""
