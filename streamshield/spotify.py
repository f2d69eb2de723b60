"""Async client for the Spotify Web API.

Uses httpx for all calls.  Every request carries the user's OAuth access
token as a bearer token; obtaining and refreshing that token is the host
application's job (see :meth:`SpotifyClient.set_access_token`).

HTTP failures are classified once, in :meth:`SpotifyClient._request`:

* 401, 403     -> :class:`CredentialRevoked`
* 404          -> :class:`ResourceMissing`
* 429          -> :class:`RateLimited` (calls refused until Retry-After passes)
* 5xx, network -> :class:`TransientNetworkError`
* other 4xx    -> :class:`PlatformError`

A success response whose body is not a JSON object is also treated as
:class:`TransientNetworkError`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from .config import Settings
from .errors import (
    CredentialRevoked,
    PlatformError,
    RateLimited,
    ResourceMissing,
    TransientNetworkError,
)
from .models import TrackPlayRecord, now_ms

log = logging.getLogger(__name__)

_PLAYLIST_DESCRIPTION = "A private playlist for StreamShield to protect your recommendations."
_DEFAULT_RETRY_AFTER = 5.0


@dataclass(frozen=True)
class PlaybackDevice:
    """A Spotify Connect device."""

    id: str
    name: str
    type: str
    is_active: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PlaybackDevice:
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            type=data.get("type") or "",
            is_active=bool(data.get("is_active", False)),
        )


def _parse_played_at(value: str | None) -> int:
    if not value:
        return now_ms()
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)


def track_from_api(item: dict[str, Any], timestamp: int) -> TrackPlayRecord:
    """Map a Spotify track object to a :class:`TrackPlayRecord`."""
    album = item.get("album") or {}
    artists = item.get("artists") or []
    images = album.get("images") or []
    return TrackPlayRecord(
        id=item.get("id") or "",
        name=item.get("name") or "",
        artist=", ".join(a.get("name", "") for a in artists),
        album=album.get("name") or "",
        album_art=images[0]["url"] if images else "",
        duration=int(item.get("duration_ms") or 0),
        timestamp=timestamp,
    )


class SpotifyClient:
    """Thin async wrapper over the Spotify Web API endpoints StreamShield uses."""

    def __init__(self, settings: Settings, access_token: str | None = None) -> None:
        self._settings = settings
        self._access_token = access_token if access_token is not None else settings.SPOTIFY_ACCESS_TOKEN
        self._client: httpx.AsyncClient | None = None
        self._rate_limit_until: float = 0.0

    # -- lifecycle -----------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._settings.SPOTIFY_API_BASE,
                timeout=httpx.Timeout(self._settings.HTTP_TIMEOUT, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client gracefully."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def set_access_token(self, token: str) -> None:
        """Swap in a refreshed access token."""
        self._access_token = token

    @property
    def rate_limited_for(self) -> float:
        """Seconds until calls are allowed again (0 when not rate limited)."""
        return max(0.0, self._rate_limit_until - time.monotonic())

    # -- transport -----------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if (wait := self.rate_limited_for) > 0:
            raise RateLimited(wait)

        client = await self._ensure_client()
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            log.warning("Spotify %s %s failed: %s", method, url, exc)
            raise TransientNetworkError(str(exc)) from exc

        if resp.is_success:
            return resp

        status = resp.status_code
        detail = _error_message(resp)
        if status in (401, 403):
            raise CredentialRevoked(detail, status_code=status)
        if status == 404:
            raise ResourceMissing(detail, status_code=status)
        if status == 429:
            retry_after = _retry_after(resp)
            self._rate_limit_until = time.monotonic() + retry_after
            log.warning("Spotify rate limit hit, backing off %.0fs", retry_after)
            raise RateLimited(retry_after)
        if status >= 500:
            raise TransientNetworkError(detail, status_code=status)
        raise PlatformError(detail, status_code=status)

    # -- playback ------------------------------------------------------------

    async def fetch_recent_plays(self, limit: int = 50) -> list[TrackPlayRecord]:
        """GET /me/player/recently-played (Spotify caps *limit* at 50)."""
        resp = await self._request(
            "GET", "/me/player/recently-played", params={"limit": min(limit, 50)},
        )
        items = _json(resp).get("items") or []
        tracks = []
        for entry in items:
            track = entry.get("track") or {}
            if not track.get("id"):
                continue
            tracks.append(track_from_api(track, _parse_played_at(entry.get("played_at"))))
        return tracks

    async def fetch_currently_playing(self) -> TrackPlayRecord | None:
        """GET /me/player/currently-playing.  None when nothing is playing."""
        resp = await self._request("GET", "/me/player/currently-playing")
        if resp.status_code == 204 or not resp.content:
            return None
        data = _json(resp)
        item = data.get("item") or {}
        if not data.get("is_playing") or item.get("type", "track") != "track" or not item.get("id"):
            return None
        return track_from_api(item, now_ms())

    async def fetch_available_devices(self) -> list[PlaybackDevice]:
        resp = await self._request("GET", "/me/player/devices")
        return [
            PlaybackDevice.from_api(d)
            for d in _json(resp).get("devices") or []
            if d.get("id")
        ]

    async def fetch_active_device(self) -> PlaybackDevice | None:
        """GET /me/player.  None when there is no active playback session."""
        resp = await self._request("GET", "/me/player")
        if resp.status_code == 204 or not resp.content:
            return None
        device = _json(resp).get("device") or {}
        if not device.get("id"):
            return None
        return PlaybackDevice.from_api(device)

    # -- playlists -----------------------------------------------------------

    async def find_resource_by_name(self, name: str, owner_id: str | None = None) -> str | None:
        """Return the id of the user's playlist called *name*, if any.

        ``/me/playlists`` also lists followed playlists; with *owner_id*
        only playlists owned by that user match.
        """
        url: str | None = "/me/playlists"
        params: dict[str, Any] | None = {"limit": 50}
        while url:
            resp = await self._request("GET", url, params=params)
            data = _json(resp)
            for playlist in data.get("items") or []:
                if not playlist or playlist.get("name") != name or not playlist.get("id"):
                    continue
                if owner_id is not None and (playlist.get("owner") or {}).get("id") != owner_id:
                    continue
                return playlist["id"]
            url, params = data.get("next"), None
        return None

    async def fetch_resource(self, resource_id: str) -> dict[str, Any] | None:
        """Validation read: the playlist's id and name, or None if it is gone."""
        try:
            resp = await self._request(
                "GET", f"/playlists/{resource_id}", params={"fields": "id,name"},
            )
        except ResourceMissing:
            return None
        return _json(resp)

    async def create_resource(self, owner_id: str, name: str) -> str:
        """POST /users/{owner_id}/playlists; returns the new playlist id."""
        resp = await self._request(
            "POST",
            f"/users/{owner_id}/playlists",
            json={
                "name": name,
                "public": False,
                "collaborative": False,
                "description": _PLAYLIST_DESCRIPTION,
            },
        )
        playlist_id = _json(resp).get("id")
        if not playlist_id:
            raise TransientNetworkError("Playlist created without an id", status_code=resp.status_code)
        log.info("Created playlist %r (%s)", name, playlist_id)
        return playlist_id

    async def add_item_to_resource(self, resource_id: str, item_uri: str) -> str | None:
        """Append *item_uri* to the playlist; returns the snapshot id."""
        resp = await self._request(
            "POST", f"/playlists/{resource_id}/tracks", json={"uris": [item_uri]},
        )
        return _json(resp).get("snapshot_id")

    async def remove_item_from_resource(self, resource_id: str, item_uri: str) -> str | None:
        resp = await self._request(
            "DELETE",
            f"/playlists/{resource_id}/tracks",
            json={"tracks": [{"uri": item_uri}]},
        )
        return _json(resp).get("snapshot_id")

    async def fetch_resource_items(self, resource_id: str) -> list[str]:
        """Return the URIs of every track in the playlist."""
        uris: list[str] = []
        url: str | None = f"/playlists/{resource_id}/tracks"
        params: dict[str, Any] | None = {"limit": 100, "fields": "items(track(uri)),next"}
        while url:
            resp = await self._request("GET", url, params=params)
            data = _json(resp)
            for entry in data.get("items") or []:
                uri = (entry.get("track") or {}).get("uri")
                if uri:
                    uris.append(uri)
            url, params = data.get("next"), None
        return uris


def _json(resp: httpx.Response) -> dict[str, Any]:
    """Decode a success body; malformed bodies count as transient failures."""
    try:
        body = resp.json()
    except ValueError as exc:
        raise TransientNetworkError(
            f"Malformed response body: {exc}", status_code=resp.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise TransientNetworkError("Unexpected response body", status_code=resp.status_code)
    return body


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return f"HTTP {resp.status_code}: {error.get('message', '')}"
    return f"HTTP {resp.status_code}: {error or resp.text}"


def _retry_after(resp: httpx.Response) -> float:
    try:
        return float(resp.headers.get("Retry-After", _DEFAULT_RETRY_AFTER))
    except ValueError:
        return _DEFAULT_RETRY_AFTER
