"""Tests for streamshield.spotify (REST client over httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from streamshield.config import Settings
from streamshield.errors import (
    CredentialRevoked,
    PlatformError,
    RateLimited,
    ResourceMissing,
    TransientNetworkError,
)
from streamshield.spotify import SpotifyClient

API = "https://api.spotify.test/v1"

TRACK = {
    "id": "t1",
    "type": "track",
    "name": "Song",
    "duration_ms": 200_000,
    "artists": [{"name": "A"}, {"name": "B"}],
    "album": {"name": "Album", "images": [{"url": "https://img/1"}]},
}


def _client(handler) -> SpotifyClient:
    settings = Settings(SPOTIFY_API_BASE=API, SPOTIFY_ACCESS_TOKEN="tok")
    client = SpotifyClient(settings)
    # Inject mock transport
    client._client = httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(handler))
    return client


async def test_recent_plays() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        captured["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"items": [
            {"track": TRACK, "played_at": "2026-01-05T12:00:00.000Z"},
            {"track": {"id": None}, "played_at": "2026-01-05T11:00:00Z"},
        ]})

    client = _client(handler)
    tracks = await client.fetch_recent_plays(limit=80)

    assert captured["url"].path.endswith("/me/player/recently-played")
    assert captured["url"].params["limit"] == "50"
    assert captured["auth"] == "Bearer tok"
    assert len(tracks) == 1
    track = tracks[0]
    assert (track.id, track.artist, track.album_art) == ("t1", "A, B", "https://img/1")
    assert track.timestamp == 1_767_614_400_000
    await client.close()


async def test_currently_playing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"is_playing": True, "item": TRACK})

    client = _client(handler)
    track = await client.fetch_currently_playing()

    assert track is not None and track.id == "t1"
    assert track.timestamp > 0
    await client.close()


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(204),
        httpx.Response(200, json={"is_playing": False, "item": TRACK}),
        httpx.Response(200, json={"is_playing": True, "item": {**TRACK, "type": "episode"}}),
    ],
)
async def test_nothing_playing(response: httpx.Response) -> None:
    client = _client(lambda request: response)
    assert await client.fetch_currently_playing() is None
    await client.close()


async def test_active_device() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/me/player")
        return httpx.Response(200, json={"device": {
            "id": "dev-1", "name": "Kitchen", "type": "Speaker", "is_active": True,
        }})

    client = _client(handler)
    device = await client.fetch_active_device()

    assert device is not None
    assert (device.id, device.name, device.is_active) == ("dev-1", "Kitchen", True)
    await client.close()


async def test_find_playlist_follows_pages() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "offset" not in request.url.params:
            return httpx.Response(200, json={
                "items": [{"id": "p1", "name": "Other"}],
                "next": f"{API}/me/playlists?offset=50&limit=50",
            })
        return httpx.Response(200, json={"items": [{"id": "p2", "name": "Shield"}], "next": None})

    client = _client(handler)
    assert await client.find_resource_by_name("Shield") == "p2"
    assert await client.find_resource_by_name("Missing") is None
    await client.close()


async def test_find_playlist_skips_followed_playlists() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [
            {"id": "theirs", "name": "Shield", "owner": {"id": "bob"}},
            {"id": "mine", "name": "Shield", "owner": {"id": "alice"}},
        ], "next": None})

    client = _client(handler)
    assert await client.find_resource_by_name("Shield", owner_id="alice") == "mine"
    assert await client.find_resource_by_name("Shield", owner_id="carol") is None
    await client.close()


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(201, content=b"<html>oops</html>"),
        httpx.Response(201, json=["not", "an", "object"]),
        httpx.Response(201, json={"name": "Shield"}),
    ],
)
async def test_malformed_create_body_is_transient(response: httpx.Response) -> None:
    client = _client(lambda request: response)

    with pytest.raises(TransientNetworkError):
        await client.create_resource("alice", "Shield")
    await client.close()


async def test_create_and_add() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path.endswith("/users/alice/playlists"):
            return httpx.Response(201, json={"id": "new"})
        return httpx.Response(201, json={"snapshot_id": "s1"})

    client = _client(handler)
    playlist_id = await client.create_resource("alice", "Shield")
    snapshot = await client.add_item_to_resource(playlist_id, "spotify:track:t1")

    assert playlist_id == "new"
    assert snapshot == "s1"
    assert bodies[0][2]["public"] is False
    assert bodies[1][2] == {"uris": ["spotify:track:t1"]}
    await client.close()


async def test_fetch_resource_missing_returns_none() -> None:
    client = _client(lambda request: httpx.Response(404, json={"error": {"message": "Not found"}}))
    assert await client.fetch_resource("gone") is None
    await client.close()


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, CredentialRevoked),
        (404, ResourceMissing),
        (500, TransientNetworkError),
        (503, TransientNetworkError),
        (403, CredentialRevoked),
        (400, PlatformError),
    ],
)
async def test_error_classification(status: int, error: type[Exception]) -> None:
    client = _client(lambda request: httpx.Response(status, json={"error": {"message": "nope"}}))

    with pytest.raises(error) as exc_info:
        await client.add_item_to_resource("p1", "spotify:track:t1")

    assert exc_info.value.status_code == status
    await client.close()


async def test_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(TransientNetworkError):
        await client.fetch_recent_plays()
    await client.close()


async def test_rate_limit_backs_off() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "30"})

    client = _client(handler)
    with pytest.raises(RateLimited) as exc_info:
        await client.fetch_recent_plays()
    assert exc_info.value.retry_after == 30

    # Refused locally until Retry-After passes
    with pytest.raises(RateLimited):
        await client.fetch_recent_plays()
    assert len(calls) == 1
    assert client.rate_limited_for > 0
    await client.close()
