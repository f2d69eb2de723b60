"""Shared fixtures for the StreamShield test suite.

The remote store runs on SQLite in memory (aiosqlite + StaticPool); Spotify
is replaced by :class:`FakeSpotify` unless a test drives the real client
through ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from streamshield.errors import PlatformError, ResourceMissing
from streamshield.local_store import LocalStore
from streamshield.models import TrackPlayRecord
from streamshield.notifier import Notifier
from streamshield.remote import RemoteRepository, init_db
from streamshield.session_tracker import ShieldSessionTracker
from streamshield.spotify import PlaybackDevice

# 2026-01-05 12:00:00 UTC, a Monday
T0 = 1_767_614_400_000


def make_track(track_id: str, timestamp: int = 0, name: str | None = None) -> TrackPlayRecord:
    return TrackPlayRecord(
        id=track_id,
        name=name or f"Song {track_id}",
        artist="Artist",
        album="Album",
        duration=180_000,
        timestamp=timestamp,
    )


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def notify(self, title: str, message: str) -> None:
        self.messages.append((title, message))


class FakeSpotify:
    """In-memory stand-in for :class:`SpotifyClient`.

    ``delay`` makes every playlist call yield to the loop first, so
    concurrent callers really interleave.  ``fail_adds`` maps track ids to
    the exception their add should raise.
    """

    def __init__(self, *, delay: float = 0.0) -> None:
        self.delay = delay
        self.playlists: dict[str, dict] = {}
        self.items: dict[str, list[str]] = {}
        self.fail_adds: dict[str, Exception] = {}
        self.search_error: Exception | None = None
        self.active_device: PlaybackDevice | None = None
        self.device_error: Exception | None = None
        self.currently_playing: TrackPlayRecord | None = None
        self.recent: list[TrackPlayRecord] = []
        self.calls: list[str] = []

    async def _tick(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(self.delay)

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def find_resource_by_name(self, name: str, owner_id: str | None = None) -> str | None:
        await self._tick("find")
        if self.search_error is not None:
            raise self.search_error
        return next(
            (pid for pid, p in self.playlists.items()
             if p["name"] == name and owner_id in (None, p.get("owner"))),
            None,
        )

    async def fetch_resource(self, resource_id: str) -> dict | None:
        await self._tick("fetch")
        return self.playlists.get(resource_id)

    async def create_resource(self, owner_id: str, name: str) -> str:
        await self._tick("create")
        pid = f"pl{self.count('create')}"
        self.playlists[pid] = {"id": pid, "name": name, "owner": owner_id}
        self.items[pid] = []
        return pid

    async def add_item_to_resource(self, resource_id: str, item_uri: str) -> str:
        await self._tick("add")
        track_id = item_uri.rsplit(":", 1)[-1]
        if track_id in self.fail_adds:
            raise self.fail_adds[track_id]
        if resource_id not in self.playlists:
            raise ResourceMissing("HTTP 404: Not found", status_code=404)
        self.items[resource_id].append(item_uri)
        return "snap"

    async def remove_item_from_resource(self, resource_id: str, item_uri: str) -> str:
        await self._tick("remove")
        self.items[resource_id] = [u for u in self.items[resource_id] if u != item_uri]
        return "snap"

    async def fetch_resource_items(self, resource_id: str) -> list[str]:
        await self._tick("items")
        return list(self.items.get(resource_id, []))

    async def fetch_active_device(self) -> PlaybackDevice | None:
        await self._tick("device")
        if self.device_error is not None:
            raise self.device_error
        return self.active_device

    async def fetch_currently_playing(self) -> TrackPlayRecord | None:
        await self._tick("current")
        return self.currently_playing

    async def fetch_recent_plays(self, limit: int = 50) -> list[TrackPlayRecord]:
        await self._tick("recent")
        return self.recent[:limit]

    async def close(self) -> None:
        pass


def platform_error(status: int = 500) -> PlatformError:
    return PlatformError(f"HTTP {status}", status_code=status)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path) -> LocalStore:
    """A LocalStore backed by a temporary SQLite file."""
    local = LocalStore(tmp_path / "streamshield.db")
    yield local
    local.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def spotify() -> FakeSpotify:
    return FakeSpotify()


@pytest.fixture()
def tracker(store: LocalStore, notifier: RecordingNotifier, clock: FakeClock) -> ShieldSessionTracker:
    shield = ShieldSessionTracker(store, notifier, clock=clock)
    yield shield
    shield.teardown()


@pytest_asyncio.fixture()
async def engine():
    """In-memory SQLite engine shared across connections."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def repository(engine) -> RemoteRepository:
    return RemoteRepository(engine)
