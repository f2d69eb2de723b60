"""Tests for the StreamShieldAgent composition root."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from streamshield.agent import PLAYBACK_JOB, StreamShieldAgent
from streamshield.cloud_sync import SYNC_JOB
from streamshield.config import Settings
from streamshield.errors import CredentialRevoked, RemoteStoreError
from streamshield.local_store import LocalStore
from streamshield.remote import RemoteRepository
from streamshield.rule_engine import DEVICE_JOB, TIME_JOB

from conftest import FakeSpotify, RecordingNotifier, make_track


@pytest.fixture()
def remote() -> AsyncMock:
    repo = AsyncMock(spec=RemoteRepository)
    repo.fetch_sessions.return_value = []
    repo.fetch_rules.return_value = ([], [])
    repo.fetch_history.return_value = []
    return repo


@pytest.fixture()
def agent(tmp_path: Path, store: LocalStore, spotify: FakeSpotify, remote: AsyncMock,
          notifier: RecordingNotifier) -> StreamShieldAgent:
    settings = Settings(
        DATA_DIR=tmp_path, SPOTIFY_ACCESS_TOKEN="tok", SPOTIFY_USER_ID="alice",
    )
    shield = StreamShieldAgent(
        settings, store=store, spotify=spotify, remote=remote, notifier=notifier,
    )
    yield shield
    shield.tracker.teardown()


async def test_setup_schedules_jobs(agent: StreamShieldAgent, remote: AsyncMock) -> None:
    await agent.setup()

    remote.ensure_user_profile.assert_awaited_once_with("alice")
    assert set(agent.scheduler.job_names) >= {PLAYBACK_JOB, DEVICE_JOB, TIME_JOB, SYNC_JOB}


async def test_setup_without_remote_profile(agent: StreamShieldAgent, remote: AsyncMock) -> None:
    remote.ensure_user_profile.side_effect = RemoteStoreError("offline")

    await agent.setup()

    assert SYNC_JOB not in agent.scheduler.job_names
    assert PLAYBACK_JOB in agent.scheduler.job_names


async def test_poll_records_play_once(agent: StreamShieldAgent, spotify: FakeSpotify) -> None:
    spotify.currently_playing = make_track("a")

    await agent.poll_playback()
    await agent.poll_playback()

    assert [t.id for t in agent.history.local_tracks()] == ["a"]
    # Inactive shield: nothing reaches the playlist
    assert spotify.count("add") == 0


async def test_poll_shields_while_active(agent: StreamShieldAgent, spotify: FakeSpotify) -> None:
    agent.tracker.activate()
    assert agent.protection.is_active

    spotify.currently_playing = make_track("now")
    spotify.recent = [make_track("earlier", agent.tracker.activated_at + 1)]

    await agent.poll_playback()

    assert sorted(spotify.items["pl1"]) == ["spotify:track:earlier", "spotify:track:now"]


async def test_revoked_credentials_force_logout(agent: StreamShieldAgent, spotify: FakeSpotify,
                                                notifier: RecordingNotifier) -> None:
    spotify.fetch_currently_playing = AsyncMock(
        side_effect=CredentialRevoked("HTTP 401", status_code=401),
    )

    await agent.poll_playback()
    await agent.poll_playback()

    assert agent.logged_out is True
    assert agent._stop_event.is_set()
    assert [title for title, _ in notifier.messages] == ["Signed out"]
