"""Tests for streamshield.config."""

from __future__ import annotations

from pathlib import Path

import pytest

from streamshield.config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)  # no stray .env
    for name in ("SPOTIFY_ACCESS_TOKEN", "SPOTIFY_USER_ID", "RULE_AUTO_DEACTIVATE"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings()

    assert settings.SPOTIFY_API_BASE == "https://api.spotify.com/v1"
    assert settings.PLAYBACK_POLL_INTERVAL == 30
    assert settings.DEVICE_RULE_INTERVAL == 30
    assert settings.TIME_RULE_INTERVAL == 15 * 60
    assert settings.SYNC_INTERVAL == 15 * 60
    assert settings.BACKUP_INTERVAL == 60 * 60
    assert settings.CONSOLIDATION_INTERVAL == 30 * 60
    assert settings.RULE_AUTO_DEACTIVATE is False
    assert settings.is_authenticated is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SPOTIFY_ACCESS_TOKEN", "tok")
    monkeypatch.setenv("SPOTIFY_USER_ID", "alice")
    monkeypatch.setenv("SYNC_INTERVAL", "60")
    monkeypatch.setenv("RULE_AUTO_DEACTIVATE", "true")

    settings = Settings()

    assert settings.is_authenticated is True
    assert settings.SYNC_INTERVAL == 60
    assert settings.RULE_AUTO_DEACTIVATE is True


def test_data_paths(tmp_path: Path) -> None:
    settings = Settings(DATA_DIR=tmp_path / "data")

    assert settings.local_db_path == tmp_path / "data" / "streamshield.db"
    assert (tmp_path / "data").is_dir()
    assert settings.remote_database_url == (
        f"sqlite+aiosqlite:///{tmp_path / 'data' / 'remote_backup.db'}"
    )


def test_explicit_database_url(tmp_path: Path) -> None:
    url = "postgresql+asyncpg://u:p@db/streamshield"
    settings = Settings(DATA_DIR=tmp_path, DATABASE_URL=url)

    assert settings.remote_database_url == url
