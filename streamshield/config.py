"""StreamShield settings.

Loaded from environment variables and an optional ``.env`` file.  Polling
intervals are in seconds.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_DATA_DIR = Path.home() / ".config" / "StreamShield"


class Settings(BaseSettings):
    """Runtime settings for the StreamShield agent."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Spotify Web API
    SPOTIFY_API_BASE: str = "https://api.spotify.com/v1"
    SPOTIFY_ACCESS_TOKEN: str = ""
    SPOTIFY_USER_ID: str = ""
    HTTP_TIMEOUT: float = 30.0

    # Storage
    DATA_DIR: Path = _DEFAULT_DATA_DIR
    DATABASE_URL: str = ""

    # Protection
    EXCLUSION_PLAYLIST_NAME: str = "StreamShield (Excluded from Recommendations)"

    # Schedules
    PLAYBACK_POLL_INTERVAL: int = 30
    DEVICE_RULE_INTERVAL: int = 30
    TIME_RULE_INTERVAL: int = 15 * 60
    SYNC_INTERVAL: int = 15 * 60
    BACKUP_INTERVAL: int = 60 * 60
    CONSOLIDATION_INTERVAL: int = 30 * 60

    # Deactivate rule-started sessions once no rule of that kind matches
    RULE_AUTO_DEACTIVATE: bool = False

    @property
    def is_authenticated(self) -> bool:
        return bool(self.SPOTIFY_ACCESS_TOKEN and self.SPOTIFY_USER_ID)

    def data_path(self) -> Path:
        """Return the data directory, creating it if needed."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        return self.DATA_DIR

    @property
    def local_db_path(self) -> Path:
        return self.data_path() / "streamshield.db"

    @property
    def remote_database_url(self) -> str:
        """Remote store URL; falls back to a SQLite file in the data dir."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite+aiosqlite:///{self.data_path() / 'remote_backup.db'}"
