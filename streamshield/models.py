"""Plain data models shared across the StreamShield services.

Timestamps are milliseconds since the Unix epoch (UTC).
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SessionSource = Literal["manual", "time_rule", "device_rule"]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TrackPlayRecord:
    """One play of a track.  Identity is the Spotify track id."""

    id: str
    name: str
    artist: str
    album: str
    album_art: str = ""
    duration: int = 0  # ms
    timestamp: int = 0  # when it was played

    @property
    def uri(self) -> str:
        return f"spotify:track:{self.id}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackPlayRecord:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            artist=data.get("artist", ""),
            album=data.get("album", ""),
            album_art=data.get("album_art") or "",
            duration=int(data.get("duration") or 0),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """A reconciled history row.  ``shielded`` is computed at read time."""

    track: TrackPlayRecord
    shielded: bool


# ---------------------------------------------------------------------------
# Shield sessions
# ---------------------------------------------------------------------------
@dataclass
class ShieldSession:
    """A shielded interval.  ``end`` is None while the session is open."""

    start: int
    end: int | None = None
    source: SessionSource = "manual"

    @property
    def is_open(self) -> bool:
        return self.end is None

    def covers(self, timestamp: int) -> bool:
        return timestamp >= self.start and (self.end is None or timestamp <= self.end)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "source": self.source}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShieldSession:
        end = data.get("end")
        return cls(
            start=int(data["start"]),
            end=int(end) if end is not None else None,
            source=data.get("source") or "manual",
        )


@dataclass
class ShieldPreferences:
    """User preferences for shield duration and auto-disable."""

    shield_duration: int = 720  # minutes, 0 = unlimited
    default_shield_duration: int = 720
    auto_disable_enabled: bool = True
    reset_duration_on_deactivation: bool = True
    auto_disable_presets: list[int] = field(default_factory=lambda: [30, 60, 120, 240])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShieldPreferences:
        prefs = cls()
        for key, val in data.items():
            if hasattr(prefs, key):
                setattr(prefs, key, val)
        return prefs


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------
@dataclass
class SyncState:
    """Cloud sync status for display."""

    is_syncing: bool = False
    last_sync_at: int | None = None
