"""Play-history reconciliation.

Merges three sources into one timeline:

* the local cache (the last 200 plays detected on this device),
* the remote backup (up to 200 rows),
* the live Spotify fetch (up to 50 recently played tracks).

Records are deduplicated by track id, keeping the copy with the larger
timestamp, then sorted newest first.  The ``shielded`` tag is computed from
the session tracker at read time and never stored.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .errors import RemoteStoreError
from .local_store import RECENTLY_PLAYED_KEY, LocalStore
from .models import HistoryEntry, TrackPlayRecord, now_ms
from .remote import RemoteRepository
from .session_tracker import ShieldSessionTracker

log = logging.getLogger(__name__)

LOCAL_HISTORY_CAP = 200
REMOTE_FETCH_LIMIT = 200
PLATFORM_FETCH_LIMIT = 50
DISPLAY_LIMIT = 50
STORAGE_LIMIT = 200


def merge_tracks(*sources: Iterable[TrackPlayRecord], limit: int | None = None) -> list[TrackPlayRecord]:
    """Deduplicate by id (larger timestamp wins), newest first.

    Ties are ordered by id, and on an exact timestamp tie for the same id the
    first source wins, so identical inputs always give an identical list.
    """
    by_id: dict[str, TrackPlayRecord] = {}
    for source in sources:
        for track in source:
            if not track.id:
                continue
            existing = by_id.get(track.id)
            if existing is None or track.timestamp > existing.timestamp:
                by_id[track.id] = track
    merged = sorted(by_id.values(), key=lambda t: (-t.timestamp, t.id))
    return merged[:limit] if limit is not None else merged


class HistoryReconciler:
    """Owns the local play log and produces the reconciled history view."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteRepository,
        tracker: ShieldSessionTracker,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._remote = remote
        self._tracker = tracker
        self._clock = clock

    # -- local log -----------------------------------------------------------

    def local_tracks(self) -> list[TrackPlayRecord]:
        raw = self._store.get(RECENTLY_PLAYED_KEY) or []
        tracks = []
        for item in raw:
            try:
                tracks.append(TrackPlayRecord.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return tracks

    def _save_local(self, tracks: list[TrackPlayRecord]) -> None:
        self._store.set(
            RECENTLY_PLAYED_KEY, [t.to_dict() for t in tracks[:LOCAL_HISTORY_CAP]],
        )

    def record_play(self, track: TrackPlayRecord) -> TrackPlayRecord | None:
        """Stamp a detected track with the detection time and log it locally.

        Returns the stored record, or None for a track without an id.
        """
        if not track.id:
            return None
        played = TrackPlayRecord(**{**track.to_dict(), "timestamp": self._clock()})
        tracks = [
            t for t in self.local_tracks()
            if not (t.id == played.id and t.timestamp == played.timestamp)
        ]
        tracks.insert(0, played)
        self._save_local(tracks)
        return played

    def clear(self) -> None:
        self._store.remove(RECENTLY_PLAYED_KEY)

    # -- reconciliation ------------------------------------------------------

    def tag(self, tracks: list[TrackPlayRecord]) -> list[HistoryEntry]:
        return [HistoryEntry(t, self._tracker.is_shielded(t.timestamp)) for t in tracks]

    async def _remote_tracks(self, user_id: str) -> list[TrackPlayRecord] | None:
        try:
            return await self._remote.fetch_history(user_id, REMOTE_FETCH_LIMIT)
        except RemoteStoreError as exc:
            log.warning("Remote history unavailable, merging local + Spotify only: %s", exc)
            return None

    async def merged_tracks(
        self,
        user_id: str,
        platform_tracks: list[TrackPlayRecord],
        *,
        limit: int = STORAGE_LIMIT,
    ) -> list[TrackPlayRecord]:
        local = self.local_tracks()[:LOCAL_HISTORY_CAP]
        remote = await self._remote_tracks(user_id) or []
        return merge_tracks(local, remote, platform_tracks[:PLATFORM_FETCH_LIMIT], limit=limit)

    async def reconcile(
        self,
        user_id: str,
        platform_tracks: list[TrackPlayRecord],
        *,
        limit: int = DISPLAY_LIMIT,
    ) -> list[HistoryEntry]:
        """The display view: merged, newest first, tagged with ``shielded``."""
        return self.tag(await self.merged_tracks(user_id, platform_tracks, limit=limit))

    async def consolidate(self, user_id: str, platform_tracks: list[TrackPlayRecord] | None = None) -> int:
        """Rewrite the local cache with the merged storage view.

        Returns the number of records kept.
        """
        merged = await self.merged_tracks(user_id, platform_tracks or [], limit=STORAGE_LIMIT)
        self._save_local(merged)
        log.debug("Consolidated local history to %d records", len(merged))
        return len(merged)
