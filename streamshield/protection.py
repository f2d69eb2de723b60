"""Protection mechanism: copy shielded plays into the exclusion playlist.

Spotify offers no API to keep a play out of the taste profile.  What it
does offer is a per-playlist "Exclude from your taste profile" switch in its
own apps.  StreamShield therefore keeps one private playlist, asks the user
once to flip that switch on it, and while the shield is active appends every
track played to that playlist, at most once per activation.

Resolution of the playlist is single-flight: concurrent callers share one
in-flight task, so two pollers can never create two playlists.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import CredentialRevoked, PlatformError, ResourceMissing
from .local_store import INSTRUCTIONS_SHOWN_KEY, LocalStore
from .models import ShieldSession, TrackPlayRecord, now_ms
from .notifier import Notifier
from .spotify import SpotifyClient

log = logging.getLogger(__name__)

EXCLUSION_INSTRUCTIONS = (
    "StreamShield created the playlist {name!r}. Open it in Spotify, tap the "
    "'...' menu and choose 'Exclude from your taste profile' so shielded "
    "listening stays out of your recommendations."
)


class ProtectionMechanism:
    """Populates the exclusion playlist while the shield is active."""

    def __init__(
        self,
        spotify: SpotifyClient,
        store: LocalStore,
        notifier: Notifier,
        *,
        owner_id: str,
        playlist_name: str,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._spotify = spotify
        self._store = store
        self._notifier = notifier
        self._owner_id = owner_id
        self._playlist_name = playlist_name
        self._clock = clock

        self._active = False
        self._activated_at: int | None = None
        self._resource_id: str | None = None
        self._processed: set[str] = set()
        self._resolving: asyncio.Task[str | None] | None = None
        self._adding: dict[str, asyncio.Task[bool]] = {}

    # -- state ---------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def activated_at(self) -> int | None:
        return self._activated_at

    @property
    def resource_id(self) -> str | None:
        return self._resource_id

    @property
    def processed_track_ids(self) -> frozenset[str]:
        return frozenset(self._processed)

    def activate(self, activated_at: int | None = None) -> None:
        self._active = True
        self._activated_at = activated_at if activated_at is not None else self._clock()
        self._processed.clear()

    def deactivate(self) -> None:
        self._active = False
        self._activated_at = None

    def on_shield_change(self, active: bool, session: ShieldSession) -> None:
        """Session tracker listener."""
        if active:
            self.activate(session.start)
        else:
            self.deactivate()

    @property
    def instructions_shown(self) -> bool:
        return bool(self._store.get(INSTRUCTIONS_SHOWN_KEY, False))

    # -- playlist resolution -------------------------------------------------

    async def ensure_valid_exclusion_resource(self) -> str | None:
        """Return the exclusion playlist id, resolving or creating it.

        Returns None on a transient failure.  Revoked credentials propagate.
        """
        if self._resolving is None:
            self._resolving = asyncio.create_task(self._resolve(), name="resolve-exclusion")
            self._resolving.add_done_callback(self._clear_resolving)
        return await asyncio.shield(self._resolving)

    def _clear_resolving(self, task: asyncio.Task) -> None:
        if self._resolving is task:
            self._resolving = None
        if not task.cancelled():
            # Mark the exception retrieved; every waiter already saw it.
            task.exception()

    async def _resolve(self) -> str | None:
        try:
            if self._resource_id is not None:
                if await self._spotify.fetch_resource(self._resource_id) is not None:
                    return self._resource_id
                log.info("Exclusion playlist %s is gone, resolving again", self._resource_id)
                self._resource_id = None

            resource_id = await self._spotify.find_resource_by_name(
                self._playlist_name, owner_id=self._owner_id,
            )
            if resource_id is None:
                resource_id = await self._spotify.create_resource(
                    self._owner_id, self._playlist_name,
                )
                self._announce_created()
        except CredentialRevoked:
            raise
        except PlatformError as exc:
            log.warning("Could not resolve exclusion playlist: %s", exc)
            return None

        self._resource_id = resource_id
        return resource_id

    def _announce_created(self) -> None:
        if self.instructions_shown:
            return
        self._notifier.notify(
            "Exclusion playlist created",
            EXCLUSION_INSTRUCTIONS.format(name=self._playlist_name),
        )
        self._store.set(INSTRUCTIONS_SHOWN_KEY, True)

    # -- processing ----------------------------------------------------------

    async def process_current_track(self, track: TrackPlayRecord) -> bool:
        """Add *track* to the exclusion playlist once per activation.

        Returns False when inactive or on failure; True when the track is (or
        already was) in the playlist for this activation.
        """
        if not self._active or not track.id:
            return False
        if track.id in self._processed:
            return True
        if (pending := self._adding.get(track.id)) is not None:
            return await asyncio.shield(pending)

        task = asyncio.create_task(self._add(track), name=f"shield-{track.id}")
        self._adding[track.id] = task
        task.add_done_callback(lambda t, track_id=track.id: self._forget_add(track_id, t))
        return await asyncio.shield(task)

    def _forget_add(self, track_id: str, task: asyncio.Task) -> None:
        if self._adding.get(track_id) is task:
            del self._adding[track_id]

    async def _add(self, track: TrackPlayRecord) -> bool:
        resource_id = await self.ensure_valid_exclusion_resource()
        if resource_id is None:
            return False

        try:
            await self._spotify.add_item_to_resource(resource_id, track.uri)
        except CredentialRevoked:
            raise
        except ResourceMissing:
            log.warning("Exclusion playlist vanished while adding %s", track.id)
            if self._resource_id == resource_id:
                self._resource_id = None
            return False
        except PlatformError as exc:
            log.warning("Failed to add %s to exclusion playlist: %s", track.id, exc)
            return False

        # The shield may have been toggled while we were awaiting.
        if self._active:
            self._processed.add(track.id)
        log.info("Shielded %r by %s", track.name, track.artist)
        return True

    async def process_recent_tracks(self, tracks: list[TrackPlayRecord]) -> int:
        """Add recently played tracks from this activation, one at a time.

        Individual failures are logged and skipped; a skipped track stays
        eligible on the next pass.  Returns the number of tracks added.
        """
        if not self._active or self._activated_at is None:
            return 0
        activated_at = self._activated_at
        pending: dict[str, TrackPlayRecord] = {}
        for t in tracks:
            if t.id and t.timestamp > activated_at and t.id not in self._processed:
                pending.setdefault(t.id, t)

        added = 0
        for track in pending.values():
            if not self._active:
                break
            if track.id in self._processed:
                continue
            if await self.process_current_track(track):
                added += 1
        if pending:
            log.debug("Processed recent tracks: %d/%d added", added, len(pending))
        return added

    async def clear_exclusion_resource(self) -> bool:
        """Remove every track from the exclusion playlist."""
        if self._resource_id is None:
            return False
        try:
            uris = await self._spotify.fetch_resource_items(self._resource_id)
            for uri in dict.fromkeys(uris):
                await self._spotify.remove_item_from_resource(self._resource_id, uri)
        except CredentialRevoked:
            raise
        except PlatformError as exc:
            log.warning("Failed to clear exclusion playlist: %s", exc)
            return False
        self._processed.clear()
        return True
