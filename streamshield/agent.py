"""StreamShield agent: main entry point.

Wires every subsystem together and runs them on one event loop:

* **ShieldSessionTracker**: shield on/off, sessions, auto-disable countdown
* **ProtectionMechanism**: copies shielded plays into the exclusion playlist
* **RuleEngine**: time and device rules that switch the shield on
* **HistoryReconciler**: local play log and the merged history view
* **CloudSyncGateway**: push/pull against the remote backup
* **PeriodicScheduler**: the background jobs driving all of the above

Run with ``python -m streamshield`` (add ``-v`` for debug logging).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from .cloud_sync import CloudSyncGateway
from .config import Settings
from .errors import CredentialRevoked, PlatformError, RemoteStoreError
from .history import PLATFORM_FETCH_LIMIT, HistoryReconciler
from .local_store import LocalStore
from .notifier import LoggingNotifier, Notifier
from .protection import ProtectionMechanism
from .remote import RemoteRepository, create_engine, init_db
from .rule_engine import RuleEngine
from .rules import RuleBook
from .scheduler import PeriodicScheduler
from .session_tracker import ShieldSessionTracker
from .spotify import SpotifyClient

log = logging.getLogger("streamshield")

PLAYBACK_JOB = "playback-poll"


class StreamShieldAgent:
    """Central coordinator that wires all subsystems together."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: LocalStore | None = None,
        spotify: SpotifyClient | None = None,
        remote: RemoteRepository | None = None,
        notifier: Notifier | None = None,
        scheduler: PeriodicScheduler | None = None,
    ) -> None:
        self._settings = settings
        self._user_id = settings.SPOTIFY_USER_ID
        self._engine = None
        if remote is None:
            self._engine = create_engine(settings.remote_database_url)
            remote = RemoteRepository(self._engine)

        self.store = store or LocalStore(settings.local_db_path)
        self.spotify = spotify or SpotifyClient(settings)
        self.remote = remote
        self.notifier = notifier or LoggingNotifier()
        self.scheduler = scheduler or PeriodicScheduler()

        self.tracker = ShieldSessionTracker(self.store, self.notifier)
        self.rules = RuleBook(self.store)
        self.protection = ProtectionMechanism(
            self.spotify,
            self.store,
            self.notifier,
            owner_id=self._user_id,
            playlist_name=settings.EXCLUSION_PLAYLIST_NAME,
        )
        self.history = HistoryReconciler(self.store, self.remote, self.tracker)
        self.rule_engine = RuleEngine(
            self.tracker,
            self.rules,
            self.spotify,
            self.scheduler,
            device_interval=settings.DEVICE_RULE_INTERVAL,
            time_interval=settings.TIME_RULE_INTERVAL,
            auto_deactivate=settings.RULE_AUTO_DEACTIVATE,
            on_credential_revoked=self._on_credential_revoked,
        )
        self.sync = CloudSyncGateway(
            self.remote,
            self.tracker,
            self.rules,
            self.history,
            self.scheduler,
            sync_interval=settings.SYNC_INTERVAL,
            backup_interval=settings.BACKUP_INTERVAL,
            consolidation_interval=settings.CONSOLIDATION_INTERVAL,
        )

        self.tracker.add_listener(self.protection.on_shield_change)

        self._stop_event = asyncio.Event()
        self._last_track_id: str | None = None
        self.logged_out = False

    # -- lifecycle -----------------------------------------------------------

    async def setup(self) -> None:
        """Restore local state and run the login-time sync."""
        self.rules.load()
        self.tracker.load()
        if self._engine is not None:
            await init_db(self._engine)
        try:
            await self.sync.initialize(self._user_id)
        except RemoteStoreError:
            log.error("Remote profile unavailable, running without cloud backup")
        else:
            self.sync.start(self._user_id)

        self.rule_engine.start()
        self.scheduler.schedule(
            PLAYBACK_JOB, self._settings.PLAYBACK_POLL_INTERVAL, self.poll_playback,
        )

    async def start(self) -> None:
        """Start all subsystems and run until stopped."""
        log.info("StreamShield agent starting ...")
        if not self._settings.is_authenticated:
            log.error(
                "No Spotify credentials. Set SPOTIFY_ACCESS_TOKEN and SPOTIFY_USER_ID."
            )
            return

        await self.setup()
        self.scheduler.start()
        log.info("All subsystems started.")

        await self._stop_event.wait()

        log.info("Shutdown requested, stopping jobs ...")
        await self.shutdown()
        log.info("StreamShield agent stopped.")

    async def shutdown(self) -> None:
        self.rule_engine.stop()
        self.sync.stop()
        await self.scheduler.stop()
        self.tracker.teardown()
        await self.spotify.close()
        if self._engine is not None:
            await self._engine.dispose()
        self.store.close()

    def request_stop(self) -> None:
        log.info("Stop requested.")
        self._stop_event.set()

    # -- playback poll -------------------------------------------------------

    async def poll_playback(self) -> None:
        """Log the playing track and copy shielded plays into the playlist."""
        try:
            current = await self.spotify.fetch_currently_playing()
            if current is not None and current.id != self._last_track_id:
                self._last_track_id = current.id
                self.history.record_play(current)
            if not self.tracker.is_active:
                return
            if current is not None:
                await self.protection.process_current_track(current)
            recent = await self.spotify.fetch_recent_plays(PLATFORM_FETCH_LIMIT)
            await self.protection.process_recent_tracks(recent)
        except CredentialRevoked as exc:
            self._on_credential_revoked(exc)
        except PlatformError as exc:
            log.debug("Playback poll skipped: %s", exc)

    # -- forced logout -------------------------------------------------------

    def _on_credential_revoked(self, exc: CredentialRevoked) -> None:
        if self.logged_out:
            return
        self.logged_out = True
        log.error("Spotify credentials revoked (%s), logging out.", exc)
        self.notifier.notify(
            "Signed out", "Your Spotify session has expired. Please sign in again.",
        )
        self.request_stop()


# ---------------------------------------------------------------------------
# Console entry point
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)


def main() -> None:
    """CLI entry point for the StreamShield agent."""
    parser = argparse.ArgumentParser(description="StreamShield agent")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging.",
    )
    args = parser.parse_args()

    _setup_logging(verbose=args.verbose)
    _run_agent_loop(StreamShieldAgent(Settings()))


def _run_agent_loop(agent: StreamShieldAgent) -> None:
    loop = asyncio.new_event_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.request_stop)
        except NotImplementedError:
            # Windows has no add_signal_handler
            signal.signal(sig, lambda s, f: agent.request_stop())

    try:
        loop.run_until_complete(agent.start())
    except KeyboardInterrupt:
        agent.request_stop()
    finally:
        loop.close()


if __name__ == "__main__":
    main()
