"""Cloud sync gateway: push/pull between the local state and the remote backup.

Three jobs run on the scheduler, each isolated from the others:

* **sync** (15 min): push local state, then pull and merge remote state;
* **backup** (60 min): push history, sessions and rules;
* **consolidation** (30 min): rewrite the local history cache from the
  merged local + remote view.

Pushes are upserts on natural keys, so a retried push is harmless.  Pulls
use one additive merge policy for every entity:

* history merges by track id, larger timestamp wins (see ``history``);
* sessions merge by start time, a closed copy beats an open one and the
  later end wins; open sessions this device does not know about are closed,
  because this device is authoritative about whether the shield is on.
  While the shield is on, remote sessions starting after the local open
  session are dropped so that session stays last;
* rules merge by rule id, the local copy wins and remote-only rules are
  added.  Local deletions reach the remote store because the rules push
  prunes, and the periodic job pushes before it pulls.
"""

from __future__ import annotations

import logging
from typing import Callable

from .errors import RemoteStoreError, SyncError
from .history import HistoryReconciler
from .models import ShieldSession, SyncState, now_ms
from .remote import RemoteRepository
from .rules import RuleBook
from .scheduler import PeriodicScheduler
from .schemas import DeviceRule, TimeRule
from .session_tracker import ShieldSessionTracker

log = logging.getLogger(__name__)

SYNC_JOB = "cloud-sync"
BACKUP_JOB = "cloud-backup"
CONSOLIDATION_JOB = "history-consolidation"


def merge_sessions(
    local: list[ShieldSession],
    remote: list[ShieldSession],
    local_active: bool,
) -> list[ShieldSession]:
    """Merge two session lists by start time (see module docstring)."""
    local_open = local[-1].start if local and local[-1].end is None and local_active else None
    merged: dict[int, ShieldSession] = {}
    for s in [*local, *remote]:
        existing = merged.get(s.start)
        if existing is None:
            merged[s.start] = ShieldSession(s.start, s.end, s.source)
        elif s.end is not None and (existing.end is None or s.end > existing.end):
            existing.end = s.end
    if local_open is not None:
        # The local open session stays open and last; it already covers
        # anything the remote store recorded after its start.
        merged = {k: s for k, s in merged.items() if k <= local_open}
        merged[local_open].end = None
    ordered = [merged[k] for k in sorted(merged)]
    for i, s in enumerate(ordered):
        if s.end is None and s.start != local_open:
            s.end = ordered[i + 1].start if i + 1 < len(ordered) else s.start
    return ordered


def merge_rules(local: list, remote: list) -> list:
    """Union by rule id; local copies win, remote-only rules are appended."""
    known = {r.id for r in local}
    extra = sorted((r for r in remote if r.id not in known), key=lambda r: r.id)
    return [*local, *extra]


class CloudSyncGateway:
    """Moves sessions, rules and history between the device and the backup."""

    def __init__(
        self,
        remote: RemoteRepository,
        tracker: ShieldSessionTracker,
        rules: RuleBook,
        history: HistoryReconciler,
        scheduler: PeriodicScheduler,
        *,
        sync_interval: float = 15 * 60,
        backup_interval: float = 60 * 60,
        consolidation_interval: float = 30 * 60,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._remote = remote
        self._tracker = tracker
        self._rules = rules
        self._history = history
        self._scheduler = scheduler
        self._sync_interval = sync_interval
        self._backup_interval = backup_interval
        self._consolidation_interval = consolidation_interval
        self._clock = clock
        self.sync_state = SyncState()

    # -- lifecycle -----------------------------------------------------------

    def start(self, user_id: str) -> None:
        self._scheduler.schedule(SYNC_JOB, self._sync_interval, lambda: self.run_sync(user_id))
        self._scheduler.schedule(BACKUP_JOB, self._backup_interval, lambda: self.run_backup(user_id))
        self._scheduler.schedule(
            CONSOLIDATION_JOB, self._consolidation_interval, lambda: self.run_consolidation(user_id),
        )

    def stop(self) -> None:
        for name in (SYNC_JOB, BACKUP_JOB, CONSOLIDATION_JOB):
            self._scheduler.cancel(name)

    # -- push / pull ---------------------------------------------------------

    async def push_history(self, user_id: str) -> int:
        return await self._remote.upsert_history(user_id, self._history.local_tracks())

    async def push_sessions(self, user_id: str) -> int:
        return await self._remote.upsert_sessions(user_id, self._tracker.sessions)

    async def push_rules(self, user_id: str) -> None:
        await self._remote.upsert_rules(
            user_id, self._rules.time_rules, self._rules.device_rules, prune=True,
        )

    async def push(self, user_id: str) -> None:
        await self.push_sessions(user_id)
        await self.push_rules(user_id)
        await self.push_history(user_id)

    async def pull(self, user_id: str) -> None:
        remote_sessions = await self._remote.fetch_sessions(user_id)
        self._tracker.replace_sessions(
            merge_sessions(self._tracker.sessions, remote_sessions, self._tracker.is_active)
        )
        remote_time, remote_device = await self._remote.fetch_rules(user_id)
        time_rules: list[TimeRule] = merge_rules(self._rules.time_rules, remote_time)
        device_rules: list[DeviceRule] = merge_rules(self._rules.device_rules, remote_device)
        self._rules.replace(time_rules, device_rules)

    # -- jobs ----------------------------------------------------------------

    async def initialize(self, user_id: str) -> bool:
        """Login-time sync: pull remote state, then push the merged result.

        A remote profile that cannot be created raises; anything later
        degrades to local-only operation.
        """
        await self._remote.ensure_user_profile(user_id)
        try:
            await self._run(user_id, pull_first=True)
        except Exception:
            log.warning("Initial sync failed, using local data only", exc_info=True)
            return False
        return True

    async def run_sync(self, user_id: str) -> bool:
        if self.sync_state.is_syncing:
            log.debug("Sync already running, skipping")
            return False
        try:
            await self._run(user_id, pull_first=False)
        except Exception:
            log.warning("Background sync failed", exc_info=True)
            return False
        return True

    async def manual_sync(self, user_id: str) -> None:
        """User-initiated sync; raises :class:`SyncError` so the UI can alert."""
        try:
            await self._run(user_id, pull_first=False)
        except RemoteStoreError as exc:
            raise SyncError(f"Sync failed: {exc}") from exc

    async def run_backup(self, user_id: str) -> bool:
        try:
            await self.push(user_id)
        except Exception:
            log.warning("Background backup failed", exc_info=True)
            return False
        log.debug("Backup complete")
        return True

    async def run_consolidation(self, user_id: str) -> bool:
        try:
            await self._history.consolidate(user_id)
        except Exception:
            log.warning("History consolidation failed", exc_info=True)
            return False
        return True

    async def clear_all_user_data(self, user_id: str) -> None:
        """Delete the remote profile and the local history and sessions."""
        await self._remote.delete_profile(user_id)
        self._history.clear()
        self._tracker.clear_sessions()
        self.sync_state = SyncState()
        log.info("Cleared all data for %s", user_id)

    async def _run(self, user_id: str, *, pull_first: bool) -> None:
        self.sync_state.is_syncing = True
        try:
            if pull_first:
                await self.pull(user_id)
                await self.push(user_id)
            else:
                await self.push(user_id)
                await self.pull(user_id)
            self.sync_state.last_sync_at = self._clock()
        finally:
            self.sync_state.is_syncing = False
