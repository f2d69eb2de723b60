"""Shield session state machine.

Owns the active/inactive shield flag, the append-only list of shield
sessions and the auto-disable countdown.  ``toggle()`` and
``is_shielded()`` are synchronous so they are atomic with respect to the
event loop; every state change is written to the local store immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .local_store import SHIELD_KEY, LocalStore
from .models import SessionSource, ShieldPreferences, ShieldSession, now_ms
from .notifier import Notifier

log = logging.getLogger(__name__)

ShieldListener = Callable[[bool, ShieldSession], None]


def enforce_session_invariant(sessions: list[ShieldSession], active: bool) -> list[ShieldSession]:
    """Return *sessions* ordered by start with at most one open session, last.

    Open sessions that are followed by another session are closed at the
    next session's start.  A trailing open session is closed at its own
    start when the shield is not active.
    """
    by_start: dict[int, ShieldSession] = {}
    for s in sessions:
        by_start.setdefault(s.start, ShieldSession(s.start, s.end, s.source))
    ordered = [by_start[k] for k in sorted(by_start)]
    for current, following in zip(ordered, ordered[1:]):
        if current.end is None:
            current.end = following.start
    if ordered and ordered[-1].end is None and not active:
        ordered[-1].end = ordered[-1].start
    return ordered


class ShieldSessionTracker:
    """Tracks when shielding is on and answers "was time *t* shielded?"."""

    def __init__(
        self,
        store: LocalStore,
        notifier: Notifier,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._listeners: list[ShieldListener] = []

        self._active = False
        self._activated_at: int | None = None
        self._active_duration: int | None = None  # per-activation override
        self._sessions: list[ShieldSession] = []
        self.preferences = ShieldPreferences()

        self._auto_disable_at: int | None = None
        self._countdown: asyncio.TimerHandle | None = None

    # -- state ---------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def activated_at(self) -> int | None:
        return self._activated_at

    @property
    def sessions(self) -> list[ShieldSession]:
        return [ShieldSession(s.start, s.end, s.source) for s in self._sessions]

    @property
    def current_session(self) -> ShieldSession | None:
        if self._sessions and self._sessions[-1].is_open:
            return self._sessions[-1]
        return None

    @property
    def auto_disable_at(self) -> int | None:
        return self._auto_disable_at

    def add_listener(self, listener: ShieldListener) -> None:
        """Call *listener(active, session)* on every activation change."""
        self._listeners.append(listener)

    def is_shielded(self, timestamp: int) -> bool:
        return any(s.covers(timestamp) for s in self._sessions)

    def remaining_seconds(self) -> int | None:
        """Seconds left on the auto-disable countdown, or None if unarmed."""
        if self._auto_disable_at is None:
            return None
        return max(0, (self._auto_disable_at - self._clock()) // 1000)

    # -- transitions ---------------------------------------------------------

    def toggle(self) -> bool:
        """Flip the shield; returns the new active flag."""
        if self._active:
            self.deactivate()
        else:
            self.activate()
        return self._active

    def activate(self, source: SessionSource = "manual", duration: int | None = None) -> bool:
        """Open a new session.  *duration* (minutes) overrides the preference
        for this activation only.  Returns False if already active."""
        if self._active:
            return False
        now = self._clock()
        session = ShieldSession(start=now, end=None, source=source)
        self._sessions.append(session)
        self._active = True
        self._activated_at = now
        self._active_duration = duration if duration else None
        self._arm_countdown()
        self.save()
        log.info("Shield activated (%s)", source)
        self._emit(True, session)
        return True

    def deactivate(self) -> bool:
        """Close the open session.  Returns False if already inactive."""
        if not self._active:
            return False
        self._cancel_countdown()
        session = self.current_session
        if session is not None:
            session.end = self._clock()
        self._active = False
        self._activated_at = None
        self._active_duration = None
        if self.preferences.reset_duration_on_deactivation:
            self.preferences.shield_duration = self.preferences.default_shield_duration
        self.save()
        log.info("Shield deactivated")
        if session is not None:
            self._emit(False, session)
        return True

    def replace_sessions(self, sessions: list[ShieldSession]) -> None:
        """Adopt a merged session list, keeping the local active state.

        While active, the open session is kept open and last; sessions that
        start after it are discarded.
        """
        current = self.current_session
        if self._active and current is not None:
            sessions = [s for s in sessions if s.start < current.start]
            sessions.append(ShieldSession(current.start, None, current.source))
        self._sessions = enforce_session_invariant(sessions, self._active)
        self.save()

    def clear_sessions(self) -> None:
        """Drop all closed sessions (the open one, if any, is kept)."""
        current = self.current_session
        self._sessions = [current] if current is not None else []
        self.save()

    # -- auto-disable --------------------------------------------------------

    def _effective_duration(self) -> int:
        if self._active_duration:
            return self._active_duration
        return self.preferences.shield_duration

    def _arm_countdown(self) -> None:
        """(Re)arm the single auto-disable countdown for the current activation."""
        self._cancel_countdown()
        duration = self._effective_duration()
        if not self._active or not self.preferences.auto_disable_enabled or duration <= 0:
            return
        if self._activated_at is None:
            return
        self._auto_disable_at = self._activated_at + duration * 60_000
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); check_auto_disable() polls the deadline.
            return
        delay = max(0.0, (self._auto_disable_at - self._clock()) / 1000)
        self._countdown = loop.call_later(delay, self.check_auto_disable)
        log.debug("Auto-disable armed for %.0fs", delay)

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None
        self._auto_disable_at = None

    def check_auto_disable(self) -> bool:
        """Deactivate if the countdown has run out.  Returns True if it fired."""
        if not self._active or self._auto_disable_at is None:
            return False
        if self._clock() < self._auto_disable_at:
            # Timer fired early relative to our clock; try again later.
            self._arm_countdown()
            return False
        self.deactivate()
        self._notifier.notify(
            "Shield Disabled",
            "The shield has been automatically disabled after the timer expired.",
        )
        return True

    def teardown(self) -> None:
        """Cancel the countdown timer (shutdown or backgrounding)."""
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None

    # -- preferences ---------------------------------------------------------

    def set_shield_duration(self, minutes: int) -> None:
        if minutes < 0:
            raise ValueError("duration must not be negative")
        self.preferences.shield_duration = minutes
        self._active_duration = None
        self._arm_countdown()
        self.save()

    def set_default_shield_duration(self, minutes: int) -> None:
        if minutes < 0:
            raise ValueError("duration must not be negative")
        self.preferences.default_shield_duration = minutes
        self.save()

    def set_auto_disable_enabled(self, enabled: bool) -> None:
        self.preferences.auto_disable_enabled = enabled
        self._arm_countdown()
        self.save()

    def set_reset_duration_on_deactivation(self, enabled: bool) -> None:
        self.preferences.reset_duration_on_deactivation = enabled
        self.save()

    def add_auto_disable_preset(self, minutes: int) -> None:
        if minutes < 0:
            raise ValueError("preset must not be negative")
        presets = self.preferences.auto_disable_presets
        if minutes not in presets:
            self.preferences.auto_disable_presets = sorted([*presets, minutes])
            self.save()

    def delete_auto_disable_preset(self, minutes: int) -> None:
        self.preferences.auto_disable_presets = [
            p for p in self.preferences.auto_disable_presets if p != minutes
        ]
        self.save()

    # -- persistence ---------------------------------------------------------

    def save(self) -> None:
        self._store.set(SHIELD_KEY, {
            "is_active": self._active,
            "activated_at": self._activated_at,
            "active_duration": self._active_duration,
            "sessions": [s.to_dict() for s in self._sessions],
            "preferences": self.preferences.to_dict(),
        })

    def load(self) -> bool:
        """Rehydrate from the local store.  Returns True if a snapshot existed.

        A restored active shield re-arms its countdown and is announced to
        listeners; if the countdown already ran out it is disabled at once.
        """
        data = self._store.get(SHIELD_KEY)
        if not data:
            return False
        self.preferences = ShieldPreferences.from_dict(data.get("preferences") or {})
        self._active = bool(data.get("is_active"))
        sessions = [ShieldSession.from_dict(s) for s in data.get("sessions") or []]
        self._sessions = enforce_session_invariant(sessions, self._active)
        current = self.current_session
        if self._active and current is None:
            # Snapshot without an open session; the flag cannot be trusted.
            self._active = False
        if self._active:
            self._activated_at = data.get("activated_at") or current.start
            self._active_duration = data.get("active_duration")
            self._arm_countdown()
            self._emit(True, current)
            self.check_auto_disable()
        log.info("Shield state loaded (%d sessions, active=%s)", len(self._sessions), self._active)
        return True

    def _emit(self, active: bool, session: ShieldSession) -> None:
        for listener in self._listeners:
            try:
                listener(active, session)
            except Exception:
                log.exception("Shield listener failed")
