"""Rule engine: turns the shield on from time and device rules.

Two independent polls run on the scheduler:

* the device-rule check (every ~30 s) reads the active Spotify device;
* the time-rule check (coarse background tick, floor ~15 min) only reads the
  local clock.

A match activates the shield when it is off.  The engine never turns off a
manually started shield; with ``auto_deactivate`` it turns off a session
that a rule of the same kind started once no rule of that kind matches.
Evaluation never raises past the scheduler boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .errors import CredentialRevoked, PlatformError
from .rules import RuleBook
from .scheduler import PeriodicScheduler
from .schemas import WEEKDAYS, DeviceRule, TimeRule, parse_clock
from .session_tracker import ShieldSessionTracker
from .spotify import SpotifyClient

log = logging.getLogger(__name__)

_MINUTES_PER_DAY = 24 * 60

DEVICE_JOB = "device-rules"
TIME_JOB = "time-rules"


def minute_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


def window_matches(start: int, end: int, minute: int) -> bool:
    """True if *minute* lies in [start, end), wrapping past midnight when start > end."""
    if start <= end:
        return start <= minute < end
    return minute >= start or minute < end


def time_rule_matches(rule: TimeRule, now: datetime) -> bool:
    if not rule.enabled or WEEKDAYS[now.weekday()] not in rule.days:
        return False
    return window_matches(rule.start_minute, rule.end_minute, minute_of_day(now))


def device_rule_matches(rule: DeviceRule, active_device_id: str | None, now: datetime) -> bool:
    if not rule.enabled or not rule.auto_shield or rule.device_id != active_device_id:
        return False
    if not rule.time_enabled:
        return True
    if WEEKDAYS[now.weekday()] not in rule.days:
        return False
    return window_matches(
        parse_clock(rule.start_time), parse_clock(rule.end_time), minute_of_day(now),
    )


def _window_length(rule: DeviceRule) -> int:
    if not rule.time_enabled:
        return _MINUTES_PER_DAY + 1
    start, end = parse_clock(rule.start_time), parse_clock(rule.end_time)
    return (end - start) % _MINUTES_PER_DAY


def pick_device_rule(rules: list[DeviceRule]) -> DeviceRule | None:
    """Most time-constrained rule wins; ties go to the lowest rule id."""
    if not rules:
        return None
    return min(rules, key=lambda r: (_window_length(r), r.id))


class RuleEngine:
    """Polls the rules and activates the shield when one matches."""

    def __init__(
        self,
        tracker: ShieldSessionTracker,
        rules: RuleBook,
        spotify: SpotifyClient,
        scheduler: PeriodicScheduler,
        *,
        device_interval: float = 30,
        time_interval: float = 15 * 60,
        auto_deactivate: bool = False,
        on_credential_revoked: Callable[[CredentialRevoked], None] | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._tracker = tracker
        self._rules = rules
        self._spotify = spotify
        self._scheduler = scheduler
        self._device_interval = device_interval
        self._time_interval = time_interval
        self._auto_deactivate = auto_deactivate
        self._on_credential_revoked = on_credential_revoked
        self._now = now

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self._scheduler.schedule(DEVICE_JOB, self._device_interval, self.check_device_rules)
        self._scheduler.schedule(TIME_JOB, self._time_interval, self.check_time_rules)

    def stop(self) -> None:
        self._scheduler.cancel(DEVICE_JOB)
        self._scheduler.cancel(TIME_JOB)

    # -- time rules ----------------------------------------------------------

    def matching_time_rule(self, now: datetime | None = None) -> TimeRule | None:
        now = now or self._now()
        return next((r for r in self._rules.time_rules if time_rule_matches(r, now)), None)

    def check_time_rules(self) -> bool:
        """Activate the shield if a time rule matches.  Returns True if it did."""
        try:
            rule = self.matching_time_rule()
        except Exception:
            log.exception("Time rule evaluation failed")
            return False

        if rule is None:
            self._maybe_deactivate("time_rule")
            return False
        if self._tracker.is_active:
            return False
        log.info("Time rule %r matched, activating shield", rule.name)
        return self._tracker.activate(source="time_rule")

    # -- device rules --------------------------------------------------------

    async def check_device_rules(self) -> bool:
        """Activate the shield if the active device has a matching rule."""
        candidates = [r for r in self._rules.device_rules if r.enabled and r.auto_shield]
        if not candidates:
            self._maybe_deactivate("device_rule")
            return False

        try:
            device = await self._spotify.fetch_active_device()
        except CredentialRevoked as exc:
            log.warning("Device rule check: credentials revoked")
            if self._on_credential_revoked is not None:
                self._on_credential_revoked(exc)
            return False
        except PlatformError as exc:
            log.debug("Device rule check skipped: %s", exc)
            return False
        except Exception:
            log.exception("Device rule check failed")
            return False

        device_id = device.id if device is not None else None
        now = self._now()
        rule = pick_device_rule(
            [r for r in candidates if device_rule_matches(r, device_id, now)]
        )
        if rule is None:
            self._maybe_deactivate("device_rule")
            return False
        if self._tracker.is_active:
            return False
        log.info("Device rule for %r matched, activating shield", rule.device_name or rule.device_id)
        return self._tracker.activate(
            source="device_rule", duration=rule.shield_duration or None,
        )

    # -- internals -----------------------------------------------------------

    def _maybe_deactivate(self, source: str) -> None:
        if not self._auto_deactivate or not self._tracker.is_active:
            return
        session = self._tracker.current_session
        if session is not None and session.source == source:
            log.info("No %s matches any more, deactivating shield", source.replace("_", " "))
            self._tracker.deactivate()
