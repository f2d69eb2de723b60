"""Local rule book: CRUD for time and device rules.

All input passes through the pydantic schemas first, so a rejected edit
raises ``pydantic.ValidationError`` and leaves the stored rules untouched.
"""

from __future__ import annotations

import logging
from typing import Any

from .local_store import RULES_KEY, LocalStore
from .schemas import DeviceRule, TimeRule
from .spotify import PlaybackDevice

log = logging.getLogger(__name__)


class RuleBook:
    """The user's time and device rules, persisted in the local store."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self.time_rules: list[TimeRule] = []
        self.device_rules: list[DeviceRule] = []

    # -- persistence ---------------------------------------------------------

    def load(self) -> bool:
        """Rehydrate from the local store.  Returns True if a snapshot existed.

        Stored rules that no longer validate are dropped with a warning.
        """
        data = self._store.get(RULES_KEY)
        if data is None:
            return False
        self.time_rules = _validate_all(TimeRule, data.get("time_rules") or [])
        self.device_rules = _validate_all(DeviceRule, data.get("device_rules") or [])
        return True

    def save(self) -> None:
        self._store.set(RULES_KEY, {
            "time_rules": [r.model_dump() for r in self.time_rules],
            "device_rules": [r.model_dump() for r in self.device_rules],
        })

    def replace(self, time_rules: list[TimeRule], device_rules: list[DeviceRule]) -> None:
        self.time_rules = list(time_rules)
        self.device_rules = list(device_rules)
        self.save()

    # -- time rules ----------------------------------------------------------

    def add_time_rule(self, data: dict[str, Any]) -> TimeRule:
        rule = TimeRule.model_validate(data)
        if self.get_time_rule(rule.id) is not None:
            raise ValueError(f"time rule {rule.id} already exists")
        self.time_rules.append(rule)
        self.save()
        log.info("Added time rule %r", rule.name)
        return rule

    def edit_time_rule(self, rule_id: str, changes: dict[str, Any]) -> TimeRule:
        rule = self._require(self.get_time_rule(rule_id), rule_id)
        updated = TimeRule.model_validate({**rule.model_dump(), **changes, "id": rule.id})
        self.time_rules = [updated if r.id == rule_id else r for r in self.time_rules]
        self.save()
        return updated

    def toggle_time_rule(self, rule_id: str) -> TimeRule:
        rule = self._require(self.get_time_rule(rule_id), rule_id)
        return self.edit_time_rule(rule_id, {"enabled": not rule.enabled})

    def remove_time_rule(self, rule_id: str) -> bool:
        before = len(self.time_rules)
        self.time_rules = [r for r in self.time_rules if r.id != rule_id]
        if len(self.time_rules) == before:
            return False
        self.save()
        return True

    def get_time_rule(self, rule_id: str) -> TimeRule | None:
        return next((r for r in self.time_rules if r.id == rule_id), None)

    # -- device rules --------------------------------------------------------

    def add_device_rule(self, data: dict[str, Any]) -> DeviceRule:
        rule = DeviceRule.model_validate(data)
        if self.get_device_rule(rule.id) is not None:
            raise ValueError(f"device rule {rule.id} already exists")
        self.device_rules.append(rule)
        self.save()
        log.info("Added device rule for %r", rule.device_name or rule.device_id)
        return rule

    def add_rule_for_device(self, device: PlaybackDevice, **options: Any) -> DeviceRule:
        """Create a device rule from a device picked off the devices list."""
        return self.add_device_rule({
            "device_id": device.id,
            "device_name": device.name,
            "device_type": device.type,
            **options,
        })

    def edit_device_rule(self, rule_id: str, changes: dict[str, Any]) -> DeviceRule:
        rule = self._require(self.get_device_rule(rule_id), rule_id)
        updated = DeviceRule.model_validate({**rule.model_dump(), **changes, "id": rule.id})
        self.device_rules = [updated if r.id == rule_id else r for r in self.device_rules]
        self.save()
        return updated

    def toggle_device_rule(self, rule_id: str) -> DeviceRule:
        rule = self._require(self.get_device_rule(rule_id), rule_id)
        return self.edit_device_rule(rule_id, {"enabled": not rule.enabled})

    def remove_device_rule(self, rule_id: str) -> bool:
        before = len(self.device_rules)
        self.device_rules = [r for r in self.device_rules if r.id != rule_id]
        if len(self.device_rules) == before:
            return False
        self.save()
        return True

    def get_device_rule(self, rule_id: str) -> DeviceRule | None:
        return next((r for r in self.device_rules if r.id == rule_id), None)

    @staticmethod
    def _require(rule, rule_id: str):
        if rule is None:
            raise KeyError(rule_id)
        return rule


def _validate_all(schema, items: list[dict[str, Any]]) -> list:
    rules = []
    for item in items:
        try:
            rules.append(schema.model_validate(item))
        except ValueError:
            log.warning("Dropping invalid stored %s: %s", schema.__name__, item)
    return rules
