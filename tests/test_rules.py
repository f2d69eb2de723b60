"""Tests for the rule schemas and the local rule book."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from streamshield.local_store import RULES_KEY, LocalStore
from streamshield.rules import RuleBook
from streamshield.schemas import DeviceRule, TimeRule, parse_clock
from streamshield.spotify import PlaybackDevice


class TestParseClock:
    @pytest.mark.parametrize(
        ("value", "minute"),
        [
            ("12:00 AM", 0),
            ("12:15 pm", 12 * 60 + 15),
            ("9:00 AM", 9 * 60),
            ("10:00 PM", 22 * 60),
            ("21:30", 21 * 60 + 30),
            ("0:05", 5),
        ],
    )
    def test_valid(self, value: str, minute: int) -> None:
        assert parse_clock(value) == minute

    @pytest.mark.parametrize("value", ["", "25:00", "13:00 PM", "9:60", "noon"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_clock(value)


class TestTimeRuleSchema:
    def test_normalises_days(self) -> None:
        rule = TimeRule(name="Nights", days=["friday", "Monday", "monday"],
                        start_time="10:00 PM", end_time="6:00 AM")
        assert rule.days == ["Monday", "Friday"]
        assert rule.start_minute == 22 * 60
        assert rule.end_minute == 6 * 60
        assert rule.id

    def test_requires_a_day(self) -> None:
        with pytest.raises(ValidationError):
            TimeRule(name="x", days=[], start_time="9:00 AM", end_time="5:00 PM")

    def test_rejects_unknown_day(self) -> None:
        with pytest.raises(ValidationError):
            TimeRule(name="x", days=["Funday"], start_time="9:00 AM", end_time="5:00 PM")

    def test_rejects_equal_times(self) -> None:
        with pytest.raises(ValidationError):
            TimeRule(name="x", days=["Monday"], start_time="9:00 AM", end_time="09:00")

    def test_rejects_bad_clock(self) -> None:
        with pytest.raises(ValidationError):
            TimeRule(name="x", days=["Monday"], start_time="late", end_time="5:00 PM")


class TestDeviceRuleSchema:
    def test_minimal(self) -> None:
        rule = DeviceRule(device_id="dev-1")
        assert rule.enabled and rule.auto_shield
        assert rule.shield_duration == 0
        assert rule.time_enabled is False

    def test_schedule_needs_window(self) -> None:
        with pytest.raises(ValidationError):
            DeviceRule(device_id="dev-1", time_enabled=True, days=["Monday"])

    def test_negative_duration(self) -> None:
        with pytest.raises(ValidationError):
            DeviceRule(device_id="dev-1", shield_duration=-5)

    def test_scheduled_rule(self) -> None:
        rule = DeviceRule(device_id="dev-1", time_enabled=True, days=["sunday"],
                          start_time="8:00 AM", end_time="11:00 AM")
        assert rule.days == ["Sunday"]


def _time_rule(**overrides) -> dict:
    return {
        "name": "Work",
        "days": ["Monday", "Tuesday"],
        "start_time": "9:00 AM",
        "end_time": "5:00 PM",
        **overrides,
    }


class TestRuleBook:
    def test_add_and_persist(self, store: LocalStore) -> None:
        book = RuleBook(store)
        rule = book.add_time_rule(_time_rule())
        device = book.add_device_rule({"device_id": "dev-1", "device_name": "Kitchen"})

        reloaded = RuleBook(store)
        assert reloaded.load() is True
        assert reloaded.time_rules == [rule]
        assert reloaded.device_rules == [device]

    def test_load_empty(self, store: LocalStore) -> None:
        assert RuleBook(store).load() is False

    def test_invalid_input_leaves_state_untouched(self, store: LocalStore) -> None:
        book = RuleBook(store)
        rule = book.add_time_rule(_time_rule())

        with pytest.raises(ValidationError):
            book.edit_time_rule(rule.id, {"end_time": "9:00 AM"})

        assert book.get_time_rule(rule.id) == rule

    def test_duplicate_id_rejected(self, store: LocalStore) -> None:
        book = RuleBook(store)
        book.add_time_rule(_time_rule(id="r1"))
        with pytest.raises(ValueError):
            book.add_time_rule(_time_rule(id="r1"))

    def test_edit_toggle_remove(self, store: LocalStore) -> None:
        book = RuleBook(store)
        rule = book.add_time_rule(_time_rule())

        edited = book.edit_time_rule(rule.id, {"name": "Office"})
        assert edited.name == "Office"
        assert edited.id == rule.id

        assert book.toggle_time_rule(rule.id).enabled is False
        assert book.remove_time_rule(rule.id) is True
        assert book.remove_time_rule(rule.id) is False

    def test_edit_unknown_rule(self, store: LocalStore) -> None:
        with pytest.raises(KeyError):
            RuleBook(store).edit_device_rule("missing", {"enabled": False})

    def test_rule_for_device(self, store: LocalStore) -> None:
        book = RuleBook(store)
        device = PlaybackDevice(id="dev-9", name="Car", type="Automobile")

        rule = book.add_rule_for_device(device, shield_duration=60)

        assert rule.device_id == "dev-9"
        assert rule.device_name == "Car"
        assert rule.device_type == "Automobile"
        assert rule.shield_duration == 60
        assert book.toggle_device_rule(rule.id).enabled is False
        assert book.remove_device_rule(rule.id) is True

    def test_load_drops_invalid_entries(self, store: LocalStore) -> None:
        store.set(RULES_KEY, {
            "time_rules": [_time_rule(id="good"), _time_rule(id="bad", days=[])],
            "device_rules": [{"device_name": "no id"}],
        })

        book = RuleBook(store)
        book.load()

        assert [r.id for r in book.time_rules] == ["good"]
        assert book.device_rules == []
