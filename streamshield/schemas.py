"""Pydantic schemas for user-edited shield rules.

Rules are validated here, at the edge; anything that fails validation raises
``pydantic.ValidationError`` and never reaches stored state.
"""

import re
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

_CLOCK_12H = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")
_CLOCK_24H = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def parse_clock(value: str) -> int:
    """Convert a wall-clock string to minute-of-day.

    Accepts 12-hour ("9:00 AM", "12:15 pm") and 24-hour ("21:30") forms.
    Raises ValueError for anything else.
    """
    if m := _CLOCK_12H.match(value):
        hour, minute, period = int(m.group(1)), int(m.group(2)), m.group(3).upper()
        if not 1 <= hour <= 12 or minute > 59:
            raise ValueError(f"invalid time: {value!r}")
        if period == "PM" and hour != 12:
            hour += 12
        elif period == "AM" and hour == 12:
            hour = 0
        return hour * 60 + minute
    if m := _CLOCK_24H.match(value):
        hour, minute = int(m.group(1)), int(m.group(2))
        if hour > 23 or minute > 59:
            raise ValueError(f"invalid time: {value!r}")
        return hour * 60 + minute
    raise ValueError(f"invalid time: {value!r}")


def _normalise_days(days: list[str]) -> list[str]:
    wanted = set()
    for day in days:
        name = day.strip().capitalize()
        if name not in WEEKDAYS:
            raise ValueError(f"unknown weekday: {day!r}")
        wanted.add(name)
    return [d for d in WEEKDAYS if d in wanted]


def _new_rule_id() -> str:
    return uuid.uuid4().hex


class TimeRule(BaseModel):
    """Shield automatically on the given days between two wall-clock times."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_rule_id, min_length=1)
    name: str = Field(min_length=1, max_length=100)
    days: list[str] = Field(min_length=1)
    start_time: str
    end_time: str
    enabled: bool = True

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: list[str]) -> list[str]:
        return _normalise_days(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_clock(cls, v: str) -> str:
        parse_clock(v)
        return v.strip()

    @model_validator(mode="after")
    def _check_window(self) -> "TimeRule":
        if parse_clock(self.start_time) == parse_clock(self.end_time):
            raise ValueError("start_time and end_time must differ")
        return self

    @property
    def start_minute(self) -> int:
        return parse_clock(self.start_time)

    @property
    def end_minute(self) -> int:
        return parse_clock(self.end_time)


class DeviceRule(BaseModel):
    """Shield automatically while a given Spotify device is playing."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_rule_id, min_length=1)
    device_id: str = Field(min_length=1)
    device_name: str = ""
    device_type: str = ""
    enabled: bool = True
    auto_shield: bool = True
    shield_duration: int = Field(default=0, ge=0)  # minutes, 0 = unlimited
    # Optional sub-schedule
    time_enabled: bool = False
    days: list[str] = []
    start_time: str | None = None
    end_time: str | None = None

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: list[str]) -> list[str]:
        return _normalise_days(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_clock(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parse_clock(v)
        return v.strip()

    @model_validator(mode="after")
    def _check_schedule(self) -> "DeviceRule":
        if not self.time_enabled:
            return self
        if not self.days or self.start_time is None or self.end_time is None:
            raise ValueError("a scheduled device rule needs days, start_time and end_time")
        if parse_clock(self.start_time) == parse_clock(self.end_time):
            raise ValueError("start_time and end_time must differ")
        return self
