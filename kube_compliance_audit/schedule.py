"""Schedule expressions for recurring scans.

Three forms are accepted:

* five-field cron expressions (``minute hour day-of-month month day-of-week``)
  supporting ``*``, lists, ranges, steps and English month/day names;
* the macros ``@hourly``, ``@daily``, ``@midnight``, ``@weekly``,
  ``@monthly``, ``@yearly`` and ``@annually``;
* fixed intervals written as ``@every 90m`` or ``@every 1h30m``.

Cron expressions are evaluated in the timezone of the datetime passed to
:meth:`Schedule.next_after`; callers pass UTC.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import ConfigurationError

MACROS: Dict[str, str] = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1
    )
}
DAY_NAMES = {name: index for index, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))}

INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_INTERVAL_PART = re.compile(r"(\d+)([smhd])")

# Upper bound on the search for the next fire time (covers Feb 29 schedules).
SEARCH_LIMIT = timedelta(days=366 * 8)


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Optional[Dict[str, int]] = None


FIELDS: Tuple[_FieldSpec, ...] = (
    _FieldSpec("minute", 0, 59),
    _FieldSpec("hour", 0, 23),
    _FieldSpec("day of month", 1, 31),
    _FieldSpec("month", 1, 12, MONTH_NAMES),
    _FieldSpec("day of week", 0, 7, DAY_NAMES),
)


class Schedule(ABC):
    """A recurring schedule; :meth:`parse` picks the concrete type."""

    expression: str

    @abstractmethod
    def next_after(self, moment: datetime) -> datetime:
        """Return the first fire time strictly after *moment*."""

        raise NotImplementedError

    @staticmethod
    def parse(expression: str) -> "Schedule":
        text = (expression or "").strip()
        if not text:
            raise ConfigurationError("Schedule expression must not be empty")
        lowered = text.lower()
        if lowered.startswith("@every"):
            return IntervalSchedule.parse(text)
        if lowered.startswith("@"):
            try:
                return CronSchedule.parse(MACROS[lowered], expression=text)
            except KeyError:
                valid = ", ".join(sorted(MACROS))
                raise ConfigurationError(
                    f"Unknown schedule macro {text!r} (valid: {valid}, @every <duration>)"
                ) from None
        return CronSchedule.parse(text)


@dataclass(frozen=True)
class IntervalSchedule(Schedule):
    expression: str
    interval: timedelta

    @classmethod
    def parse(cls, expression: str) -> "IntervalSchedule":
        parts = expression.split(None, 1)
        duration = parts[1].strip().lower() if len(parts) == 2 else ""
        if not duration or _INTERVAL_PART.sub("", duration):
            raise ConfigurationError(
                f"Invalid interval schedule {expression!r}: expected '@every <n>[s|m|h|d]...'"
            )
        seconds = sum(
            int(amount) * INTERVAL_UNITS[unit] for amount, unit in _INTERVAL_PART.findall(duration)
        )
        if seconds <= 0:
            raise ConfigurationError(f"Interval schedule {expression!r} must be positive")
        return cls(expression=expression, interval=timedelta(seconds=seconds))

    def next_after(self, moment: datetime) -> datetime:
        return moment + self.interval


@dataclass(frozen=True)
class CronSchedule(Schedule):
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    day_of_month_restricted: bool
    day_of_week_restricted: bool

    @classmethod
    def parse(cls, text: str, expression: Optional[str] = None) -> "CronSchedule":
        fields = text.split()
        if len(fields) != len(FIELDS):
            raise ConfigurationError(
                f"Invalid cron expression {text!r}: expected {len(FIELDS)} fields, got {len(fields)}"
            )
        values = [_parse_field(field, spec) for field, spec in zip(fields, FIELDS)]
        # 7 is an alias for Sunday.
        days_of_week = frozenset(0 if day == 7 else day for day in values[4])
        return cls(
            expression=expression or text,
            minutes=values[0],
            hours=values[1],
            days_of_month=values[2],
            months=values[3],
            days_of_week=days_of_week,
            day_of_month_restricted=not fields[2].startswith("*"),
            day_of_week_restricted=not fields[4].startswith("*"),
        )

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days_of_month
        dow = (moment.weekday() + 1) % 7 in self.days_of_week
        # Classic cron: when both day fields are restricted either may match.
        if self.day_of_month_restricted and self.day_of_week_restricted:
            return dom or dow
        return dom and dow

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + SEARCH_LIMIT
        while candidate < limit:
            if candidate.month not in self.months:
                candidate = _start_of_next_month(candidate)
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ConfigurationError(f"Cron expression {self.expression!r} never fires")


def _start_of_next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0)
    return moment.replace(month=moment.month + 1, day=1, hour=0, minute=0)


def _parse_value(token: str, spec: _FieldSpec) -> int:
    lowered = token.lower()
    if spec.names and lowered in spec.names:
        return spec.names[lowered]
    if not token.isdigit():
        raise ConfigurationError(f"Invalid {spec.name} value {token!r}")
    value = int(token)
    if not spec.low <= value <= spec.high:
        raise ConfigurationError(
            f"{spec.name.capitalize()} value {value} out of range {spec.low}-{spec.high}"
        )
    return value


def _parse_field(field: str, spec: _FieldSpec) -> FrozenSet[int]:
    values = set()
    for part in field.split(","):
        if not part:
            raise ConfigurationError(f"Empty list item in {spec.name} field {field!r}")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigurationError(f"Invalid step {step_text!r} in {spec.name} field")
            step = int(step_text)

        if base == "*":
            low, high = spec.low, spec.high
        elif "-" in base:
            start, _, end = base.partition("-")
            low, high = _parse_value(start, spec), _parse_value(end, spec)
            if low > high:
                raise ConfigurationError(f"Invalid range {base!r} in {spec.name} field")
        else:
            low = _parse_value(base, spec)
            high = spec.high if step_text else low
        values.update(range(low, high + 1, step))
    return frozenset(values)


__all__ = ["CronSchedule", "IntervalSchedule", "MACROS", "Schedule"]
