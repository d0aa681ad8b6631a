"""Tests for cron, macro and interval schedules."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from kube_compliance_audit.errors import ConfigurationError
from kube_compliance_audit.schedule import CronSchedule, IntervalSchedule, Schedule


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_step_expression_rounds_up_to_next_slot() -> None:
    """``*/15`` fires on the quarter hours."""

    schedule = Schedule.parse("*/15 * * * *")

    assert isinstance(schedule, CronSchedule)
    assert schedule.next_after(_utc(2024, 1, 1, 10, 7)) == _utc(2024, 1, 1, 10, 15)
    assert schedule.next_after(_utc(2024, 1, 1, 10, 59, 30)) == _utc(2024, 1, 1, 11, 0)


def test_next_fire_time_is_strictly_after_moment() -> None:
    """A moment exactly on a fire time moves to the following one."""

    schedule = Schedule.parse("0 * * * *")

    assert schedule.next_after(_utc(2024, 1, 1, 10, 0)) == _utc(2024, 1, 1, 11, 0)


def test_weekday_range_skips_weekend() -> None:
    """Friday after nine rolls over to Monday morning."""

    schedule = Schedule.parse("0 9 * * mon-fri")

    assert schedule.next_after(_utc(2024, 1, 5, 10, 0)) == _utc(2024, 1, 8, 9, 0)


def test_macros_expand_to_cron() -> None:
    """Named macros behave like their cron equivalents."""

    daily = Schedule.parse("@daily")
    weekly = Schedule.parse("@WEEKLY")

    assert daily.expression == "@daily"
    assert daily.next_after(_utc(2024, 1, 1, 10, 0)) == _utc(2024, 1, 2, 0, 0)
    assert weekly.next_after(_utc(2024, 1, 1, 10, 0)) == _utc(2024, 1, 7, 0, 0)
    assert Schedule.parse("@monthly").next_after(_utc(2024, 1, 15)) == _utc(2024, 2, 1)


def test_interval_schedules_add_a_fixed_duration() -> None:
    """``@every`` accepts combined units."""

    ninety = Schedule.parse("@every 90m")
    combined = Schedule.parse("@every 1h30m")

    assert isinstance(ninety, IntervalSchedule)
    assert ninety.interval == timedelta(minutes=90)
    assert combined.interval == timedelta(minutes=90)
    assert ninety.next_after(_utc(2024, 1, 1, 10, 7, 12)) == _utc(2024, 1, 1, 11, 37, 12)


def test_leap_day_schedule_finds_next_leap_year() -> None:
    """February 29th is searched for across several years."""

    schedule = Schedule.parse("0 0 29 2 *")

    assert schedule.next_after(_utc(2024, 3, 1)) == _utc(2028, 2, 29)


def test_restricted_day_fields_match_either() -> None:
    """With both day fields set, either one matching is enough."""

    schedule = Schedule.parse("0 0 13 * fri")

    assert schedule.next_after(_utc(2024, 1, 1)) == _utc(2024, 1, 5)
    assert schedule.next_after(_utc(2024, 1, 12, 1)) == _utc(2024, 1, 13)


def test_sunday_can_be_written_as_seven() -> None:
    """Day of week 7 is Sunday."""

    schedule = Schedule.parse("30 6 * * 7")

    assert schedule.next_after(_utc(2024, 1, 1)) == _utc(2024, 1, 7, 6, 30)


def test_lists_and_month_names() -> None:
    """Lists mix values and ranges; months may be named."""

    schedule = Schedule.parse("0,30 8-9 1 jan,jul *")

    assert schedule.next_after(_utc(2024, 1, 1, 9, 15)) == _utc(2024, 1, 1, 9, 30)
    assert schedule.next_after(_utc(2024, 1, 1, 9, 30)) == _utc(2024, 7, 1, 8, 0)


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "* * * *",
        "60 * * * *",
        "* 24 * * *",
        "5-1 * * * *",
        "*/0 * * * *",
        "1,,2 * * * *",
        "* * * foo *",
        "@fortnightly",
        "@every",
        "@every 0m",
        "@every 10 minutes",
    ],
)
def test_invalid_expressions_are_rejected(expression: str) -> None:
    """Malformed schedules raise a configuration error."""

    with pytest.raises(ConfigurationError):
        Schedule.parse(expression)


def test_impossible_date_never_fires() -> None:
    """February 30th is reported rather than searched forever."""

    schedule = Schedule.parse("0 0 30 2 *")

    with pytest.raises(ConfigurationError):
        schedule.next_after(_utc(2024, 1, 1))
