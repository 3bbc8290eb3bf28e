# tests/test_cron.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from jobs import cron
from jobs.errors import InvalidRecurrenceExpression

# a Wednesday
T = datetime(2026, 3, 4, 10, 30, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("@every 1h", datetime(2026, 3, 4, 11, 30, 15, tzinfo=timezone.utc)),
        ("@every 90s", T + timedelta(seconds=90)),
        ("@every 1h30m", T + timedelta(hours=1, minutes=30)),
        ("@every 500ms", T + timedelta(milliseconds=500)),
        ("@hourly", datetime(2026, 3, 4, 11, 0, tzinfo=timezone.utc)),
        ("@daily", datetime(2026, 3, 5, 0, 0, tzinfo=timezone.utc)),
        ("@weekly", datetime(2026, 3, 8, 0, 0, tzinfo=timezone.utc)),
        ("@monthly", datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)),
        ("@yearly", datetime(2027, 1, 1, 0, 0, tzinfo=timezone.utc)),
        ("@annually", datetime(2027, 1, 1, 0, 0, tzinfo=timezone.utc)),
    ],
)
def test_next_run(expression, expected):
    assert cron.next_run(expression, T) == expected


def test_prefix_is_optional_and_case_is_ignored():
    assert cron.next_run("daily", T) == cron.next_run("@DAILY", T)
    assert cron.next_run("every 2h", T) == T + timedelta(hours=2)


def test_next_run_is_strictly_after_boundaries():
    midnight = datetime(2026, 3, 5, 0, 0, tzinfo=timezone.utc)
    assert cron.next_run("@daily", midnight) == midnight + timedelta(days=1)

    sunday = datetime(2026, 3, 8, 0, 0, tzinfo=timezone.utc)
    assert cron.next_run("@weekly", sunday) == sunday + timedelta(days=7)

    top = datetime(2026, 3, 4, 11, 0, tzinfo=timezone.utc)
    assert cron.next_run("@hourly", top) == top + timedelta(hours=1)


def test_monthly_rolls_over_december():
    dec = datetime(2026, 12, 15, 8, 0, tzinfo=timezone.utc)
    assert cron.next_run("@monthly", dec) == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "   ",
        "@never",
        "@every",
        "@every 0s",
        "@every -5m",
        "@every 10x",
        "@every 1h banana",
        "@every 3651d",
        "@every 999999999d",
        "@every 99999999999d",
        "@every 1e400s",
        "0 * * * *",
        "*/5 * * * *",
    ],
)
def test_invalid_expressions_are_rejected(expression):
    with pytest.raises(InvalidRecurrenceExpression):
        cron.parse(expression)


def test_standard_cron_error_names_alternatives():
    with pytest.raises(InvalidRecurrenceExpression) as exc_info:
        cron.validate("0 3 * * *")
    assert "@every" in str(exc_info.value)


def test_parse_duration():
    assert cron.parse_duration("2d") == timedelta(days=2)
    assert cron.parse_duration("1m30s") == timedelta(minutes=1, seconds=30)
    assert cron.parse_duration("3650d") == cron.MAX_INTERVAL
    with pytest.raises(ValueError):
        cron.parse_duration("")
    with pytest.raises(ValueError):
        cron.parse_duration("9" * 400 + "d")


def test_named_schedules_from_mid_hour():
    ref = datetime(2024, 1, 15, 13, 22)
    assert cron.next_run("@daily", ref) == datetime(2024, 1, 16, 0, 0)
    assert cron.next_run("@hourly", ref) == datetime(2024, 1, 15, 14, 0)
