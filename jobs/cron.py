# jobs/cron.py
"""
Recurrence expressions for scheduled jobs.

Supported forms (the leading ``@`` is optional):

    @yearly / @annually   Jan 1st 00:00
    @monthly              1st of the month 00:00
    @weekly               Sunday 00:00
    @daily                00:00
    @hourly               top of the hour
    @every <duration>     fixed interval, e.g. 500ms, 30s, 15m, 1h30m, 7d
                          (at most 3650d)

``parse`` turns an expression into one of the schedule types below and
fails fast with ``InvalidRecurrenceExpression``; nothing is silently
defaulted. Each schedule computes the next fire time strictly after a
reference time, in the reference time's timezone.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobs.errors import InvalidRecurrenceExpression

DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

# longest accepted @every interval
MAX_INTERVAL = timedelta(days=3650)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_STANDARD_CRON = re.compile(r"^(((\d+,)+\d+|(\d+[/-]\d+)|\d+|\*) ?){5,7}$")


def _midnight(t: datetime) -> datetime:
    return t.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class Yearly:
    def next_after(self, t: datetime) -> datetime:
        return _midnight(t).replace(year=t.year + 1, month=1, day=1)


@dataclass(frozen=True)
class Monthly:
    def next_after(self, t: datetime) -> datetime:
        if t.month == 12:
            return _midnight(t).replace(year=t.year + 1, month=1, day=1)
        return _midnight(t).replace(month=t.month + 1, day=1)


@dataclass(frozen=True)
class Weekly:
    def next_after(self, t: datetime) -> datetime:
        # weekday(): Monday=0 .. Sunday=6
        days = (6 - t.weekday()) % 7 or 7
        return _midnight(t) + timedelta(days=days)


@dataclass(frozen=True)
class Daily:
    def next_after(self, t: datetime) -> datetime:
        return _midnight(t) + timedelta(days=1)


@dataclass(frozen=True)
class Hourly:
    def next_after(self, t: datetime) -> datetime:
        return t.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


@dataclass(frozen=True)
class Every:
    interval: timedelta

    def next_after(self, t: datetime) -> datetime:
        return t + self.interval


Schedule = Yearly | Monthly | Weekly | Daily | Hourly | Every

_NAMED: dict[str, Schedule] = {
    "yearly": Yearly(),
    "annually": Yearly(),
    "monthly": Monthly(),
    "weekly": Weekly(),
    "daily": Daily(),
    "hourly": Hourly(),
}


def parse_duration(text: str) -> timedelta:
    """Parse ``1h30m``-style durations. Raises ValueError on anything else."""
    text = text.strip()
    if not text:
        raise ValueError("empty duration")

    total = timedelta()
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {text}")
        value, unit = match.groups()
        try:
            total += DURATION_UNITS[unit] * float(value)
        except OverflowError as exc:
            raise ValueError(f"duration out of range: {text}") from exc
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {text}")
    if total <= timedelta():
        raise ValueError(f"duration must be positive: {text}")
    if total > MAX_INTERVAL:
        raise ValueError(f"duration longer than {MAX_INTERVAL.days} days: {text}")
    return total


def parse(expression: str) -> Schedule:
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidRecurrenceExpression(str(expression), "empty expression")

    expr = expression.strip()
    body = expr[1:] if expr.startswith("@") else expr
    lowered = body.lower()

    if lowered in _NAMED:
        return _NAMED[lowered]

    if lowered.startswith("every "):
        try:
            return Every(parse_duration(lowered[len("every "):]))
        except ValueError as exc:
            raise InvalidRecurrenceExpression(expression, str(exc)) from exc

    if _STANDARD_CRON.match(expr):
        raise InvalidRecurrenceExpression(
            expression,
            "standard cron fields are not supported, use @every or a named schedule",
        )
    raise InvalidRecurrenceExpression(expression)


def validate(expression: str) -> None:
    parse(expression)


def next_run(expression: str | Schedule, after: datetime) -> datetime:
    schedule = parse(expression) if isinstance(expression, str) else expression
    return schedule.next_after(after)
