"""Compiled five-field cron expressions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_INT = re.compile(r"[+-]?\d+")
_SEARCH_YEARS = 2


class CronError(ValueError):
    """Raised for a malformed cron expression."""


def _to_int(text: str) -> int | None:
    return int(text) if _INT.fullmatch(text) else None


def _parse_field(raw: str, low: int, high: int) -> frozenset[int] | None:
    raw = raw.strip()
    if raw == "*":
        return None
    values: set[int] = set()
    for token in raw.split(","):
        token = token.strip()
        if not token:
            raise CronError("empty token")
        if token.startswith("*/"):
            step = _to_int(token[2:])
            if step is None or step <= 0:
                raise CronError(f"invalid step {token!r}")
            values.update(range(low, high + 1, step))
            continue
        number = _to_int(token)
        if number is None:
            raise CronError(f"invalid token {token!r}")
        if not low <= number <= high:
            raise CronError(f"value {number} outside {low}..{high}")
        values.add(number)
    return frozenset(values)


def _allows(values: frozenset[int] | None, value: int) -> bool:
    return values is None or value in values


def _advance(moment: datetime, minutes: int) -> datetime:
    """Move forward by absolute elapsed minutes, keeping the original zone."""
    if moment.tzinfo is None:
        return moment + timedelta(minutes=minutes)
    shifted = moment.astimezone(timezone.utc) + timedelta(minutes=minutes)
    return shifted.astimezone(moment.tzinfo)


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February rolls over to 1 March.
        return moment.replace(year=moment.year + years, month=3, day=1)


@dataclass(frozen=True)
class Cron:
    """A matcher for minute, hour, day of month, month and day of week.

    A field of None matches every value. Day of week counts Sunday as 0.
    """

    minutes: frozenset[int] | None = None
    hours: frozenset[int] | None = None
    dom: frozenset[int] | None = None
    months: frozenset[int] | None = None
    dow: frozenset[int] | None = None

    def _hour_matches(self, moment: datetime) -> bool:
        return (
            _allows(self.hours, moment.hour)
            and _allows(self.dom, moment.day)
            and _allows(self.months, moment.month)
            and _allows(self.dow, (moment.weekday() + 1) % 7)
        )

    def matches(self, moment: datetime) -> bool:
        """Whether the wall-clock fields of the moment satisfy the expression."""
        return _allows(self.minutes, moment.minute) and self._hour_matches(moment)

    def next(self, after: datetime) -> datetime | None:
        """Return the first matching minute strictly after the given time.

        The search is done in the time zone of the argument and gives up after
        two years, returning None.
        """
        moment = _advance(after.replace(second=0, microsecond=0), 1)
        limit = _add_years(moment, _SEARCH_YEARS)
        while moment <= limit:
            if not self._hour_matches(moment):
                moment = _advance(moment, 60 - moment.minute)
                continue
            if self.matches(moment):
                return moment
            moment = _advance(moment, 1)
        return None


def parse(expr: str) -> Cron:
    """Compile a standard five-field cron expression."""
    parts = expr.split()
    if len(parts) != 5:
        raise CronError("cron expression must have 5 fields")
    bounds = (
        ("minute", 0, 59),
        ("hour", 0, 23),
        ("day_of_month", 1, 31),
        ("month", 1, 12),
        ("day_of_week", 0, 6),
    )
    fields = []
    for raw, (label, low, high) in zip(parts, bounds):
        try:
            fields.append(_parse_field(raw, low, high))
        except CronError as exc:
            raise CronError(f"{label}: {exc}") from exc
    return Cron(*fields)