"""
Module with a parser and evaluator for cron expressions.

Expressions use the classic five fields:

    minute  hour  day-of-month  month  day-of-week
    0-59    0-23  1-31          1-12   0-7 (0 and 7 are Sunday)

Each field is "*" or a comma separated list of values, ranges ("1-5") and steps
("*/15", "10-30/5"). Months and days of the week may also be given by their English
three letter names. The aliases @yearly, @annually, @monthly, @weekly, @daily, @midnight
and @hourly are supported as well.

As in Vixie cron, if both the day of month and day of week are restricted (neither is
"*") then a day matches if either of them matches.
"""

from __future__ import annotations

from dataclasses import dataclass
import datetime
import time
from typing import Callable, FrozenSet, Optional, Tuple

ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = "jan feb mar apr may jun jul aug sep oct nov dec".split()

DAY_NAMES = "sun mon tue wed thu fri sat".split()

# Upper bound on the search for the next fire time. Expressions that never match (like
# February 30th) are detected by running out of this window.
_SEARCH_YEARS = 5


@dataclass(frozen=True)
class _Field:
    name: str
    low: int
    high: int
    names: Tuple[str, ...] = ()
    names_offset: int = 0


_FIELDS = (
    _Field("minute", 0, 59),
    _Field("hour", 0, 23),
    _Field("day of month", 1, 31),
    _Field("month", 1, 12, tuple(MONTH_NAMES), 1),
    _Field("day of week", 0, 7, tuple(DAY_NAMES), 0),
)


class CronSyntaxError(ValueError):
    """Exception raised for malformed cron expressions."""


@dataclass(frozen=True)
class CronExpression:
    """Parsed cron expression as the set of matching values per field."""

    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    @staticmethod
    def parse(expression: str) -> CronExpression:
        """Parse a cron expression or raise CronSyntaxError."""
        text = ALIASES.get(expression.strip().lower(), expression)
        parts = text.split()

        if len(parts) != 5:
            raise CronSyntaxError(
                f"expected 5 fields in cron expression, got {len(parts)}:"
                f" {expression!r}"
            )

        values = [_parse_field(part, desc) for part, desc in zip(parts, _FIELDS)]

        # Sunday can be written as both 0 and 7
        weekdays = frozenset(d % 7 for d in values[4])

        return CronExpression(
            expression=expression,
            minutes=values[0],
            hours=values[1],
            days=values[2],
            months=values[3],
            weekdays=weekdays,
            days_restricted=parts[2] != "*",
            weekdays_restricted=parts[4] != "*",
        )

    def matches_day(self, day: datetime.date) -> bool:
        """Check whether the expression fires at some time on the given day."""
        if day.month not in self.months:
            return False

        day_match = day.day in self.days
        # Python counts Monday as 0, cron counts Sunday as 0
        weekday_match = (day.weekday() + 1) % 7 in self.weekdays

        if self.days_restricted and self.weekdays_restricted:
            return day_match or weekday_match
        else:
            return day_match and weekday_match

    def matches(self, moment: datetime.datetime) -> bool:
        return (
            self.matches_day(moment.date())
            and moment.hour in self.hours
            and moment.minute in self.minutes
        )

    def next_fire(self, after: datetime.datetime) -> datetime.datetime:
        """Return the first matching minute strictly after the given moment."""
        candidate = after.replace(second=0, microsecond=0) + datetime.timedelta(
            minutes=1
        )
        limit = candidate + datetime.timedelta(days=366 * _SEARCH_YEARS)

        while candidate < limit:
            if not self.matches_day(candidate.date()):
                candidate = datetime.datetime.combine(
                    candidate.date() + datetime.timedelta(days=1),
                    datetime.time(),
                    tzinfo=candidate.tzinfo,
                )
            elif candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + datetime.timedelta(hours=1)
            elif candidate.minute not in self.minutes:
                candidate += datetime.timedelta(minutes=1)
            else:
                return candidate

        raise CronSyntaxError(f"cron expression never fires: {self.expression!r}")

    def __str__(self) -> str:
        return self.expression


def _parse_value(text: str, desc: _Field) -> int:
    lowered = text.lower()

    if lowered in desc.names:
        return desc.names.index(lowered) + desc.names_offset

    try:
        value = int(text)
    except ValueError:
        raise CronSyntaxError(f"invalid {desc.name} value: {text!r}")

    if not desc.low <= value <= desc.high:
        raise CronSyntaxError(
            f"{desc.name} value {value} out of range {desc.low}-{desc.high}"
        )

    return value


def _parse_field(text: str, desc: _Field) -> FrozenSet[int]:
    values = set()

    for item in text.split(","):
        if not item:
            raise CronSyntaxError(f"empty item in {desc.name} field: {text!r}")

        base, _, step_text = item.partition("/")

        if step_text:
            try:
                step = int(step_text)
            except ValueError:
                raise CronSyntaxError(f"invalid step in {desc.name}: {item!r}")

            if step <= 0:
                raise CronSyntaxError(f"step must be positive in {desc.name}: {item!r}")
        else:
            step = 1

        if base == "*":
            low, high = desc.low, desc.high
        elif "-" in base:
            low_text, high_text = base.split("-", 1)
            low, high = _parse_value(low_text, desc), _parse_value(high_text, desc)

            if low > high:
                raise CronSyntaxError(f"inverted range in {desc.name}: {item!r}")
        else:
            low = _parse_value(base, desc)
            # "5/15" means starting at 5 every 15 units
            high = desc.high if step_text else low

        values.update(range(low, high + 1, step))

    return frozenset(values)


class CronSchedule:
    """
    Timer that follows a cron expression.

    The next fire time is computed from the wall clock, but the wait until then is
    measured with a monotonic clock, so adjustments of the system time during the wait
    don't make the timer fire early or late. Both clocks can be replaced for testing.
    """

    def __init__(
        self,
        expression: CronExpression,
        now: Callable[[], datetime.datetime] = datetime.datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.expression = expression

        self._now = now
        self._monotonic = monotonic

        self._fire_time: Optional[datetime.datetime] = None
        self._deadline: Optional[float] = None

    @property
    def fire_time(self) -> Optional[datetime.datetime]:
        """Return the wall clock time of the next firing, if armed."""
        return self._fire_time

    def arm(self) -> datetime.datetime:
        """Compute the next fire time from now and start waiting for it."""
        now = self._now()

        self._fire_time = self.expression.next_fire(now)
        self._deadline = self._monotonic() + (self._fire_time - now).total_seconds()

        return self._fire_time

    def remaining(self) -> float:
        """Return the number of seconds until the timer fires (0 if due)."""
        if self._deadline is None:
            self.arm()

        assert self._deadline is not None
        return max(0.0, self._deadline - self._monotonic())

    def due(self) -> bool:
        return self._deadline is not None and self._monotonic() >= self._deadline
