import datetime

import pytest

from neomount.migration.cron import CronExpression, CronSchedule, CronSyntaxError


def dt(*args):
    return datetime.datetime(*args)


def test_parse_default_schedule():
    expr = CronExpression.parse("0 2 * * *")

    assert expr.minutes == frozenset({0})
    assert expr.hours == frozenset({2})
    assert expr.days == frozenset(range(1, 32))
    assert expr.months == frozenset(range(1, 13))
    assert expr.weekdays == frozenset(range(7))
    assert not expr.days_restricted
    assert not expr.weekdays_restricted


def test_parse_lists_ranges_steps():
    expr = CronExpression.parse("*/15 9-17/4 1,15 * 1-5")

    assert expr.minutes == frozenset({0, 15, 30, 45})
    assert expr.hours == frozenset({9, 13, 17})
    assert expr.days == frozenset({1, 15})
    assert expr.weekdays == frozenset({1, 2, 3, 4, 5})


def test_parse_start_with_step():
    assert CronExpression.parse("5/20 * * * *").minutes == frozenset({5, 25, 45})


def test_parse_names():
    expr = CronExpression.parse("0 0 * jan,Jul sat,sun")

    assert expr.months == frozenset({1, 7})
    assert expr.weekdays == frozenset({0, 6})


def test_parse_sunday_as_seven():
    assert CronExpression.parse("0 0 * * 7").weekdays == frozenset({0})


def test_parse_aliases():
    assert CronExpression.parse("@daily").hours == frozenset({0})
    assert CronExpression.parse("@hourly").hours == frozenset(range(24))
    assert str(CronExpression.parse("@weekly")) == "@weekly"


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "* * * *",
        "* * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 8",
        "*/0 * * * *",
        "5-1 * * * *",
        "a * * * *",
        "1,,2 * * * *",
        "@often",
    ],
)
def test_parse_invalid(expression):
    with pytest.raises(CronSyntaxError):
        CronExpression.parse(expression)


def test_syntax_error_is_value_error():
    assert issubclass(CronSyntaxError, ValueError)


def test_next_fire_same_day():
    expr = CronExpression.parse("0 2 * * *")

    assert expr.next_fire(dt(2024, 3, 10, 1, 30)) == dt(2024, 3, 10, 2, 0)


def test_next_fire_next_day():
    expr = CronExpression.parse("0 2 * * *")

    assert expr.next_fire(dt(2024, 3, 10, 2, 0)) == dt(2024, 3, 11, 2, 0)
    assert expr.next_fire(dt(2024, 3, 10, 2, 0, 30)) == dt(2024, 3, 11, 2, 0)


def test_next_fire_end_of_year():
    expr = CronExpression.parse("30 23 31 12 *")

    assert expr.next_fire(dt(2024, 12, 31, 23, 30)) == dt(2025, 12, 31, 23, 30)


def test_next_fire_leap_day():
    expr = CronExpression.parse("0 0 29 2 *")

    assert expr.next_fire(dt(2025, 1, 1)) == dt(2028, 2, 29, 0, 0)


def test_next_fire_weekday():
    # 2024-03-10 is a Sunday
    expr = CronExpression.parse("0 9 * * mon")

    assert expr.next_fire(dt(2024, 3, 10, 12, 0)) == dt(2024, 3, 11, 9, 0)


def test_next_fire_day_or_weekday():
    # Either the 15th or a Friday
    expr = CronExpression.parse("0 0 15 * fri")

    assert expr.next_fire(dt(2024, 3, 10)) == dt(2024, 3, 15, 0, 0)
    assert expr.next_fire(dt(2024, 3, 15)) == dt(2024, 3, 22, 0, 0)


def test_next_fire_every_minute():
    expr = CronExpression.parse("* * * * *")

    assert expr.next_fire(dt(2024, 3, 10, 23, 59, 59)) == dt(2024, 3, 11, 0, 0)


def test_next_fire_never():
    expr = CronExpression.parse("0 0 30 2 *")

    with pytest.raises(CronSyntaxError):
        expr.next_fire(dt(2024, 1, 1))


def test_matches():
    expr = CronExpression.parse("*/10 8-18 * * 1-5")

    # Monday
    assert expr.matches(dt(2024, 3, 11, 8, 30))
    assert not expr.matches(dt(2024, 3, 11, 8, 31))
    assert not expr.matches(dt(2024, 3, 11, 19, 0))

    # Sunday
    assert not expr.matches(dt(2024, 3, 10, 8, 30))


class FakeClocks:
    def __init__(self, now, monotonic=100.0):
        self.now = now
        self.monotonic = monotonic

    def wall(self):
        return self.now

    def mono(self):
        return self.monotonic

    def advance(self, seconds, wall=True):
        self.monotonic += seconds

        if wall:
            self.now += datetime.timedelta(seconds=seconds)


def test_schedule():
    clocks = FakeClocks(dt(2024, 3, 10, 1, 59))
    schedule = CronSchedule(
        CronExpression.parse("0 2 * * *"), now=clocks.wall, monotonic=clocks.mono
    )

    assert schedule.fire_time is None
    assert not schedule.due()

    assert schedule.arm() == dt(2024, 3, 10, 2, 0)
    assert schedule.remaining() == 60

    clocks.advance(30)
    assert schedule.remaining() == 30
    assert not schedule.due()

    clocks.advance(30)
    assert schedule.remaining() == 0
    assert schedule.due()

    assert schedule.arm() == dt(2024, 3, 11, 2, 0)
    assert not schedule.due()


def test_schedule_ignores_wall_clock_jumps():
    clocks = FakeClocks(dt(2024, 3, 10, 1, 0))
    schedule = CronSchedule(
        CronExpression.parse("0 2 * * *"), now=clocks.wall, monotonic=clocks.mono
    )

    schedule.arm()

    # The wall clock jumps ahead an hour, but only ten minutes actually passed
    clocks.now += datetime.timedelta(hours=1)
    clocks.advance(600, wall=False)

    assert not schedule.due()
    assert schedule.remaining() == 3000


def test_schedule_arms_lazily():
    clocks = FakeClocks(dt(2024, 3, 10, 1, 0))
    schedule = CronSchedule(
        CronExpression.parse("0 * * * *"), now=clocks.wall, monotonic=clocks.mono
    )

    assert schedule.remaining() == 3600
    assert schedule.fire_time == dt(2024, 3, 10, 2, 0)
