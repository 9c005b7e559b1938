from datetime import datetime, timedelta, timezone

import pytest

from krill.cron import Cron, CronError, parse

UTC = timezone.utc


def test_parse_and_next_run_computation():
    expr = parse("*/15 9 * * 1")
    got = expr.next(datetime(2026, 3, 2, 9, 1, tzinfo=UTC))
    assert got == datetime(2026, 3, 2, 9, 15, tzinfo=UTC)


@pytest.mark.parametrize(
    "expr, label",
    [
        ("* *", "5 fields"),
        ("61 * * * *", "minute"),
        ("* 24 * * *", "hour"),
        ("* * 0 * *", "day_of_month"),
        ("* * * 13 *", "month"),
        ("* * * * 7", "day_of_week"),
    ],
)
def test_parse_rejects_invalid(expr, label):
    with pytest.raises(CronError, match=label):
        parse(expr)


@pytest.mark.parametrize("expr", ["*/0 * * * *", "a * * * *", "1,,2 * * * *", "1,* * * * *"])
def test_parse_rejects_bad_tokens(expr):
    with pytest.raises(CronError, match="minute"):
        parse(expr)


def test_step_expands_values():
    expr = parse("*/20 * * * *")
    assert expr.minutes == frozenset({0, 20, 40})
    assert expr.hours is None


def test_list_of_values():
    expr = parse("5,10 3 * * *")
    assert expr.minutes == frozenset({5, 10})
    assert expr.hours == frozenset({3})


def test_next_is_strictly_after():
    expr = parse("30 10 * * *")
    start = datetime(2026, 1, 1, 10, 30, 45, tzinfo=UTC)
    assert expr.next(start) == datetime(2026, 1, 2, 10, 30, tzinfo=UTC)


def test_next_every_minute():
    expr = parse("* * * * *")
    assert expr.next(datetime(2026, 3, 2, 9, 59, 59, tzinfo=UTC)) == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def test_next_in_fixed_offset_zone():
    rome_winter = timezone(timedelta(hours=1))
    expr = parse("0 9 * * *")
    after = datetime(2026, 3, 2, 7, 29, tzinfo=UTC).astimezone(rome_winter)
    got = expr.next(after)
    assert got.astimezone(UTC) == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def test_next_impossible_returns_none():
    expr = parse("0 0 31 2 *")
    assert expr.next(datetime(2026, 1, 1, tzinfo=UTC)) is None


def test_matches_sunday_is_zero():
    expr = parse("* * * * 0")
    assert expr.matches(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))  # a Sunday
    assert not expr.matches(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


def test_default_cron_matches_everything():
    assert Cron().matches(datetime(2030, 7, 4, 23, 59))