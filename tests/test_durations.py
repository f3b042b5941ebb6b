from datetime import datetime, timezone

import pytest

from learnpay.durations import AccessDuration, DurationUnit, as_utc

from conftest import utc


@pytest.mark.parametrize(
    "text,count,unit",
    [
        ("1 year", 1, DurationUnit.YEAR),
        ("2 years", 2, DurationUnit.YEAR),
        ("6 months", 6, DurationUnit.MONTH),
        ("30 days", 30, DurationUnit.DAY),
        ("  3 Months ", 3, DurationUnit.MONTH),
    ],
)
def test_parse(text, count, unit):
    duration = AccessDuration.parse(text)
    assert duration == AccessDuration(count, unit)


@pytest.mark.parametrize("text", ["", "forever", "1 week", "-1 year", "year", "0 days"])
def test_parse_rejects_invalid_text(text):
    with pytest.raises(ValueError):
        AccessDuration.parse(text)


def test_count_must_be_positive():
    with pytest.raises(ValueError):
        AccessDuration(0, DurationUnit.DAY)


def test_one_year_keeps_the_calendar_date():
    assert AccessDuration(1, DurationUnit.YEAR).add_to(utc(2024, 1, 15, 10, 30)) == utc(2025, 1, 15, 10, 30)


def test_month_end_is_clamped():
    one_month = AccessDuration(1, DurationUnit.MONTH)
    assert one_month.add_to(utc(2024, 1, 31)) == utc(2024, 2, 29)
    assert one_month.add_to(utc(2023, 1, 31)) == utc(2023, 2, 28)


def test_leap_day_plus_one_year():
    assert AccessDuration(1, DurationUnit.YEAR).add_to(utc(2024, 2, 29)) == utc(2025, 2, 28)


def test_months_roll_over_the_year():
    assert AccessDuration(6, DurationUnit.MONTH).add_to(utc(2024, 9, 30)) == utc(2025, 3, 30)


def test_days_are_exact():
    assert AccessDuration(30, DurationUnit.DAY).add_to(utc(2024, 2, 1)) == utc(2024, 3, 2)


def test_str():
    assert str(AccessDuration(1, DurationUnit.YEAR)) == "1 year"
    assert str(AccessDuration(6, DurationUnit.MONTH)) == "6 months"


def test_as_utc_tags_naive_values():
    naive = datetime(2024, 5, 1, 12, 0)
    assert as_utc(naive) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None
