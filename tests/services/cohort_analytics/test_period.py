from __future__ import annotations

from datetime import date, datetime

import pytest

from services.cohort_analytics.errors import CohortEngineError, InvalidPeriodError
from services.cohort_analytics.period import DateRange, Period, parse_date, parse_period


def test_parse_period_accepts_iso_strings_and_dates() -> None:
    period = parse_period("2020-01-01", date(2020, 1, 31))

    assert period == Period(date(2020, 1, 1), date(2020, 1, 31))
    assert str(period) == "2020-01-01..2020-01-31"


def test_period_window_covers_whole_days() -> None:
    window = parse_period("2020-01-01", "2020-01-31").window

    assert window.start == datetime(2020, 1, 1, 0, 0, 0)
    assert window.end == datetime(2020, 1, 31, 23, 59, 59)
    assert datetime(2020, 1, 31, 23, 59, 59) in window
    assert datetime(2020, 2, 1, 0, 0, 0) not in window
    assert datetime(2019, 12, 31, 23, 59, 59) not in window


def test_date_range_never_contains_missing_values() -> None:
    window = DateRange.for_days(date(2020, 1, 1), date(2020, 1, 1))

    assert None not in window


def test_parse_date_truncates_datetimes() -> None:
    assert parse_date(datetime(2020, 5, 4, 13, 30)) == date(2020, 5, 4)


@pytest.mark.parametrize("start,end", [("2020-13-01", "2020-12-31"), ("01/02/2020", "2020-02-01"), ("", "2020-01-01")])
def test_parse_period_rejects_malformed_boundaries(start: str, end: str) -> None:
    with pytest.raises(InvalidPeriodError) as excinfo:
        parse_period(start, end)

    assert excinfo.value.start == start
    assert excinfo.value.end == end
    assert isinstance(excinfo.value, CohortEngineError)
    assert isinstance(excinfo.value, ValueError)


def test_parse_period_rejects_inverted_period() -> None:
    with pytest.raises(InvalidPeriodError, match="after end"):
        parse_period("2020-02-01", "2020-01-01")


def test_parse_period_rejects_unsupported_types() -> None:
    with pytest.raises(InvalidPeriodError, match="must be a date or ISO string"):
        parse_period(20200101, "2020-01-31")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("start", "end", "expected"),
    [
        ("2020-02-01", "2020-02-29", Period(date(2020, 1, 1), date(2020, 1, 29))),
        ("2020-03-01", "2020-03-31", Period(date(2020, 2, 1), date(2020, 2, 29))),
        ("2021-03-31", "2021-03-31", Period(date(2021, 2, 28), date(2021, 2, 28))),
        ("2020-01-15", "2020-01-31", Period(date(2019, 12, 15), date(2019, 12, 31))),
    ],
)
def test_previous_month_clamps_to_the_shorter_month(start: str, end: str, expected: Period) -> None:
    assert parse_period(start, end).previous_month() == expected


def test_history_range_ends_at_the_given_instant() -> None:
    history = DateRange.through(datetime(2020, 1, 31, 23, 59, 59))

    assert datetime(1995, 7, 1) in history
    assert datetime(2020, 1, 31, 23, 59, 59) in history
    assert datetime(2020, 2, 1) not in history
