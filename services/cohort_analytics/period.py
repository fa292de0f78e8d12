"""Reporting period parsing and inclusive date-range helpers."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time

from .errors import InvalidPeriodError

__all__ = ["DateRange", "Period", "parse_date", "parse_period"]

_DAY_START = time(0, 0, 0)
_DAY_END = time(23, 59, 59)
# Earliest instant any history query reaches back to.
_HISTORY_START = datetime(1900, 1, 1)


@dataclass(frozen=True, slots=True)
class DateRange:
    """Closed datetime interval ``[start, end]``."""

    start: datetime
    end: datetime

    def __contains__(self, value: datetime | None) -> bool:
        if value is None:
            return False
        return self.start <= value <= self.end

    @classmethod
    def for_days(cls, start: date, end: date) -> "DateRange":
        """Return the range covering whole calendar days ``start``..``end``."""

        return cls(datetime.combine(start, _DAY_START), datetime.combine(end, _DAY_END))

    @classmethod
    def through(cls, end: datetime) -> "DateRange":
        """Everything recorded up to and including ``end``."""

        return cls(_HISTORY_START, end)


@dataclass(frozen=True, slots=True)
class Period:
    """A reporting period expressed as calendar dates, both ends inclusive."""

    start: date
    end: date

    @property
    def window(self) -> DateRange:
        """Datetime bounds ``[start 00:00:00, end 23:59:59]``."""

        return DateRange.for_days(self.start, self.end)

    def previous_month(self) -> "Period":
        """The same period moved back one calendar month.

        Days past the end of the shorter month land on its last day, so
        March 31 maps to February 28 or 29.
        """

        return Period(_month_before(self.start), _month_before(self.end))

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def _month_before(day: date) -> date:
    year, month = (day.year, day.month - 1) if day.month > 1 else (day.year - 1, 12)
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def parse_date(value: date | str, *, field: str = "date") -> date:
    """Return ``value`` as a calendar date.

    Accepts :class:`date` instances (datetimes are truncated) and ISO
    ``YYYY-MM-DD`` strings.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError as exc:
            raise InvalidPeriodError(
                f"Period {field} '{value}' is not an ISO calendar date (YYYY-MM-DD)."
            ) from exc
    raise InvalidPeriodError(
        f"Period {field} must be a date or ISO string, got {type(value).__name__}."
    )


def parse_period(start: date | str, end: date | str) -> Period:
    """Build a :class:`Period`, failing loudly on malformed boundaries."""

    try:
        start_day = parse_date(start, field="start")
        end_day = parse_date(end, field="end")
    except InvalidPeriodError as exc:
        raise InvalidPeriodError(str(exc), start=start, end=end) from exc

    if start_day > end_day:
        raise InvalidPeriodError(
            f"Period start {start_day.isoformat()} is after end {end_day.isoformat()}.",
            start=start,
            end=end,
        )
    return Period(start_day, end_day)
