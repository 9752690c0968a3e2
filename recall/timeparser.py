"""Date range helpers for activity and summary queries.

TimeParser turns natural language ("yesterday", "last week", "past 3
hours", "2025-12-01 to 2025-12-07") into datetime ranges. The period
helpers map a date to the inclusive day/week/month that contains it, which
is how Daily, Weekly and Monthly summaries are keyed.

Example:
    >>> parser = TimeParser()
    >>> start, end = parser.parse("last week")
    >>> period_bounds('Weekly', date(2025, 12, 10))
    (datetime.date(2025, 12, 8), datetime.date(2025, 12, 14))
"""

import calendar
import re
from datetime import date, datetime, time as dtime, timedelta
from typing import Callable, List, Tuple

from dateutil import parser as dateutil_parser

from .models import SUMMARY_DAILY, SUMMARY_MONTHLY, SUMMARY_WEEKLY

WEEKDAYS = ['monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday']


def period_bounds(summary_type: str, day: date) -> Tuple[date, date]:
    """Inclusive first and last date of the period containing ``day``.

    Weeks run Monday to Sunday.

    Raises:
        ValueError: For an unknown summary type.
    """
    if summary_type == SUMMARY_DAILY:
        return day, day
    if summary_type == SUMMARY_WEEKLY:
        monday = day - timedelta(days=day.weekday())
        return monday, monday + timedelta(days=6)
    if summary_type == SUMMARY_MONTHLY:
        last = calendar.monthrange(day.year, day.month)[1]
        return day.replace(day=1), day.replace(day=last)
    raise ValueError(f"Unknown summary type: {summary_type}")


def previous_period(summary_type: str, day: date) -> Tuple[date, date]:
    """The complete period immediately before the one containing ``day``."""
    start, _ = period_bounds(summary_type, day)
    return period_bounds(summary_type, start - timedelta(days=1))


def date_range_timestamps(start: date, end: date) -> Tuple[int, int]:
    """Unix seconds for local midnight of ``start`` through 23:59:59 of ``end``."""
    begin = datetime.combine(start, dtime.min)
    finish = datetime.combine(end, dtime(23, 59, 59))
    return int(begin.timestamp()), int(finish.timestamp())


def parse_date(value) -> date:
    """Accept a date, datetime or ISO/free-form string.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return dateutil_parser.parse(str(value)).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Could not parse date: {value}") from e


class TimeParser:
    """Parse natural language time references into datetime ranges.

    Attributes:
        now: Reference datetime for relative expressions
        today_start: Midnight of the reference day
    """

    def __init__(self, reference_time: datetime = None):
        self.now = reference_time or datetime.now()
        self.today_start = self.now.replace(hour=0, minute=0, second=0, microsecond=0)
        self._patterns: List[Tuple[str, Callable]] = [
            (r'^today$', lambda m: (self.today_start, self.now)),
            (r'^yesterday$', lambda m: self._whole_day(self.today_start - timedelta(days=1))),
            (r'^this morning$', lambda m: (
                self.today_start.replace(hour=6),
                min(self.today_start.replace(hour=12), self.now),
            )),
            (r'^this afternoon$', lambda m: (
                self.today_start.replace(hour=12),
                min(self.today_start.replace(hour=18), self.now),
            )),
            (r'^this week$', lambda m: (
                self.today_start - timedelta(days=self.now.weekday()), self.now,
            )),
            (r'^this month$', lambda m: (self.today_start.replace(day=1), self.now)),
            (r'^last week$', lambda m: self._period(SUMMARY_WEEKLY, weeks_back=1)),
            (r'^last month$', lambda m: self._period(SUMMARY_MONTHLY, weeks_back=0, previous=True)),
            (r'^(?:last|past) (\d+) days?$', lambda m: (
                self.today_start - timedelta(days=int(m.group(1))), self.now,
            )),
            (r'^(?:last|past) (\d+) hours?$', lambda m: (
                self.now - timedelta(hours=int(m.group(1))), self.now,
            )),
            (r'^(last )?(monday|tuesday|wednesday|thursday|friday|saturday|sunday)$',
             lambda m: self._weekday(m.group(2), bool(m.group(1)))),
            (r'^(\d{4}-\d{2}-\d{2})$', lambda m: self._whole_day(
                datetime.strptime(m.group(1), '%Y-%m-%d'))),
            (r'^(\d{4}-\d{2}-\d{2})\s*(?:to|\.\.)\s*(\d{4}-\d{2}-\d{2})$', lambda m: (
                datetime.strptime(m.group(1), '%Y-%m-%d'),
                datetime.strptime(m.group(2), '%Y-%m-%d').replace(hour=23, minute=59, second=59),
            )),
        ]

    def parse(self, text: str) -> Tuple[datetime, datetime]:
        """Parse natural language to a (start, end) datetime tuple.

        Raises:
            ValueError: If the text cannot be parsed.
        """
        text = (text or '').lower().strip()
        for pattern, handler in self._patterns:
            match = re.match(pattern, text)
            if match:
                return handler(match)

        try:
            parsed = dateutil_parser.parse(text, fuzzy=True, default=self.today_start)
        except (ValueError, OverflowError):
            raise ValueError(f"Could not parse time range: {text}")
        return self._whole_day(parsed)

    def parse_timestamps(self, text: str) -> Tuple[int, int]:
        start, end = self.parse(text)
        return int(start.timestamp()), int(end.timestamp())

    def _whole_day(self, day: datetime) -> Tuple[datetime, datetime]:
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start.replace(hour=23, minute=59, second=59)

    def _period(self, summary_type: str, weeks_back: int = 0,
                previous: bool = False) -> Tuple[datetime, datetime]:
        anchor = self.today_start.date() - timedelta(weeks=weeks_back)
        if previous:
            start, end = previous_period(summary_type, anchor)
        else:
            start, end = period_bounds(summary_type, anchor)
        return (datetime.combine(start, dtime.min), datetime.combine(end, dtime(23, 59, 59)))

    def _weekday(self, day_name: str, last: bool) -> Tuple[datetime, datetime]:
        days_ago = (self.now.weekday() - WEEKDAYS.index(day_name)) % 7
        if last and days_ago == 0:
            days_ago = 7
        return self._whole_day(self.today_start - timedelta(days=days_ago))
