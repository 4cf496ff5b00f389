"""Natural language time range parser for Time Tracker reports.

Turns phrases like "today", "last week" or "2025-03-01 to 2025-03-07" into
timezone-aware (start, end) datetimes. Weeks start on Sunday, matching the
weekly histogram.

Example:
    >>> parser = TimeParser()
    >>> start, end = parser.parse("last week")
    >>> print(parser.describe_range(start, end))
    'Mar 02 - Mar 08, 2025'
"""

from datetime import datetime, timedelta, timezone
from typing import Tuple
from dateutil import parser as dateutil_parser
from dateutil import tz
import re

from . import timeutils

DAYS = ['monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday']
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _localize(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=tz.tzlocal())


class TimeParser:
    """Turns report range phrases into (start, end) pairs.

    Accepted phrases:
    - "today", "yesterday", "this week", "last week", "this month", "last month"
    - "last N days" / "past N hours"
    - a weekday name, optionally prefixed with "last"
    - "YYYY-MM-DD" or "YYYY-MM-DD to YYYY-MM-DD"
    - "all" or "all time"

    Anything else goes through dateutil's fuzzy parser and covers that day.

    Attributes:
        now: Aware reference time
        today_start: Local midnight of the reference day
        week_start: Local midnight of the Sunday starting the reference week
    """

    def __init__(self, reference_time: datetime = None):
        self.now = _localize(reference_time) if reference_time else timeutils.now()
        self.today_start = self.now.replace(hour=0, minute=0, second=0, microsecond=0)
        self.week_start = self.today_start - timedelta(days=(self.now.weekday() + 1) % 7)

    def parse(self, text: str) -> Tuple[datetime, datetime]:
        """Resolve ``text`` to an aware (start, end) range, both inclusive.

        Raises:
            ValueError: If the text cannot be parsed.
        """
        text = text.lower().strip()

        patterns = {
            r'^(?:all|all time)$': lambda: (EPOCH, self.now),
            r'^today$': lambda: (self.today_start, self.now),
            r'^yesterday$': lambda: (
                self.today_start - timedelta(days=1),
                self.today_start - timedelta(seconds=1)
            ),
            r'^this week$': lambda: (self.week_start, self.now),
            r'^last week$': lambda: (
                self.week_start - timedelta(days=7),
                self.week_start - timedelta(seconds=1)
            ),
            r'^this month$': lambda: (self.today_start.replace(day=1), self.now),
            r'^last month$': lambda: self._last_month(),
            r'^(?:last|past) (\d+) days?$': lambda m: (
                self.today_start - timedelta(days=int(m.group(1)) - 1),
                self.now
            ),
            r'^(?:last|past) (\d+) hours?$': lambda m: (
                self.now - timedelta(hours=int(m.group(1))),
                self.now
            ),
            r'^(monday|tuesday|wednesday|thursday|friday|saturday|sunday)$':
                lambda m: self._specific_weekday(m.group(1)),
            r'^last (monday|tuesday|wednesday|thursday|friday|saturday|sunday)$':
                lambda m: self._specific_weekday(m.group(1), last=True),
            r'^(\d{4}-\d{2}-\d{2})$': lambda m: self._date_range(m.group(1), m.group(1)),
            r'^(\d{4}-\d{2}-\d{2}) to (\d{4}-\d{2}-\d{2})$':
                lambda m: self._date_range(m.group(1), m.group(2)),
        }

        for pattern, handler in patterns.items():
            match = re.match(pattern, text)
            if match:
                if match.groups():
                    return handler(match)
                return handler()

        # Try dateutil as fallback
        try:
            parsed = _localize(dateutil_parser.parse(text, fuzzy=True))
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Could not parse time range: {text}") from e
        return (
            parsed.replace(hour=0, minute=0, second=0, microsecond=0),
            parsed.replace(hour=23, minute=59, second=59, microsecond=0)
        )

    def _last_month(self) -> Tuple[datetime, datetime]:
        """Get first to last day of previous month."""
        first_of_this_month = self.today_start.replace(day=1)
        last_of_prev_month = first_of_this_month - timedelta(days=1)
        return (
            last_of_prev_month.replace(day=1),
            last_of_prev_month.replace(hour=23, minute=59, second=59)
        )

    def _specific_weekday(self, day_name: str, last: bool = False) -> Tuple[datetime, datetime]:
        """Most recent occurrence of a weekday (today counts unless ``last``)."""
        days_ago = (self.now.weekday() - DAYS.index(day_name)) % 7
        if last and days_ago == 0:
            days_ago = 7
        target = self.today_start - timedelta(days=days_ago)
        return (target, target.replace(hour=23, minute=59, second=59))

    def _date_range(self, start_str: str, end_str: str) -> Tuple[datetime, datetime]:
        start = _localize(datetime.strptime(start_str, '%Y-%m-%d'))
        end = _localize(datetime.strptime(end_str, '%Y-%m-%d').replace(hour=23, minute=59, second=59))
        if end < start:
            raise ValueError(f"Range ends before it starts: {start_str} to {end_str}")
        return (start, end)

    def describe_range(self, start: datetime, end: datetime) -> str:
        """Generate human-readable description of a time range."""
        if start <= EPOCH:
            return f"All time until {end.strftime('%b %d, %Y')}"
        if start.date() == end.date():
            return start.strftime('%A, %B %d, %Y')
        elif (end - start).days <= 7:
            return f"{start.strftime('%b %d')} - {end.strftime('%b %d, %Y')}"
        else:
            return f"{start.strftime('%B %d')} - {end.strftime('%B %d, %Y')}"
