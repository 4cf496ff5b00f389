"""Timestamp helpers.

Sessions persist their start and end times as ISO-8601 strings. Everything
that needs to compare them goes through ``parse_timestamp`` so invalid values
turn into ``None`` instead of exceptions. Naive timestamps are read as local
time.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from dateutil import parser as dateutil_parser
from dateutil import tz

DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def now() -> datetime:
    """Current local time, timezone-aware."""
    return datetime.now().astimezone()


def to_iso(dt: datetime) -> str:
    return dt.isoformat()


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_epoch_ms(ms: Union[int, float]) -> Optional[datetime]:
    """Convert epoch milliseconds to a local aware datetime, or None."""
    try:
        if not math.isfinite(ms):
            return None
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone()
    except (OverflowError, OSError, ValueError, TypeError):
        return None


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp into an aware datetime.

    Args:
        value: ISO-8601 string, epoch milliseconds, datetime, or None.

    Returns:
        Aware datetime, or None if the value is missing or invalid.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return from_epoch_ms(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = dateutil_parser.isoparse(text)
        except (ValueError, OverflowError):
            try:
                parsed = dateutil_parser.parse(text)
            except (ValueError, OverflowError):
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz.tzlocal())
    return parsed


def local_midnight(dt: datetime) -> datetime:
    """Start of the local calendar day containing ``dt``."""
    return dt.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)


def week_start(dt: datetime) -> datetime:
    """Local midnight of the Sunday that starts the week containing ``dt``."""
    midnight = local_midnight(dt)
    # weekday(): Monday=0 .. Sunday=6
    return midnight - timedelta(days=(midnight.weekday() + 1) % 7)


def day_name(dt: datetime) -> str:
    """Short Sunday-first day name for ``dt`` in local time."""
    return DAY_NAMES[(dt.astimezone().weekday() + 1) % 7]
