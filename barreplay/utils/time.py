"""
Time-of-day utilities for session-aware exit logic.

Bar timestamps keep the UTC offset they were recorded with (exchange
local time for most broker exports). Time-exit cutoffs are wall-clock
times compared against that local time, or against an explicit IANA
zone when one is configured. This module provides the single
conversion point.
"""

from datetime import datetime, time
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def parse_time_of_day(value: Union[str, time]) -> time:
    """Parse an "HH:MM" or "HH:MM:SS" string into a naive time.

    Args:
        value: Cutoff string, or an existing time (returned unchanged).

    Returns:
        Naive time-of-day.

    Raises:
        ValueError: If the string is not a valid 24h clock time.
    """
    if isinstance(value, time):
        return value
    text = str(value).strip()
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid time of day '{value}'. Expected HH:MM or HH:MM:SS")


def validate_timezone(tz_name: str) -> str:
    """Return ``tz_name`` stripped if it names a known IANA zone.

    Raises:
        ValueError: If the zone is unknown or the name is malformed.
    """
    name = str(tz_name).strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise ValueError(f"Unknown time zone '{tz_name}'") from None
    return name


def local_time_of_day(ts: datetime, tz_name: Optional[str] = None) -> time:
    """Wall-clock time-of-day of a bar timestamp.

    Args:
        ts: Bar timestamp. Naive datetimes are taken as already local.
        tz_name: Optional IANA zone; when given, tz-aware timestamps are
            converted to it first.

    Returns:
        Naive time-of-day.
    """
    if tz_name and ts.tzinfo is not None:
        ts = ts.astimezone(ZoneInfo(tz_name))
    return ts.time()
