"""
Wall-clock and time-of-day helpers.

All policy decisions (night window, production lookahead) use the plant's
local time zone, not the server's.
"""
import re
from datetime import datetime, time
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from dispatch_board.core.config import settings

Clock = Callable[[], datetime]

_TIME_PATTERN = re.compile(r"^(\d{1,2})\s*[:hH]\s*(\d{2})(?::(\d{2})(?:\.\d+)?)?$")


def plant_timezone() -> ZoneInfo:
    """Time zone the plant operates in."""
    return ZoneInfo(settings.TIMEZONE)


def local_now() -> datetime:
    """Current aware datetime in the plant time zone."""
    return datetime.now(plant_timezone())


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """
    Parse a time-of-day string to minute precision.

    Accepts "HH:MM", "H:MM", "HH:MM:SS" (as stored by the backend) and
    "HHhMM". Returns None for blank input.

    Raises:
        ValueError: If the value is not a valid time of day.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    match = _TIME_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid time of day: {value!r}")

    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise ValueError(f"Invalid time of day: {value!r}")

    return time(hours, minutes)


def format_time_of_day(value: Optional[time]) -> Optional[str]:
    """Render a time of day as "HH:MM"."""
    if value is None:
        return None
    return value.strftime("%H:%M")


def in_hour_window(moment: datetime, start_hour: int, end_hour: int) -> bool:
    """
    Whether ``moment`` falls in the [start_hour, end_hour) window.

    ``end_hour`` 0 means midnight; a window whose end is not after its start
    wraps past midnight (18 -> 6 covers the night).
    """
    hour = moment.hour
    if start_hour == end_hour:
        return False
    if end_hour == 0:
        return hour >= start_hour
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour
