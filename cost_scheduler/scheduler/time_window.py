# =============================================================================
# COST OPTIMIZATION SCHEDULER - TIME WINDOW
# =============================================================================
"""
Decides whether "now" falls inside a schedule's daily running window.
"""

from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def ensure_timezone(name: str) -> bool:
    """True when ``name`` is a known IANA timezone."""
    if not name or not isinstance(name, str):
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_time(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS``."""
    parts = [int(p) for p in str(value).split(":")]
    if len(parts) == 2:
        parts.append(0)
    if len(parts) != 3:
        raise ValueError(f"Invalid time: {value}")
    return time(parts[0], parts[1], parts[2])


def is_current_time_in_range(
    start: str,
    end: str,
    timezone: str,
    days: Iterable[str],
    now: Optional[datetime] = None,
) -> bool:
    """
    Check whether the current moment lies strictly between start and end.

    Both bounds are taken on today's date in ``timezone``. When ``end`` is
    earlier than ``start`` the window runs past midnight and ``end`` is
    moved to the next day. Today's weekday must be listed in ``days``.

    Args:
        start: Window start, ``HH:MM[:SS]``
        end: Window end, ``HH:MM[:SS]``
        timezone: IANA timezone name
        days: Weekday abbreviations (``Mon`` .. ``Sun``)
        now: Reference instant (aware); defaults to the current UTC time
    """
    zone = ZoneInfo(timezone)
    current = (now or datetime.now(dt_timezone.utc)).astimezone(zone)

    if DAY_NAMES[current.weekday()] not in set(days or ()):
        return False

    start_at = datetime.combine(current.date(), parse_time(start), tzinfo=zone)
    end_at = datetime.combine(current.date(), parse_time(end), tzinfo=zone)
    if end_at < start_at:
        end_at += timedelta(days=1)

    return start_at < current < end_at


__all__ = ["DAY_NAMES", "ensure_timezone", "parse_time", "is_current_time_in_range"]
