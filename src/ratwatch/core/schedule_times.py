"""Parse the free-text check-in time a user types when starting a watch.

Relative forms are measured from *now*: ``10m``, ``2h``, ``1h30m``,
``in 2h 30m``, ``45 minutes``. Absolute forms are wall-clock times in the
guild's timezone: ``10pm``, ``10:30pm``, ``22:00``. An absolute time that has
already passed today means the same time tomorrow.

All results are aware UTC datetimes. Unparseable input returns ``None``.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

_RELATIVE = re.compile(
    r"^(?:(\d+)\s*h(?:(?:ou)?rs?)?)?\s*(?:(\d+)\s*m(?:in(?:ute)?s?)?)?$",
)
_TWELVE_HOUR = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)$")
_TWENTY_FOUR_HOUR = re.compile(r"^(\d{1,2}):(\d{2})$")


def resolve_timezone(name: str) -> ZoneInfo:
    """ZoneInfo for *name*, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone tz=%s fallback=UTC", name)
        return ZoneInfo("UTC")


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_schedule_time(
    text: str,
    timezone: str = "UTC",
    *,
    now: datetime,
) -> datetime | None:
    """Turn user input into an aware UTC instant, or None if it can't be parsed."""
    if not text or not text.strip():
        return None
    cleaned = text.strip().lower()

    relative = _parse_relative(cleaned, now)
    if relative is not None:
        return relative
    return _parse_absolute(cleaned, resolve_timezone(timezone), now)


def _parse_relative(text: str, now: datetime) -> datetime | None:
    if text.startswith("in "):
        text = text[3:].strip()
    match = _RELATIVE.match(text)
    if match is None:
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2) or 0)
    if hours == 0 and minutes == 0:
        return None
    return now.astimezone(UTC) + timedelta(hours=hours, minutes=minutes)


def _parse_absolute(text: str, tz: ZoneInfo, now: datetime) -> datetime | None:
    hour: int
    minute: int

    match = _TWELVE_HOUR.match(text)
    if match is not None:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        is_pm = match.group(3) == "pm"
        if hour == 12:
            hour = 12 if is_pm else 0
        elif is_pm:
            hour += 12
    else:
        match = _TWENTY_FOUR_HOUR.match(text)
        if match is None:
            return None
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour > 23 or minute > 59:
            return None

    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = (candidate.replace(tzinfo=None) + timedelta(days=1)).replace(tzinfo=tz)
    return candidate.astimezone(UTC)
