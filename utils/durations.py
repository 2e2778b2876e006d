"""
ISO-8601 duration parsing and send-time calculation.

Supports durations like PT0S, PT10M, PT24H, P3D, P1DT12H30M, P1W.
Years and months are approximated (365.25 and 30.44 days).
Quiet hours are HH:MM windows evaluated in the plan timezone; a window whose
end is earlier than its start spans midnight (e.g. 21:00 → 07:30).
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = structlog.get_logger()

_DURATION_RE = re.compile(
    r"^P(?!$)"
    r"(?:(?P<years>\d+(?:\.\d+)?)Y)?"
    r"(?:(?P<months>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<weeks>\d+(?:\.\d+)?)W)?"
    r"(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?=\d)"
    r"(?:(?P<hours>\d+(?:\.\d+)?)H)?"
    r"(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?"
    r")?$"
)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_UNIT_SECONDS = {
    "years": 365.25 * 86400,
    "months": 30.44 * 86400,
    "weeks": 7 * 86400,
    "days": 86400,
    "hours": 3600,
    "minutes": 60,
    "seconds": 1,
}


def parse_iso_duration(duration: str) -> timedelta:
    """Parse an ISO-8601 duration. Raises ValueError on malformed input."""
    match = _DURATION_RE.match(duration or "")
    if not match:
        raise ValueError(f"Invalid ISO 8601 duration: {duration!r}")
    total = 0.0
    for unit, value in match.groupdict().items():
        if value:
            total += float(value) * _UNIT_SECONDS[unit]
    return timedelta(seconds=total)


def is_valid_iso_duration(duration: str) -> bool:
    try:
        parse_iso_duration(duration)
        return True
    except ValueError:
        return False


def is_valid_time_format(value: str) -> bool:
    return bool(_TIME_RE.match(value or ""))


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone_using_utc", timezone=name)
        return ZoneInfo("UTC")


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_in_quiet_hours(moment: datetime, tz_name: str, quiet_hours: Any) -> bool:
    """True if `moment` falls inside the [start, end) quiet window in tz_name."""
    local = _as_utc(moment).astimezone(_zone(tz_name))
    start, end = _parse_hhmm(quiet_hours.start), _parse_hhmm(quiet_hours.end)
    now = local.time().replace(second=0, microsecond=0, tzinfo=None)
    if start == end:
        return False
    if start < end:
        return start <= now < end
    return now >= start or now < end


def apply_quiet_hours(moment: datetime, tz_name: str, quiet_hours: Any) -> datetime:
    """Push `moment` to the end of the quiet window if it falls inside it."""
    if not is_in_quiet_hours(moment, tz_name, quiet_hours):
        return _as_utc(moment)

    zone = _zone(tz_name)
    local = _as_utc(moment).astimezone(zone)
    start, end = _parse_hhmm(quiet_hours.start), _parse_hhmm(quiet_hours.end)

    target_date = local.date()
    # Window spans midnight and we are in its late-evening half: end is tomorrow
    if end < start and local.time().replace(tzinfo=None) >= start:
        target_date = target_date + timedelta(days=1)

    adjusted = datetime.combine(target_date, end, tzinfo=zone)
    return adjusted.astimezone(timezone.utc)


def calculate_schedule_time(
    delay: str,
    tz_name: str = "UTC",
    quiet_hours: Optional[Any] = None,
    base_time: Optional[datetime] = None,
) -> datetime:
    """
    Compute when a send should happen: base_time + delay, moved out of quiet hours.
    An unparseable delay falls back to base_time (send now) and is logged.
    """
    base = _as_utc(base_time or datetime.now(timezone.utc))
    try:
        scheduled = base + parse_iso_duration(delay)
    except ValueError as e:
        logger.warning("schedule_delay_invalid_using_immediate",
                       delay=delay, timezone=tz_name, error=str(e))
        scheduled = base

    if quiet_hours:
        scheduled = apply_quiet_hours(scheduled, tz_name, quiet_hours)
    return scheduled
