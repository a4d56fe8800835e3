"""
Logical-day and clock-time helpers.

A logical day runs from 04:00 local time to 04:00 the next day, so late-night
activity is grouped with the evening before it. Day keys are 'YYYY-MM-DD'.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Optional

DAY_BOUNDARY_HOUR = 4
_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])\s*$")


def logical_day(ts: int) -> str:
    """Day key for a Unix timestamp, using the 4 AM boundary."""
    moment = datetime.fromtimestamp(ts)
    if moment.hour < DAY_BOUNDARY_HOUR:
        moment -= timedelta(days=1)
    return moment.strftime("%Y-%m-%d")


def day_bounds(day: str) -> tuple[int, int]:
    """[start, end) Unix bounds of a logical day key."""
    day_date = date.fromisoformat(day)
    start = datetime.combine(day_date, time(hour=DAY_BOUNDARY_HOUR))
    end = datetime.combine(day_date + timedelta(days=1), time(hour=DAY_BOUNDARY_HOUR))
    return int(start.timestamp()), int(end.timestamp())


def today() -> str:
    return logical_day(int(datetime.now().timestamp()))


def format_clock(ts: int) -> str:
    """'2:05 PM' style local clock time, the format used in prompts."""
    moment = datetime.fromtimestamp(ts)
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d} {'AM' if moment.hour < 12 else 'PM'}"


def parse_clock(text: str, base_ts: int) -> Optional[int]:
    """
    Resolve a clock time like '11:37 PM' to the absolute timestamp nearest to
    base_ts: the same calendar day, the day before or the day after.
    """
    match = _CLOCK_RE.match(text or "")
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    if not (1 <= hour <= 12 and minute < 60 and second < 60):
        return None
    meridiem = match.group(4).upper()
    hour = hour % 12 + (12 if meridiem == "PM" else 0)

    base = datetime.fromtimestamp(base_ts)
    same_day = base.replace(hour=hour, minute=minute, second=second, microsecond=0)
    candidates = [same_day + timedelta(days=shift) for shift in (0, 1, -1)]
    resolved = min(candidates, key=lambda c: abs((c - base).total_seconds()))
    return int(resolved.timestamp())


def parse_video_timestamp(text: str) -> Optional[int]:
    """'MM:SS' or 'HH:MM:SS' offset into a video, in seconds."""
    parts = (text or "").strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        return None
    values = [int(p) for p in parts]
    if len(values) == 2:
        minutes, seconds = values
        return minutes * 60 + seconds
    hours, minutes, seconds = values
    return hours * 3600 + minutes * 60 + seconds


def format_offset(seconds: float) -> str:
    """Seconds → 'MM:SS' as shown to the transcription model."""
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def format_duration(seconds: float) -> str:
    """Human duration like '4m 12s' or '38s'."""
    minutes, remaining = divmod(int(seconds), 60)
    if minutes > 0:
        return f"{minutes}m {remaining}s"
    return f"{remaining}s"
