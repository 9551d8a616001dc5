"""
Field validators for scheduling input.

Wall-clock times ("HH:MM"), calendar dates, and availability ranges.
"""

from __future__ import annotations

import re
from datetime import date, datetime

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")

MINUTES_PER_DAY = 24 * 60


def validate_time(value: str) -> bool:
    """True for a 24h wall-clock time like "9:00" or "18:30"."""
    match = _TIME_PATTERN.match((value or "").strip())
    if not match:
        return False
    hours, minutes = int(match.group(1)), int(match.group(2))
    return 0 <= hours < 24 and 0 <= minutes < 60


def normalize_time(value: str) -> str:
    """Zero-pad a valid time ("9:00" -> "09:00"). Raises ValueError otherwise."""
    if not validate_time(value):
        raise ValueError(f"Invalid time '{value}' (expected HH:MM)")
    hours, minutes = value.strip().split(":")
    return f"{int(hours):02d}:{int(minutes):02d}"


def time_to_minutes(value: str) -> int:
    hours, minutes = normalize_time(value).split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(total_minutes: int) -> str:
    """Format minutes-after-midnight, wrapping past midnight."""
    total_minutes %= MINUTES_PER_DAY
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


# Accepted for imported spreadsheets; ISO first
DATE_FORMATS = ["%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%m/%d/%Y", "%d %b %Y", "%d %B %Y"]


def parse_date(value: str | date | datetime | None) -> date | None:
    """
    Parse a calendar date from an ISO string or one of DATE_FORMATS.

    Datetimes are truncated to their date. Returns None when unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    # "2024-05-01T00:00:00" / "2024-05-01 00:00:00" from spreadsheet exports
    text = text.split("T")[0] if "T" in text else text
    if re.match(r"^\d{4}-\d{2}-\d{2} ", text):
        text = text.split(" ")[0]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def validate_range(start: str, end: str) -> bool:
    """
    An availability range needs two valid times that differ.

    end < start is allowed (the range runs past midnight).
    """
    if not (validate_time(start) and validate_time(end)):
        return False
    return time_to_minutes(start) != time_to_minutes(end)
