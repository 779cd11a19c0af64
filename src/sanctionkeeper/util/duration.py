"""
Duration parsing and formatting for sanctions.

Durations are short human strings such as ``"30m"``, ``"1h"``, ``"2 days"`` or
``"1.5h"``. ``None``, ``"forever"`` and ``"permanent"`` mean the sanction never
expires and never enters the scheduler.
"""

from __future__ import annotations

import datetime
import re

from sanctionkeeper.errors import MalformedDuration

PERMANENT_KEYWORDS = frozenset({"forever", "permanent"})

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR
_MS_PER_WEEK = 7 * _MS_PER_DAY
_MS_PER_YEAR = int(365.25 * _MS_PER_DAY)

UNIT_MILLISECONDS = {
    "years": _MS_PER_YEAR, "year": _MS_PER_YEAR, "yrs": _MS_PER_YEAR, "yr": _MS_PER_YEAR, "y": _MS_PER_YEAR,
    "weeks": _MS_PER_WEEK, "week": _MS_PER_WEEK, "w": _MS_PER_WEEK,
    "days": _MS_PER_DAY, "day": _MS_PER_DAY, "d": _MS_PER_DAY,
    "hours": _MS_PER_HOUR, "hour": _MS_PER_HOUR, "hrs": _MS_PER_HOUR, "hr": _MS_PER_HOUR, "h": _MS_PER_HOUR,
    "minutes": _MS_PER_MINUTE, "minute": _MS_PER_MINUTE, "mins": _MS_PER_MINUTE, "min": _MS_PER_MINUTE,
    "m": _MS_PER_MINUTE,
    "seconds": _MS_PER_SECOND, "second": _MS_PER_SECOND, "secs": _MS_PER_SECOND, "sec": _MS_PER_SECOND,
    "s": _MS_PER_SECOND,
    "milliseconds": 1, "millisecond": 1, "msecs": 1, "msec": 1, "ms": 1,
}

_DURATION_RE = re.compile(r"^(?P<value>\d*\.?\d+)\s*(?P<unit>[a-z]+)?$", re.IGNORECASE)


def is_permanent(raw: str | None) -> bool:
    """Return True when ``raw`` is the permanent sentinel (None, forever, permanent)."""
    if raw is None:
        return True
    return raw.strip().lower() in PERMANENT_KEYWORDS


def parse_duration(raw: str | None) -> datetime.timedelta | None:
    """
    Parse a duration string into a timedelta.

    A bare number is read as milliseconds. Zero, negative and unknown units
    are rejected.

    Args:
        raw: The duration as typed by a moderator, or None.

    Returns:
        datetime.timedelta | None: The parsed length, or None for permanent sanctions.

    Raises:
        MalformedDuration: If the string is not a permanent keyword and cannot be parsed.
    """
    if is_permanent(raw):
        return None

    match = _DURATION_RE.match(raw.strip())
    if match is None:
        raise MalformedDuration(raw)

    unit = (match.group("unit") or "ms").lower()
    multiplier = UNIT_MILLISECONDS.get(unit)
    if multiplier is None:
        raise MalformedDuration(raw)

    try:
        milliseconds = round(float(match.group("value")) * multiplier)
        if milliseconds <= 0:
            raise MalformedDuration(raw)
        return datetime.timedelta(milliseconds=milliseconds)
    except OverflowError:
        raise MalformedDuration(raw) from None


def compute_expiry(issued_at: datetime.datetime, raw: str | None) -> datetime.datetime | None:
    """
    Return ``issued_at + parse_duration(raw)``, or None for permanent sanctions.

    Raises:
        MalformedDuration: If ``raw`` cannot be parsed or the expiry falls
            outside the representable date range.
    """
    length = parse_duration(raw)
    if length is None:
        return None
    try:
        return issued_at + length
    except OverflowError:
        raise MalformedDuration(raw) from None


def format_remaining(delta: datetime.timedelta) -> str:
    """
    Render a timedelta as ``"1d 2h 3m 4s"``.

    Negative values render as ``"expired"``; sub-second values as ``"0s"``.
    """
    total_seconds = int(delta.total_seconds())
    if delta.total_seconds() < 0:
        return "expired"

    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)
