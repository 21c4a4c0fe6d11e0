"""Timestamp helpers.

All timestamps handled by the engine are timezone-aware UTC datetimes.
Naive values coming from producers are assumed to already be UTC.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

Clock = Callable[[], datetime]

_RELATIVE_PATTERN = re.compile(
    r"^now(?:\s*([+-])\s*(\d+)\s*([mhdw]))?$",
    re.IGNORECASE,
)

_RELATIVE_UNITS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime:
    """Parse a datetime, date or ISO-8601 string into an aware UTC datetime.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Not a timestamp: {value!r}")


def is_relative(value: Any) -> bool:
    """Check whether a value uses the ``now[+-]N{m,h,d,w}`` notation."""
    return isinstance(value, str) and _RELATIVE_PATTERN.match(value.strip()) is not None


def resolve_relative(value: str, now: datetime) -> datetime:
    """Resolve ``now``, ``now-7d``, ``now+2h`` against a reference time.

    Raises:
        ValueError: If the value does not use the relative notation
    """
    match = _RELATIVE_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Not a relative timestamp: {value!r}")

    sign, amount, unit = match.groups()
    if not sign:
        return now

    delta = _RELATIVE_UNITS[unit.lower()] * int(amount)
    return now + delta if sign == "+" else now - delta


def to_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(ensure_utc(value).timestamp() * 1000)
