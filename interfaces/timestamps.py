"""
RFC 3339 helpers shared by the wire codecs.

AppEngine timestamps carry nanoseconds, more than datetime can hold, so
parsed timestamps are pandas Timestamps. They compare equal to datetimes
whenever the nanosecond part is zero.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import pandas as pd
from pydantic import BeforeValidator


RFC3339_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def to_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_rfc3339(value: str) -> pd.Timestamp:
    """
    Parse an RFC 3339 timestamp keeping up to nanosecond precision.

    Raises:
        ValueError: If value is not an RFC 3339 timestamp
    """
    match = RFC3339_PATTERN.match(value)
    if match is None:
        raise ValueError(f"'{value}' is not an RFC 3339 timestamp")

    year, month, day, hour, minute, second, fraction, offset = match.groups()
    nanos = int((fraction or "0")[:9].ljust(9, "0"))

    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = offset[1:].split(":")
        tz = timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))

    parsed = datetime(
        int(year), int(month), int(day),
        int(hour), int(minute), int(second),
        nanos // 1000, tzinfo=tz
    )
    return pd.Timestamp(parsed.astimezone(timezone.utc)) + pd.Timedelta(nanoseconds=nanos % 1000)


def to_timestamp(value: Any) -> pd.Timestamp:
    """UTC Timestamp from a datetime, a Timestamp or an RFC 3339 string."""
    if isinstance(value, str):
        return parse_rfc3339(value)
    if isinstance(value, datetime):
        return pd.Timestamp(to_utc(value))
    raise ValueError(f"{value!r} is not a timestamp")


# Model field type for instants that must keep nanoseconds
Instant = Annotated[pd.Timestamp, BeforeValidator(to_timestamp)]


def format_rfc3339(value: datetime) -> str:
    """Format value in UTC, trimming trailing zeros of the fraction."""
    value = to_utc(value)
    formatted = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    nanos = value.microsecond * 1000 + getattr(value, 'nanosecond', 0)
    fraction = f"{nanos:09d}".rstrip("0")
    if fraction:
        formatted += f".{fraction}"
    return formatted + "Z"
