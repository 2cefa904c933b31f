"""Datetime parsing: lax input -> strict output."""

from __future__ import annotations

import math
from datetime import datetime, timezone

import pendulum

# Manifest timestamps: UTC, whole seconds, no offset suffix
ARCHIVE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts the formats the archive services emit:
    - 2017-07-02T23:54:53
    - 2017-07-02T23:54:53.123456
    - 2017-07-02T23:54:53+00:00
    - 2017-07-02 23:54:53
    - 2017-07-02

    Missing timezone defaults to default_tz.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def parse_optional_datetime(value: str | datetime | None) -> datetime | None:
    """Parse a timestamp that may be absent or blank."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return parse_datetime(value)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_archive_timestamp(dt: datetime) -> str:
    """Format as ISO 8601 in UTC with seconds precision.

    Output: YYYY-MM-DDTHH:MM:SS
    """
    return to_utc(dt).strftime(ARCHIVE_FORMAT)


def from_timestamp(seconds: float) -> datetime:
    """Convert a POSIX timestamp (e.g. ``st_mtime``) to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def within_window(dt: datetime, start: datetime, end: datetime) -> bool:
    """True when ``dt`` lies in ``[start, end]`` (inclusive, compared in UTC)."""
    value = to_utc(dt)
    return to_utc(start) <= value <= to_utc(end)


def year_quarter(dt: datetime) -> str:
    """Return ``YYYY_Q`` for a date, e.g. ``2024_3`` for August 2024."""
    quarter = math.ceil(dt.month / 12 * 4)
    return f"{dt.year}_{quarter}"
