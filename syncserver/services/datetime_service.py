"""Datetime parsing: lax input -> strict UTC output."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware UTC datetime.

    Accepts ISO 8601 variants with ``T`` or space separator, with or without
    fractional seconds and offsets (``2026-02-02T22:21:29Z``,
    ``2026-02-02 22:21:29.975359+00:00``, ``2026-02-02``).

    Missing timezone defaults to default_tz. Raises ValueError when the value
    cannot be parsed.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=pendulum.timezone(default_tz))  # type: ignore[arg-type]
        return value.astimezone(timezone.utc)

    value_str = value.strip()
    if not value_str:
        raise ValueError("Empty datetime value")

    try:
        parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    except ValueError as exc:
        raise ValueError(f"Invalid datetime: {value_str!r}") from exc
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        if not isinstance(parsed, pendulum.Date):
            raise ValueError(f"Invalid datetime: {value_str!r}")
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    return parsed.in_timezone("UTC")  # type: ignore[return-value]


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for storage and JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()
