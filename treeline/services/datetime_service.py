"""Timestamps: lax input, UTC ISO 8601 storage, human-readable ages."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts ISO 8601 variants, space-separated timestamps and date-only
    strings. Missing timezone defaults to default_tz; missing time
    components default to zeros.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=pendulum.timezone(default_tz))  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # Date-only input
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format as UTC ISO 8601 so stored timestamps sort lexicographically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def humanize_age(value: str | datetime, now: datetime | None = None) -> str:
    """Describe how long ago a timestamp was, e.g. ``"3 minutes ago"``."""
    moment = pendulum.instance(parse_datetime(value))
    if now is None:
        return moment.diff_for_humans()
    # Relative to an explicit reference pendulum says "before"/"after".
    return moment.diff_for_humans(pendulum.instance(now))
