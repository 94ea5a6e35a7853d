"""Time-window parsing helpers.

Converts user-friendly time window selectors into UTC datetime ranges.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta


def parse_iso_dt(s: str) -> datetime:
    """Parse an ISO8601 or ``YYYY-MM-DD HH:MM:SS`` datetime. If tz is missing, assume UTC."""
    dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def range_for_date(s: str) -> tuple[datetime, datetime]:
    """Return the UTC day window for an ISO date string (both bounds inclusive)."""
    d = date.fromisoformat(s)
    start = datetime(d.year, d.month, d.day, tzinfo=UTC)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def range_for_hour(s: str) -> tuple[datetime, datetime]:
    """Return the UTC hour window for a YYYY-MM-DDTHH selector (both bounds inclusive)."""
    raw = s.strip()
    # "2025-12-31T10" and "2025-12-31 10" are not valid isoformat strings.
    if len(raw) == 13:
        raw += ":00"
    base = datetime.fromisoformat(raw)
    if base.tzinfo is None:
        base = base.replace(tzinfo=UTC)
    start = base.astimezone(UTC).replace(minute=0, second=0, microsecond=0)
    end = start + timedelta(hours=1) - timedelta(microseconds=1)
    return start, end


def resolve_time_window(
    *,
    since: str | None = None,
    until: str | None = None,
    date_: str | None = None,
    hour: str | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Resolve a UTC time window using selectors over explicit bounds."""
    if date_:
        return range_for_date(date_)
    if hour:
        return range_for_hour(hour)

    s = parse_iso_dt(since) if since else None
    u = parse_iso_dt(until) if until else None
    return s, u
