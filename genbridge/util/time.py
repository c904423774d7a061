from __future__ import annotations

from datetime import UTC, datetime


def now_utc() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


def parse_iso(s: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values (SQLite ``CURRENT_TIMESTAMP``) are read as UTC."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
