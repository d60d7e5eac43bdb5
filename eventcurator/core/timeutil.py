from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Use UTC timestamps everywhere so rows and schedules compare consistently.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """Accept datetimes or ISO-8601 strings (``Z`` suffix allowed) and return aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(raw))


def isoformat_z(value: datetime) -> str:
    # Millisecond precision with a Z suffix, matching JSON timestamps emitted by clients.
    aware = ensure_utc(value)
    return aware.strftime("%Y-%m-%dT%H:%M:%S.") + f"{aware.microsecond // 1000:03d}Z"
