from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Keep every auth timestamp in UTC so expiry math is comparable.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
