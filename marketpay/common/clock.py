"""UTC time helpers.

Some backends hand timestamps back without tzinfo; everything stored is UTC,
so naive values are treated as UTC before comparing.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None
