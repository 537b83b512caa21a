from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 / RFC3339 value (``Z`` suffix allowed) into aware UTC."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize to RFC3339 in UTC, millisecond precision, ``Z`` suffix."""

    value = ensure_utc(dt)
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def not_before(previous: Optional[datetime], candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` (default: now) clamped so it never precedes ``previous``."""

    moment = ensure_utc(candidate) or utc_now()
    floor = ensure_utc(previous)
    if floor is not None and moment < floor:
        return floor
    return moment


__all__ = [
    "UTC",
    "ensure_utc",
    "not_before",
    "parse_timestamp",
    "to_rfc3339_utc",
    "utc_now",
]
