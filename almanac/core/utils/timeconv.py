"""Conversions between aware datetimes and the Unix-millisecond boundary format."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(value: datetime) -> int:
    """Aware datetime -> Unix milliseconds."""
    if value.tzinfo is None:
        raise ValueError('value must be timezone-aware')
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_ms(value: int) -> datetime:
    """Unix milliseconds -> UTC-aware datetime."""
    return _EPOCH + timedelta(milliseconds=value)
