"""UTC calendar helpers for day-keyed usage accounting."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_date_string(now: datetime | None = None) -> str:
    """Current UTC date as ``YYYY-MM-DD``."""

    return ensure_utc(now or utcnow()).strftime("%Y-%m-%d")


def next_utc_midnight(now: datetime | None = None) -> datetime:
    """Midnight UTC at the start of the next calendar day."""

    current = ensure_utc(now or utcnow())
    tomorrow = current.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)
