"""Shared utility functions for services and blueprints.

utcnow:          single clock for every timestamp written in a unit of work
as_utc:          SQLite returns naive datetimes; PostgreSQL returns tz-aware
parse_datetime:  ISO-8601 request input → UTC-aware datetime (raises ValueError)
parse_int:       optional integer input → int | None (raises ValueError)
clean_str:       optional text input → stripped str | None (raises ValueError)
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    All comparisons against utcnow() must go through this helper so the same
    code works on SQLite (tests, local dev) and PostgreSQL (production).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO-8601 datetime string to a UTC-aware datetime.

    Returns None for empty input. Naive values are taken as UTC.
    A bare date (YYYY-MM-DD) is taken as midnight UTC.

    Raises:
        ValueError: If the value is not a recognisable date/datetime.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        raise ValueError(f"Invalid datetime: {value!r}. Use ISO-8601, e.g. 2026-01-31T08:00:00Z")


def parse_int(value, field: str = "value"):
    """Parse an optional integer; None/empty → None.

    Raises:
        ValueError: If the value is present but not an integer.
    """
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer")


def clean_str(value, field: str = "value"):
    """Strip an optional text input; None/blank → None.

    Raises:
        ValueError: If the value is present but not a string.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    return value.strip() or None
