"""Time utilities."""
from datetime import UTC, datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO 8601 string and normalize it to UTC."""

    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def from_unix(seconds: int | float | None) -> datetime | None:
    """Convert a rail-reported epoch timestamp to an aware datetime."""

    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


__all__ = ["utcnow", "ensure_utc", "parse_iso_utc", "from_unix"]
