"""Injectable clock so reservation TTLs and sweeps can be driven deterministically."""

from datetime import UTC, datetime, timedelta


class Clock:
    """Abstract clock. Services receive one via constructor injection."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Production clock returning timezone-aware UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock(Clock):
    """Test clock with controlled time."""

    def __init__(self, start: datetime | None = None):
        self._now = ensure_utc(start) if start else datetime.now(UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | None = None, **kwargs) -> datetime:
        """Move time forward by ``delta`` or by ``timedelta(**kwargs)``."""
        self._now = self._now + (delta if delta is not None else timedelta(**kwargs))
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime loaded from the database to aware UTC.

    SQLite and some drivers return naive datetimes even for timezone columns;
    every timestamp this engine writes is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
