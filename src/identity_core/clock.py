from __future__ import annotations

"""Wall-clock source with calendar-day arithmetic in one reference timezone."""

import threading
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ReferenceClock:
    """Clock whose day boundaries are midnights in a fixed reference timezone.

    Every day-delta is computed by truncating both instants to local midnight
    and subtracting whole calendar days, so a DST day still counts as one.
    """

    def __init__(self, timezone: str | None) -> None:
        if not timezone or not str(timezone).strip():
            raise ConfigError("reference timezone is not set", hint="set clock.reference_timezone")
        try:
            self.tz = ZoneInfo(str(timezone).strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"unknown reference timezone: {timezone}") from exc
        self.timezone = str(timezone).strip()

    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    def local_date(self, instant: datetime) -> date:
        return _as_utc(instant).astimezone(self.tz).date()

    def midnight(self, instant: datetime) -> datetime:
        """Start of the reference-timezone day containing `instant`, in UTC."""

        local_day = self.local_date(instant)
        return datetime.combine(local_day, time.min, tzinfo=self.tz).astimezone(UTC)

    def midnight_of(self, local_day: date) -> datetime:
        return datetime.combine(local_day, time.min, tzinfo=self.tz).astimezone(UTC)

    def same_calendar_day(self, a: datetime, b: datetime) -> bool:
        return self.local_date(a) == self.local_date(b)

    def hours_between(self, a: datetime, b: datetime) -> float:
        return (_as_utc(b) - _as_utc(a)).total_seconds() / 3600.0

    def day_delta(self, a: datetime | None, b: datetime) -> int | None:
        if a is None:
            return None
        return (self.local_date(b) - self.local_date(a)).days


class ManualClock(ReferenceClock):
    """Settable clock for tests and event replays."""

    def __init__(self, timezone: str, start: datetime) -> None:
        super().__init__(timezone)
        self._lock = threading.Lock()
        self._now = _as_utc(start)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = _as_utc(instant)

    def advance(self, *, days: float = 0, hours: float = 0, seconds: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(days=days, hours=hours, seconds=seconds)
            return self._now
