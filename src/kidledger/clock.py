"""Injectable time sources used by date based rules."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock returning naive UTC timestamps."""

    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    """Manually driven clock for deterministic tests and back-fills."""

    def __init__(self, moment: datetime) -> None:
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime) -> None:
        self._moment = moment

    def advance(self, **delta: float) -> datetime:
        self._moment = self._moment + timedelta(**delta)
        return self._moment


__all__ = ["Clock", "FixedClock", "utcnow"]
