"""
Clock abstraction for SLA, lock-expiry, and time-in-stage math.

Every "now" read in the idempotency and RMA modules goes through a Clock so
tests can freeze and advance time deterministically.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock returning naive UTC datetimes (matches DB column storage)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


_system_clock = Clock()


def get_clock() -> Clock:
    return _system_clock
