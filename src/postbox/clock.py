"""
Clock abstractions

Lease comparisons are made against timestamps supplied by the application,
never by the database server, so every store takes a Clock.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Time source used for leases and timestamps."""

    def now(self) -> datetime:
        """Return a timezone-aware UTC timestamp."""

    def monotonic(self) -> float:
        """Return a monotonic reference in seconds."""


class SystemClock:
    """Default clock backed by the system wall clock."""

    def now(self) -> datetime:
        return _utcnow()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock()
        await store.claim_next("orders", redeliver_timeout=1)
        clock.advance(1.1)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or _utcnow()
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> datetime:
        """Move the clock forward by the given number of seconds."""
        self._now = self._now + timedelta(seconds=seconds)
        self._monotonic += seconds
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware datetime")
        self._now = value
