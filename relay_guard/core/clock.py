"""
Time source used by every component.

Components never read the wall clock directly; a clock is injected so
retry schedules and quota windows can be driven in tests.
"""

import time
from datetime import datetime, timezone


class Clock:
    """Interface for the current time and for blocking waits."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock implementation."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
