"""
Shared test fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from relay_guard.core.clock import Clock
from relay_guard.storage.repository import InMemoryStateStore


class ManualClock(Clock):
    """Clock that only moves when told to; sleeping advances it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Clock starting mid-month, mid-day."""
    return ManualClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryStateStore()
