"""
Fixed-interval job scheduler.

Drives queue processing and budget sweeps from an injected clock, so
retry cadence is testable without real waits.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """A callable run every ``interval``."""
    name: str
    interval: timedelta
    func: Callable[[], object]
    next_run: datetime
    last_error: Optional[str] = None


class Scheduler:
    """Runs registered jobs when they come due.

    Nothing runs on a background thread: callers invoke
    :meth:`run_pending` from their own loop, or block in
    :meth:`run_forever`.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.jobs: List[ScheduledJob] = []

    def every(
        self,
        interval_seconds: float,
        name: str,
        func: Callable[[], object],
        run_immediately: bool = False,
    ) -> ScheduledJob:
        """Register ``func`` to run every ``interval_seconds``."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        interval = timedelta(seconds=interval_seconds)
        now = self.clock.now()
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run=now if run_immediately else now + interval,
        )
        self.jobs.append(job)
        logger.info(f"Scheduled job '{name}' every {interval_seconds}s")
        return job

    def run_pending(self) -> List[str]:
        """Run every due job once; return the names of the jobs run.

        A failing job is logged and rescheduled; it never stops the others.
        """
        now = self.clock.now()
        ran = []
        for job in self.jobs:
            if job.next_run > now:
                continue
            try:
                job.func()
                job.last_error = None
            except Exception as e:
                job.last_error = str(e) or type(e).__name__
                logger.error(f"Job '{job.name}' failed: {e}", exc_info=True)
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    def seconds_until_next(self) -> Optional[float]:
        if not self.jobs:
            return None
        soonest = min(job.next_run for job in self.jobs)
        return max(0.0, (soonest - self.clock.now()).total_seconds())

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 1.0) -> None:
        """Run jobs until ``stop_event`` is set."""
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")
        while not stop_event.is_set():
            self.run_pending()
            wait = self.seconds_until_next()
            self.clock.sleep(poll_seconds if wait is None else min(poll_seconds, wait))
        logger.info("Scheduler stopped")
