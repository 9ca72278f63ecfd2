"""
Durable retry queue for submissions that could not be delivered.

Failed submissions are persisted and re-attempted with exponential backoff
until the backend accepts them. Delivery is at-least-once: a submission
leaves the queue only after an explicit success.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from relay_guard.config.loader import QueueConfig
from relay_guard.storage.models import QueueState, Submission, to_timestamp
from relay_guard.storage.repository import StateStore

from .clock import Clock, SystemClock
from .delivery import Deliver, DeliveryResult, ErrorKind, normalize_result

logger = logging.getLogger(__name__)

STATE_KEY = "queue"


@dataclass(frozen=True)
class ProcessResult:
    """Counters of one processing cycle."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    dead_lettered: int = 0


@dataclass(frozen=True)
class QueueStatus:
    """Read-only queue snapshot for health checks."""
    pending_count: int
    due_count: int
    last_processed: Optional[datetime]
    oldest_queued_at: Optional[datetime]
    dead_letter_count: int


def backoff_delay(retry_count: int, base_seconds: int = 60, max_seconds: int = 86400) -> timedelta:
    """Delay before the next attempt after ``retry_count`` failures.

    ``min(max_seconds, base_seconds * 2 ** retry_count)``
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    # Past this exponent the cap always wins; avoids huge integers.
    exponent = min(retry_count, max_seconds.bit_length() + 1)
    return timedelta(seconds=min(max_seconds, base_seconds * 2 ** exponent))


def _identity(submission: Submission) -> Tuple[str, Optional[str], int]:
    """Key of one queue entry; ids alone may repeat across re-enqueues."""
    return (submission.id, to_timestamp(submission.queued_at), submission.retry_count)


class RetryQueue:
    """Persisted queue of pending submissions.

    The whole queue is read, modified and written back as one blob per
    operation; public methods serialise on one lock so concurrent callers
    never lose an enqueue or duplicate a retry. The lock is never held
    while ``deliver`` runs: a cycle snapshots the due entries, delivers
    them unlocked, then merges the outcomes into a fresh load. Processing
    cycles themselves run one at a time.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[QueueConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the queue.

        Args:
            store: Where queue state is persisted
            config: Retry schedule (defaults apply if omitted)
            clock: Time source (wall clock if omitted)
        """
        self.store = store
        self.config = config or QueueConfig()
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._process_lock = threading.Lock()

    def _load(self) -> QueueState:
        raw = self.store.load(STATE_KEY)
        if raw is None:
            return QueueState()
        return QueueState.from_dict(raw)

    def _save(self, state: QueueState) -> None:
        self.store.save(STATE_KEY, state.to_dict())

    def enqueue(self, payload: Mapping[str, Any], submission_id: Optional[str] = None) -> Submission:
        """Add a failed submission for later retry.

        Args:
            payload: Submission fields (url, content, topic, ...)
            submission_id: Unique id; taken from ``payload["id"]`` or
                generated when omitted

        Returns:
            The queued Submission
        """
        if submission_id is None:
            submission_id = payload.get("id")
        if submission_id is None:
            submission_id = uuid.uuid4()
        with self._lock:
            now = self.clock.now()
            submission = Submission(
                id=str(submission_id),
                payload=dict(payload),
                queued_at=now,
                retry_count=0,
                next_retry=now + timedelta(seconds=self.config.initial_delay_seconds),
            )
            state = self._load()
            state.pending_submissions.append(submission)
            self._save(state)

        logger.info(
            f"Added submission {submission.id} to queue. "
            f"Queue size: {len(state.pending_submissions)}"
        )
        return submission

    def process_queue(self, deliver: Deliver) -> ProcessResult:
        """Retry every due submission once.

        ``deliver`` is called without the queue lock held, so it may
        enqueue; anything enqueued during the cycle is kept untouched.

        Args:
            deliver: Called with each due Submission; returns a
                DeliveryResult (or a result mapping, or bool) or raises

        Returns:
            ProcessResult with processed/succeeded/failed/remaining counts
        """
        with self._process_lock:
            with self._lock:
                now = self.clock.now()
                due = [s for s in self._load().pending_submissions if s.is_due(now)]

            if due:
                logger.info(f"Processing queue with {len(due)} due submissions")
            outcomes: Dict[Tuple[str, Optional[str], int], List[DeliveryResult]] = {}
            for submission in due:
                result = self._deliver(deliver, submission)
                outcomes.setdefault(_identity(submission), []).append(result)

            with self._lock:
                state = self._load()
                state.last_processed = now
                processed = succeeded = failed = dead_lettered = 0
                kept: List[Submission] = []

                for submission in state.pending_submissions:
                    results = outcomes.get(_identity(submission))
                    if not results:
                        kept.append(submission)
                        continue
                    result = results.pop(0)

                    processed += 1
                    if result.success:
                        succeeded += 1
                        logger.info(f"Delivered queued submission {submission.id}")
                        continue

                    failed += 1
                    error = result.error or "Unknown error"
                    if (self.config.drop_permanent_failures
                            and result.error_kind == ErrorKind.PERMANENT):
                        dead_lettered += 1
                        state.dead_letters.append(
                            submission.with_failure(submission.next_retry, error)
                        )
                        logger.warning(
                            f"Submission {submission.id} permanently rejected; moved to dead letters: {error}"
                        )
                        continue

                    delay = backoff_delay(
                        submission.retry_count + 1,
                        self.config.base_delay_seconds,
                        self.config.max_delay_seconds,
                    )
                    kept.append(submission.with_failure(now + delay, error))
                    logger.warning(
                        f"Failed to deliver submission {submission.id} "
                        f"(attempt {submission.retry_count + 1}): {error}. "
                        f"Will retry in {int(delay.total_seconds())} seconds."
                    )

                state.pending_submissions = kept
                self._save(state)

        if processed:
            logger.info(
                f"Queue processing complete. Processed: {processed}, Succeeded: {succeeded}, "
                f"Failed: {failed}, Remaining: {len(kept)}"
            )
        return ProcessResult(
            processed=processed,
            succeeded=succeeded,
            failed=failed,
            remaining=len(kept),
            dead_lettered=dead_lettered,
        )

    def _deliver(self, deliver: Deliver, submission: Submission) -> DeliveryResult:
        try:
            return normalize_result(deliver(submission))
        except Exception as e:
            # Any error from the callback is a failed attempt, never a lost submission.
            logger.debug(f"Delivery of {submission.id} raised", exc_info=True)
            return DeliveryResult.failed(ErrorKind.TRANSPORT, str(e) or type(e).__name__)

    def status(self) -> QueueStatus:
        """Queue depth and last processing time."""
        with self._lock:
            state = self._load()
            now = self.clock.now()
        pending = state.pending_submissions
        return QueueStatus(
            pending_count=len(pending),
            due_count=sum(1 for s in pending if s.is_due(now)),
            last_processed=state.last_processed,
            oldest_queued_at=min((s.queued_at for s in pending), default=None),
            dead_letter_count=len(state.dead_letters),
        )

    def pending(self) -> List[Submission]:
        with self._lock:
            return list(self._load().pending_submissions)

    def dead_letters(self) -> List[Submission]:
        with self._lock:
            return list(self._load().dead_letters)
