"""
Submission pipeline.

Composes admission control, delivery and the retry queue around a single
"submit a record" call.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from relay_guard.storage.models import Submission

from .admission import AdmissionController, AdmissionReason, UsageStats
from .delivery import Deliver, DeliveryResult, ErrorKind, normalize_result
from .retry_queue import ProcessResult, QueueStatus, RetryQueue

logger = logging.getLogger(__name__)


class SubmitOutcome(Enum):
    """What happened to a submission."""
    DELIVERED = "delivered"
    QUEUED = "queued"
    DENIED = "denied"


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    submission_id: Optional[str] = None
    reason: Optional[AdmissionReason] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthReport:
    queue: QueueStatus
    budget: UsageStats


class SubmissionPipeline:
    """Admission, then delivery, then the retry queue on failure.

    A denied submission is never queued: the caller re-checks admission
    before its next attempt. Queued submissions are retried by
    :meth:`process_pending` without passing admission again.
    """

    def __init__(self, admission: AdmissionController, queue: RetryQueue, deliver: Deliver):
        self.admission = admission
        self.queue = queue
        self.deliver = deliver

    def submit(self, client_id: str, payload: Mapping[str, Any]) -> SubmitResult:
        """Submit one record on behalf of ``client_id``."""
        submission_id = payload.get("id")
        submission_id = str(uuid.uuid4() if submission_id is None else submission_id)
        decision = self.admission.evaluate(client_id, context=payload.get("url"))
        if not decision.admitted:
            return SubmitResult(SubmitOutcome.DENIED, submission_id, reason=decision.reason)

        submission = Submission(
            id=submission_id,
            payload=dict(payload),
            queued_at=self.queue.clock.now(),
        )
        try:
            result = normalize_result(self.deliver(submission))
        except Exception as e:
            result = DeliveryResult.failed(ErrorKind.TRANSPORT, str(e) or type(e).__name__)

        if result.success:
            return SubmitResult(SubmitOutcome.DELIVERED, submission_id)

        logger.warning(
            f"Immediate delivery of {submission_id} failed ({result.error}); queueing for retry"
        )
        self.queue.enqueue(payload, submission_id=submission_id)
        return SubmitResult(SubmitOutcome.QUEUED, submission_id, error=result.error)

    def process_pending(self) -> ProcessResult:
        """Run one retry cycle over the queue."""
        return self.queue.process_queue(self.deliver)

    def health(self) -> HealthReport:
        return HealthReport(queue=self.queue.status(), budget=self.admission.usage_stats())
