"""
Data models for storage layer.

Defines the persisted entities of the retry queue and their wire layout.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by :func:`to_timestamp`."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Submission:
    """A unit of collected data awaiting delivery to the backend.

    Submissions are immutable; each failed attempt produces a new copy
    with ``retry_count`` incremented and ``next_retry`` pushed out.
    """
    id: str
    payload: Dict[str, Any]
    queued_at: datetime
    retry_count: int = 0
    next_retry: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        """Validate queue invariants."""
        if not self.id:
            raise ValueError("submission id cannot be empty")
        if self.retry_count < 0:
            raise ValueError("retry_count cannot be negative")
        if self.next_retry is None:
            object.__setattr__(self, "next_retry", self.queued_at)
        elif self.next_retry < self.queued_at:
            raise ValueError("next_retry cannot be earlier than queued_at")

    def is_due(self, now: datetime) -> bool:
        """True when the submission should be attempted at ``now``."""
        return self.next_retry <= now

    def with_failure(self, next_retry: datetime, error: str) -> "Submission":
        """Return the copy recorded after one more failed attempt."""
        return replace(
            self,
            retry_count=self.retry_count + 1,
            next_retry=next_retry,
            last_error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payload": dict(self.payload),
            "queuedAt": to_timestamp(self.queued_at),
            "retryCount": self.retry_count,
            "nextRetry": to_timestamp(self.next_retry),
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Submission":
        return cls(
            id=data["id"],
            payload=dict(data.get("payload") or {}),
            queued_at=from_timestamp(data["queuedAt"]),
            retry_count=int(data.get("retryCount", 0)),
            next_retry=from_timestamp(data.get("nextRetry")),
            last_error=data.get("lastError"),
        )


@dataclass
class QueueState:
    """Persisted retry queue: pending submissions plus dead letters."""
    pending_submissions: List[Submission] = field(default_factory=list)
    last_processed: Optional[datetime] = None
    dead_letters: List[Submission] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pendingSubmissions": [s.to_dict() for s in self.pending_submissions],
            "lastProcessed": to_timestamp(self.last_processed),
            "deadLetters": [s.to_dict() for s in self.dead_letters],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueState":
        return cls(
            pending_submissions=[
                Submission.from_dict(item) for item in data.get("pendingSubmissions", [])
            ],
            last_processed=from_timestamp(data.get("lastProcessed")),
            dead_letters=[
                Submission.from_dict(item) for item in data.get("deadLetters", [])
            ],
        )
