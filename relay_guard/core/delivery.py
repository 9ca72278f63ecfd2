"""
Backend delivery contract.

The retry queue and the immediate-submit path only depend on a callable
taking a Submission and reporting success or the kind of failure.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from relay_guard.storage.models import Submission


class ErrorKind(Enum):
    """Why a delivery failed."""
    TRANSPORT = "transport"    # network error or timeout
    REJECTED = "rejected"      # backend answered and declined (e.g. unauthorized)
    PERMANENT = "permanent"    # backend declined and retrying cannot help


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""
    success: bool
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error_kind: ErrorKind, error: str) -> "DeliveryResult":
        return cls(success=False, error_kind=error_kind, error=error)


Deliver = Callable[[Submission], Any]


def _error_kind(value: Any) -> ErrorKind:
    if isinstance(value, ErrorKind):
        return value
    if isinstance(value, str):
        try:
            return ErrorKind(value.lower())
        except ValueError:
            pass
    return ErrorKind.REJECTED


def normalize_result(result: Any) -> DeliveryResult:
    """Coerce what a deliver callable returned into a DeliveryResult.

    Accepts a DeliveryResult, a ``{success, errorKind, error}`` mapping, a
    gateway-style mapping with an ``ok`` or ``err`` key, or anything
    truthy/falsy. A gateway mapping is a failure iff it carries ``err``,
    so the unit result ``{"ok": None}`` is a success.
    """
    if isinstance(result, DeliveryResult):
        return result
    if isinstance(result, Mapping):
        if "success" in result:
            if result["success"]:
                return DeliveryResult.ok()
            error = result.get("error")
            return DeliveryResult.failed(
                _error_kind(result.get("errorKind")),
                str(error) if error is not None else "Unknown error",
            )
        if "err" in result:
            err = result["err"]
            message = json.dumps(err, default=str) if err is not None else "Unknown error"
            return DeliveryResult.failed(ErrorKind.REJECTED, message)
        if "ok" in result:
            return DeliveryResult.ok()
        return DeliveryResult.failed(ErrorKind.REJECTED, "Unknown error")
    if result:
        return DeliveryResult.ok()
    return DeliveryResult.failed(ErrorKind.REJECTED, "Unknown error")
