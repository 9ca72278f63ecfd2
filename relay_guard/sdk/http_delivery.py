"""
HTTP delivery of submissions through the connection router.

Posts each submission to the gateway and classifies the answer.
"""

import logging
from typing import Union

import httpx

from ..core.delivery import DeliveryResult, ErrorKind
from ..core.router import AdaptiveConnectionRouter, StrictConnectionRouter
from ..storage.models import Submission, to_timestamp

logger = logging.getLogger(__name__)

# Statuses for which resending the same body can never succeed.
PERMANENT_STATUS_CODES = frozenset({400, 410, 413, 422})

Router = Union[AdaptiveConnectionRouter, StrictConnectionRouter]


class HttpDelivery:
    """Deliver callable backed by a connection router.

    Transport errors map to TRANSPORT, 2xx responses without an ``err``
    field to success, 400/410/413/422 to PERMANENT and everything else
    (authorization errors included) to REJECTED.
    """

    def __init__(self, router: Router, service: str, path: str, timeout: float):
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.router = router
        self.service = service
        self.path = path
        self.timeout = timeout

    def __call__(self, submission: Submission) -> DeliveryResult:
        body = dict(submission.payload)
        body.setdefault("id", submission.id)
        body["retryCount"] = submission.retry_count
        body["queuedAt"] = to_timestamp(submission.queued_at)

        try:
            response = self.router.attempt(
                self.service, self.path, timeout=self.timeout, method="POST", json=body
            )
        except httpx.RequestError as e:
            return DeliveryResult.failed(ErrorKind.TRANSPORT, str(e) or type(e).__name__)

        return classify_response(response)


def classify_response(response: httpx.Response) -> DeliveryResult:
    """Map a gateway response to a DeliveryResult."""
    if response.status_code in PERMANENT_STATUS_CODES:
        return DeliveryResult.failed(
            ErrorKind.PERMANENT, f"HTTP {response.status_code}: {response.text[:200]}"
        )
    if not response.is_success:
        return DeliveryResult.failed(
            ErrorKind.REJECTED, f"HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and "err" in body:
        logger.debug(f"Gateway rejected submission: {body['err']}")
        err = body["err"]
        return DeliveryResult.failed(
            ErrorKind.REJECTED, str(err) if err is not None else "Unknown error"
        )
    return DeliveryResult.ok()
