"""
Wiring of the three components from Settings.
"""

from dataclasses import dataclass
from typing import Optional, Union

import httpx

from ..config.loader import Settings
from ..core.admission import AdmissionController
from ..core.clock import Clock, SystemClock
from ..core.pipeline import SubmissionPipeline
from ..core.retry_queue import RetryQueue
from ..core.router import AdaptiveConnectionRouter, StrictConnectionRouter, build_router
from ..core.scheduler import Scheduler
from ..storage.repository import StateStore, open_store
from .http_delivery import HttpDelivery


@dataclass
class Components:
    store: StateStore
    admission: AdmissionController
    queue: RetryQueue
    router: Optional[Union[AdaptiveConnectionRouter, StrictConnectionRouter]]
    delivery: Optional[HttpDelivery]
    pipeline: Optional[SubmissionPipeline]

    def scheduler(self, clock: Optional[Clock] = None) -> Scheduler:
        """Scheduler with the queue cycle and the budget sweep registered."""
        scheduler = Scheduler(clock or self.queue.clock)
        if self.pipeline is not None:
            scheduler.every(
                self.queue.config.process_interval_seconds,
                "process-queue",
                self.pipeline.process_pending,
            )
        scheduler.every(
            self.admission.budget.sweep_interval_seconds, "budget-sweep", self.admission.sweep
        )
        return scheduler


def build_components(
    settings: Settings,
    clock: Optional[Clock] = None,
    client: Optional[httpx.Client] = None,
    store: Optional[StateStore] = None,
) -> Components:
    """Build store, controller, queue and (if services are configured) routing.

    Args:
        settings: Validated settings
        clock: Time source shared by every component
        client: HTTP client for the router
        store: State store overriding ``settings.storage``
    """
    clock = clock or SystemClock()
    store = store or open_store(settings.storage.backend, settings.storage.path)

    admission = AdmissionController(
        settings.budget, store, pricing=settings.pricing, tokens=settings.tokens, clock=clock
    )
    queue = RetryQueue(store, settings.queue, clock=clock)

    router = delivery = pipeline = None
    if settings.router.services:
        router = build_router(
            settings.router.mode,
            settings.router.services,
            settings.router.server_ip,
            client=client,
            clock=clock,
            failure_threshold=settings.router.failure_threshold,
        )
        delivery = HttpDelivery(
            router,
            settings.delivery.service,
            settings.delivery.path,
            settings.router.timeout_seconds,
        )
        pipeline = SubmissionPipeline(admission, queue, delivery)

    return Components(store, admission, queue, router, delivery, pipeline)
