"""
Budget admission control.

Decides whether a client instance may submit now, given a shared monthly
cost ceiling and per-client request quotas.

Check Order:
1. Monthly budget - the estimated cost of one more request must fit
2. Daily fair share - the global daily limit divided by active clients
3. Hourly ceiling - a flat per-client spike guard, independent of fleet size
"""

import calendar
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from relay_guard.config.loader import BudgetConfig
from relay_guard.storage.models import from_timestamp, to_timestamp
from relay_guard.storage.repository import StateStore

from .clock import Clock, SystemClock
from .pricing import TokenPricing, calculate_cost
from .token_counter import TokenEstimates

logger = logging.getLogger(__name__)

STATE_KEY = "budget"
INACTIVE_AFTER = timedelta(hours=24)
HOURLY_RETENTION = timedelta(hours=24)
DAILY_RETENTION = timedelta(days=30)
PROJECTION_QUANTUM = Decimal("0.01")


class AdmissionReason(Enum):
    """Outcome of an admission check."""
    ADMITTED = "admitted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    DAILY_QUOTA_EXCEEDED = "daily_quota_exceeded"
    HOURLY_QUOTA_EXCEEDED = "hourly_quota_exceeded"


class AdmissionDenied(Exception):
    """Raised when a client may not submit in the current quota window."""
    def __init__(self, message: str, reason: AdmissionReason):
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class AdmissionResult:
    """Admission decision with the limits that produced it."""
    admitted: bool
    reason: AdmissionReason
    request_cost: Decimal
    fair_share: Optional[int] = None


@dataclass
class ClientRegistration:
    """One client instance known to the controller."""
    registered_at: datetime
    total_requests: int = 0
    last_request: Optional[datetime] = None

    def last_activity(self) -> datetime:
        return self.last_request or self.registered_at

    def to_dict(self) -> Dict:
        return {
            "registeredAt": to_timestamp(self.registered_at),
            "totalRequests": self.total_requests,
            "lastRequest": to_timestamp(self.last_request),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ClientRegistration":
        return cls(
            registered_at=from_timestamp(data["registeredAt"]),
            total_requests=int(data.get("totalRequests", 0)),
            last_request=from_timestamp(data.get("lastRequest")),
        )


@dataclass
class BudgetState:
    """All mutable admission state, owned by a single controller."""
    month_start: datetime
    current_spend: Decimal = Decimal("0")
    active_clients: Dict[str, ClientRegistration] = field(default_factory=dict)
    daily_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    hourly_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "monthStart": to_timestamp(self.month_start),
            "currentSpend": str(self.current_spend),
            "activeClients": [
                [client_id, registration.to_dict()]
                for client_id, registration in self.active_clients.items()
            ],
            "dailyCounts": {k: dict(v) for k, v in self.daily_counts.items()},
            "hourlyCounts": {k: dict(v) for k, v in self.hourly_counts.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "BudgetState":
        return cls(
            month_start=from_timestamp(data["monthStart"]),
            current_spend=Decimal(str(data.get("currentSpend", "0"))),
            active_clients={
                client_id: ClientRegistration.from_dict(registration)
                for client_id, registration in data.get("activeClients", [])
            },
            daily_counts={
                k: {bucket: int(n) for bucket, n in v.items()}
                for k, v in data.get("dailyCounts", {}).items()
            },
            hourly_counts={
                k: {bucket: int(n) for bucket, n in v.items()}
                for k, v in data.get("hourlyCounts", {}).items()
            },
        )


@dataclass(frozen=True)
class SweepResult:
    """What a maintenance sweep removed."""
    purged_clients: int
    pruned_hourly_buckets: int
    pruned_daily_buckets: int


@dataclass(frozen=True)
class UsageStats:
    """Read-only budget snapshot for health checks."""
    month_start: datetime
    current_spend: Decimal
    remaining_budget: Decimal
    active_clients: int
    requests_today: int
    requests_this_hour: int
    average_requests_per_client: float
    max_daily_requests_per_client: int
    projected_month_end: Decimal


def month_start_of(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)


def day_key(moment: datetime) -> str:
    """Calendar-day bucket, e.g. ``2024-01-31``."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


def hour_key(moment: datetime) -> str:
    """Hour bucket, e.g. ``2024-01-31T17``."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")


class AdmissionController:
    """Shared budget and quota gate in front of every new submission.

    State is loaded once at construction and persisted after every
    registration, admission and sweep, so a restart does not reset quotas.
    All public methods serialise on one lock.
    """

    def __init__(
        self,
        budget: BudgetConfig,
        store: StateStore,
        pricing: Optional[TokenPricing] = None,
        tokens: Optional[TokenEstimates] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the controller.

        Args:
            budget: Monthly budget and quota limits
            store: Where budget state is persisted
            pricing: Per-1000-token prices (defaults apply if omitted)
            tokens: Token estimates of a typical request
            clock: Time source (wall clock if omitted)
        """
        self.budget = budget
        self.store = store
        self.pricing = pricing or TokenPricing()
        self.tokens = tokens or TokenEstimates()
        self.clock = clock or SystemClock()
        self.request_cost = calculate_cost(self.tokens.typical_usage(), self.pricing)
        self._lock = threading.Lock()
        self._state = self._load_state()

        logger.info(
            f"AdmissionController initialized: monthly_budget=${self.budget.monthly}, "
            f"request_cost=${self.request_cost}, daily_limit={self.budget.max_daily_requests}, "
            f"hourly_limit={self.budget.max_hourly_requests}"
        )

    def _load_state(self) -> BudgetState:
        now = self.clock.now()
        raw = self.store.load(STATE_KEY)
        if raw is None:
            return BudgetState(month_start=month_start_of(now))
        state = BudgetState.from_dict(raw)
        logger.debug(f"Loaded budget state with {len(state.active_clients)} clients")
        return state

    def _save_state(self) -> None:
        self.store.save(STATE_KEY, self._state.to_dict())

    def _roll_month(self, now: datetime) -> None:
        current = month_start_of(now)
        if self._state.month_start != current:
            logger.info(
                f"New budget month {current:%Y-%m}; resetting spend of ${self._state.current_spend}"
            )
            self._state.month_start = current
            self._state.current_spend = Decimal("0")

    def _register(self, client_id: str, now: datetime) -> None:
        if client_id not in self._state.active_clients:
            self._state.active_clients[client_id] = ClientRegistration(registered_at=now)
            logger.info(f"Registered client {client_id} ({len(self._state.active_clients)} active)")
            self._save_state()

    def register_client(self, client_id: str) -> None:
        """Register ``client_id`` if it is not known yet."""
        if not client_id:
            raise ValueError("client_id is required and cannot be empty")
        with self._lock:
            self._register(client_id, self.clock.now())

    def evaluate(self, client_id: str, context: Optional[str] = None) -> AdmissionResult:
        """Run one admission check and record it if admitted.

        Args:
            client_id: Identifier of the requesting client instance
            context: Optional description of the request, for logging only

        Returns:
            AdmissionResult with the decision and the limits applied
        """
        if not client_id:
            raise ValueError("client_id is required and cannot be empty")

        with self._lock:
            now = self.clock.now()
            self._roll_month(now)
            self._register(client_id, now)
            state = self._state
            cost = self.request_cost

            if state.current_spend + cost > self.budget.monthly:
                logger.info(
                    f"Denied {client_id}: monthly budget ${self.budget.monthly} exhausted "
                    f"(spent ${state.current_spend})"
                )
                return AdmissionResult(False, AdmissionReason.BUDGET_EXHAUSTED, cost)

            today = day_key(now)
            this_hour = hour_key(now)
            daily_count = state.daily_counts.get(client_id, {}).get(today, 0)
            hourly_count = state.hourly_counts.get(client_id, {}).get(this_hour, 0)

            # Snapshot of the fleet size at admission time.
            active = len(state.active_clients)
            fair_share = None
            if active > 0:
                fair_share = self.budget.max_daily_requests // active
                if daily_count >= fair_share:
                    logger.info(
                        f"Denied {client_id}: daily fair share {fair_share} reached "
                        f"({active} active clients)"
                    )
                    return AdmissionResult(
                        False, AdmissionReason.DAILY_QUOTA_EXCEEDED, cost, fair_share
                    )

            if hourly_count >= self.budget.max_hourly_requests:
                logger.info(
                    f"Denied {client_id}: hourly limit {self.budget.max_hourly_requests} reached"
                )
                return AdmissionResult(
                    False, AdmissionReason.HOURLY_QUOTA_EXCEEDED, cost, fair_share
                )

            self._record_request(client_id, now, today, this_hour, cost)
            if context:
                logger.debug(f"Admitted {client_id} for {context!r}")
            return AdmissionResult(True, AdmissionReason.ADMITTED, cost, fair_share)

    def _record_request(
        self, client_id: str, now: datetime, today: str, this_hour: str, cost: Decimal
    ) -> None:
        state = self._state
        daily = state.daily_counts.setdefault(client_id, {})
        daily[today] = daily.get(today, 0) + 1
        hourly = state.hourly_counts.setdefault(client_id, {})
        hourly[this_hour] = hourly.get(this_hour, 0) + 1

        registration = state.active_clients[client_id]
        registration.total_requests += 1
        registration.last_request = now

        state.current_spend += cost
        self._save_state()

    def can_submit(self, client_id: str, context: Optional[str] = None) -> bool:
        """True if ``client_id`` may submit now; the request is counted if so."""
        return self.evaluate(client_id, context).admitted

    def require_admission(self, client_id: str, context: Optional[str] = None) -> AdmissionResult:
        """Like :meth:`evaluate` but raises when the client is denied.

        Raises:
            AdmissionDenied: If budget or quota is exhausted
        """
        result = self.evaluate(client_id, context)
        if not result.admitted:
            raise AdmissionDenied(
                f"Client {client_id} denied: {result.reason.value}", result.reason
            )
        return result

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Purge inactive clients and stale quota buckets.

        Clients with no activity for 24 hours are deregistered, hourly
        buckets older than 24 hours and daily buckets older than 30 days
        are dropped.
        """
        with self._lock:
            now = now or self.clock.now()
            self._roll_month(now)
            state = self._state

            inactive_cutoff = now - INACTIVE_AFTER
            stale = [
                client_id for client_id, registration in state.active_clients.items()
                if registration.last_activity() < inactive_cutoff
            ]
            for client_id in stale:
                del state.active_clients[client_id]

            pruned_hourly = _prune_buckets(state.hourly_counts, hour_key(now - HOURLY_RETENTION))
            pruned_daily = _prune_buckets(state.daily_counts, day_key(now - DAILY_RETENTION))
            self._save_state()

        if stale:
            logger.info(f"Sweep purged {len(stale)} inactive clients")
        logger.debug(
            f"Sweep pruned {pruned_hourly} hourly and {pruned_daily} daily buckets"
        )
        return SweepResult(len(stale), pruned_hourly, pruned_daily)

    def usage_stats(self) -> UsageStats:
        """Current spend, remaining budget and request volume."""
        with self._lock:
            now = self.clock.now()
            self._roll_month(now)
            state = self._state
            today = day_key(now)
            this_hour = hour_key(now)
            active = len(state.active_clients)

            requests_today = sum(c.get(today, 0) for c in state.daily_counts.values())
            requests_this_hour = sum(c.get(this_hour, 0) for c in state.hourly_counts.values())

            return UsageStats(
                month_start=state.month_start,
                current_spend=state.current_spend,
                remaining_budget=max(Decimal("0"), self.budget.monthly - state.current_spend),
                active_clients=active,
                requests_today=requests_today,
                requests_this_hour=requests_this_hour,
                average_requests_per_client=requests_today / active if active else 0.0,
                max_daily_requests_per_client=(
                    self.budget.max_daily_requests // active if active
                    else self.budget.max_daily_requests
                ),
                projected_month_end=self._project_month_end(now),
            )

    def _project_month_end(self, now: datetime) -> Decimal:
        state = self._state
        elapsed_days = Decimal(str((now - state.month_start).total_seconds() / 86400))
        if elapsed_days <= 0:
            return state.current_spend.quantize(PROJECTION_QUANTUM)
        days_in_month = calendar.monthrange(state.month_start.year, state.month_start.month)[1]
        projected = state.current_spend / elapsed_days * days_in_month
        return projected.quantize(PROJECTION_QUANTUM)

    def export_state(self) -> Dict:
        """Serialized copy of the current state."""
        with self._lock:
            return self._state.to_dict()


def _prune_buckets(counts: Dict[str, Dict[str, int]], cutoff: str) -> int:
    """Drop buckets whose key sorts before ``cutoff``; return how many."""
    pruned = 0
    for client_id in list(counts):
        buckets = counts[client_id]
        kept = {bucket: n for bucket, n in buckets.items() if bucket >= cutoff}
        pruned += len(buckets) - len(kept)
        if kept:
            counts[client_id] = kept
        else:
            del counts[client_id]
    return pruned
