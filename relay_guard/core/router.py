"""
Connection routing with graceful degradation.

Each named service is reachable through several ranked connection methods:
1. HTTPS with the service domain (preferred)
2. HTTP with the service domain
3. Plain HTTP to the gateway IP and the service port (last resort)

The adaptive router remembers the last method that worked per service and
demotes the preferred method after repeated consecutive failures. The
strict router only ever uses the highest-ranked method.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
HEALTH_PATH = "/api/health"


class ConnectionMethod(Enum):
    """Ways of reaching a service, in rank order."""
    HTTPS = "https"
    HTTP = "http"
    IP = "ip"

    @property
    def rank(self) -> int:
        return _RANKED_METHODS.index(self)

    def next_lower(self) -> Optional["ConnectionMethod"]:
        """The next-ranked method, or None at the lowest rank."""
        index = self.rank + 1
        return _RANKED_METHODS[index] if index < len(_RANKED_METHODS) else None


_RANKED_METHODS = [ConnectionMethod.HTTPS, ConnectionMethod.HTTP, ConnectionMethod.IP]


class RouterMode(Enum):
    """Selectable routing variants with different failure semantics."""
    ADAPTIVE = "adaptive"  # fail over across methods
    STRICT = "strict"      # highest-ranked method only, fail fast


class UnknownServiceError(KeyError):
    """Raised when a service name has no configured endpoint."""


@dataclass(frozen=True)
class ServiceEndpoint:
    """Addresses of one logical service."""
    name: str
    domain: str
    port: int

    def url_for(self, method: ConnectionMethod, path: str, server_ip: str) -> str:
        """Build the URL for ``path`` using ``method``."""
        if not path.startswith("/"):
            path = "/" + path
        if method == ConnectionMethod.HTTPS:
            return f"https://{self.domain}{path}"
        if method == ConnectionMethod.HTTP:
            return f"http://{self.domain}{path}"
        return f"http://{server_ip}:{self.port}{path}"


@dataclass(frozen=True)
class ConnectionPreference:
    """Routing memory for one service."""
    method: ConnectionMethod = ConnectionMethod.HTTPS
    failures: int = 0
    last_success: Optional[datetime] = None


@dataclass(frozen=True)
class ConnectionProbe:
    """Outcome of probing one method of one service."""
    url: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class _BaseRouter:
    """Shared endpoint lookup, request and probing logic."""

    def __init__(
        self,
        services: Mapping[str, ServiceEndpoint],
        server_ip: str,
        client: Optional[httpx.Client] = None,
    ):
        if not services:
            raise ValueError("at least one service is required")
        self.services = dict(services)
        self.server_ip = server_ip
        self.client = client or httpx.Client()

    def _endpoint(self, service: str) -> ServiceEndpoint:
        try:
            return self.services[service]
        except KeyError:
            raise UnknownServiceError(f"Unknown service: {service}") from None

    def _request(
        self, url: str, method: str, timeout: float, request_kwargs: Dict[str, Any]
    ) -> httpx.Response:
        return self.client.request(method, url, timeout=timeout, **request_kwargs)

    def _probe_methods(self):
        raise NotImplementedError

    def test_connections(
        self, path: str = HEALTH_PATH, timeout: float = 5.0
    ) -> Dict[str, Dict[str, ConnectionProbe]]:
        """Probe every method of every service without touching preferences.

        Returns:
            ``{service: {method value: ConnectionProbe}}``
        """
        results: Dict[str, Dict[str, ConnectionProbe]] = {}
        for name, endpoint in self.services.items():
            results[name] = {}
            for method in self._probe_methods():
                url = endpoint.url_for(method, path, self.server_ip)
                try:
                    response = self._request(url, "GET", timeout, {})
                    results[name][method.value] = ConnectionProbe(
                        url=url,
                        success=response.is_success,
                        status_code=response.status_code,
                    )
                except httpx.RequestError as e:
                    results[name][method.value] = ConnectionProbe(
                        url=url, success=False, error=str(e) or type(e).__name__
                    )
        return results

    def close(self) -> None:
        self.client.close()


class AdaptiveConnectionRouter(_BaseRouter):
    """Fail-over router that remembers what last worked per service."""

    def __init__(
        self,
        services: Mapping[str, ServiceEndpoint],
        server_ip: str,
        client: Optional[httpx.Client] = None,
        clock: Optional[Clock] = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ):
        """Initialize the router.

        Args:
            services: Endpoints by service name
            server_ip: Gateway address used by the IP method
            client: HTTP client (a default httpx.Client if omitted)
            clock: Time source for ``last_success``
            failure_threshold: Consecutive failures before demotion
        """
        super().__init__(services, server_ip, client)
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        self.clock = clock or SystemClock()
        self.failure_threshold = failure_threshold
        self._preferences: Dict[str, ConnectionPreference] = {
            name: ConnectionPreference() for name in self.services
        }
        self._lock = threading.Lock()

    def _probe_methods(self):
        return _RANKED_METHODS

    def preference(self, service: str) -> ConnectionPreference:
        self._endpoint(service)
        with self._lock:
            return self._preferences[service]

    def preferences(self) -> Dict[str, ConnectionPreference]:
        with self._lock:
            return dict(self._preferences)

    def resolve(self, service: str, path: str) -> str:
        """URL for ``path`` on ``service`` using the preferred method."""
        endpoint = self._endpoint(service)
        with self._lock:
            method = self._preferences[service].method
        return endpoint.url_for(method, path, self.server_ip)

    def record_success(self, service: str, method: ConnectionMethod) -> None:
        """A call at ``method`` worked: it becomes the preference."""
        self._endpoint(service)
        with self._lock:
            self._preferences[service] = ConnectionPreference(
                method=method, failures=0, last_success=self.clock.now()
            )

    def record_failure(self, service: str, method: ConnectionMethod) -> None:
        """A call at ``method`` failed.

        Only failures at the preferred method count; reaching the threshold
        demotes the preference one rank and resets the counter.
        """
        self._endpoint(service)
        with self._lock:
            current = self._preferences[service]
            if method != current.method:
                return
            failures = current.failures + 1
            if failures < self.failure_threshold:
                self._preferences[service] = replace(current, failures=failures)
                return

            demoted = current.method.next_lower()
            if demoted is None:
                # Nothing lower to fall back to: stay put.
                self._preferences[service] = replace(current, failures=0)
                return
            logger.warning(
                f"Demoting {service} from {current.method.value} to {demoted.value} "
                f"after {failures} consecutive failures"
            )
            self._preferences[service] = replace(current, method=demoted, failures=0)

    def attempt(
        self,
        service: str,
        path: str,
        *,
        timeout: float,
        method: str = "GET",
        **request_kwargs: Any,
    ) -> httpx.Response:
        """Perform a request, falling back through the ranked methods.

        Any HTTP response counts as a successful connection; only
        transport errors (timeouts included) trigger fallback.

        Args:
            service: Logical service name
            path: Endpoint path, e.g. ``/api/submit``
            timeout: Per-attempt timeout in seconds
            method: HTTP method
            **request_kwargs: Passed to ``httpx.Client.request``

        Returns:
            The first response obtained

        Raises:
            httpx.RequestError: The error from the preferred method, if every
                method fails
            UnknownServiceError: If ``service`` is not configured
        """
        endpoint = self._endpoint(service)
        with self._lock:
            preferred = self._preferences[service].method
        url = endpoint.url_for(preferred, path, self.server_ip)

        original_error: Optional[httpx.RequestError] = None
        try:
            logger.debug(f"Trying {url}")
            response = self._request(url, method, timeout, request_kwargs)
        except httpx.RequestError as e:
            logger.warning(f"Failed to connect to {url}: {e}")
            original_error = e
            self.record_failure(service, preferred)
        else:
            self.record_success(service, preferred)
            return response

        for fallback in _RANKED_METHODS:
            if fallback == preferred:
                continue
            fallback_url = endpoint.url_for(fallback, path, self.server_ip)
            try:
                logger.info(f"Trying fallback: {fallback_url}")
                response = self._request(fallback_url, method, timeout, request_kwargs)
            except httpx.RequestError as e:
                logger.warning(f"Fallback to {fallback_url} failed: {e}")
                continue
            self.record_success(service, fallback)
            return response

        logger.error(f"All connection methods failed for {service}{path}")
        raise original_error


class StrictConnectionRouter(_BaseRouter):
    """Compliance router: highest-ranked method only, no fallback."""

    METHOD = ConnectionMethod.HTTPS

    def __init__(
        self,
        services: Mapping[str, ServiceEndpoint],
        server_ip: str = "",
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(services, server_ip, client)

    def _probe_methods(self):
        return [self.METHOD]

    def resolve(self, service: str, path: str) -> str:
        return self._endpoint(service).url_for(self.METHOD, path, self.server_ip)

    def attempt(
        self,
        service: str,
        path: str,
        *,
        timeout: float,
        method: str = "GET",
        **request_kwargs: Any,
    ) -> httpx.Response:
        """Perform a request at the secure URL; errors propagate unchanged."""
        url = self.resolve(service, path)
        try:
            return self._request(url, method, timeout, request_kwargs)
        except httpx.RequestError as e:
            logger.error(f"Failed to connect to {url}: {e}")
            raise


def build_router(
    mode: RouterMode,
    services: Mapping[str, ServiceEndpoint],
    server_ip: str,
    client: Optional[httpx.Client] = None,
    clock: Optional[Clock] = None,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
):
    """Create the router variant selected by ``mode``."""
    if mode == RouterMode.STRICT:
        return StrictConnectionRouter(services, server_ip, client)
    return AdaptiveConnectionRouter(
        services, server_ip, client, clock=clock, failure_threshold=failure_threshold
    )
