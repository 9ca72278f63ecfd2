"""
Configuration management and loading.

Handles budget, routing, retry and storage settings from YAML.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from relay_guard.core.pricing import TokenPricing, to_decimal
from relay_guard.core.router import RouterMode, ServiceEndpoint
from relay_guard.core.token_counter import TokenEstimates


@dataclass(frozen=True)
class BudgetConfig:
    """Shared monthly budget and per-client request quotas."""
    monthly: Decimal = Decimal("10.00")
    max_daily_requests: int = 231
    max_hourly_requests: int = 10
    sweep_interval_seconds: int = 3600

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")
        if self.max_daily_requests <= 0:
            raise ValueError("max_daily_requests must be > 0")
        if self.max_hourly_requests <= 0:
            raise ValueError("max_hourly_requests must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")


@dataclass(frozen=True)
class QueueConfig:
    """Retry queue schedule."""
    initial_delay_seconds: int = 60
    base_delay_seconds: int = 60
    max_delay_seconds: int = 86400
    process_interval_seconds: int = 300
    drop_permanent_failures: bool = False

    def __post_init__(self):
        """Validate delays are positive and the cap is reachable."""
        for name in ("initial_delay_seconds", "base_delay_seconds",
                     "max_delay_seconds", "process_interval_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")


@dataclass(frozen=True)
class RouterConfig:
    """Connection methods for each named service."""
    services: Dict[str, ServiceEndpoint] = field(default_factory=dict)
    server_ip: str = "127.0.0.1"
    mode: RouterMode = RouterMode.ADAPTIVE
    failure_threshold: int = 3
    timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate router limits."""
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Where component state is persisted."""
    backend: str = "json"
    path: Optional[str] = None

    def __post_init__(self):
        """Validate backend name."""
        if self.backend not in ("json", "sqlite", "memory"):
            raise ValueError("storage backend must be one of: ['json', 'sqlite', 'memory']")


@dataclass(frozen=True)
class DeliveryConfig:
    """Where submissions are delivered."""
    service: str = "gateway"
    path: str = "/api/submit"


@dataclass(frozen=True)
class Settings:
    """Complete relay_guard configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    pricing: TokenPricing = field(default_factory=TokenPricing)
    tokens: TokenEstimates = field(default_factory=TokenEstimates)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)


def default_settings() -> Settings:
    """Settings used when no configuration file is given."""
    return Settings()


def load_settings(path: str) -> Settings:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    overspend the shared budget or route traffic somewhere unexpected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'budget', 'router', 'pricing', 'tokens', 'queue', 'storage', 'delivery'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")
    if 'router' not in raw_config:
        raise ValueError("Missing required 'router' section")

    router = _parse_router(_section(raw_config, 'router'))
    delivery = _parse_delivery(_section(raw_config, 'delivery'))
    if delivery.service not in router.services:
        raise ValueError(f"Delivery service '{delivery.service}' is not defined in router.services")

    return Settings(
        budget=_parse_budget(_section(raw_config, 'budget')),
        router=router,
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
        tokens=_parse_tokens(_section(raw_config, 'tokens')),
        queue=_parse_queue(_section(raw_config, 'queue')),
        storage=_parse_storage(_section(raw_config, 'storage')),
        delivery=delivery,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _int(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict, key: str, path: str, default: Any) -> Any:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _money(data: Dict, key: str, path: str, default: Decimal) -> Decimal:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        return to_decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"'{key}' in {path} must be a number")


def _parse_budget(data: Dict) -> BudgetConfig:
    _check_keys(data, {'monthly', 'max_daily_requests', 'max_hourly_requests',
                       'sweep_interval_seconds'}, 'budget')
    if 'monthly' not in data:
        raise ValueError("Missing required 'monthly' budget")
    defaults = BudgetConfig()
    return BudgetConfig(
        monthly=_money(data, 'monthly', 'budget', defaults.monthly),
        max_daily_requests=_int(data, 'max_daily_requests', 'budget', defaults.max_daily_requests),
        max_hourly_requests=_int(data, 'max_hourly_requests', 'budget', defaults.max_hourly_requests),
        sweep_interval_seconds=_int(data, 'sweep_interval_seconds', 'budget',
                                    defaults.sweep_interval_seconds),
    )


def _parse_pricing(data: Dict) -> TokenPricing:
    _check_keys(data, {'input_cost_per_1k', 'output_cost_per_1k'}, 'pricing')
    defaults = TokenPricing()
    return TokenPricing(
        input_cost_per_1k=_money(data, 'input_cost_per_1k', 'pricing', defaults.input_cost_per_1k),
        output_cost_per_1k=_money(data, 'output_cost_per_1k', 'pricing', defaults.output_cost_per_1k),
    )


def _parse_tokens(data: Dict) -> TokenEstimates:
    _check_keys(data, {'system_prompt', 'user_query', 'response'}, 'tokens')
    defaults = TokenEstimates()
    return TokenEstimates(
        system_prompt=_int(data, 'system_prompt', 'tokens', defaults.system_prompt),
        user_query=_int(data, 'user_query', 'tokens', defaults.user_query),
        response=_int(data, 'response', 'tokens', defaults.response),
    )


def _parse_queue(data: Dict) -> QueueConfig:
    _check_keys(data, {'initial_delay_seconds', 'base_delay_seconds', 'max_delay_seconds',
                       'process_interval_seconds', 'drop_permanent_failures'}, 'queue')
    defaults = QueueConfig()
    drop_permanent = data.get('drop_permanent_failures', defaults.drop_permanent_failures)
    if not isinstance(drop_permanent, bool):
        raise ValueError("'drop_permanent_failures' in queue must be a boolean")
    return QueueConfig(
        initial_delay_seconds=_int(data, 'initial_delay_seconds', 'queue',
                                   defaults.initial_delay_seconds),
        base_delay_seconds=_int(data, 'base_delay_seconds', 'queue', defaults.base_delay_seconds),
        max_delay_seconds=_int(data, 'max_delay_seconds', 'queue', defaults.max_delay_seconds),
        process_interval_seconds=_int(data, 'process_interval_seconds', 'queue',
                                      defaults.process_interval_seconds),
        drop_permanent_failures=drop_permanent,
    )


def _parse_router(data: Dict) -> RouterConfig:
    _check_keys(data, {'services', 'server_ip', 'mode', 'failure_threshold',
                       'timeout_seconds'}, 'router')
    defaults = RouterConfig()

    services_data = data.get('services')
    if not services_data:
        raise ValueError("Missing required 'services' in router")
    if not isinstance(services_data, dict):
        raise ValueError("'services' in router must be a dictionary")

    services = {}
    for name, service_data in services_data.items():
        path = f"router.services.{name}"
        if not isinstance(service_data, dict):
            raise ValueError(f"Service '{name}' must be a dictionary")
        _check_keys(service_data, {'domain', 'port'}, path)
        domain = service_data.get('domain')
        if not isinstance(domain, str) or not domain.strip():
            raise ValueError(f"Missing required 'domain' in {path}")
        if 'port' not in service_data:
            raise ValueError(f"Missing required 'port' in {path}")
        port = _int(service_data, 'port', path, 0)
        if not 0 < port < 65536:
            raise ValueError(f"'port' in {path} must be between 1 and 65535")
        services[name] = ServiceEndpoint(name=name, domain=domain.strip(), port=port)

    server_ip = data.get('server_ip', defaults.server_ip)
    if not isinstance(server_ip, str) or not server_ip.strip():
        raise ValueError("'server_ip' in router must be a string")

    mode_str = data.get('mode', defaults.mode.value)
    if not isinstance(mode_str, str):
        raise ValueError("'mode' in router must be a string")
    try:
        mode = RouterMode(mode_str.lower())
    except ValueError:
        valid_modes = [m.value for m in RouterMode]
        raise ValueError(f"'mode' in router must be one of: {valid_modes}")

    return RouterConfig(
        services=services,
        server_ip=server_ip.strip(),
        mode=mode,
        failure_threshold=_int(data, 'failure_threshold', 'router', defaults.failure_threshold),
        timeout_seconds=float(_number(data, 'timeout_seconds', 'router', defaults.timeout_seconds)),
    )


def _parse_storage(data: Dict) -> StorageConfig:
    _check_keys(data, {'backend', 'path'}, 'storage')
    backend = data.get('backend', 'json')
    if not isinstance(backend, str):
        raise ValueError("'backend' in storage must be a string")
    path = data.get('path')
    if path is not None and not isinstance(path, str):
        raise ValueError("'path' in storage must be a string")
    return StorageConfig(backend=backend.lower(), path=path)


def _parse_delivery(data: Dict) -> DeliveryConfig:
    _check_keys(data, {'service', 'path'}, 'delivery')
    defaults = DeliveryConfig()
    service = data.get('service', defaults.service)
    path = data.get('path', defaults.path)
    if not isinstance(service, str) or not service:
        raise ValueError("'service' in delivery must be a string")
    if not isinstance(path, str) or not path.startswith('/'):
        raise ValueError("'path' in delivery must start with '/'")
    return DeliveryConfig(service=service, path=path)
