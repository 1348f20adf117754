"""
Configuration management and loading.

Loads engine settings from YAML into frozen dataclasses. Unknown keys are
rejected everywhere so that a typo never silently falls back to a default.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_engine.core.pricing import MetricPrice
from usage_engine.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class StorageConfig:
    """Where the event store lives."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class CollectionConfig:
    """Collection run limits."""
    request_timeout_seconds: float = 30.0
    max_transient_attempts: int = 3
    max_rate_limit_waits: int = 5
    max_workers: int = 4
    dedup_window_hours: int = 48
    page_size_hint: Optional[int] = None

    def __post_init__(self):
        """Validate limits are positive."""
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.max_transient_attempts < 1:
            raise ValueError("max_transient_attempts must be >= 1")
        if self.max_rate_limit_waits < 0:
            raise ValueError("max_rate_limit_waits must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.dedup_window_hours < 1:
            raise ValueError("dedup_window_hours must be >= 1")
        if self.page_size_hint is not None and self.page_size_hint < 1:
            raise ValueError("page_size_hint must be >= 1")

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(hours=self.dedup_window_hours)


@dataclass(frozen=True)
class PricingConfig:
    """Pricing snapshot refresh and per-provider price overrides."""
    refresh_interval_seconds: int = 3600
    overrides: Dict[str, Dict[str, MetricPrice]] = field(default_factory=dict)

    def __post_init__(self):
        if self.refresh_interval_seconds <= 0:
            raise ValueError("refresh_interval_seconds must be > 0")


@dataclass(frozen=True)
class QualityConfig:
    """Thresholds for completeness and anomaly detection.

    None of these have built-in defaults; every deployment states them.
    """
    stddev_multiplier: float
    completeness_tolerance: float
    missing_events_threshold: float
    min_history_cycles: int
    history_cycles: int
    late_grace_seconds: int

    def __post_init__(self):
        """Validate thresholds are in range."""
        if self.stddev_multiplier <= 0:
            raise ValueError("stddev_multiplier must be > 0")
        if not 0 <= self.completeness_tolerance <= 1:
            raise ValueError("completeness_tolerance must be between 0 and 1")
        if not 0 <= self.missing_events_threshold <= 1:
            raise ValueError("missing_events_threshold must be between 0 and 1")
        if self.min_history_cycles < 1:
            raise ValueError("min_history_cycles must be >= 1")
        if self.history_cycles < self.min_history_cycles:
            raise ValueError("history_cycles must be >= min_history_cycles")
        if self.late_grace_seconds < 0:
            raise ValueError("late_grace_seconds must be >= 0")


@dataclass(frozen=True)
class ProviderConfig:
    """Per-provider overrides. Unset fields keep the collector's own values."""
    enabled: bool = True
    base_url: Optional[str] = None
    page_size: Optional[int] = None
    requests_per_minute: Optional[int] = None
    burst_capacity: Optional[int] = None

    def __post_init__(self):
        for name in ("page_size", "requests_per_minute", "burst_capacity"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    quality: QualityConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    def provider(self, provider_id: str) -> ProviderConfig:
        """Get configuration for a provider, using defaults if not specified."""
        return self.providers.get(provider_id, ProviderConfig())


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    return parse_engine_config(raw_config)


def parse_engine_config(raw_config: Dict[str, Any]) -> EngineConfig:
    """Validate an already-decoded configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'storage', 'collection', 'pricing', 'quality', 'providers'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'quality' not in raw_config:
        raise ValueError("Missing required 'quality' section")

    storage_data = _section(raw_config, 'storage', {'db_path'})
    collection_data = _section(raw_config, 'collection', {
        'request_timeout_seconds', 'max_transient_attempts', 'max_rate_limit_waits',
        'max_workers', 'dedup_window_hours', 'page_size_hint',
    })
    pricing_data = _section(raw_config, 'pricing', {'refresh_interval_seconds', 'overrides'})
    quality_data = _section(raw_config, 'quality', {
        'stddev_multiplier', 'completeness_tolerance', 'missing_events_threshold',
        'min_history_cycles', 'history_cycles', 'late_grace_seconds',
    })

    missing = sorted({
        'stddev_multiplier', 'completeness_tolerance', 'missing_events_threshold',
        'min_history_cycles', 'history_cycles', 'late_grace_seconds',
    } - set(quality_data))
    if missing:
        raise ValueError(f"Missing required quality thresholds: {missing}")

    quality = QualityConfig(
        stddev_multiplier=_number(quality_data, 'stddev_multiplier', 'quality'),
        completeness_tolerance=_number(quality_data, 'completeness_tolerance', 'quality'),
        missing_events_threshold=_number(quality_data, 'missing_events_threshold', 'quality'),
        min_history_cycles=_integer(quality_data, 'min_history_cycles', 'quality'),
        history_cycles=_integer(quality_data, 'history_cycles', 'quality'),
        late_grace_seconds=_integer(quality_data, 'late_grace_seconds', 'quality'),
    )

    storage = StorageConfig(**{key: str(value) for key, value in storage_data.items()})

    collection_values: Dict[str, Any] = {}
    for key in collection_data:
        if key == 'request_timeout_seconds':
            collection_values[key] = _number(collection_data, key, 'collection')
        else:
            collection_values[key] = _integer(collection_data, key, 'collection')
    collection = CollectionConfig(**collection_values)

    pricing = PricingConfig(
        refresh_interval_seconds=_integer(pricing_data, 'refresh_interval_seconds', 'pricing')
        if 'refresh_interval_seconds' in pricing_data else 3600,
        overrides=_parse_price_overrides(pricing_data.get('overrides', {})),
    )

    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    providers = {
        name: _parse_provider_config(data or {}, f"providers.{name}")
        for name, data in providers_data.items()
    }

    return EngineConfig(
        quality=quality,
        storage=storage,
        collection=collection,
        pricing=pricing,
        providers=providers,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict, key: str, path: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, path: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _parse_price_overrides(data: Dict) -> Dict[str, Dict[str, MetricPrice]]:
    """Parse ``provider -> metric_key[@variant] -> price`` overrides.

    A price is either a bare number or a mapping with ``unit_cost`` and
    optional ``currency`` and ``pricing_tier``.

    Raises:
        ValueError: If an override is malformed
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing.overrides' must be a dictionary")

    overrides: Dict[str, Dict[str, MetricPrice]] = {}
    for provider, prices in data.items():
        if not isinstance(prices, dict):
            raise ValueError(f"'pricing.overrides.{provider}' must be a dictionary")
        parsed = {}
        for metric_key, price in prices.items():
            path = f"pricing.overrides.{provider}.{metric_key}"
            if not isinstance(price, dict):
                price = {'unit_cost': price}
            unknown_keys = set(price.keys()) - {'unit_cost', 'currency', 'pricing_tier'}
            if unknown_keys:
                raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
            if 'unit_cost' not in price:
                raise ValueError(f"Missing required 'unit_cost' in {path}")
            try:
                unit_cost = Decimal(str(price['unit_cost']))
            except InvalidOperation:
                raise ValueError(f"'unit_cost' in {path} must be a decimal number")
            if unit_cost < 0:
                raise ValueError(f"'unit_cost' in {path} must be >= 0")
            currency = str(price.get('currency', 'USD'))
            if len(currency) != 3 or not currency.isalpha() or not currency.isupper():
                raise ValueError(f"'currency' in {path} must be a 3-letter upper-case code")
            parsed[metric_key] = MetricPrice(unit_cost, currency, price.get('pricing_tier'))
        overrides[provider] = parsed
    return overrides


def _parse_provider_config(data: Dict, path: str) -> ProviderConfig:
    """Parse and validate one provider section.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'enabled', 'base_url', 'page_size', 'requests_per_minute', 'burst_capacity'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'enabled' in {path} must be true or false")

    base_url = data.get('base_url')
    if base_url is not None and not isinstance(base_url, str):
        raise ValueError(f"'base_url' in {path} must be a string")

    return ProviderConfig(
        enabled=enabled,
        base_url=base_url,
        page_size=_integer(data, 'page_size', path) if 'page_size' in data else None,
        requests_per_minute=_integer(data, 'requests_per_minute', path)
        if 'requests_per_minute' in data else None,
        burst_capacity=_integer(data, 'burst_capacity', path) if 'burst_capacity' in data else None,
    )
