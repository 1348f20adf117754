"""
Collector registry.

Maps provider identifiers to collector instances and wires the built-in
collectors from configuration.
"""

import logging
import threading
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Tuple

import httpx

from usage_engine.config.loader import EngineConfig
from usage_engine.core.credentials import CredentialProvider
from usage_engine.core.directory import DirectoryService
from usage_engine.core.errors import UnknownProvider
from usage_engine.core.pricing import DEFAULT_PRICES, PricingCache
from usage_engine.core.ratelimit import RateLimiterPool

from . import openrouter, retell, twilio
from .base import Collector, MetricDefinition

logger = logging.getLogger(__name__)

# Credential fields each built-in provider needs
CREDENTIAL_FIELDS: Dict[str, Tuple[str, ...]] = {
    retell.PROVIDER: retell.CREDENTIAL_FIELDS,
    twilio.PROVIDER: twilio.CREDENTIAL_FIELDS,
    openrouter.PROVIDER: openrouter.CREDENTIAL_FIELDS,
}


class CollectorRegistry:
    """Thread-safe provider -> collector lookup."""

    def __init__(self):
        self._lock = threading.Lock()
        self._collectors: Dict[str, Collector] = {}

    def register(self, collector: Collector) -> None:
        """Register a collector under its ``provider_id``, replacing any previous one."""
        if not isinstance(collector, Collector):
            raise TypeError(f"{type(collector).__name__} does not implement the Collector protocol")
        with self._lock:
            if collector.provider_id in self._collectors:
                logger.warning("Replacing collector for provider %s", collector.provider_id)
            self._collectors[collector.provider_id] = collector

    def get_collector(self, provider_id: str) -> Collector:
        """Get the collector for a provider.

        Raises:
            UnknownProvider: If nothing is registered for ``provider_id``
        """
        with self._lock:
            if provider_id not in self._collectors:
                raise UnknownProvider(provider_id)
            return self._collectors[provider_id]

    def get_available_providers(self) -> List[str]:
        with self._lock:
            return sorted(self._collectors)

    def metric_catalog(self) -> Dict[str, List[MetricDefinition]]:
        """Metric definitions of every registered collector, keyed by provider."""
        with self._lock:
            collectors = dict(self._collectors)
        return {
            provider: collector.get_metric_definitions()
            for provider, collector in collectors.items()
        }

    def validate_all_credentials(self) -> Dict[str, bool]:
        """Check every collector's credentials.

        A collector that raises is reported as False; the others are still
        checked.
        """
        results = {}
        for provider in self.get_available_providers():
            try:
                results[provider] = bool(self.get_collector(provider).validate_credentials())
            except Exception as e:
                logger.error("Credential validation for %s failed: %s", provider, e)
                results[provider] = False
        return results


def build_default_registry(
    config: EngineConfig,
    credentials: CredentialProvider,
    directory: DirectoryService,
    limiters: RateLimiterPool,
    transport: Optional[httpx.BaseTransport] = None,
    pricing: Optional[Mapping[str, PricingCache]] = None,
) -> CollectorRegistry:
    """Wire the built-in collectors that are enabled in ``config``.

    Args:
        config: Engine configuration
        credentials: Credential source for every provider
        directory: Client agent directory
        limiters: Rate limiter pool; each collector's bucket is configured here
        transport: Optional httpx transport shared by all collectors
        pricing: Optional pricing caches keyed by provider

    Returns:
        Registry with one collector per enabled provider
    """
    refresh = timedelta(seconds=config.pricing.refresh_interval_seconds)
    timeout = config.collection.request_timeout_seconds

    def pricing_for(provider: str) -> PricingCache:
        if pricing and provider in pricing:
            return pricing[provider]
        prices = dict(DEFAULT_PRICES.get(provider, {}))
        prices.update(config.pricing.overrides.get(provider, {}))
        return PricingCache(provider, prices, refresh_interval=refresh)

    def options(provider: str, default_base_url: str) -> Dict:
        provider_config = config.provider(provider)
        return {
            "base_url": provider_config.base_url or default_base_url,
            "timeout": timeout,
            "throttle": limiters.throttle(provider),
            "transport": transport,
        }

    builders = {
        retell.PROVIDER: lambda: retell.RetellCollector(
            credentials, directory, pricing_for(retell.PROVIDER),
            page_size=config.provider(retell.PROVIDER).page_size or retell.DEFAULT_PAGE_SIZE,
            **options(retell.PROVIDER, retell.DEFAULT_BASE_URL),
        ),
        twilio.PROVIDER: lambda: twilio.TwilioCollector(
            credentials, pricing_for(twilio.PROVIDER),
            page_size=config.provider(twilio.PROVIDER).page_size or twilio.DEFAULT_PAGE_SIZE,
            **options(twilio.PROVIDER, twilio.DEFAULT_BASE_URL),
        ),
        openrouter.PROVIDER: lambda: openrouter.OpenRouterCollector(
            credentials, pricing_for(openrouter.PROVIDER),
            **options(openrouter.PROVIDER, openrouter.DEFAULT_BASE_URL),
        ),
    }

    unknown = set(config.providers) - set(builders)
    if unknown:
        raise UnknownProvider(", ".join(sorted(unknown)))

    registry = CollectorRegistry()
    for provider, build in builders.items():
        provider_config = config.provider(provider)
        if not provider_config.enabled:
            logger.info("Provider %s disabled by configuration", provider)
            continue
        collector = build()
        limiters.configure(
            provider,
            collector.get_rate_limits(),
            requests_per_minute=provider_config.requests_per_minute,
            burst_capacity=provider_config.burst_capacity,
        )
        registry.register(collector)
    return registry
