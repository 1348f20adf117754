"""Provider collectors for the usage engine."""

from .base import (
    CollectParams,
    CollectPerformance,
    CollectResult,
    Collector,
    MetricDefinition,
    RateLimits,
)
from .openrouter import OpenRouterCollector
from .retell import RetellCollector
from .twilio import TwilioCollector

__all__ = [
    "CollectParams",
    "CollectPerformance",
    "CollectResult",
    "Collector",
    "MetricDefinition",
    "OpenRouterCollector",
    "RateLimits",
    "RetellCollector",
    "TwilioCollector",
]
