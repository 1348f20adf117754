"""
Pricing snapshots and cost attachment.

Collectors price events from a cached snapshot that is refreshed in the
background at a bounded interval. A page of events is never blocked on a
live pricing call; a failed refresh keeps serving the previous snapshot.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Money and fractional quantities are kept to micro-units
MICRO = Decimal("0.000001")


@dataclass(frozen=True)
class MetricPrice:
    """Unit price for one metric (optionally one model of that metric)."""
    unit_cost: Decimal
    currency: str = "USD"
    pricing_tier: Optional[str] = None


@dataclass(frozen=True)
class PricingSnapshot:
    """Immutable price list for a provider at a point in time.

    Keys are metric keys, or ``metric_key@variant`` for per-model prices.
    """
    provider: str
    prices: Dict[str, MetricPrice]
    fetched_at: datetime

    def get_price(self, metric_key: str, variant: Optional[str] = None) -> MetricPrice:
        """Get pricing for a metric, preferring the variant-specific entry.

        Args:
            metric_key: Canonical metric key
            variant: Optional model or tier name

        Returns:
            MetricPrice for the metric

        Raises:
            ValueError: If the metric has no price
        """
        if variant and f"{metric_key}@{variant}" in self.prices:
            return self.prices[f"{metric_key}@{variant}"]
        if metric_key not in self.prices:
            raise ValueError(f"No price for {self.provider} metric: {metric_key}")
        return self.prices[metric_key]


# Fallback price list used until a loader provides fresher figures
DEFAULT_PRICES: Dict[str, Dict[str, MetricPrice]] = {
    "retell": {
        "retell.call_minutes": MetricPrice(Decimal("0.05"), pricing_tier="standard"),
    },
    "twilio": {
        "twilio.call_minutes": MetricPrice(Decimal("0.0085")),
        "twilio.sms_segments": MetricPrice(Decimal("0.0079")),
    },
    "openrouter": {
        "openrouter.input_tokens": MetricPrice(Decimal("0.000003")),
        "openrouter.output_tokens": MetricPrice(Decimal("0.000015")),
    },
}


def quantize(value: Decimal) -> Decimal:
    return value.quantize(MICRO, rounding=ROUND_HALF_UP)


def calculate_cost(quantity: Decimal, price: MetricPrice) -> Tuple[Decimal, Decimal]:
    """Calculate the total cost of ``quantity`` at ``price``.

    Args:
        quantity: Non-negative usage quantity
        price: Unit price

    Returns:
        Tuple of (unit_cost, total_cost rounded half-up to micro-units)
    """
    return price.unit_cost, quantize(quantity * price.unit_cost)


def effective_unit_cost(quantity: Decimal, total_cost: Decimal) -> Decimal:
    """Unit cost implied by a vendor-reported total; zero for zero quantity."""
    if quantity == 0:
        return Decimal("0")
    return total_cost / quantity


PriceLoader = Callable[[], Mapping[str, MetricPrice]]


class PricingCache:
    """Serves the current pricing snapshot for one provider.

    ``snapshot()`` always returns immediately. When the snapshot is older
    than ``refresh_interval`` and a loader is configured, a background
    refresh is started and the stale snapshot is served meanwhile.
    """

    def __init__(
        self,
        provider: str,
        seed_prices: Mapping[str, MetricPrice],
        loader: Optional[PriceLoader] = None,
        refresh_interval: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.provider = provider
        self.loader = loader
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._refreshing = False
        self._snapshot = PricingSnapshot(provider, dict(seed_prices), clock())

    def snapshot(self) -> PricingSnapshot:
        with self._lock:
            current = self._snapshot
            stale = self._clock() - current.fetched_at >= self.refresh_interval
            start_refresh = stale and self.loader is not None and not self._refreshing
            if start_refresh:
                self._refreshing = True
        if start_refresh:
            threading.Thread(
                target=self._background_refresh,
                name=f"pricing-refresh-{self.provider}",
                daemon=True,
            ).start()
        return current

    def refresh(self) -> PricingSnapshot:
        """Load prices synchronously and swap the snapshot in.

        Raises:
            Whatever the loader raises; the previous snapshot stays active
        """
        if self.loader is None:
            return self._snapshot
        loaded = dict(self.loader())
        with self._lock:
            merged = dict(self._snapshot.prices)
            merged.update(loaded)
            self._snapshot = PricingSnapshot(self.provider, merged, self._clock())
            return self._snapshot

    def _background_refresh(self) -> None:
        try:
            self.refresh()
            logger.info("Refreshed %s pricing snapshot", self.provider)
        except Exception:
            logger.exception("Pricing refresh for %s failed; keeping previous snapshot", self.provider)
        finally:
            with self._lock:
                self._refreshing = False
