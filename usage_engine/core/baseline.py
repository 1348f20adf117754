"""
Baseline usage analysis and comparison.

Establishes the normal shape of a group's usage from its prior billing
cycles, for completeness scoring and anomaly detection.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence

from usage_engine.storage.models import CycleAggregate

ZERO = Decimal("0")


class BaselineState(Enum):
    """State of baseline computation based on data availability."""
    COLD = "cold"  # Too few prior cycles for deviation rules
    WARM = "warm"


@dataclass(frozen=True)
class BaselineMetrics:
    """Mean and population standard deviation over prior cycles."""
    mean_quantity: Decimal
    stdev_quantity: Decimal
    mean_cost: Decimal
    stdev_cost: Decimal
    mean_event_count: Decimal
    sample_count: int

    def __post_init__(self):
        """Validate metrics are reasonable."""
        if self.sample_count < 0:
            raise ValueError("sample_count cannot be negative")
        if self.stdev_quantity < 0 or self.stdev_cost < 0:
            raise ValueError("standard deviation cannot be negative")


@dataclass(frozen=True)
class BaselineResult:
    """Complete baseline computation result."""
    metrics: BaselineMetrics
    state: BaselineState
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def __post_init__(self):
        """Validate time window is logical."""
        if self.window_start and self.window_end and self.window_start > self.window_end:
            raise ValueError("window_start must be before window_end")

    @property
    def has_history(self) -> bool:
        return self.metrics.sample_count > 0


def compute_baseline(prior: Sequence[CycleAggregate], min_history_cycles: int) -> BaselineResult:
    """Compute baseline metrics from a group's prior cycle aggregates.

    Args:
        prior: Earlier aggregates of the same group (any order)
        min_history_cycles: Cycles needed before the baseline is WARM

    Returns:
        BaselineResult; all-zero COLD metrics when there is no history
    """
    if not prior:
        return BaselineResult(
            metrics=BaselineMetrics(ZERO, ZERO, ZERO, ZERO, ZERO, 0),
            state=BaselineState.COLD,
        )

    ordered = sorted(prior, key=lambda aggregate: aggregate.cycle_start)
    quantities = [aggregate.total_quantity for aggregate in ordered]
    costs = [aggregate.total_cost for aggregate in ordered]
    counts = [Decimal(aggregate.event_count) for aggregate in ordered]

    metrics = BaselineMetrics(
        mean_quantity=mean(quantities),
        stdev_quantity=pstdev(quantities),
        mean_cost=mean(costs),
        stdev_cost=pstdev(costs),
        mean_event_count=mean(counts),
        sample_count=len(ordered),
    )
    state = BaselineState.WARM if len(ordered) >= min_history_cycles else BaselineState.COLD

    return BaselineResult(
        metrics=metrics,
        state=state,
        window_start=ordered[0].cycle_start,
        window_end=ordered[-1].cycle_end,
    )


def mean(values: List[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return sum(values, ZERO) / len(values)


def pvariance(values: List[Decimal]) -> Decimal:
    """Population variance; zero for fewer than two values."""
    if len(values) < 2:
        return ZERO
    average = mean(values)
    return sum(((value - average) ** 2 for value in values), ZERO) / len(values)


def pstdev(values: List[Decimal]) -> Decimal:
    return pvariance(values).sqrt()
