"""
Anomaly detection and data-quality scoring for cycle aggregates.

Flags unusual usage against the group's baseline and signals missing or
suspicious data.
"""

from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, List, Tuple

from usage_engine.config.loader import QualityConfig
from usage_engine.storage.models import UsageEvent

from .baseline import BaselineResult, BaselineState

HIGH_USAGE_SPIKE = "high_usage_spike"
COST_ANOMALY = "cost_anomaly"
MISSING_EVENTS = "missing_events"
DUPLICATE_SUSPECTED = "duplicate_suspected"

_SCORE_PLACES = Decimal("0.0001")


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AnomalyEvent:
    """Detected anomaly with details and explanation."""
    provider: str
    metric_key: str
    rule: str
    severity: AnomalySeverity
    observed_value: Decimal
    baseline_value: Decimal
    threshold: Decimal
    message: str


@dataclass(frozen=True)
class GroupObservation:
    """What one aggregation group looks like in the current cycle."""
    total_quantity: Decimal
    total_cost: Decimal
    event_count: int
    completeness_score: Decimal
    exclusion_rate: Decimal
    duplicate_suspects: int


def completeness_score(event_count: int, baseline: BaselineResult) -> Decimal:
    """Observed event count relative to the prior-cycle average, capped at 1.

    Returns 1 when there is no history to compare against.
    """
    expected = baseline.metrics.mean_event_count
    if not baseline.has_history or expected <= 0:
        return Decimal("1")
    ratio = min(Decimal(event_count) / expected, Decimal("1"))
    return ratio.quantize(_SCORE_PLACES, rounding=ROUND_HALF_UP)


def exclusion_rate(valid_count: int, quarantined_count: int) -> Decimal:
    """Share of a group's events that were quarantined."""
    total = valid_count + quarantined_count
    if total == 0:
        return Decimal("0")
    return (Decimal(quarantined_count) / total).quantize(_SCORE_PLACES, rounding=ROUND_HALF_UP)


def count_duplicate_suspects(events: Iterable[UsageEvent]) -> int:
    """Events that share timestamp and quantity with another event of the group.

    Every persisted event already has a distinct idempotency key, so a match
    here means the vendor reported the same usage under two identities
    (for example a re-issued resource id).
    """
    signatures = Counter(
        (event.event_timestamp, event.quantity.normalize()) for event in events
    )
    return sum(count for count in signatures.values() if count > 1)


def detect_anomalies(
    provider: str,
    metric_key: str,
    baseline: BaselineResult,
    observation: GroupObservation,
    thresholds: QualityConfig,
) -> List[AnomalyEvent]:
    """Detect anomalies for one group in the current cycle.

    Rules:
    - high_usage_spike (WARNING): quantity > mean + k * stdev of prior cycles
    - cost_anomaly (CRITICAL): cost > mean + k * stdev of prior cycles
    - missing_events (CRITICAL): quarantine exclusion rate above threshold
    - missing_events (WARNING): completeness below 1 - tolerance
    - duplicate_suspected (WARNING): distinct events sharing timestamp
      and quantity

    The deviation rules only apply once the baseline is WARM.

    Args:
        provider: Provider of the group
        metric_key: Metric of the group
        baseline: Baseline from prior cycles
        observation: Current cycle figures
        thresholds: Configured quality thresholds

    Returns:
        List of detected anomalies (empty if none)
    """
    k = Decimal(str(thresholds.stddev_multiplier))
    metrics = baseline.metrics
    anomalies = []

    if baseline.state == BaselineState.WARM:
        threshold = metrics.mean_quantity + k * metrics.stdev_quantity
        if observation.total_quantity > threshold:
            anomalies.append(AnomalyEvent(
                provider=provider,
                metric_key=metric_key,
                rule=HIGH_USAGE_SPIKE,
                severity=AnomalySeverity.WARNING,
                observed_value=observation.total_quantity,
                baseline_value=metrics.mean_quantity,
                threshold=threshold,
                message=f"Usage spike: {observation.total_quantity} {metric_key} "
                        f"(mean {metrics.mean_quantity:.4f} + {k} * stdev = {threshold:.4f})",
            ))

        threshold = metrics.mean_cost + k * metrics.stdev_cost
        if observation.total_cost > threshold:
            anomalies.append(AnomalyEvent(
                provider=provider,
                metric_key=metric_key,
                rule=COST_ANOMALY,
                severity=AnomalySeverity.CRITICAL,
                observed_value=observation.total_cost,
                baseline_value=metrics.mean_cost,
                threshold=threshold,
                message=f"Cost anomaly: {observation.total_cost} "
                        f"(mean {metrics.mean_cost:.6f} + {k} * stdev = {threshold:.6f})",
            ))

    max_exclusion = Decimal(str(thresholds.missing_events_threshold))
    if observation.exclusion_rate > max_exclusion:
        anomalies.append(AnomalyEvent(
            provider=provider,
            metric_key=metric_key,
            rule=MISSING_EVENTS,
            severity=AnomalySeverity.CRITICAL,
            observed_value=observation.exclusion_rate,
            baseline_value=Decimal("0"),
            threshold=max_exclusion,
            message=f"{observation.exclusion_rate:.2%} of events were quarantined "
                    f"(threshold {max_exclusion:.2%})",
        ))

    min_completeness = Decimal("1") - Decimal(str(thresholds.completeness_tolerance))
    if observation.completeness_score < min_completeness:
        anomalies.append(AnomalyEvent(
            provider=provider,
            metric_key=metric_key,
            rule=MISSING_EVENTS,
            severity=AnomalySeverity.WARNING,
            observed_value=observation.completeness_score,
            baseline_value=metrics.mean_event_count,
            threshold=min_completeness,
            message=f"Only {observation.event_count} events against a prior average of "
                    f"{metrics.mean_event_count:.1f}",
        ))

    if observation.duplicate_suspects:
        anomalies.append(AnomalyEvent(
            provider=provider,
            metric_key=metric_key,
            rule=DUPLICATE_SUSPECTED,
            severity=AnomalySeverity.WARNING,
            observed_value=Decimal(observation.duplicate_suspects),
            baseline_value=Decimal("0"),
            threshold=Decimal("1"),
            message=f"{observation.duplicate_suspects} events share timestamp and quantity "
                    f"under different identities",
        ))

    return anomalies


def anomaly_flags(anomalies: Iterable[AnomalyEvent]) -> Tuple[str, ...]:
    """Distinct rule names, sorted."""
    return tuple(sorted({anomaly.rule for anomaly in anomalies}))
