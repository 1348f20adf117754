"""
Billing cycle aggregation.

Rolls persisted usage events up into one CycleAggregate per
(tenant, client, agent, provider, metric) for a cycle window. Aggregation
is a pure function of the stored events, so it can be re-run at any time.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import groupby
from typing import Dict, List, Optional, Sequence, Tuple

from usage_engine.config.loader import QualityConfig
from usage_engine.storage.models import CostBreakdown, CycleAggregate, QualityMetrics, UsageEvent
from usage_engine.storage.repository import UsageRepository

from .anomaly import (
    AnomalyEvent,
    GroupObservation,
    anomaly_flags,
    completeness_score,
    count_duplicate_suspects,
    detect_anomalies,
    exclusion_rate,
)
from .audit import AuditRecord, AuditSink
from .baseline import compute_baseline, mean, pvariance

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str, str, str, str]

# Unit-cost statistics keep more places than money; token prices are tiny
_STAT_PLACES = Decimal("0.000000000001")
ZERO = Decimal("0")


@dataclass
class AggregationResult:
    """Outcome of one aggregation pass."""
    aggregates: List[CycleAggregate] = field(default_factory=list)
    failed_groups: List[Tuple[GroupKey, str]] = field(default_factory=list)
    anomalies: List[AnomalyEvent] = field(default_factory=list)

    @property
    def events_aggregated(self) -> int:
        return sum(aggregate.event_count for aggregate in self.aggregates)


def cycle_bounds(period: str, reference: datetime) -> Tuple[datetime, datetime]:
    """Get the ``[start, end)`` cycle window containing ``reference``.

    Args:
        period: "daily" or "monthly"
        reference: Any instant inside the wanted cycle

    Returns:
        Tuple of (cycle_start, cycle_end) in UTC

    Raises:
        ValueError: If the period is not supported
    """
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    day = reference.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return day, day + timedelta(days=1)
    if period == "monthly":
        start = day.replace(day=1)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    raise ValueError(f"Unsupported cycle period: {period}")


def cost_breakdown(events: Sequence[UsageEvent]) -> CostBreakdown:
    """Descriptive stats over effective unit cost, ignoring zero-quantity events."""
    unit_costs = [
        (event.vendor_cost_data.total_cost / event.quantity).quantize(_STAT_PLACES)
        for event in events
        if event.quantity > 0
    ]
    if not unit_costs:
        return CostBreakdown(ZERO, ZERO, ZERO, ZERO)
    return CostBreakdown(
        avg_unit_cost=mean(unit_costs).quantize(_STAT_PLACES),
        min_unit_cost=min(unit_costs),
        max_unit_cost=max(unit_costs),
        variance=pvariance(unit_costs).quantize(_STAT_PLACES),
    )


class CycleAggregationEngine:
    """Computes and stores cycle aggregates for a tenant (optionally one client)."""

    def __init__(
        self,
        repository: UsageRepository,
        quality: QualityConfig,
        audit: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.quality = quality
        self.audit = audit

    def aggregate(
        self,
        cycle_start: datetime,
        cycle_end: datetime,
        tenant_id: str,
        client_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AggregationResult:
        """Aggregate every group with events in ``[cycle_start, cycle_end)``.

        Each group's aggregate replaces any earlier one for the same scope
        key. A group that fails is logged and reported in
        ``failed_groups``; the remaining groups are still written.

        Args:
            cycle_start: Inclusive window start
            cycle_end: Exclusive window end
            tenant_id: Tenant scope
            client_id: Optional client scope
            correlation_id: Identifier for the audit record
            now: Aggregation time (defaults to utcnow)

        Returns:
            AggregationResult with written aggregates, failures and anomalies

        Raises:
            ValueError: If the window is empty or inverted
        """
        if cycle_end <= cycle_start:
            raise ValueError("cycle_end must be after cycle_start")

        started = time.monotonic()
        now = now or datetime.now(timezone.utc)
        correlation_id = correlation_id or f"aggregate:{tenant_id}:{cycle_start.isoformat()}"

        events = self.repository.get_events_in_window(cycle_start, cycle_end, tenant_id, client_id)
        quarantined = self.repository.count_quarantined_by_group(
            cycle_start, cycle_end, tenant_id, client_id
        )

        grouped: Dict[GroupKey, List[UsageEvent]] = {}
        ordered = sorted(events, key=lambda e: (e.group_key, e.event_timestamp, e.event_id))
        for key, members in groupby(ordered, key=lambda e: e.group_key):
            grouped[key] = list(members)

        result = AggregationResult()
        for key in sorted(grouped):
            try:
                aggregate, anomalies = self.aggregate_group(
                    key, grouped[key], cycle_start, cycle_end, quarantined.get(key, 0), now
                )
                self.repository.replace_aggregate(aggregate)
            except Exception as e:
                logger.exception("Aggregation failed for group %s", "/".join(key))
                result.failed_groups.append((key, str(e)))
                continue
            result.aggregates.append(aggregate)
            result.anomalies.extend(anomalies)

        for key in sorted(set(quarantined) - set(grouped)):
            logger.warning(
                "Group %s has %d quarantined events and no valid ones", "/".join(key), quarantined[key]
            )

        duration_ms = round((time.monotonic() - started) * 1000, 3)
        logger.info(
            "Aggregated %s %s..%s: %d groups, %d failed",
            tenant_id, cycle_start.isoformat(), cycle_end.isoformat(),
            len(result.aggregates), len(result.failed_groups),
        )
        if self.audit is not None:
            self.audit.record(AuditRecord(
                correlation_id=correlation_id,
                provider=None,
                tenant_id=tenant_id,
                action="aggregate",
                outcome="partial" if result.failed_groups else "completed",
                events_aggregated=result.events_aggregated,
                duration_ms=duration_ms,
                recorded_at=now,
            ))
        return result

    def aggregate_group(
        self,
        key: GroupKey,
        events: List[UsageEvent],
        cycle_start: datetime,
        cycle_end: datetime,
        quarantined_count: int,
        now: datetime,
    ) -> Tuple[CycleAggregate, List[AnomalyEvent]]:
        """Build the aggregate for one group.

        Raises:
            ValueError: If the group mixes currencies
        """
        tenant_id, client_id, agent_id, provider, metric_key = key
        currencies = sorted({event.vendor_cost_data.currency for event in events})
        if len(currencies) != 1:
            raise ValueError(f"Group mixes currencies {currencies}; conversion is not supported")

        total_quantity = sum((event.quantity for event in events), ZERO)
        total_cost = sum((event.vendor_cost_data.total_cost for event in events), ZERO)
        late_cutoff = cycle_end + timedelta(seconds=self.quality.late_grace_seconds)
        late_events = sum(
            1 for event in events if event.collection_metadata.collected_at > late_cutoff
        )

        prior = self.repository.get_prior_aggregates(
            key, cycle_start, cycle_end, self.quality.history_cycles
        )
        baseline = compute_baseline(prior, self.quality.min_history_cycles)
        observation = GroupObservation(
            total_quantity=total_quantity,
            total_cost=total_cost,
            event_count=len(events),
            completeness_score=completeness_score(len(events), baseline),
            exclusion_rate=exclusion_rate(len(events), quarantined_count),
            duplicate_suspects=count_duplicate_suspects(events),
        )
        anomalies = detect_anomalies(provider, metric_key, baseline, observation, self.quality)
        for anomaly in anomalies:
            logger.warning("[%s] %s/%s: %s", anomaly.severity.value, tenant_id, client_id, anomaly.message)

        aggregate = CycleAggregate(
            tenant_id=tenant_id,
            client_id=client_id,
            agent_id=agent_id or None,
            provider=provider,
            metric_key=metric_key,
            cycle_start=cycle_start,
            cycle_end=cycle_end,
            total_quantity=total_quantity,
            total_cost=total_cost,
            currency=currencies[0],
            event_count=len(events),
            cost_breakdown=cost_breakdown(events),
            quality_metrics=QualityMetrics(
                completeness_score=observation.completeness_score,
                late_events_count=late_events,
                anomaly_flags=anomaly_flags(anomalies),
            ),
            aggregated_at=now,
        )
        return aggregate, anomalies
