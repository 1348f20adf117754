"""
Data models for storage layer.

Defines the canonical usage event, derived cycle aggregates and the
operational records written by the engine.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from usage_engine.core.errors import InvalidRunTransition


@dataclass(frozen=True)
class VendorCostData:
    """Cost attached to an event at collection time.

    Captured once from the pricing snapshot (or the vendor's own reported
    price) and never recomputed, so later price changes cannot alter
    historical events.
    """
    unit_cost: Decimal
    currency: str
    total_cost: Decimal
    cost_captured_at: datetime
    pricing_tier: Optional[str] = None


@dataclass(frozen=True)
class CollectionMetadata:
    """Provenance of a collected event."""
    collected_at: datetime
    collector_version: str
    correlation_id: str
    retry_count: int = 0
    source_pagination: Optional[str] = None


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one vendor-reported unit of consumption.

    Events are append-only. Corrections are modeled as new offsetting
    events, never as in-place edits of a persisted row.
    """
    event_id: str
    provider: str
    event_type: str
    metric_key: str
    unit: str
    quantity: Decimal
    tenant_id: str
    client_id: str
    event_timestamp: datetime
    vendor_cost_data: VendorCostData
    collection_metadata: CollectionMetadata
    agent_id: Optional[str] = None
    resource_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def group_key(self) -> Tuple[str, str, str, str, str]:
        """Aggregation scope key (tenant, client, agent, provider, metric)."""
        return (
            self.tenant_id,
            self.client_id,
            self.agent_id or "",
            self.provider,
            self.metric_key,
        )


@dataclass(frozen=True)
class CostBreakdown:
    """Descriptive statistics over per-event effective unit cost."""
    avg_unit_cost: Decimal
    min_unit_cost: Decimal
    max_unit_cost: Decimal
    variance: Decimal


@dataclass(frozen=True)
class QualityMetrics:
    """Data-quality signals for one aggregate."""
    completeness_score: Decimal
    late_events_count: int
    anomaly_flags: Tuple[str, ...] = ()


def cycle_period(cycle_start: datetime, cycle_end: datetime) -> str:
    """Classify a cycle window as "daily", "monthly" or its length in seconds.

    Baselines only compare cycles of the same period; calendar months differ
    in length, so they are recognised by their boundaries.
    """
    start = cycle_start.astimezone(timezone.utc)
    at_midnight = start == start.replace(hour=0, minute=0, second=0, microsecond=0)
    if at_midnight and cycle_end - cycle_start == timedelta(days=1):
        return "daily"
    if at_midnight and start.day == 1:
        if start.month == 12:
            month_end = start.replace(year=start.year + 1, month=1)
        else:
            month_end = start.replace(month=start.month + 1)
        if cycle_end == month_end:
            return "monthly"
    return f"{int((cycle_end - cycle_start).total_seconds())}s"


@dataclass(frozen=True)
class CycleAggregate:
    """Derived summary for one scope key within a billing cycle.

    Created or replaced wholesale every time the aggregation engine runs
    for the scope key. Never partially patched.
    """
    tenant_id: str
    client_id: str
    agent_id: Optional[str]
    provider: str
    metric_key: str
    cycle_start: datetime
    cycle_end: datetime
    total_quantity: Decimal
    total_cost: Decimal
    currency: str
    event_count: int
    cost_breakdown: CostBreakdown
    quality_metrics: QualityMetrics
    aggregated_at: datetime

    @property
    def scope_key(self) -> Tuple[str, str, str, str, str, str, str]:
        return (
            self.tenant_id,
            self.client_id,
            self.agent_id or "",
            self.provider,
            self.metric_key,
            self.cycle_start.isoformat(),
            self.cycle_end.isoformat(),
        )

    @property
    def period(self) -> str:
        return cycle_period(self.cycle_start, self.cycle_end)

    @property
    def summary(self) -> str:
        agent = f"/{self.agent_id}" if self.agent_id else ""
        return (
            f"{self.tenant_id}/{self.client_id}{agent} {self.metric_key}: "
            f"{self.total_quantity} ({self.event_count} events) "
            f"= {self.total_cost} {self.currency}"
        )


class RunStatus(Enum):
    """Lifecycle of a collection run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


# Allowed status transitions; terminal states have none
RUN_TRANSITIONS: Dict[RunStatus, Tuple[RunStatus, ...]] = {
    RunStatus.PENDING: (RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED),
    RunStatus.RUNNING: (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED),
    RunStatus.COMPLETED: (),
    RunStatus.FAILED: (),
    RunStatus.CANCELLED: (),
}


@dataclass(frozen=True)
class CollectionRun:
    """One attempt to collect from one provider for one tenant/client/window."""
    run_id: str
    correlation_id: str
    provider: str
    tenant_id: str
    client_id: str
    window_start: datetime
    window_end: datetime
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    events_collected: int = 0
    events_processed: int = 0
    events_failed: int = 0
    events_duplicate: int = 0
    error_details: Optional[str] = None
    cursor: Optional[str] = None

    def transition(self, status: RunStatus, now: datetime, **changes) -> "CollectionRun":
        """Return a copy moved to ``status``.

        Raises:
            InvalidRunTransition: If the move is not allowed from the
                current status (e.g. out of a terminal state)
        """
        if status != self.status and status not in RUN_TRANSITIONS[self.status]:
            raise InvalidRunTransition(self.status.value, status.value)
        return replace(self, status=status, updated_at=now, **changes)


@dataclass(frozen=True)
class ClientAgentMapping:
    """Maps an internal agent to a provider-specific external agent id."""
    tenant_id: str
    client_id: str
    agent_id: str
    provider: str
    external_agent_id: str


@dataclass(frozen=True)
class QuarantinedEvent:
    """Event or vendor record set aside because it failed validation.

    ``dedup_key`` identifies the underlying usage, so re-collecting the same
    bad record does not add a second row; it falls back to ``event_id``.
    """
    event_id: str
    provider: str
    tenant_id: str
    client_id: str
    metric_key: str
    event_timestamp: datetime
    payload: str
    errors: List[str]
    correlation_id: str
    quarantined_at: datetime
    agent_id: Optional[str] = None
    dedup_key: Optional[str] = None
