"""
Event store writer.

Validates canonical events and persists them in bulk with
insert-or-ignore semantics keyed by the idempotency key. Invalid events are
quarantined instead of being dropped or failing the batch.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from usage_engine.collectors.base import MetricDefinition
from usage_engine.storage.models import QuarantinedEvent, UsageEvent
from usage_engine.storage.repository import UsageRepository

from .errors import PersistenceFailure, ValidationFailure
from .idempotency import IdempotencyManager, dedup_key
from .schema import schema_errors, usage_event_to_json, usage_event_to_wire

logger = logging.getLogger(__name__)

# Tolerance between quantity * unit_cost and the reported total
_COST_TOLERANCE = Decimal("0.01")


@dataclass
class WriteResult:
    """Outcome of one bulk write."""
    persisted: int = 0
    duplicates: int = 0
    quarantined: List[ValidationFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.quarantined)


def validate_event(
    event: UsageEvent,
    catalog: Mapping[str, Mapping[str, MetricDefinition]],
) -> List[str]:
    """Check an event against the canonical invariants.

    Args:
        event: Event to check
        catalog: provider -> metric_key -> definition

    Returns:
        List of error messages (empty if valid)
    """
    errors = schema_errors(usage_event_to_wire(event))

    cost = event.vendor_cost_data
    amounts = {"quantity": event.quantity, "unit_cost": cost.unit_cost, "total_cost": cost.total_cost}
    for name, amount in amounts.items():
        if not amount.is_finite():
            errors.append(f"{name} must be a finite number")
        elif amount < 0:
            errors.append(f"{name} must be non-negative")

    definitions = catalog.get(event.provider)
    if definitions is None:
        errors.append(f"unknown provider '{event.provider}'")
    elif event.metric_key not in definitions:
        errors.append(f"unknown metric '{event.metric_key}' for provider '{event.provider}'")
    elif definitions[event.metric_key].unit != event.unit:
        errors.append(
            f"unit '{event.unit}' does not match '{definitions[event.metric_key].unit}' "
            f"for {event.metric_key}"
        )

    if all(amount.is_finite() and amount >= 0 for amount in amounts.values()):
        expected = event.quantity * cost.unit_cost
        if abs(expected - cost.total_cost) > _COST_TOLERANCE:
            errors.append(
                f"total_cost {cost.total_cost} inconsistent with quantity * unit_cost ({expected})"
            )

    return errors


class EventStoreWriter:
    """Persists validated events and quarantines the rest."""

    def __init__(
        self,
        repository: UsageRepository,
        idempotency: IdempotencyManager,
        catalog: Mapping[str, Iterable[MetricDefinition]],
    ):
        self.repository = repository
        self.idempotency = idempotency
        self.catalog: Dict[str, Dict[str, MetricDefinition]] = {
            provider: {definition.metric_key: definition for definition in definitions}
            for provider, definitions in catalog.items()
        }

    def bulk_create(
        self,
        events: List[UsageEvent],
        correlation_id: str,
        now: Optional[datetime] = None,
        rejected: Sequence[QuarantinedEvent] = (),
    ) -> WriteResult:
        """Validate, deduplicate and persist a batch.

        Args:
            events: Candidate events
            correlation_id: Batch correlation id, preserved on failure
            now: Current time (defaults to utcnow)
            rejected: Vendor records the collector could not normalize;
                quarantined and counted as failed alongside invalid events

        Returns:
            WriteResult with counts; ``persisted`` counts new rows only

        Raises:
            PersistenceFailure: If the write fails for any reason other
                than an idempotency key conflict
        """
        now = now or datetime.now(timezone.utc)
        result = WriteResult()

        valid: List[UsageEvent] = []
        quarantine: List[QuarantinedEvent] = list(rejected)
        for record in rejected:
            result.quarantined.append(ValidationFailure(record.event_id, record.errors))
        for event in events:
            errors = validate_event(event, self.catalog)
            if errors:
                result.quarantined.append(ValidationFailure(event.event_id, errors))
                quarantine.append(QuarantinedEvent(
                    event_id=event.event_id,
                    provider=event.provider,
                    tenant_id=event.tenant_id,
                    client_id=event.client_id,
                    agent_id=event.agent_id,
                    metric_key=event.metric_key,
                    event_timestamp=event.event_timestamp,
                    payload=usage_event_to_json(event),
                    errors=errors,
                    correlation_id=correlation_id,
                    quarantined_at=now,
                    dedup_key=dedup_key(event),
                ))
            else:
                valid.append(event)

        fresh, duplicates = self.idempotency.filter_new(valid, now=now)
        result.duplicates = len(duplicates)

        try:
            self.repository.insert_quarantined(quarantine)
            inserted, conflicts = self.repository.insert_events(fresh)
        except sqlite3.Error as e:
            logger.error("Batch %s failed to persist: %s", correlation_id, e)
            raise PersistenceFailure(correlation_id, str(e)) from e

        # Conflicts here mean another writer got there first
        result.persisted = inserted
        result.duplicates += conflicts
        self.idempotency.mark_seen((key for key, _ in fresh), now=now)

        if quarantine:
            logger.warning(
                "Batch %s quarantined %d invalid records", correlation_id, len(quarantine)
            )
        logger.debug(
            "Batch %s: persisted=%d duplicates=%d quarantined=%d",
            correlation_id, result.persisted, result.duplicates, result.failed,
        )
        return result
