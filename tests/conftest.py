"""
Shared fixtures and factories for the test suite.
"""

import os
import tempfile
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from usage_engine.config.loader import QualityConfig
from usage_engine.core.pricing import DEFAULT_PRICES, PricingCache
from usage_engine.storage.models import CollectionMetadata, UsageEvent, VendorCostData
from usage_engine.storage.repository import UsageRepository, initialize_schema

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def db_path():
    """Path to a fresh, initialized database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def repository(db_path):
    return UsageRepository(db_path)


@pytest.fixture
def quality():
    return QualityConfig(
        stddev_multiplier=2.0,
        completeness_tolerance=0.2,
        missing_events_threshold=0.1,
        min_history_cycles=3,
        history_cycles=6,
        late_grace_seconds=3600,
    )


@pytest.fixture
def pricing():
    """Pricing caches with the default price lists and no loader."""
    return {
        provider: PricingCache(provider, prices)
        for provider, prices in DEFAULT_PRICES.items()
    }


def make_event(
    quantity="5.5",
    unit_cost="0.05",
    total_cost=None,
    provider="retell",
    metric_key="retell.call_minutes",
    unit="minutes",
    tenant_id="t1",
    client_id="c1",
    agent_id=None,
    resource_id="call_123",
    event_timestamp=None,
    collected_at=None,
    currency="USD",
    correlation_id="corr-1",
    tags=None,
):
    """Build a valid canonical event; every field can be overridden."""
    quantity = Decimal(quantity)
    unit_cost = Decimal(unit_cost)
    total_cost = Decimal(total_cost) if total_cost is not None else quantity * unit_cost
    event_timestamp = event_timestamp or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    collected_at = collected_at or datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)
    return UsageEvent(
        event_id=str(uuid.uuid4()),
        provider=provider,
        event_type="call_ended",
        metric_key=metric_key,
        unit=unit,
        quantity=quantity,
        tenant_id=tenant_id,
        client_id=client_id,
        agent_id=agent_id,
        resource_id=resource_id,
        event_timestamp=event_timestamp,
        vendor_cost_data=VendorCostData(
            unit_cost=unit_cost,
            currency=currency,
            total_cost=total_cost,
            cost_captured_at=collected_at,
        ),
        collection_metadata=CollectionMetadata(
            collected_at=collected_at,
            collector_version="0.1.0",
            correlation_id=correlation_id,
        ),
        tags=dict(tags or {}),
    )
