"""
Unit tests for idempotency management.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from usage_engine.core.idempotency import IdempotencyManager, dedup_key

from conftest import make_event

NOW = datetime(2024, 5, 2, tzinfo=timezone.utc)


class TestDedupKey:
    """Test idempotency key derivation."""

    def test_resource_key(self):
        assert dedup_key(make_event(resource_id="call_123")) == "retell:call_123:retell.call_minutes"

    def test_hash_key_ignores_event_id_and_metadata(self):
        a = make_event(resource_id=None, correlation_id="corr-a")
        b = make_event(resource_id=None, correlation_id="corr-b")
        assert a.event_id != b.event_id
        assert dedup_key(a) == dedup_key(b)
        assert dedup_key(a).startswith("hash:")

    def test_hash_key_normalizes_quantity(self):
        a = make_event(resource_id=None, quantity="5.5")
        b = make_event(resource_id=None, quantity="5.500000", total_cost="0.275")
        assert dedup_key(a) == dedup_key(b)

    def test_hash_key_changes_with_quantity(self):
        a = make_event(resource_id=None, quantity="5.5")
        b = make_event(resource_id=None, quantity="6")
        assert dedup_key(a) != dedup_key(b)


class TestIdempotencyManager:
    """Test duplicate filtering."""

    def test_duplicates_within_batch(self):
        manager = IdempotencyManager()
        first, second = make_event(), make_event()

        fresh, duplicates = manager.filter_new([first, second], now=NOW)

        assert [event for _, event in fresh] == [first]
        assert duplicates == [second]

    def test_seen_keys_are_dropped(self):
        manager = IdempotencyManager()
        fresh, _ = manager.filter_new([make_event()], now=NOW)
        manager.mark_seen([key for key, _ in fresh], now=NOW)

        fresh, duplicates = manager.filter_new([make_event()], now=NOW + timedelta(hours=1))
        assert fresh == []
        assert len(duplicates) == 1

    def test_persisted_keys_are_dropped(self, repository):
        event = make_event()
        repository.insert_events([(dedup_key(event), event)])

        manager = IdempotencyManager(repository)
        fresh, duplicates = manager.filter_new([make_event()], now=NOW)
        assert fresh == []
        assert len(duplicates) == 1

    def test_expired_keys_are_purged(self):
        manager = IdempotencyManager(window=timedelta(hours=48))
        manager.mark_seen(["retell:call_123:retell.call_minutes"], now=NOW)

        assert manager.purge_expired(NOW + timedelta(hours=47)) == 0
        assert manager.is_seen("retell:call_123:retell.call_minutes")
        assert manager.purge_expired(NOW + timedelta(hours=48)) == 1
        assert not manager.is_seen("retell:call_123:retell.call_minutes")

    def test_distinct_metrics_of_one_resource_are_kept(self):
        manager = IdempotencyManager()
        input_event = make_event(
            provider="openrouter", metric_key="openrouter.input_tokens", unit="tokens",
            resource_id="2024-05-01:gpt:default", quantity="100", unit_cost="0",
        )
        output_event = make_event(
            provider="openrouter", metric_key="openrouter.output_tokens", unit="tokens",
            resource_id="2024-05-01:gpt:default", quantity="50", unit_cost="0",
        )
        fresh, duplicates = manager.filter_new([input_event, output_event], now=NOW)
        assert len(fresh) == 2
        assert duplicates == []
        assert sum(event.quantity for _, event in fresh) == Decimal("150")
