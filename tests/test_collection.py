"""
Tests for collection run orchestration.

Collectors are scripted fakes; persistence uses a real temporary database.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from usage_engine.collectors import retell
from usage_engine.collectors.base import CollectPerformance, CollectResult, RateLimits
from usage_engine.collectors.registry import CollectorRegistry
from usage_engine.config.loader import EngineConfig, ProviderConfig
from usage_engine.core.audit import MemoryAuditSink
from usage_engine.core.collection import (
    CollectionRequest,
    CollectionService,
    build_collection_service,
)
from usage_engine.core.credentials import StaticCredentialProvider
from usage_engine.core.errors import (
    AuthenticationFailure,
    InvalidRunTransition,
    RateLimited,
    TransientProviderError,
    UnknownProvider,
)
from usage_engine.core.idempotency import IdempotencyManager
from usage_engine.core.writer import EventStoreWriter
from usage_engine.storage.models import CollectionRun, RunStatus

from conftest import T0, make_event

NOW = datetime(2024, 5, 2, 1, 0, tzinfo=timezone.utc)
WINDOW = (T0, T0 + timedelta(days=1))


def page(*resource_ids, next_cursor=None):
    return CollectResult(
        events=[make_event(resource_id=rid) for rid in resource_ids],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
        performance=CollectPerformance(elapsed_ms=1.0, api_call_count=1),
    )


class ScriptedCollector:
    """Plays back a fixed sequence of pages, errors or callables."""

    provider_id = "retell"

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def collect(self, params):
        self.calls.append(params)
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(params)
        return outcome

    def validate_credentials(self):
        return True

    def get_metric_definitions(self):
        return [retell.CALL_MINUTES]

    def get_rate_limits(self):
        return RateLimits(60, 3000, 10)


class Harness:
    """A service wired around one scripted collector."""

    def __init__(self, repository, collector, **options):
        self.repository = repository
        self.collector = collector
        self.audit = MemoryAuditSink()
        self.sleeps = []
        registry = CollectorRegistry()
        registry.register(collector)
        writer = EventStoreWriter(repository, IdempotencyManager(repository), registry.metric_catalog())
        self.service = CollectionService(
            registry, writer, repository,
            audit=self.audit,
            sleep=self.sleeps.append,
            clock=lambda: NOW,
            **options,
        )

    def run(self, correlation_id="corr-1", provider="retell"):
        return self.service.run_collection(provider, "t1", "c1", *WINDOW, correlation_id=correlation_id)


class TestRunCollection:
    """Test the happy path and idempotent re-runs."""

    def test_pages_until_exhausted(self, repository):
        harness = Harness(repository, ScriptedCollector(
            page("call_1", "call_2", next_cursor="p2"),
            page("call_3"),
        ))

        run = harness.run()

        assert run.status == RunStatus.COMPLETED
        assert (run.events_collected, run.events_processed, run.events_duplicate) == (3, 3, 0)
        assert [params.cursor for params in harness.collector.calls] == [None, "p2"]
        assert repository.count_events() == 3
        assert repository.get_run("corr-1") == run

    def test_overlapping_rerun_persists_nothing_new(self, repository):
        Harness(repository, ScriptedCollector(page("call_1", "call_2"))).run("corr-1")
        run = Harness(repository, ScriptedCollector(page("call_1", "call_2"))).run("corr-2")

        assert run.status == RunStatus.COMPLETED
        assert run.events_processed == 0
        assert run.events_duplicate == 2
        assert repository.count_events() == 2

    def test_completed_correlation_id_is_not_rerun(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        first = harness.run()
        second = harness.run()

        assert second == first
        assert len(harness.collector.calls) == 1

    def test_invalid_events_counted_as_failed(self, repository):
        bad = CollectResult(
            events=[make_event(resource_id="bad", quantity="-1", total_cost="0")],
            next_cursor=None,
            has_more=False,
            performance=CollectPerformance(1.0, 1),
        )
        run = Harness(repository, ScriptedCollector(bad)).run()

        assert run.status == RunStatus.COMPLETED
        assert run.events_failed == 1
        assert len(repository.get_quarantined("t1")) == 1

    def test_invalid_window(self, repository):
        harness = Harness(repository, ScriptedCollector())
        with pytest.raises(ValueError):
            harness.service.run_collection("retell", "t1", "c1", T0, T0)

    def test_audit_records(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        harness.run()

        start, = harness.audit.for_action("collect_start")
        end, = harness.audit.for_action("collect_end")
        assert start.outcome == "running"
        assert end.outcome == "completed"
        assert end.events_collected == 1
        assert end.correlation_id == "corr-1"


class TestVendorErrors:
    """Test rate limits, backoff and permanent failures."""

    def test_rate_limit_waits_retry_after(self, repository):
        harness = Harness(repository, ScriptedCollector(RateLimited("retell", 5.0), page("call_1")))

        run = harness.run()

        assert run.status == RunStatus.COMPLETED
        assert harness.sleeps == [5.0]

    def test_rate_limit_waits_are_bounded(self, repository):
        harness = Harness(
            repository,
            ScriptedCollector(*[RateLimited("retell", 2.0) for _ in range(3)]),
            max_rate_limit_waits=2,
        )

        run = harness.run()

        assert run.status == RunStatus.FAILED
        assert run.error_details.startswith("RateLimited")
        assert harness.sleeps == [2.0, 2.0]

    def test_transient_errors_back_off_then_succeed(self, repository):
        collector = ScriptedCollector(
            TransientProviderError("retell", "server error 503"),
            TransientProviderError("retell", "server error 503"),
            page("call_1"),
        )
        harness = Harness(repository, collector, max_transient_attempts=3)

        run = harness.run()

        assert run.status == RunStatus.COMPLETED
        assert [params.retry_count for params in collector.calls] == [0, 1, 2]
        assert len(harness.sleeps) == 2

    def test_transient_errors_exhausted(self, repository):
        collector = ScriptedCollector(*[TransientProviderError("retell", "timeout") for _ in range(3)])
        run = Harness(repository, collector, max_transient_attempts=3).run()

        assert run.status == RunStatus.FAILED
        assert len(collector.calls) == 3
        assert "TransientProviderError" in run.error_details

    def test_authentication_failure_not_retried(self, repository):
        collector = ScriptedCollector(AuthenticationFailure("retell", "credentials rejected (401)", 401))
        run = Harness(repository, collector).run()

        assert run.status == RunStatus.FAILED
        assert len(collector.calls) == 1
        assert run.error_details.startswith("AuthenticationFailure")

    def test_persistence_failure_fails_run(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        with patch.object(repository, "insert_events", side_effect=sqlite3.OperationalError("disk full")):
            run = harness.run()

        assert run.status == RunStatus.FAILED
        assert "PersistenceFailure" in run.error_details
        assert "corr-1" in run.error_details

    def test_unknown_provider_recorded_then_raised(self, repository):
        harness = Harness(repository, ScriptedCollector())

        with pytest.raises(UnknownProvider):
            harness.run(provider="vapi")

        stored = repository.get_run("corr-1")
        assert stored.status == RunStatus.FAILED
        assert "vapi" in stored.error_details
        end, = harness.audit.for_action("collect_end")
        assert end.outcome == "failed"


class TestCancelAndResume:
    """Test cancellation and cursor-based resumption."""

    def test_cancel_stops_before_next_page(self, repository):
        harness = Harness(repository, ScriptedCollector())

        def first_page(params):
            assert harness.service.cancel(params.correlation_id)
            return page("call_1", next_cursor="p2")

        harness.collector.script = [first_page, page("call_2")]
        run = harness.run()

        assert run.status == RunStatus.CANCELLED
        assert run.cursor == "p2"
        assert len(harness.collector.calls) == 1

        resumed = harness.service.resume_run("corr-1", new_correlation_id="corr-1b")
        assert resumed.status == RunStatus.COMPLETED
        assert harness.collector.calls[-1].cursor == "p2"
        assert repository.count_events() == 2

    def test_cancel_unknown_run(self, repository):
        assert not Harness(repository, ScriptedCollector()).service.cancel("nope")

    def test_resume_failed_run_from_cursor(self, repository):
        harness = Harness(repository, ScriptedCollector(
            page("call_1", next_cursor="p2"),
            AuthenticationFailure("retell", "credentials rejected (401)", 401),
            page("call_2"),
        ))
        failed = harness.run()
        assert failed.status == RunStatus.FAILED
        assert failed.cursor == "p2"

        resumed = harness.service.resume_run("corr-1")

        assert resumed.status == RunStatus.COMPLETED
        assert resumed.correlation_id.startswith("corr-1:resume-")
        assert harness.collector.calls[-1].cursor == "p2"
        assert repository.get_run("corr-1").status == RunStatus.FAILED

    def test_rerun_with_failed_correlation_id_resumes(self, repository):
        harness = Harness(repository, ScriptedCollector(
            AuthenticationFailure("retell", "credentials rejected (401)", 401),
            page("call_1"),
        ))
        assert harness.run().status == RunStatus.FAILED

        run = harness.run()

        assert run.status == RunStatus.COMPLETED
        assert run.correlation_id.startswith("corr-1:resume-")

    def test_resume_interrupted_run_keeps_record(self, repository):
        """A run left RUNNING by a crashed process continues under its own id."""
        repository.save_run(CollectionRun(
            run_id="run-1", correlation_id="corr-1", provider="retell",
            tenant_id="t1", client_id="c1", window_start=WINDOW[0], window_end=WINDOW[1],
            status=RunStatus.RUNNING, created_at=T0, updated_at=T0,
            events_collected=2, events_processed=2, cursor="p2",
        ))
        harness = Harness(repository, ScriptedCollector(page("call_3")))

        run = harness.service.resume_run("corr-1")

        assert run.correlation_id == "corr-1"
        assert run.status == RunStatus.COMPLETED
        assert run.events_collected == 3
        assert harness.collector.calls[0].cursor == "p2"

    def test_resume_completed_run(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        harness.run()
        with pytest.raises(InvalidRunTransition):
            harness.service.resume_run("corr-1")

    def test_resume_missing_run(self, repository):
        with pytest.raises(KeyError):
            Harness(repository, ScriptedCollector()).service.resume_run("missing")


class TestRunMany:
    """Test concurrent execution of several requests."""

    def test_results_in_request_order(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        requests = [
            CollectionRequest("retell", "t1", "c1", *WINDOW, correlation_id="a"),
            CollectionRequest("vapi", "t1", "c1", *WINDOW, correlation_id="b"),
        ]

        runs = harness.service.run_many(requests, max_workers=2)

        assert [run.correlation_id for run in runs] == ["a", "b"]
        assert [run.status for run in runs] == [RunStatus.COMPLETED, RunStatus.FAILED]

    def test_generated_correlation_ids(self, repository):
        harness = Harness(repository, ScriptedCollector(page("call_1")))
        runs = harness.service.run_many([CollectionRequest("retell", "t1", "c1", *WINDOW)])
        assert runs[0].correlation_id
        assert repository.get_run(runs[0].correlation_id).status == RunStatus.COMPLETED


class TestBuildCollectionService:
    """Test the default wiring end to end against a mocked vendor."""

    def test_retell_run_end_to_end(self, repository, quality):
        start_ms = int((T0 + timedelta(hours=12)).timestamp() * 1000)

        def handler(request):
            return httpx.Response(200, json=[{
                "call_id": "call_123", "agent_id": "ag_1", "call_status": "ended",
                "start_timestamp": start_ms, "duration_ms": 330000,
            }])

        config = EngineConfig(quality=quality, providers={
            "twilio": ProviderConfig(enabled=False),
            "openrouter": ProviderConfig(enabled=False),
        })
        audit = MemoryAuditSink()
        service = build_collection_service(
            config, repository,
            credentials=StaticCredentialProvider({(None, "retell"): {"api_key": "k"}}),
            audit=audit,
            transport=httpx.MockTransport(handler),
        )

        run = service.run_collection("retell", "t1", "c1", *WINDOW, correlation_id="corr-e2e")

        assert run.status == RunStatus.COMPLETED
        stored, = repository.get_events_in_window(*WINDOW, "t1")
        assert str(stored.quantity.normalize()) == "5.5"
        assert str(stored.vendor_cost_data.total_cost.normalize()) == "0.275"
        assert stored.collection_metadata.correlation_id == "corr-e2e"
        assert [record.action for record in audit.records] == ["collect_start", "collect_end"]

    def test_garbled_vendor_record_quarantined_once(self, repository, quality):
        """A bad call completes the run as failed-one, and retries do not pile up."""
        start_ms = int((T0 + timedelta(hours=12)).timestamp() * 1000)

        def handler(request):
            return httpx.Response(200, json=[
                {"call_id": "call_ok", "call_status": "ended", "start_timestamp": start_ms, "duration_ms": 60000},
                {"call_id": "call_bad", "call_status": "ended", "start_timestamp": start_ms, "duration_ms": "NaN"},
            ])

        config = EngineConfig(quality=quality, providers={
            "twilio": ProviderConfig(enabled=False),
            "openrouter": ProviderConfig(enabled=False),
        })
        service = build_collection_service(
            config, repository,
            credentials=StaticCredentialProvider({(None, "retell"): {"api_key": "k"}}),
            audit=MemoryAuditSink(),
            transport=httpx.MockTransport(handler),
        )

        runs = [
            service.run_collection("retell", "t1", "c1", *WINDOW, correlation_id=f"corr-{attempt}")
            for attempt in range(3)
        ]

        assert [run.status for run in runs] == [RunStatus.COMPLETED] * 3
        assert (runs[0].events_collected, runs[0].events_processed, runs[0].events_failed) == (2, 1, 1)
        assert repository.count_events() == 1
        counts = repository.count_quarantined_by_group(*WINDOW, "t1")
        assert counts == {("t1", "c1", "", "retell", "retell.call_minutes"): 1}
