"""
Collection run orchestration.

Executes collection requests from an external scheduler: pages through a
provider's collector, persists each page, and records progress on a
CollectionRun so that every run is queryable and resumable by its
correlation id.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from usage_engine.collectors.base import CollectParams, CollectResult, Collector
from usage_engine.collectors.registry import (
    CREDENTIAL_FIELDS,
    CollectorRegistry,
    build_default_registry,
)
from usage_engine.config.loader import EngineConfig
from usage_engine.logging_config import log_with_context
from usage_engine.storage.models import CollectionRun, RunStatus
from usage_engine.storage.repository import UsageRepository

from .audit import AuditRecord, AuditSink, LoggingAuditSink
from .credentials import CredentialProvider, EnvCredentialProvider
from .directory import RepositoryDirectory
from .errors import (
    InvalidRunTransition,
    RateLimited,
    TransientProviderError,
    UnknownProvider,
    UsageEngineError,
)
from .idempotency import IdempotencyManager
from .ratelimit import RateLimiterPool
from .writer import EventStoreWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionRequest:
    """One trigger from the scheduler."""
    provider: str
    tenant_id: str
    client_id: str
    window_start: datetime
    window_end: datetime
    correlation_id: Optional[str] = None


class CollectionService:
    """Runs collection for one provider/tenant/client/window at a time per call.

    Pages of one run are fetched sequentially; separate runs may execute
    concurrently through ``run_many``. Vendor rate limits are enforced by
    the throttle each collector was built with.
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        writer: EventStoreWriter,
        repository: UsageRepository,
        audit: Optional[AuditSink] = None,
        max_transient_attempts: int = 3,
        max_rate_limit_waits: int = 5,
        page_size_hint: Optional[int] = None,
        max_workers: int = 4,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.writer = writer
        self.repository = repository
        self.audit = audit
        self.max_transient_attempts = max_transient_attempts
        self.max_rate_limit_waits = max_rate_limit_waits
        self.page_size_hint = page_size_hint
        self.max_workers = max_workers
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}

    # Trigger boundary

    def run_collection(
        self,
        provider: str,
        tenant_id: str,
        client_id: str,
        window_start: datetime,
        window_end: datetime,
        correlation_id: Optional[str] = None,
    ) -> CollectionRun:
        """Collect one provider for one tenant/client/window.

        Run failures are recorded on the returned CollectionRun rather than
        raised. A correlation id that already names a run continues that
        run instead of starting a new one; a completed run is returned as is.

        Args:
            provider: Provider identifier
            tenant_id: Tenant scope
            client_id: Client scope
            window_start: Inclusive window start
            window_end: Exclusive window end
            correlation_id: Run identifier (generated when omitted)

        Returns:
            The run in its final state

        Raises:
            UnknownProvider: If no collector is registered (the failed run
                is still recorded first)
            ValueError: If the window is empty or inverted
        """
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")
        correlation_id = correlation_id or str(uuid.uuid4())

        existing = self.repository.get_run(correlation_id)
        if existing is not None:
            if existing.status == RunStatus.COMPLETED:
                logger.info("Run %s already completed", correlation_id)
                return existing
            return self.resume_run(correlation_id)

        now = self._clock()
        run = CollectionRun(
            run_id=str(uuid.uuid4()),
            correlation_id=correlation_id,
            provider=provider,
            tenant_id=tenant_id,
            client_id=client_id,
            window_start=window_start,
            window_end=window_end,
            status=RunStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.repository.save_run(run)
        return self._start(run)

    def resume_run(self, correlation_id: str, new_correlation_id: Optional[str] = None) -> CollectionRun:
        """Continue an unfinished run from its last persisted cursor.

        A run left pending or running (the process died) continues under
        its own record. A failed or cancelled run is terminal, so the
        remainder is collected as a new run that starts from the stored
        cursor.

        Args:
            correlation_id: Run to resume
            new_correlation_id: Identifier for the follow-up run of a
                failed or cancelled one (generated when omitted)

        Returns:
            The resumed (or follow-up) run in its final state

        Raises:
            KeyError: If no run has this correlation id
            InvalidRunTransition: If the run already completed
        """
        run = self.repository.get_run(correlation_id)
        if run is None:
            raise KeyError(f"No collection run with correlation id {correlation_id}")
        if run.status == RunStatus.COMPLETED:
            raise InvalidRunTransition(run.status.value, RunStatus.RUNNING.value)

        if run.status.is_terminal:
            now = self._clock()
            follow_up = replace(
                run,
                run_id=str(uuid.uuid4()),
                correlation_id=new_correlation_id or f"{correlation_id}:resume-{uuid.uuid4().hex[:8]}",
                status=RunStatus.PENDING,
                events_collected=0,
                events_processed=0,
                events_failed=0,
                events_duplicate=0,
                error_details=None,
                created_at=now,
                updated_at=now,
            )
            self.repository.save_run(follow_up)
            logger.info("Resuming %s as %s from stored cursor", correlation_id, follow_up.correlation_id)
            run = follow_up
        return self._start(run)

    def run_many(
        self,
        requests: Sequence[CollectionRequest],
        max_workers: Optional[int] = None,
    ) -> List[CollectionRun]:
        """Run several requests concurrently.

        Returns:
            Final runs in request order; an unknown provider yields its
            recorded failed run instead of raising
        """
        prepared = [
            replace(request, correlation_id=request.correlation_id or str(uuid.uuid4()))
            for request in requests
        ]

        def execute(request: CollectionRequest) -> CollectionRun:
            try:
                return self.run_collection(
                    request.provider,
                    request.tenant_id,
                    request.client_id,
                    request.window_start,
                    request.window_end,
                    request.correlation_id,
                )
            except UnknownProvider:
                return self.repository.get_run(request.correlation_id)

        with ThreadPoolExecutor(max_workers=max_workers or self.max_workers) as executor:
            return list(executor.map(execute, prepared))

    def cancel(self, correlation_id: str) -> bool:
        """Ask an in-flight run to stop before its next page.

        Returns:
            True if the run was active in this process
        """
        with self._lock:
            event = self._cancel_events.get(correlation_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for run %s", correlation_id)
        return True

    def get_run(self, correlation_id: str) -> Optional[CollectionRun]:
        return self.repository.get_run(correlation_id)

    # Execution

    def _start(self, run: CollectionRun) -> CollectionRun:
        try:
            collector = self.registry.get_collector(run.provider)
        except UnknownProvider as e:
            failed = run.transition(RunStatus.FAILED, self._clock(), error_details=str(e))
            self.repository.save_run(failed)
            self._audit(failed, "collect_end", 0.0)
            raise

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[run.correlation_id] = cancel_event
        try:
            return self._execute(run, collector, cancel_event)
        finally:
            with self._lock:
                self._cancel_events.pop(run.correlation_id, None)

    def _execute(
        self,
        run: CollectionRun,
        collector: Collector,
        cancel_event: threading.Event,
    ) -> CollectionRun:
        started = time.monotonic()
        run = run.transition(RunStatus.RUNNING, self._clock())
        self.repository.save_run(run)
        self._audit(run, "collect_start", 0.0)
        logger.info(
            "Run %s started: %s %s/%s %s..%s",
            run.correlation_id, run.provider, run.tenant_id, run.client_id,
            run.window_start.isoformat(), run.window_end.isoformat(),
        )

        try:
            while True:
                if cancel_event.is_set():
                    run = run.transition(RunStatus.CANCELLED, self._clock())
                    logger.info("Run %s cancelled; cursor kept for resume", run.correlation_id)
                    break

                params = CollectParams(
                    tenant_id=run.tenant_id,
                    client_id=run.client_id,
                    start_time=run.window_start,
                    end_time=run.window_end,
                    correlation_id=run.correlation_id,
                    cursor=run.cursor,
                    page_size_hint=self.page_size_hint,
                )
                result = self._collect_page(collector, params)
                written = self.writer.bulk_create(
                    result.events, run.correlation_id, now=self._clock(), rejected=result.rejected
                )

                more = bool(result.has_more and result.next_cursor)
                run = replace(
                    run,
                    events_collected=run.events_collected + len(result.events) + len(result.rejected),
                    events_processed=run.events_processed + written.persisted,
                    events_failed=run.events_failed + written.failed,
                    events_duplicate=run.events_duplicate + written.duplicates,
                    cursor=result.next_cursor if more else run.cursor,
                    updated_at=self._clock(),
                )
                logger.debug(
                    "Run %s page: %d events, %d new, %d api calls",
                    run.correlation_id, len(result.events), written.persisted,
                    result.performance.api_call_count,
                )
                if not more:
                    run = run.transition(RunStatus.COMPLETED, self._clock())
                    break
                self.repository.save_run(run)
        except (UsageEngineError, ValueError) as e:
            logger.error("Run %s failed: %s", run.correlation_id, e)
            run = run.transition(
                RunStatus.FAILED, self._clock(), error_details=f"{type(e).__name__}: {e}"
            )
        except Exception as e:
            logger.exception("Run %s failed unexpectedly", run.correlation_id)
            run = run.transition(
                RunStatus.FAILED, self._clock(), error_details=f"{type(e).__name__}: {e}"
            )

        self.repository.save_run(run)
        duration_ms = round((time.monotonic() - started) * 1000, 3)
        self._audit(run, "collect_end", duration_ms)
        log_with_context(
            logger, "info",
            f"Run {run.correlation_id} {run.status.value}: collected={run.events_collected} "
            f"persisted={run.events_processed} duplicates={run.events_duplicate} failed={run.events_failed}",
            correlation_id=run.correlation_id,
            provider=run.provider,
            tenant_id=run.tenant_id,
            client_id=run.client_id,
            elapsed_ms=duration_ms,
        )
        return run

    def _collect_page(self, collector: Collector, params: CollectParams) -> CollectResult:
        """Fetch one page, backing off on transient errors."""
        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_transient_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                attempt_params = replace(params, retry_count=attempt.retry_state.attempt_number - 1)
                return self._collect_respecting_rate_limits(collector, attempt_params)

    def _collect_respecting_rate_limits(self, collector: Collector, params: CollectParams) -> CollectResult:
        waits = 0
        while True:
            try:
                return collector.collect(params)
            except RateLimited as e:
                if waits >= self.max_rate_limit_waits:
                    raise
                waits += 1
                logger.warning(
                    "%s rate limited run %s; waiting %.1fs (%d/%d)",
                    collector.provider_id, params.correlation_id, e.retry_after,
                    waits, self.max_rate_limit_waits,
                )
                self._sleep(e.retry_after)

    def _audit(self, run: CollectionRun, action: str, duration_ms: float) -> None:
        if self.audit is None:
            return
        self.audit.record(AuditRecord(
            correlation_id=run.correlation_id,
            provider=run.provider,
            tenant_id=run.tenant_id,
            action=action,
            outcome=run.status.value,
            events_collected=run.events_collected,
            duration_ms=duration_ms,
            recorded_at=self._clock(),
        ))


def build_collection_service(
    config: EngineConfig,
    repository: UsageRepository,
    credentials: Optional[CredentialProvider] = None,
    audit: Optional[AuditSink] = None,
    transport: Optional[httpx.BaseTransport] = None,
    limiters: Optional[RateLimiterPool] = None,
) -> CollectionService:
    """Wire a CollectionService with the built-in collectors.

    Args:
        config: Engine configuration
        repository: Event store
        credentials: Credential source (environment variables by default)
        audit: Audit sink (the audit logger by default)
        transport: Optional httpx transport for every collector
        limiters: Rate limiter pool (a fresh one by default)

    Returns:
        Ready-to-use CollectionService
    """
    credentials = credentials or EnvCredentialProvider(CREDENTIAL_FIELDS)
    registry = build_default_registry(
        config,
        credentials,
        RepositoryDirectory(repository),
        limiters or RateLimiterPool(),
        transport=transport,
    )
    writer = EventStoreWriter(
        repository,
        IdempotencyManager(repository, window=config.collection.dedup_window),
        registry.metric_catalog(),
    )
    return CollectionService(
        registry,
        writer,
        repository,
        audit=audit or LoggingAuditSink(),
        max_transient_attempts=config.collection.max_transient_attempts,
        max_rate_limit_waits=config.collection.max_rate_limit_waits,
        page_size_hint=config.collection.page_size_hint,
        max_workers=config.collection.max_workers,
    )
