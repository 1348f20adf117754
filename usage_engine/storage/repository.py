"""
Repository pattern for data access.

Handles database operations for usage events, quarantined events, cycle
aggregates, collection runs and client agent mappings.
"""

import json
import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .db import (
    DEFAULT_DB_PATH,
    from_db_decimal,
    from_db_timestamp,
    get_connection,
    to_db_decimal,
    to_db_timestamp,
)
from .models import (
    ClientAgentMapping,
    CollectionMetadata,
    CollectionRun,
    CostBreakdown,
    CycleAggregate,
    QualityMetrics,
    QuarantinedEvent,
    RunStatus,
    UsageEvent,
    VendorCostData,
    cycle_period,
)

_EVENT_COLUMNS = (
    "event_id", "idempotency_key", "provider", "event_type", "metric_key",
    "unit", "quantity", "tenant_id", "client_id", "agent_id", "resource_id",
    "event_timestamp", "unit_cost", "currency", "total_cost",
    "cost_captured_at", "pricing_tier", "collected_at", "collector_version",
    "correlation_id", "retry_count", "source_pagination", "tags",
)

_AGGREGATE_COLUMNS = (
    "tenant_id", "client_id", "agent_id", "provider", "metric_key",
    "cycle_start", "cycle_end", "total_quantity", "total_cost", "currency",
    "event_count", "avg_unit_cost", "min_unit_cost", "max_unit_cost",
    "variance", "completeness_score", "late_events_count", "anomaly_flags",
    "aggregated_at",
)

_RUN_COLUMNS = (
    "run_id", "correlation_id", "provider", "tenant_id", "client_id",
    "window_start", "window_end", "status", "events_collected",
    "events_processed", "events_failed", "events_duplicate",
    "error_details", "cursor", "created_at", "updated_at",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all engine tables if they don't exist.

    ``usage_event`` is an append-only ledger: no UPDATE or DELETE is ever
    issued against it. The unique ``idempotency_key`` column is what makes
    a second insert of the same event a silent no-op.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                idempotency_key TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL,
                event_type TEXT NOT NULL,
                metric_key TEXT NOT NULL,
                unit TEXT NOT NULL,
                quantity TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                agent_id TEXT,
                resource_id TEXT,
                event_timestamp TEXT NOT NULL,
                unit_cost TEXT NOT NULL,
                currency TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                cost_captured_at TEXT NOT NULL,
                pricing_tier TEXT,
                collected_at TEXT NOT NULL,
                collector_version TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                source_pagination TEXT,
                tags TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS ix_usage_event_scope
                ON usage_event (tenant_id, client_id, event_timestamp);

            CREATE TABLE IF NOT EXISTS quarantined_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL,
                dedup_key TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                agent_id TEXT,
                metric_key TEXT NOT NULL,
                event_timestamp TEXT NOT NULL,
                payload TEXT NOT NULL,
                errors TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                quarantined_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_quarantined_event_scope
                ON quarantined_event (tenant_id, client_id, event_timestamp);

            CREATE TABLE IF NOT EXISTS cycle_aggregate (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                agent_id TEXT NOT NULL DEFAULT '',
                provider TEXT NOT NULL,
                metric_key TEXT NOT NULL,
                cycle_start TEXT NOT NULL,
                cycle_end TEXT NOT NULL,
                total_quantity TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                currency TEXT NOT NULL,
                event_count INTEGER NOT NULL,
                avg_unit_cost TEXT NOT NULL,
                min_unit_cost TEXT NOT NULL,
                max_unit_cost TEXT NOT NULL,
                variance TEXT NOT NULL,
                completeness_score TEXT NOT NULL,
                late_events_count INTEGER NOT NULL,
                anomaly_flags TEXT NOT NULL,
                aggregated_at TEXT NOT NULL,
                UNIQUE (tenant_id, client_id, agent_id, provider, metric_key,
                        cycle_start, cycle_end)
            );

            CREATE TABLE IF NOT EXISTS collection_run (
                run_id TEXT PRIMARY KEY,
                correlation_id TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                status TEXT NOT NULL,
                events_collected INTEGER NOT NULL DEFAULT 0,
                events_processed INTEGER NOT NULL DEFAULT 0,
                events_failed INTEGER NOT NULL DEFAULT 0,
                events_duplicate INTEGER NOT NULL DEFAULT 0,
                error_details TEXT,
                cursor TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS client_agent_mapping (
                tenant_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                external_agent_id TEXT NOT NULL,
                PRIMARY KEY (tenant_id, client_id, provider, external_agent_id)
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _event_params(event: UsageEvent, idempotency_key: str) -> Tuple:
    cost = event.vendor_cost_data
    meta = event.collection_metadata
    return (
        event.event_id,
        idempotency_key,
        event.provider,
        event.event_type,
        event.metric_key,
        event.unit,
        to_db_decimal(event.quantity),
        event.tenant_id,
        event.client_id,
        event.agent_id,
        event.resource_id,
        to_db_timestamp(event.event_timestamp),
        to_db_decimal(cost.unit_cost),
        cost.currency,
        to_db_decimal(cost.total_cost),
        to_db_timestamp(cost.cost_captured_at),
        cost.pricing_tier,
        to_db_timestamp(meta.collected_at),
        meta.collector_version,
        meta.correlation_id,
        meta.retry_count,
        meta.source_pagination,
        json.dumps(event.tags, sort_keys=True),
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        event_id=row["event_id"],
        provider=row["provider"],
        event_type=row["event_type"],
        metric_key=row["metric_key"],
        unit=row["unit"],
        quantity=from_db_decimal(row["quantity"]),
        tenant_id=row["tenant_id"],
        client_id=row["client_id"],
        agent_id=row["agent_id"],
        resource_id=row["resource_id"],
        event_timestamp=from_db_timestamp(row["event_timestamp"]),
        vendor_cost_data=VendorCostData(
            unit_cost=from_db_decimal(row["unit_cost"]),
            currency=row["currency"],
            total_cost=from_db_decimal(row["total_cost"]),
            cost_captured_at=from_db_timestamp(row["cost_captured_at"]),
            pricing_tier=row["pricing_tier"],
        ),
        collection_metadata=CollectionMetadata(
            collected_at=from_db_timestamp(row["collected_at"]),
            collector_version=row["collector_version"],
            correlation_id=row["correlation_id"],
            retry_count=row["retry_count"],
            source_pagination=row["source_pagination"],
        ),
        tags=json.loads(row["tags"]),
    )


def _aggregate_params(aggregate: CycleAggregate) -> Tuple:
    breakdown = aggregate.cost_breakdown
    quality = aggregate.quality_metrics
    return (
        aggregate.tenant_id,
        aggregate.client_id,
        aggregate.agent_id or "",
        aggregate.provider,
        aggregate.metric_key,
        to_db_timestamp(aggregate.cycle_start),
        to_db_timestamp(aggregate.cycle_end),
        to_db_decimal(aggregate.total_quantity),
        to_db_decimal(aggregate.total_cost),
        aggregate.currency,
        aggregate.event_count,
        to_db_decimal(breakdown.avg_unit_cost),
        to_db_decimal(breakdown.min_unit_cost),
        to_db_decimal(breakdown.max_unit_cost),
        to_db_decimal(breakdown.variance),
        to_db_decimal(quality.completeness_score),
        quality.late_events_count,
        json.dumps(list(quality.anomaly_flags)),
        to_db_timestamp(aggregate.aggregated_at),
    )


def _row_to_aggregate(row: sqlite3.Row) -> CycleAggregate:
    return CycleAggregate(
        tenant_id=row["tenant_id"],
        client_id=row["client_id"],
        agent_id=row["agent_id"] or None,
        provider=row["provider"],
        metric_key=row["metric_key"],
        cycle_start=from_db_timestamp(row["cycle_start"]),
        cycle_end=from_db_timestamp(row["cycle_end"]),
        total_quantity=from_db_decimal(row["total_quantity"]),
        total_cost=from_db_decimal(row["total_cost"]),
        currency=row["currency"],
        event_count=row["event_count"],
        cost_breakdown=CostBreakdown(
            avg_unit_cost=from_db_decimal(row["avg_unit_cost"]),
            min_unit_cost=from_db_decimal(row["min_unit_cost"]),
            max_unit_cost=from_db_decimal(row["max_unit_cost"]),
            variance=from_db_decimal(row["variance"]),
        ),
        quality_metrics=QualityMetrics(
            completeness_score=from_db_decimal(row["completeness_score"]),
            late_events_count=row["late_events_count"],
            anomaly_flags=tuple(json.loads(row["anomaly_flags"])),
        ),
        aggregated_at=from_db_timestamp(row["aggregated_at"]),
    )


def _run_params(run: CollectionRun) -> Tuple:
    return (
        run.run_id,
        run.correlation_id,
        run.provider,
        run.tenant_id,
        run.client_id,
        to_db_timestamp(run.window_start),
        to_db_timestamp(run.window_end),
        run.status.value,
        run.events_collected,
        run.events_processed,
        run.events_failed,
        run.events_duplicate,
        run.error_details,
        run.cursor,
        to_db_timestamp(run.created_at),
        to_db_timestamp(run.updated_at),
    )


def _row_to_run(row: sqlite3.Row) -> CollectionRun:
    return CollectionRun(
        run_id=row["run_id"],
        correlation_id=row["correlation_id"],
        provider=row["provider"],
        tenant_id=row["tenant_id"],
        client_id=row["client_id"],
        window_start=from_db_timestamp(row["window_start"]),
        window_end=from_db_timestamp(row["window_end"]),
        status=RunStatus(row["status"]),
        events_collected=row["events_collected"],
        events_processed=row["events_processed"],
        events_failed=row["events_failed"],
        events_duplicate=row["events_duplicate"],
        error_details=row["error_details"],
        cursor=row["cursor"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class UsageRepository:
    """Repository for accessing and managing engine data.

    Every method opens its own connection, so one repository can be shared
    by collection threads; SQLite serializes the writers.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Usage events

    def insert_events(self, keyed_events: Sequence[Tuple[str, UsageEvent]]) -> Tuple[int, int]:
        """Insert events atomically, skipping any whose idempotency key exists.

        Args:
            keyed_events: ``(idempotency_key, event)`` pairs

        Returns:
            Tuple of (inserted, skipped as duplicates)

        Raises:
            sqlite3.Error: Any failure other than an idempotency key
                conflict; the whole batch is rolled back
        """
        if not keyed_events:
            return 0, 0

        sql = (
            f"INSERT INTO usage_event ({', '.join(_EVENT_COLUMNS)}) "
            f"VALUES ({_placeholders(len(_EVENT_COLUMNS))}) "
            "ON CONFLICT(idempotency_key) DO NOTHING"
        )
        inserted = 0
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for key, event in keyed_events:
                cursor = conn.execute(sql, _event_params(event, key))
                inserted += cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return inserted, len(keyed_events) - inserted

    def existing_keys(self, keys: Iterable[str]) -> Set[str]:
        """Return the subset of ``keys`` already persisted."""
        keys = list(keys)
        if not keys:
            return set()
        found: Set[str] = set()
        conn = get_connection(self.db_path)
        try:
            # Chunked to stay under SQLite's bound-parameter limit
            for start in range(0, len(keys), 500):
                chunk = keys[start:start + 500]
                cursor = conn.execute(
                    f"SELECT idempotency_key FROM usage_event "
                    f"WHERE idempotency_key IN ({_placeholders(len(chunk))})",
                    chunk,
                )
                found.update(row[0] for row in cursor.fetchall())
            return found
        finally:
            conn.close()

    def get_events_in_window(
        self,
        window_start: datetime,
        window_end: datetime,
        tenant_id: str,
        client_id: Optional[str] = None,
    ) -> List[UsageEvent]:
        """Get events with ``window_start <= event_timestamp < window_end``.

        Args:
            window_start: Inclusive lower bound
            window_end: Exclusive upper bound
            tenant_id: Tenant scope
            client_id: Optional client scope

        Returns:
            Events ordered by timestamp then event id
        """
        query = """
            SELECT * FROM usage_event
            WHERE tenant_id = ? AND event_timestamp >= ? AND event_timestamp < ?
        """
        params: List = [tenant_id, to_db_timestamp(window_start), to_db_timestamp(window_end)]
        if client_id:
            query += " AND client_id = ?"
            params.append(client_id)
        query += " ORDER BY event_timestamp, event_id"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_events(self, tenant_id: Optional[str] = None) -> int:
        conn = get_connection(self.db_path)
        try:
            if tenant_id:
                row = conn.execute(
                    "SELECT COUNT(*) FROM usage_event WHERE tenant_id = ?", (tenant_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM usage_event").fetchone()
            return row[0]
        finally:
            conn.close()

    # Quarantine

    def insert_quarantined(self, events: Sequence[QuarantinedEvent]) -> int:
        """Record invalid events with their validation errors.

        A record whose ``dedup_key`` is already quarantined is skipped.

        Returns:
            Number of new quarantine rows
        """
        if not events:
            return 0
        inserted = 0
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for event in events:
                cursor = conn.execute("""
                    INSERT INTO quarantined_event
                    (event_id, dedup_key, provider, tenant_id, client_id, agent_id, metric_key,
                     event_timestamp, payload, errors, correlation_id, quarantined_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(dedup_key) DO NOTHING
                """, (
                    event.event_id,
                    event.dedup_key or event.event_id,
                    event.provider,
                    event.tenant_id,
                    event.client_id,
                    event.agent_id,
                    event.metric_key,
                    to_db_timestamp(event.event_timestamp),
                    event.payload,
                    json.dumps(event.errors),
                    event.correlation_id,
                    to_db_timestamp(event.quarantined_at),
                ))
                inserted += cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return inserted

    def get_quarantined(self, tenant_id: Optional[str] = None) -> List[QuarantinedEvent]:
        query = "SELECT * FROM quarantined_event"
        params: List = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY quarantined_at, id"
        conn = get_connection(self.db_path)
        try:
            return [
                QuarantinedEvent(
                    event_id=row["event_id"],
                    provider=row["provider"],
                    tenant_id=row["tenant_id"],
                    client_id=row["client_id"],
                    agent_id=row["agent_id"],
                    metric_key=row["metric_key"],
                    event_timestamp=from_db_timestamp(row["event_timestamp"]),
                    payload=row["payload"],
                    errors=json.loads(row["errors"]),
                    correlation_id=row["correlation_id"],
                    quarantined_at=from_db_timestamp(row["quarantined_at"]),
                    dedup_key=row["dedup_key"],
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def count_quarantined_by_group(
        self,
        window_start: datetime,
        window_end: datetime,
        tenant_id: str,
        client_id: Optional[str] = None,
    ) -> Dict[Tuple[str, str, str, str, str], int]:
        """Count quarantined records per aggregation group in a window.

        Rows are unique by ``dedup_key``, so re-collecting a window does not
        change the counts.
        """
        query = """
            SELECT tenant_id, client_id, COALESCE(agent_id, ''), provider, metric_key,
                   COUNT(*)
            FROM quarantined_event
            WHERE tenant_id = ? AND event_timestamp >= ? AND event_timestamp < ?
        """
        params: List = [tenant_id, to_db_timestamp(window_start), to_db_timestamp(window_end)]
        if client_id:
            query += " AND client_id = ?"
            params.append(client_id)
        query += " GROUP BY tenant_id, client_id, COALESCE(agent_id, ''), provider, metric_key"

        conn = get_connection(self.db_path)
        try:
            return {
                (row[0], row[1], row[2], row[3], row[4]): row[5]
                for row in conn.execute(query, params).fetchall()
            }
        finally:
            conn.close()

    # Cycle aggregates

    def replace_aggregate(self, aggregate: CycleAggregate) -> None:
        """Write an aggregate, replacing any existing row for its scope key."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO cycle_aggregate ({', '.join(_AGGREGATE_COLUMNS)}) "
                f"VALUES ({_placeholders(len(_AGGREGATE_COLUMNS))})",
                _aggregate_params(aggregate),
            )
            conn.commit()
        finally:
            conn.close()

    def get_aggregates(
        self,
        tenant_id: str,
        client_id: Optional[str] = None,
        cycle_start: Optional[datetime] = None,
        cycle_end: Optional[datetime] = None,
    ) -> List[CycleAggregate]:
        query = "SELECT * FROM cycle_aggregate WHERE tenant_id = ?"
        params: List = [tenant_id]
        if client_id:
            query += " AND client_id = ?"
            params.append(client_id)
        if cycle_start is not None:
            query += " AND cycle_start = ?"
            params.append(to_db_timestamp(cycle_start))
        if cycle_end is not None:
            query += " AND cycle_end = ?"
            params.append(to_db_timestamp(cycle_end))
        query += " ORDER BY cycle_start, client_id, agent_id, provider, metric_key"

        conn = get_connection(self.db_path)
        try:
            return [_row_to_aggregate(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_prior_aggregates(
        self,
        group_key: Tuple[str, str, str, str, str],
        cycle_start: datetime,
        cycle_end: datetime,
        limit: int,
    ) -> List[CycleAggregate]:
        """Get the most recent same-period aggregates that ended by ``cycle_start``.

        Only cycles of the same period as ``[cycle_start, cycle_end)`` are
        returned, so a monthly cycle never uses daily cycles as history.

        Args:
            group_key: (tenant, client, agent, provider, metric); agent is ''
                when the group has no agent
            cycle_start: Start of the cycle being aggregated
            cycle_end: End of the cycle being aggregated
            limit: Maximum number of prior cycles to return

        Returns:
            Aggregates ordered newest first
        """
        tenant_id, client_id, agent_id, provider, metric_key = group_key
        period = cycle_period(cycle_start, cycle_end)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT * FROM cycle_aggregate
                WHERE tenant_id = ? AND client_id = ? AND agent_id = ?
                  AND provider = ? AND metric_key = ? AND cycle_end <= ?
                ORDER BY cycle_start DESC
            """, (tenant_id, client_id, agent_id, provider, metric_key,
                  to_db_timestamp(cycle_start)))
            prior = []
            for row in cursor:
                aggregate = _row_to_aggregate(row)
                if aggregate.period != period:
                    continue
                prior.append(aggregate)
                if len(prior) == limit:
                    break
            return prior
        finally:
            conn.close()

    # Collection runs

    def save_run(self, run: CollectionRun) -> None:
        """Insert or overwrite the record for ``run.run_id``."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO collection_run ({', '.join(_RUN_COLUMNS)}) "
                f"VALUES ({_placeholders(len(_RUN_COLUMNS))})",
                _run_params(run),
            )
            conn.commit()
        finally:
            conn.close()

    def get_run(self, correlation_id: str) -> Optional[CollectionRun]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM collection_run WHERE correlation_id = ?", (correlation_id,)
            ).fetchone()
            return _row_to_run(row) if row else None
        finally:
            conn.close()

    def list_runs(
        self,
        provider: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 100,
    ) -> List[CollectionRun]:
        query = "SELECT * FROM collection_run"
        params: List = []
        conditions = []
        if provider:
            conditions.append("provider = ?")
            params.append(provider)
        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_run(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    # Client agent mappings

    def save_mapping(self, mapping: ClientAgentMapping) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO client_agent_mapping
                (tenant_id, client_id, agent_id, provider, external_agent_id)
                VALUES (?, ?, ?, ?, ?)
            """, (mapping.tenant_id, mapping.client_id, mapping.agent_id,
                  mapping.provider, mapping.external_agent_id))
            conn.commit()
        finally:
            conn.close()

    def get_mappings(self, tenant_id: str, client_id: str, provider: str) -> List[ClientAgentMapping]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT tenant_id, client_id, agent_id, provider, external_agent_id
                FROM client_agent_mapping
                WHERE tenant_id = ? AND client_id = ? AND provider = ?
                ORDER BY agent_id
            """, (tenant_id, client_id, provider))
            return [ClientAgentMapping(*row) for row in cursor.fetchall()]
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[UsageRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository instance.

    Returns a cached instance for the default path; any other path gets a
    fresh repository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    global _default_repository
    if db_path != DEFAULT_DB_PATH:
        return UsageRepository(db_path)
    if _default_repository is None:
        _default_repository = UsageRepository(db_path)
    return _default_repository
