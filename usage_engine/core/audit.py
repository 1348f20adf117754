"""
Audit trail boundary.

Every collection run and aggregation emits one audit record. Records carry
identifiers and counts only, never vendor payloads or credentials.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

AUDIT_LOGGER_NAME = "usage_engine.audit"


@dataclass(frozen=True)
class AuditRecord:
    """One auditable action."""
    correlation_id: str
    provider: Optional[str]
    tenant_id: str
    action: str
    outcome: str
    events_collected: int = 0
    events_aggregated: int = 0
    duration_ms: float = 0.0
    recorded_at: Optional[datetime] = None


class AuditSink(Protocol):
    def record(self, record: AuditRecord) -> None:
        ...


class LoggingAuditSink:
    """Writes audit records as JSON lines to the ``usage_engine.audit`` logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def record(self, record: AuditRecord) -> None:
        payload = asdict(record)
        payload["recorded_at"] = (record.recorded_at or datetime.now(timezone.utc)).isoformat()
        self.logger.info(json.dumps(payload, sort_keys=True))


class MemoryAuditSink:
    """Keeps records in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[AuditRecord] = []

    def record(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def for_action(self, action: str) -> List[AuditRecord]:
        with self._lock:
            return [r for r in self.records if r.action == action]
