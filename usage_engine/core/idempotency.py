"""
Idempotency management for collected events.

Deduplicates retries and overlapping collection windows with a
content-derived key per event.
"""

import hashlib
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from usage_engine.storage.db import to_db_timestamp
from usage_engine.storage.models import UsageEvent
from usage_engine.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = timedelta(hours=48)


def dedup_key(event: UsageEvent) -> str:
    """Compute the idempotency key for an event.

    ``provider:resource_id:metric_key`` when the vendor gave a resource id,
    otherwise a SHA-256 over the fields that identify the usage itself
    (never the generated event id or collection metadata).
    """
    if event.resource_id:
        return f"{event.provider}:{event.resource_id}:{event.metric_key}"

    material = "|".join((
        event.provider,
        event.tenant_id,
        event.client_id,
        event.metric_key,
        to_db_timestamp(event.event_timestamp),
        format(event.quantity.normalize(), "f"),
    ))
    return "hash:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


class IdempotencyManager:
    """Filters out events that were already seen or persisted.

    Keeps a short-lived in-memory set of keys (at least as long as the
    maximum retry window) in front of the persisted ``idempotency_key``
    column. Either one is enough to drop a duplicate.
    """

    def __init__(
        self,
        repository: Optional[UsageRepository] = None,
        window: timedelta = DEFAULT_DEDUP_WINDOW,
    ):
        self.repository = repository
        self.window = window
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def filter_new(
        self,
        events: Iterable[UsageEvent],
        now: Optional[datetime] = None,
    ) -> Tuple[List[Tuple[str, UsageEvent]], List[UsageEvent]]:
        """Split a batch into fresh and duplicate events.

        Duplicates inside the batch itself are dropped too; the first
        occurrence wins.

        Args:
            events: Candidate events
            now: Current time for expiry (defaults to utcnow)

        Returns:
            Tuple of (fresh ``(key, event)`` pairs, duplicate events)
        """
        now = now or datetime.now(timezone.utc)
        self.purge_expired(now)

        keyed = [(dedup_key(event), event) for event in events]
        with self._lock:
            seen_in_memory = {key for key, _ in keyed if key in self._seen}
        persisted = self.repository.existing_keys(
            key for key, _ in keyed if key not in seen_in_memory
        ) if self.repository else set()

        fresh: List[Tuple[str, UsageEvent]] = []
        duplicates: List[UsageEvent] = []
        batch_keys = set()
        for key, event in keyed:
            if key in seen_in_memory or key in persisted or key in batch_keys:
                duplicates.append(event)
                continue
            batch_keys.add(key)
            fresh.append((key, event))

        if duplicates:
            logger.debug("Dropped %d duplicate events", len(duplicates))
        return fresh, duplicates

    def mark_seen(self, keys: Iterable[str], now: Optional[datetime] = None) -> None:
        """Remember keys that were persisted (or confirmed present)."""
        expires_at = (now or datetime.now(timezone.utc)) + self.window
        with self._lock:
            for key in keys:
                self._seen[key] = expires_at

    def is_seen(self, key: str) -> bool:
        with self._lock:
            return key in self._seen

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop in-memory keys past their window. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
            for key in expired:
                del self._seen[key]
        return len(expired)
