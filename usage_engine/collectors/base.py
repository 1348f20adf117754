"""
Collector capability contract and shared vendor HTTP plumbing.

Every provider collector satisfies the ``Collector`` protocol. Collectors
share ``ProviderHttpClient`` by composition rather than a base class.
"""

import base64
import binascii
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import httpx

from usage_engine.core.errors import (
    AuthenticationFailure,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
)
from usage_engine.storage.db import to_db_timestamp
from usage_engine.storage.models import (
    CollectionMetadata,
    QuarantinedEvent,
    UsageEvent,
    VendorCostData,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_AFTER_SECONDS = 60.0


@dataclass(frozen=True)
class MetricDefinition:
    """One entry of a provider's static metric catalog."""
    metric_key: str
    unit: str
    display_name: str


@dataclass(frozen=True)
class RateLimits:
    """Declared vendor limits, enforced by the concurrency layer."""
    requests_per_minute: int
    requests_per_hour: int
    burst_capacity: int


@dataclass(frozen=True)
class CollectParams:
    """Input to one page of collection."""
    tenant_id: str
    client_id: str
    start_time: datetime
    end_time: datetime
    correlation_id: str
    cursor: Optional[str] = None
    page_size_hint: Optional[int] = None
    retry_count: int = 0


@dataclass(frozen=True)
class CollectPerformance:
    elapsed_ms: float
    api_call_count: int
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class CollectResult:
    """One page of canonical events and the cursor to continue from."""
    events: List[UsageEvent]
    next_cursor: Optional[str]
    has_more: bool
    performance: CollectPerformance
    rejected: List[QuarantinedEvent] = field(default_factory=list)


@runtime_checkable
class Collector(Protocol):
    """Capability set every provider collector implements."""

    provider_id: str

    def collect(self, params: CollectParams) -> CollectResult:
        ...

    def validate_credentials(self) -> bool:
        ...

    def get_metric_definitions(self) -> List[MetricDefinition]:
        ...

    def get_rate_limits(self) -> RateLimits:
        ...


def encode_cursor(state: Mapping[str, Any]) -> str:
    """Encode pagination state as an opaque URL-safe token."""
    raw = json.dumps(state, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str, provider: str, params: CollectParams) -> Dict[str, Any]:
    """Decode a cursor and check it belongs to this provider and window.

    Raises:
        ValueError: If the cursor is malformed or was issued for a
            different provider, tenant, client or window
    """
    try:
        state = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise ValueError(f"Malformed cursor: {e}") from e
    if not isinstance(state, dict):
        raise ValueError("Malformed cursor: expected an object")

    expected = cursor_scope(provider, params)
    for key, value in expected.items():
        if state.get(key) != value:
            raise ValueError(f"Cursor was issued for a different {key}")
    return state


def cursor_scope(provider: str, params: CollectParams) -> Dict[str, str]:
    """Fields every cursor carries so it cannot be replayed against another run."""
    return {
        "provider": provider,
        "tenant": params.tenant_id,
        "client": params.client_id,
        "start": params.start_time.astimezone(timezone.utc).isoformat(),
        "end": params.end_time.astimezone(timezone.utc).isoformat(),
    }


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


@dataclass
class HttpCallStats:
    """Counters a collector reads after a page to fill ``CollectPerformance``."""
    api_call_count: int = 0
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset_at: Optional[datetime] = None


class ProviderHttpClient:
    """Thin httpx wrapper that maps vendor responses onto the error taxonomy.

    The ``throttle`` callable is invoked before every request; the
    concurrency layer passes the provider's token bucket here. Transient
    failures get exactly one immediate retry before they are raised.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        throttle: Optional[Callable[[], Any]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.provider = provider
        self.throttle = throttle
        self.stats = HttpCallStats()
        self._client = httpx.Client(
            base_url=base_url,
            headers=dict(headers or {}),
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ProviderHttpClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def request_json(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Issue a request and return the decoded JSON body.

        Raises:
            AuthenticationFailure: On 401/403
            RateLimited: On 429
            TransientProviderError: On network errors, timeouts or 5xx
                after one immediate retry
            PermanentProviderError: On any other non-2xx or invalid JSON
        """
        try:
            return self._send(method, url, params, json_body)
        except TransientProviderError as first:
            logger.info("%s %s transient failure, retrying once: %s", method, url, first)
            return self._send(method, url, params, json_body)

    def _send(self, method: str, url: str, params, json_body) -> Any:
        if self.throttle is not None:
            self.throttle()
        self.stats.api_call_count += 1
        try:
            response = self._client.request(method, url, params=params, json=json_body)
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.provider, f"timeout calling {url}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(self.provider, f"network error calling {url}: {e}") from e

        self._record_rate_limit_headers(response)
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationFailure(self.provider, f"credentials rejected ({status})", status)
        if status == 429:
            raise RateLimited(self.provider, parse_retry_after(response.headers.get("Retry-After")))
        if status >= 500:
            raise TransientProviderError(self.provider, f"server error {status} from {url}", status)
        if status >= 400:
            raise PermanentProviderError(self.provider, f"request rejected {status} from {url}", status)

        try:
            return response.json()
        except ValueError as e:
            raise PermanentProviderError(self.provider, f"invalid JSON from {url}", status) from e

    def _record_rate_limit_headers(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining is not None and remaining.isdigit():
            self.stats.rate_limit_remaining = int(remaining)
        if reset is not None:
            try:
                self.stats.rate_limit_reset_at = datetime.fromtimestamp(float(reset), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                pass


def performance_from(stats: HttpCallStats, started: float) -> CollectPerformance:
    """Build page performance from call stats and a ``time.monotonic()`` start."""
    return CollectPerformance(
        elapsed_ms=round((time.monotonic() - started) * 1000, 3),
        api_call_count=stats.api_call_count,
        rate_limit_remaining=stats.rate_limit_remaining,
        rate_limit_reset_at=stats.rate_limit_reset_at,
    )


def parse_vendor_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch seconds/milliseconds, ISO 8601 or RFC 2822 into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def vendor_decimal(value: Any, name: str) -> Decimal:
    """Parse a numeric vendor field.

    Raises:
        ValueError: If the value is not a finite number
    """
    try:
        number = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"non-numeric {name}") from e
    if not number.is_finite():
        raise ValueError(f"non-finite {name}")
    return number


def reject_record(
    provider: str,
    params: CollectParams,
    definition: MetricDefinition,
    resource_id: Optional[str],
    error: str,
    collected_at: datetime,
    event_timestamp: Optional[datetime] = None,
) -> QuarantinedEvent:
    """Quarantine entry for a vendor record that could not be normalized.

    Only the record's identity is kept, never the raw vendor payload.
    """
    timestamp = event_timestamp or params.start_time
    if resource_id:
        key = f"{provider}:{resource_id}:{definition.metric_key}"
    else:
        material = "|".join((
            provider, params.tenant_id, params.client_id, definition.metric_key,
            to_db_timestamp(timestamp), error,
        ))
        key = "hash:" + hashlib.sha256(material.encode("utf-8")).hexdigest()
    return QuarantinedEvent(
        event_id=str(uuid.uuid4()),
        provider=provider,
        tenant_id=params.tenant_id,
        client_id=params.client_id,
        metric_key=definition.metric_key,
        event_timestamp=timestamp,
        payload=json.dumps({"resourceId": resource_id}),
        errors=[error],
        correlation_id=params.correlation_id,
        quarantined_at=collected_at,
        dedup_key=key,
    )


def make_event(
    provider: str,
    params: CollectParams,
    definition: MetricDefinition,
    event_type: str,
    quantity: Decimal,
    unit_cost: Decimal,
    total_cost: Decimal,
    currency: str,
    event_timestamp: datetime,
    collector_version: str,
    collected_at: datetime,
    resource_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    pricing_tier: Optional[str] = None,
    source_pagination: Optional[str] = None,
    tags: Optional[Mapping[str, str]] = None,
) -> UsageEvent:
    """Normalize one unit of vendor usage into a canonical event."""
    return UsageEvent(
        event_id=str(uuid.uuid4()),
        provider=provider,
        event_type=event_type,
        metric_key=definition.metric_key,
        unit=definition.unit,
        quantity=quantity,
        tenant_id=params.tenant_id,
        client_id=params.client_id,
        agent_id=agent_id,
        resource_id=resource_id,
        event_timestamp=event_timestamp,
        vendor_cost_data=VendorCostData(
            unit_cost=unit_cost,
            currency=currency,
            total_cost=total_cost,
            cost_captured_at=collected_at,
            pricing_tier=pricing_tier,
        ),
        collection_metadata=CollectionMetadata(
            collected_at=collected_at,
            collector_version=collector_version,
            correlation_id=params.correlation_id,
            retry_count=params.retry_count,
            source_pagination=source_pagination,
        ),
        tags=dict(tags or {}),
    )
