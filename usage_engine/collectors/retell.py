"""
Retell voice AI usage collector.

Lists ended calls for the window and emits one ``retell.call_minutes``
event per call, priced from the current pricing snapshot.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx

from usage_engine import __version__
from usage_engine.core.credentials import CredentialProvider
from usage_engine.core.directory import DirectoryService, external_agent_index
from usage_engine.core.errors import AuthenticationFailure, PermanentProviderError
from usage_engine.core.pricing import PricingCache, calculate_cost, quantize

from .base import (
    DEFAULT_TIMEOUT_SECONDS,
    CollectParams,
    CollectResult,
    MetricDefinition,
    ProviderHttpClient,
    RateLimits,
    cursor_scope,
    decode_cursor,
    encode_cursor,
    make_event,
    parse_vendor_timestamp,
    performance_from,
    reject_record,
    vendor_decimal,
)

logger = logging.getLogger(__name__)

PROVIDER = "retell"
CALL_MINUTES = MetricDefinition("retell.call_minutes", "minutes", "Retell call minutes")

DEFAULT_BASE_URL = "https://api.retellai.com"
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
CREDENTIAL_FIELDS = ("api_key",)

# Calls in these states never accrue billable minutes
_UNBILLED_STATUSES = {"registered", "not_connected", "ongoing"}


def _call_duration_seconds(call: Dict[str, Any]) -> Optional[Decimal]:
    if call.get("duration_seconds") is not None:
        return vendor_decimal(call["duration_seconds"], "duration_seconds")
    if call.get("duration_ms") is not None:
        return vendor_decimal(call["duration_ms"], "duration_ms") / 1000
    start, end = call.get("start_timestamp"), call.get("end_timestamp")
    if start is not None and end is not None:
        return (vendor_decimal(end, "end_timestamp") - vendor_decimal(start, "start_timestamp")) / 1000
    return None


class RetellCollector:
    """Collects call minutes from Retell's list-calls endpoint.

    Pagination follows Retell's ``pagination_key`` (the last call id of the
    previous page); the cursor wraps it together with the run scope.
    """

    provider_id = PROVIDER

    def __init__(
        self,
        credentials: CredentialProvider,
        directory: DirectoryService,
        pricing: PricingCache,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        throttle: Optional[Callable[[], Any]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.credentials = credentials
        self.directory = directory
        self.pricing = pricing
        self.base_url = base_url
        self.timeout = timeout
        self.page_size = page_size
        self.throttle = throttle
        self.transport = transport
        self.clock = clock

    def _client(self, tenant_id: Optional[str]) -> ProviderHttpClient:
        try:
            creds = self.credentials.get_credentials(tenant_id, PROVIDER)
        except KeyError as e:
            raise AuthenticationFailure(PROVIDER, f"no credentials configured: {e}") from e
        return ProviderHttpClient(
            PROVIDER,
            self.base_url,
            headers={"Authorization": f"Bearer {creds['api_key']}"},
            timeout=self.timeout,
            throttle=self.throttle,
            transport=self.transport,
        )

    def collect(self, params: CollectParams) -> CollectResult:
        started = time.monotonic()
        pagination_key = None
        if params.cursor:
            pagination_key = decode_cursor(params.cursor, PROVIDER, params).get("pagination_key")

        limit = min(params.page_size_hint or self.page_size, MAX_PAGE_SIZE)
        agents = external_agent_index(
            self.directory.get_mappings(params.tenant_id, params.client_id, PROVIDER)
        )
        filter_criteria: Dict[str, Any] = {
            "start_timestamp": {
                "lower_threshold": int(params.start_time.timestamp() * 1000),
                "upper_threshold": int(params.end_time.timestamp() * 1000) - 1,
            },
        }
        if agents:
            filter_criteria["agent_id"] = sorted(agents)
        body: Dict[str, Any] = {
            "filter_criteria": filter_criteria,
            "sort_order": "ascending",
            "limit": limit,
        }
        if pagination_key:
            body["pagination_key"] = pagination_key

        with self._client(params.tenant_id) as client:
            payload = client.request_json("POST", "/v2/list-calls", json_body=body)
            stats = client.stats

        if not isinstance(payload, list):
            raise PermanentProviderError(PROVIDER, "list-calls returned a non-list payload")

        snapshot = self.pricing.snapshot()
        price = snapshot.get_price(CALL_MINUTES.metric_key)
        collected_at = self.clock()

        events, rejected = [], []
        for call in payload:
            try:
                event = self._transform(call, params, agents, price, collected_at)
            except ValueError as e:
                logger.warning("Retell call %s rejected: %s", call.get("call_id"), e)
                rejected.append(reject_record(
                    PROVIDER, params, CALL_MINUTES, call.get("call_id"), str(e), collected_at,
                    parse_vendor_timestamp(call.get("start_timestamp")),
                ))
                continue
            if event is not None:
                events.append(event)

        has_more = len(payload) >= limit
        next_cursor = None
        if has_more:
            next_cursor = encode_cursor({
                **cursor_scope(PROVIDER, params),
                "pagination_key": payload[-1]["call_id"],
            })

        return CollectResult(
            events=events,
            next_cursor=next_cursor,
            has_more=has_more,
            performance=performance_from(stats, started),
            rejected=rejected,
        )

    def _transform(self, call, params, agents, price, collected_at):
        call_id = call.get("call_id")
        if not call_id or call.get("call_status") in _UNBILLED_STATUSES:
            return None
        seconds = _call_duration_seconds(call)
        if seconds is None:
            logger.debug("Retell call %s has no duration yet, skipping", call_id)
            return None

        timestamp = parse_vendor_timestamp(call.get("start_timestamp")) or params.start_time
        minutes = quantize(seconds / 60)
        unit_cost, total_cost = calculate_cost(minutes, price)
        external_agent = call.get("agent_id")
        return make_event(
            PROVIDER,
            params,
            CALL_MINUTES,
            event_type="call_ended",
            quantity=minutes,
            unit_cost=unit_cost,
            total_cost=total_cost,
            currency=price.currency,
            event_timestamp=timestamp,
            collector_version=__version__,
            collected_at=collected_at,
            resource_id=call_id,
            agent_id=agents.get(external_agent) if external_agent else None,
            pricing_tier=price.pricing_tier,
            source_pagination=params.cursor,
            tags={"external_agent_id": external_agent} if external_agent else None,
        )

    def validate_credentials(self, tenant_id: Optional[str] = None) -> bool:
        """Check the credentials with a one-call listing."""
        try:
            with self._client(tenant_id) as client:
                client.request_json("POST", "/v2/list-calls", json_body={"limit": 1})
            return True
        except AuthenticationFailure:
            return False

    def get_metric_definitions(self) -> List[MetricDefinition]:
        return [CALL_MINUTES]

    def get_rate_limits(self) -> RateLimits:
        return RateLimits(requests_per_minute=60, requests_per_hour=3000, burst_capacity=10)
