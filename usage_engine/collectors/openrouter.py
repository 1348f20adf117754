"""
OpenRouter LLM routing usage collector.

The activity endpoint reports one row per (day, model, endpoint). Each row
becomes an input-token event and an output-token event whose quantities
and cost slices add back up to the row.
"""

import logging
import time
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from usage_engine import __version__
from usage_engine.core.credentials import CredentialProvider
from usage_engine.core.errors import AuthenticationFailure, PermanentProviderError
from usage_engine.core.pricing import (
    PricingSnapshot,
    PricingCache,
    calculate_cost,
    effective_unit_cost,
    quantize,
)

from .base import (
    DEFAULT_TIMEOUT_SECONDS,
    CollectParams,
    CollectResult,
    HttpCallStats,
    MetricDefinition,
    ProviderHttpClient,
    RateLimits,
    cursor_scope,
    decode_cursor,
    encode_cursor,
    make_event,
    performance_from,
    reject_record,
    vendor_decimal,
)

logger = logging.getLogger(__name__)

PROVIDER = "openrouter"
INPUT_TOKENS = MetricDefinition("openrouter.input_tokens", "tokens", "OpenRouter input tokens")
OUTPUT_TOKENS = MetricDefinition("openrouter.output_tokens", "tokens", "OpenRouter output tokens")

DEFAULT_BASE_URL = "https://openrouter.ai"
CREDENTIAL_FIELDS = ("api_key",)


def split_cost(
    input_tokens: Decimal,
    output_tokens: Decimal,
    total: Decimal,
    input_price: Decimal,
    output_price: Decimal,
) -> Tuple[Decimal, Decimal]:
    """Split a vendor total between input and output by priced weight.

    The output slice takes the rounding remainder so the two slices always
    sum to ``total``.
    """
    input_weight = input_tokens * input_price
    weight = input_weight + output_tokens * output_price
    if weight == 0:
        input_cost = Decimal("0")
    else:
        input_cost = quantize(total * input_weight / weight)
    return input_cost, total - input_cost


def _tokens(record: Dict[str, Any], field: str) -> Decimal:
    return vendor_decimal(record.get(field) or 0, field)


def _row_id(record: Dict[str, Any], day: date, params: CollectParams) -> str:
    # Activity rows are per API key, so the row id is only unique within a tenant and client
    return (
        f"{params.tenant_id}:{params.client_id}:{day.isoformat()}:"
        f"{record.get('model') or 'unknown'}:{record.get('endpoint_id') or 'default'}"
    )


class OpenRouterCollector:
    """Collects token usage from OpenRouter's activity endpoint.

    One page is one UTC day; only days that have fully ended are
    collected, so totals for a day never change after collection.
    """

    provider_id = PROVIDER

    def __init__(
        self,
        credentials: CredentialProvider,
        pricing: PricingCache,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        throttle: Optional[Callable[[], Any]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.credentials = credentials
        self.pricing = pricing
        self.base_url = base_url
        self.timeout = timeout
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

    def _last_collectable_day(self, params: CollectParams) -> date:
        window_last = (params.end_time.astimezone(timezone.utc) - timedelta(microseconds=1)).date()
        yesterday = self.clock().astimezone(timezone.utc).date() - timedelta(days=1)
        return min(window_last, yesterday)

    def collect(self, params: CollectParams) -> CollectResult:
        started = time.monotonic()
        day = params.start_time.astimezone(timezone.utc).date()
        if params.cursor:
            day = date.fromisoformat(decode_cursor(params.cursor, PROVIDER, params)["date"])

        last_day = self._last_collectable_day(params)
        if day > last_day:
            return CollectResult(
                events=[], next_cursor=None, has_more=False,
                performance=performance_from(HttpCallStats(), started),
            )

        with self._client(params.tenant_id) as client:
            payload = client.request_json("GET", "/api/v1/activity", params={"date": day.isoformat()})
            stats = client.stats

        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise PermanentProviderError(PROVIDER, "activity response has no data list")

        snapshot = self.pricing.snapshot()
        collected_at = self.clock()
        day_start = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
        timestamp = max(day_start, params.start_time.astimezone(timezone.utc))

        events, rejected = [], []
        for record in payload["data"]:
            try:
                events.extend(self._transform(record, day, timestamp, params, snapshot, collected_at))
            except ValueError as e:
                row_id = _row_id(record, day, params)
                logger.warning("OpenRouter activity row %s rejected: %s", row_id, e)
                rejected.extend(
                    reject_record(PROVIDER, params, definition, row_id, str(e), collected_at, timestamp)
                    for definition in (INPUT_TOKENS, OUTPUT_TOKENS)
                )

        next_cursor = None
        if day < last_day:
            next_cursor = encode_cursor({
                **cursor_scope(PROVIDER, params),
                "date": (day + timedelta(days=1)).isoformat(),
            })

        return CollectResult(
            events=events,
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
            performance=performance_from(stats, started),
            rejected=rejected,
        )

    def _transform(
        self,
        record: Dict[str, Any],
        day: date,
        timestamp: datetime,
        params: CollectParams,
        snapshot: PricingSnapshot,
        collected_at: datetime,
    ) -> List:
        model = record.get("model") or "unknown"
        input_tokens = _tokens(record, "prompt_tokens")
        output_tokens = _tokens(record, "completion_tokens")
        input_price = snapshot.get_price(INPUT_TOKENS.metric_key, model)
        output_price = snapshot.get_price(OUTPUT_TOKENS.metric_key, model)

        vendor_usage = record.get("usage")
        if vendor_usage is not None:
            total = quantize(vendor_decimal(vendor_usage, "usage"))
            input_cost, output_cost = split_cost(
                input_tokens, output_tokens, total, input_price.unit_cost, output_price.unit_cost,
            )
            slices = [
                (INPUT_TOKENS, input_tokens, effective_unit_cost(input_tokens, input_cost), input_cost, "vendor_reported"),
                (OUTPUT_TOKENS, output_tokens, effective_unit_cost(output_tokens, output_cost), output_cost, "vendor_reported"),
            ]
        else:
            slices = [
                (INPUT_TOKENS, input_tokens, *calculate_cost(input_tokens, input_price), input_price.pricing_tier),
                (OUTPUT_TOKENS, output_tokens, *calculate_cost(output_tokens, output_price), output_price.pricing_tier),
            ]

        row_id = _row_id(record, day, params)
        tags = {"model": model}
        if record.get("provider_name"):
            tags["upstream_provider"] = str(record["provider_name"])

        return [
            make_event(
                PROVIDER,
                params,
                definition,
                event_type="activity.daily",
                quantity=quantity,
                unit_cost=unit_cost,
                total_cost=total_cost,
                currency=input_price.currency,
                event_timestamp=timestamp,
                collector_version=__version__,
                collected_at=collected_at,
                resource_id=row_id,
                pricing_tier=tier,
                source_pagination=params.cursor,
                tags=tags,
            )
            for definition, quantity, unit_cost, total_cost, tier in slices
        ]

    def validate_credentials(self, tenant_id: Optional[str] = None) -> bool:
        """Read the key's own metadata."""
        try:
            with self._client(tenant_id) as client:
                client.request_json("GET", "/api/v1/key")
            return True
        except AuthenticationFailure:
            return False

    def get_metric_definitions(self) -> List[MetricDefinition]:
        return [INPUT_TOKENS, OUTPUT_TOKENS]

    def get_rate_limits(self) -> RateLimits:
        return RateLimits(requests_per_minute=20, requests_per_hour=1000, burst_capacity=5)
