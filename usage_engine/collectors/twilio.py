"""
Twilio telephony usage collector.

Walks the Calls list and then the Messages list for the window. Twilio
reports its own price per record; the pricing snapshot is only used when
the price has not been settled yet.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from usage_engine import __version__
from usage_engine.core.credentials import CredentialProvider
from usage_engine.core.errors import AuthenticationFailure, PermanentProviderError
from usage_engine.core.pricing import (
    PricingCache,
    calculate_cost,
    effective_unit_cost,
    quantize,
)

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

PROVIDER = "twilio"
CALL_MINUTES = MetricDefinition("twilio.call_minutes", "minutes", "Twilio call minutes")
SMS_SEGMENTS = MetricDefinition("twilio.sms_segments", "segments", "Twilio SMS segments")

DEFAULT_BASE_URL = "https://api.twilio.com"
DEFAULT_PAGE_SIZE = 100
CREDENTIAL_FIELDS = ("account_sid", "auth_token")

# Streams are walked in this order; the cursor records which one is active
_STREAMS = ("calls", "messages")


def _vendor_price(record: Dict[str, Any]) -> Optional[Decimal]:
    """Twilio reports charges as negative strings, or null until settled."""
    raw = record.get("price")
    if raw in (None, ""):
        return None
    try:
        return abs(vendor_decimal(raw, "price"))
    except ValueError:
        return None


class TwilioCollector:
    """Collects call minutes and SMS segments from Twilio's REST API."""

    provider_id = PROVIDER

    def __init__(
        self,
        credentials: CredentialProvider,
        pricing: PricingCache,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        throttle: Optional[Callable[[], Any]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.credentials = credentials
        self.pricing = pricing
        self.base_url = base_url
        self.timeout = timeout
        self.page_size = page_size
        self.throttle = throttle
        self.transport = transport
        self.clock = clock

    def _client(self, tenant_id: Optional[str]) -> Tuple[ProviderHttpClient, str]:
        try:
            creds = self.credentials.get_credentials(tenant_id, PROVIDER)
        except KeyError as e:
            raise AuthenticationFailure(PROVIDER, f"no credentials configured: {e}") from e
        client = ProviderHttpClient(
            PROVIDER,
            self.base_url,
            auth=httpx.BasicAuth(creds["account_sid"], creds["auth_token"]),
            timeout=self.timeout,
            throttle=self.throttle,
            transport=self.transport,
        )
        return client, creds["account_sid"]

    def _first_page(self, stream: str, account_sid: str, params: CollectParams, page_size: int):
        # Twilio filters by calendar day, so the window is re-checked per record
        start_day = params.start_time.astimezone(timezone.utc).date()
        last_day = (params.end_time.astimezone(timezone.utc) - timedelta(microseconds=1)).date()
        if stream == "calls":
            return f"/2010-04-01/Accounts/{account_sid}/Calls.json", {
                "StartTime>": (start_day - timedelta(days=1)).isoformat(),
                "StartTime<": (last_day + timedelta(days=1)).isoformat(),
                "PageSize": page_size,
            }
        return f"/2010-04-01/Accounts/{account_sid}/Messages.json", {
            "DateSent>": (start_day - timedelta(days=1)).isoformat(),
            "DateSent<": (last_day + timedelta(days=1)).isoformat(),
            "PageSize": page_size,
        }

    def collect(self, params: CollectParams) -> CollectResult:
        started = time.monotonic()
        stream, next_uri = _STREAMS[0], None
        if params.cursor:
            state = decode_cursor(params.cursor, PROVIDER, params)
            stream, next_uri = state["stream"], state.get("next_page_uri")
            if stream not in _STREAMS:
                raise ValueError(f"Unknown Twilio stream in cursor: {stream}")

        page_size = params.page_size_hint or self.page_size
        client, account_sid = self._client(params.tenant_id)
        with client:
            if next_uri:
                payload = client.request_json("GET", next_uri)
            else:
                url, query = self._first_page(stream, account_sid, params, page_size)
                payload = client.request_json("GET", url, params=query)
            stats = client.stats

        if not isinstance(payload, dict) or stream not in payload:
            raise PermanentProviderError(PROVIDER, f"{stream} list missing from response")

        snapshot = self.pricing.snapshot()
        collected_at = self.clock()
        if stream == "calls":
            transform, definition, time_field = self._transform_call, CALL_MINUTES, "start_time"
        else:
            transform, definition, time_field = self._transform_message, SMS_SEGMENTS, "date_sent"

        events, rejected = [], []
        for record in payload[stream]:
            try:
                event = transform(record, params, snapshot, collected_at)
            except ValueError as e:
                logger.warning("Twilio record %s rejected: %s", record.get("sid"), e)
                rejected.append(reject_record(
                    PROVIDER, params, definition, record.get("sid"), str(e), collected_at,
                    parse_vendor_timestamp(record.get(time_field)),
                ))
                continue
            if event is not None:
                events.append(event)

        following = payload.get("next_page_uri")
        next_cursor = None
        if following:
            next_cursor = encode_cursor({
                **cursor_scope(PROVIDER, params), "stream": stream, "next_page_uri": following,
            })
        elif _STREAMS.index(stream) + 1 < len(_STREAMS):
            next_cursor = encode_cursor({
                **cursor_scope(PROVIDER, params),
                "stream": _STREAMS[_STREAMS.index(stream) + 1],
                "next_page_uri": None,
            })

        return CollectResult(
            events=events,
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
            performance=performance_from(stats, started),
            rejected=rejected,
        )

    def _in_window(self, timestamp: Optional[datetime], params: CollectParams) -> bool:
        return timestamp is not None and params.start_time <= timestamp < params.end_time

    def _priced(self, definition, quantity, record, snapshot):
        vendor_total = _vendor_price(record)
        if vendor_total is not None:
            currency = (record.get("price_unit") or "USD").upper()
            return effective_unit_cost(quantity, vendor_total), vendor_total, currency, "vendor_reported"
        price = snapshot.get_price(definition.metric_key)
        unit_cost, total_cost = calculate_cost(quantity, price)
        return unit_cost, total_cost, price.currency, price.pricing_tier

    def _transform_call(self, record, params, snapshot, collected_at):
        if record.get("status") != "completed" or record.get("duration") in (None, ""):
            return None
        timestamp = parse_vendor_timestamp(record.get("start_time"))
        if not self._in_window(timestamp, params):
            return None

        minutes = quantize(vendor_decimal(record["duration"], "duration") / 60)
        unit_cost, total_cost, currency, tier = self._priced(CALL_MINUTES, minutes, record, snapshot)
        return make_event(
            PROVIDER,
            params,
            CALL_MINUTES,
            event_type=f"call.{record.get('direction') or 'unknown'}",
            quantity=minutes,
            unit_cost=unit_cost,
            total_cost=total_cost,
            currency=currency,
            event_timestamp=timestamp,
            collector_version=__version__,
            collected_at=collected_at,
            resource_id=record.get("sid"),
            pricing_tier=tier,
            source_pagination=params.cursor,
        )

    def _transform_message(self, record, params, snapshot, collected_at):
        if record.get("status") in ("failed", "undelivered", "canceled"):
            return None
        timestamp = parse_vendor_timestamp(record.get("date_sent"))
        if not self._in_window(timestamp, params):
            return None

        segments = vendor_decimal(record.get("num_segments") or "1", "num_segments")
        unit_cost, total_cost, currency, tier = self._priced(SMS_SEGMENTS, segments, record, snapshot)
        return make_event(
            PROVIDER,
            params,
            SMS_SEGMENTS,
            event_type=f"sms.{record.get('direction') or 'unknown'}",
            quantity=segments,
            unit_cost=unit_cost,
            total_cost=total_cost,
            currency=currency,
            event_timestamp=timestamp,
            collector_version=__version__,
            collected_at=collected_at,
            resource_id=record.get("sid"),
            pricing_tier=tier,
            source_pagination=params.cursor,
        )

    def validate_credentials(self, tenant_id: Optional[str] = None) -> bool:
        """Fetch the account resource; cheap and read-only."""
        try:
            client, account_sid = self._client(tenant_id)
            with client:
                client.request_json("GET", f"/2010-04-01/Accounts/{account_sid}.json")
            return True
        except AuthenticationFailure:
            return False

    def get_metric_definitions(self) -> List[MetricDefinition]:
        return [CALL_MINUTES, SMS_SEGMENTS]

    def get_rate_limits(self) -> RateLimits:
        return RateLimits(requests_per_minute=100, requests_per_hour=6000, burst_capacity=20)
