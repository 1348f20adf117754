"""
Tests for the provider collectors.

Vendor APIs are replaced with httpx.MockTransport handlers, so every test
runs offline.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from usage_engine.collectors.base import (
    CollectParams,
    Collector,
    decode_cursor,
    parse_retry_after,
    vendor_decimal,
)
from usage_engine.collectors.openrouter import OpenRouterCollector, split_cost
from usage_engine.collectors.retell import RetellCollector
from usage_engine.collectors.twilio import TwilioCollector
from usage_engine.core.credentials import StaticCredentialProvider
from usage_engine.core.directory import InMemoryDirectory
from usage_engine.core.errors import (
    AuthenticationFailure,
    PermanentProviderError,
    RateLimited,
    TransientProviderError,
)
from usage_engine.core.idempotency import IdempotencyManager
from usage_engine.core.writer import EventStoreWriter
from usage_engine.storage.models import ClientAgentMapping

from conftest import T0

COLLECTED_AT = datetime(2024, 5, 4, 6, 0, tzinfo=timezone.utc)

CREDENTIALS = StaticCredentialProvider({
    (None, "retell"): {"api_key": "key_retell"},
    (None, "twilio"): {"account_sid": "AC1", "auth_token": "tok"},
    (None, "openrouter"): {"api_key": "key_openrouter"},
})


def _params(start=T0, end=None, cursor=None, page_size_hint=None, tenant_id="t1"):
    return CollectParams(
        tenant_id=tenant_id,
        client_id="c1",
        start_time=start,
        end_time=end or start + timedelta(days=1),
        correlation_id="corr-1",
        cursor=cursor,
        page_size_hint=page_size_hint,
    )


def _collect_all(collector, params):
    """Follow cursors until the collector reports no more pages."""
    events, pages = [], 0
    while True:
        result = collector.collect(params)
        events.extend(result.events)
        pages += 1
        if not result.has_more:
            return events, pages
        params = _params(
            params.start_time, params.end_time, result.next_cursor, params.page_size_hint,
            tenant_id=params.tenant_id,
        )


def _retell_call(call_id, duration_ms=330000, status="ended", agent_id="ag_ext_1", offset_minutes=0):
    start_ms = int((T0 + timedelta(hours=12, minutes=offset_minutes)).timestamp() * 1000)
    return {
        "call_id": call_id,
        "agent_id": agent_id,
        "call_status": status,
        "start_timestamp": start_ms,
        "end_timestamp": start_ms + duration_ms,
        "duration_ms": duration_ms,
    }


def _retell(handler, pricing, mappings=()):
    return RetellCollector(
        CREDENTIALS,
        InMemoryDirectory(mappings),
        pricing["retell"],
        transport=httpx.MockTransport(handler),
        clock=lambda: COLLECTED_AT,
    )


class TestRetellCollector:
    """Test Retell call collection."""

    def test_collector_protocol(self, pricing):
        assert isinstance(_retell(lambda request: httpx.Response(200, json=[]), pricing), Collector)

    def test_single_call_normalization(self, pricing):
        """A 330 s call is 5.5 minutes at $0.05 = $0.275."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[_retell_call("call_123")])

        result = _retell(handler, pricing).collect(_params())

        assert len(result.events) == 1
        event = result.events[0]
        assert event.quantity == Decimal("5.5")
        assert event.unit == "minutes"
        assert event.vendor_cost_data.unit_cost == Decimal("0.05")
        assert event.vendor_cost_data.total_cost == Decimal("0.275")
        assert event.resource_id == "call_123"
        assert event.event_timestamp == T0 + timedelta(hours=12)
        assert event.collection_metadata.collected_at == COLLECTED_AT
        assert not result.has_more
        assert result.performance.api_call_count == 1
        assert seen[0].headers["Authorization"] == "Bearer key_retell"

    def test_pagination_covers_every_call(self, pricing):
        """Five calls at two per page arrive in three pages, each exactly once."""
        calls = [_retell_call(f"call_{i}", offset_minutes=i) for i in range(5)]

        def handler(request):
            body = json.loads(request.content)
            ids = [call["call_id"] for call in calls]
            begin = ids.index(body["pagination_key"]) + 1 if "pagination_key" in body else 0
            return httpx.Response(200, json=calls[begin:begin + body["limit"]])

        events, pages = _collect_all(_retell(handler, pricing), _params(page_size_hint=2))

        assert pages == 3
        assert sorted(event.resource_id for event in events) == [f"call_{i}" for i in range(5)]

    def test_agent_mappings_filter_and_resolve(self, pricing):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=[_retell_call("call_1")])

        mapping = ClientAgentMapping("t1", "c1", "agent-1", "retell", "ag_ext_1")
        result = _retell(handler, pricing, [mapping]).collect(_params())

        assert bodies[0]["filter_criteria"]["agent_id"] == ["ag_ext_1"]
        assert result.events[0].agent_id == "agent-1"
        assert result.events[0].tags == {"external_agent_id": "ag_ext_1"}

    def test_unbilled_calls_skipped(self, pricing):
        def handler(request):
            return httpx.Response(200, json=[
                _retell_call("call_1", status="not_connected"),
                _retell_call("call_2"),
            ])

        result = _retell(handler, pricing).collect(_params())
        assert [event.resource_id for event in result.events] == ["call_2"]

    def test_unreadable_call_set_aside(self, pricing):
        """One call with a garbled duration does not fail the page."""
        bad = dict(_retell_call("call_bad"), duration_seconds="n/a")

        def handler(request):
            return httpx.Response(200, json=[_retell_call("call_good"), bad])

        result = _retell(handler, pricing).collect(_params())

        assert [event.resource_id for event in result.events] == ["call_good"]
        rejected, = result.rejected
        assert rejected.errors == ["non-numeric duration_seconds"]
        assert rejected.metric_key == "retell.call_minutes"
        assert rejected.dedup_key == "retell:call_bad:retell.call_minutes"
        assert json.loads(rejected.payload) == {"resourceId": "call_bad"}
        assert rejected.event_timestamp == T0 + timedelta(hours=12)

    def test_nan_duration_set_aside(self, pricing):
        bad = dict(_retell_call("call_nan"), duration_ms="NaN")
        result = _retell(lambda request: httpx.Response(200, json=[bad]), pricing).collect(_params())

        assert result.events == []
        assert result.rejected[0].errors == ["non-finite duration_ms"]

    def test_cursor_from_another_scope_rejected(self, pricing):
        calls = [_retell_call("call_1"), _retell_call("call_2")]
        collector = _retell(lambda request: httpx.Response(200, json=calls), pricing)
        cursor = collector.collect(_params(page_size_hint=2)).next_cursor

        with pytest.raises(ValueError, match="tenant"):
            collector.collect(_params(cursor=cursor, page_size_hint=2, tenant_id="t2"))

    def test_malformed_cursor_rejected(self):
        with pytest.raises(ValueError, match="Malformed"):
            decode_cursor("!!not-a-cursor", "retell", _params())

    def test_non_list_payload(self, pricing):
        collector = _retell(lambda request: httpx.Response(200, json={"error": "x"}), pricing)
        with pytest.raises(PermanentProviderError):
            collector.collect(_params())


class TestHttpErrorMapping:
    """Test vendor status codes map onto the error taxonomy."""

    def test_unauthorized(self, pricing):
        collector = _retell(lambda request: httpx.Response(401), pricing)
        with pytest.raises(AuthenticationFailure):
            collector.collect(_params())

    def test_rate_limited_carries_retry_after(self, pricing):
        collector = _retell(lambda request: httpx.Response(429, headers={"Retry-After": "7"}), pricing)
        with pytest.raises(RateLimited) as exc_info:
            collector.collect(_params())
        assert exc_info.value.retry_after == 7.0

    def test_server_error_retried_once_then_raised(self, pricing):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(TransientProviderError):
            _retell(handler, pricing).collect(_params())
        assert len(calls) == 2

    def test_server_error_recovers_on_retry(self, pricing):
        responses = [httpx.Response(500), httpx.Response(200, json=[_retell_call("call_1")])]
        result = _retell(lambda request: responses.pop(0), pricing).collect(_params())
        assert len(result.events) == 1
        assert result.performance.api_call_count == 2

    def test_network_error_is_transient(self, pricing):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientProviderError):
            _retell(handler, pricing).collect(_params())

    def test_bad_request_is_permanent(self, pricing):
        collector = _retell(lambda request: httpx.Response(400, json={"error": "bad"}), pricing)
        with pytest.raises(PermanentProviderError):
            collector.collect(_params())

    def test_throttle_called_per_request(self, pricing):
        throttled = []
        collector = RetellCollector(
            CREDENTIALS, InMemoryDirectory(), pricing["retell"],
            throttle=lambda: throttled.append(1),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
        )
        collector.collect(_params())
        assert throttled == [1]

    def test_vendor_decimal(self):
        assert vendor_decimal("90", "duration") == Decimal("90")
        with pytest.raises(ValueError, match="non-numeric duration"):
            vendor_decimal("ninety", "duration")
        with pytest.raises(ValueError, match="non-finite duration"):
            vendor_decimal(float("nan"), "duration")

    def test_parse_retry_after(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after(None) == 60.0
        assert parse_retry_after("Wed, 01 May 2024 00:00:30 GMT", now=T0) == 30.0

    def test_validate_credentials(self, pricing):
        assert _retell(lambda request: httpx.Response(200, json=[]), pricing).validate_credentials()
        assert not _retell(lambda request: httpx.Response(401), pricing).validate_credentials()

    def test_missing_credentials(self, pricing):
        collector = RetellCollector(
            StaticCredentialProvider({}), InMemoryDirectory(), pricing["retell"],
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
        )
        assert not collector.validate_credentials("t1")
        with pytest.raises(AuthenticationFailure):
            collector.collect(_params())


def _twilio_handler(requests):
    call_page_1 = {
        "calls": [
            {"sid": "CA1", "status": "completed", "duration": "90", "direction": "outbound-api",
             "start_time": "Wed, 01 May 2024 10:00:00 +0000", "price": "-0.0255", "price_unit": "USD"},
            {"sid": "CA2", "status": "busy", "duration": "0",
             "start_time": "Wed, 01 May 2024 11:00:00 +0000", "price": None},
            {"sid": "CA3", "status": "completed", "duration": "60",
             "start_time": "Tue, 30 Apr 2024 23:00:00 +0000", "price": "-0.017"},
        ],
        "next_page_uri": "/2010-04-01/Accounts/AC1/Calls.json?Page=1&PageToken=PA1",
    }
    call_page_2 = {
        "calls": [
            {"sid": "CA4", "status": "completed", "duration": "60", "direction": "inbound",
             "start_time": "Wed, 01 May 2024 15:00:00 +0000", "price": None},
        ],
        "next_page_uri": None,
    }
    messages = {
        "messages": [
            {"sid": "SM1", "status": "delivered", "num_segments": "2", "direction": "outbound-api",
             "date_sent": "Wed, 01 May 2024 09:00:00 +0000", "price": "-0.0158", "price_unit": "usd"},
            {"sid": "SM2", "status": "failed", "num_segments": "1",
             "date_sent": "Wed, 01 May 2024 09:05:00 +0000", "price": None},
        ],
        "next_page_uri": None,
    }

    def handler(request):
        requests.append(request)
        if request.url.path.endswith("/Messages.json"):
            return httpx.Response(200, json=messages)
        if request.url.params.get("PageToken") == "PA1":
            return httpx.Response(200, json=call_page_2)
        return httpx.Response(200, json=call_page_1)

    return handler


class TestTwilioCollector:
    """Test Twilio calls and messages collection."""

    def _collector(self, pricing, handler):
        return TwilioCollector(
            CREDENTIALS, pricing["twilio"],
            transport=httpx.MockTransport(handler),
            clock=lambda: COLLECTED_AT,
        )

    def test_walks_calls_then_messages(self, pricing):
        requests = []
        events, pages = _collect_all(self._collector(pricing, _twilio_handler(requests)), _params())

        assert pages == 3
        assert [event.resource_id for event in events] == ["CA1", "CA4", "SM1"]
        assert requests[0].url.params["StartTime>"] == "2024-04-30"
        assert requests[0].url.params["StartTime<"] == "2024-05-02"
        assert requests[0].headers["Authorization"].startswith("Basic ")
        assert requests[2].url.params["DateSent>"] == "2024-04-30"

    def test_vendor_price_used_when_settled(self, pricing):
        events, _ = _collect_all(self._collector(pricing, _twilio_handler([])), _params())
        call = events[0]
        assert call.metric_key == "twilio.call_minutes"
        assert call.quantity == Decimal("1.5")
        assert call.vendor_cost_data.total_cost == Decimal("0.0255")
        assert call.vendor_cost_data.unit_cost == Decimal("0.017")
        assert call.vendor_cost_data.pricing_tier == "vendor_reported"
        assert call.event_type == "call.outbound-api"

    def test_snapshot_price_when_unsettled(self, pricing):
        events, _ = _collect_all(self._collector(pricing, _twilio_handler([])), _params())
        call = events[1]
        assert call.vendor_cost_data.unit_cost == Decimal("0.0085")
        assert call.vendor_cost_data.total_cost == Decimal("0.0085")

    def test_sms_segments(self, pricing):
        events, _ = _collect_all(self._collector(pricing, _twilio_handler([])), _params())
        sms = events[2]
        assert sms.metric_key == "twilio.sms_segments"
        assert sms.unit == "segments"
        assert sms.quantity == Decimal("2")
        assert sms.vendor_cost_data.total_cost == Decimal("0.0158")
        assert sms.vendor_cost_data.currency == "USD"

    def test_garbled_duration_set_aside(self, pricing):
        calls = {
            "calls": [
                {"sid": "CA1", "status": "completed", "duration": "90",
                 "start_time": "Wed, 01 May 2024 10:00:00 +0000", "price": None},
                {"sid": "CA9", "status": "completed", "duration": "ninety",
                 "start_time": "Wed, 01 May 2024 11:00:00 +0000", "price": None},
            ],
            "next_page_uri": None,
        }
        collector = self._collector(pricing, lambda request: httpx.Response(200, json=calls))

        result = collector.collect(_params())

        assert [event.resource_id for event in result.events] == ["CA1"]
        rejected, = result.rejected
        assert rejected.dedup_key == "twilio:CA9:twilio.call_minutes"
        assert rejected.errors == ["non-numeric duration"]
        assert rejected.event_timestamp == T0 + timedelta(hours=11)

    def test_missing_list(self, pricing):
        collector = self._collector(pricing, lambda request: httpx.Response(200, json={}))
        with pytest.raises(PermanentProviderError):
            collector.collect(_params())

    def test_validate_credentials(self, pricing):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"sid": "AC1"})

        assert self._collector(pricing, handler).validate_credentials()
        assert paths == ["/2010-04-01/Accounts/AC1.json"]


class TestOpenRouterCollector:
    """Test OpenRouter daily activity collection."""

    def _collector(self, pricing, handler, now=COLLECTED_AT):
        return OpenRouterCollector(
            CREDENTIALS, pricing["openrouter"],
            transport=httpx.MockTransport(handler),
            clock=lambda: now,
        )

    @staticmethod
    def _handler(requests):
        days = {
            "2024-05-01": [{
                "model": "openai/gpt-4o", "endpoint_id": "ep1", "provider_name": "OpenAI",
                "prompt_tokens": 1000, "completion_tokens": 500, "usage": 0.0105,
            }],
            "2024-05-02": [{"model": "meta/llama", "prompt_tokens": 200, "completion_tokens": 0}],
        }

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"data": days.get(request.url.params["date"], [])})

        return handler

    def test_one_page_per_completed_day(self, pricing):
        requests = []
        events, pages = _collect_all(
            self._collector(pricing, self._handler(requests)), _params(end=T0 + timedelta(days=2))
        )

        assert pages == 2
        assert [r.url.params["date"] for r in requests] == ["2024-05-01", "2024-05-02"]
        assert len(events) == 4

    def test_vendor_total_conserved_across_split(self, pricing):
        events, _ = _collect_all(
            self._collector(pricing, self._handler([])), _params(end=T0 + timedelta(days=2))
        )
        first_day = [event for event in events if ":2024-05-01:" in event.resource_id]

        assert sum(event.quantity for event in first_day) == Decimal("1500")
        assert sum(event.vendor_cost_data.total_cost for event in first_day) == Decimal("0.0105")
        input_event = first_day[0]
        assert input_event.metric_key == "openrouter.input_tokens"
        assert input_event.vendor_cost_data.total_cost == Decimal("0.003")
        assert input_event.resource_id == "t1:c1:2024-05-01:openai/gpt-4o:ep1"
        assert input_event.tags == {"model": "openai/gpt-4o", "upstream_provider": "OpenAI"}

    def test_unreported_usage_priced_from_snapshot(self, pricing):
        events, _ = _collect_all(
            self._collector(pricing, self._handler([])), _params(end=T0 + timedelta(days=2))
        )
        second_day = [event for event in events if ":2024-05-02:" in event.resource_id]

        assert second_day[0].vendor_cost_data.total_cost == Decimal("0.0006")
        assert second_day[1].quantity == Decimal("0")
        assert second_day[1].vendor_cost_data.total_cost == Decimal("0")
        assert second_day[0].event_timestamp == T0 + timedelta(days=1)

    def test_tenants_sharing_a_model_both_persist(self, pricing, repository):
        """Identical activity rows under two tenants are distinct usage."""
        collector = self._collector(pricing, self._handler([]))
        writer = EventStoreWriter(
            repository, IdempotencyManager(repository), {"openrouter": collector.get_metric_definitions()}
        )

        for tenant_id in ("t1", "t2"):
            result = collector.collect(_params(tenant_id=tenant_id))
            written = writer.bulk_create(result.events, f"corr-{tenant_id}", now=COLLECTED_AT)
            assert (written.persisted, written.duplicates) == (2, 0)

        assert repository.count_events("t2") == 2

    def test_garbled_row_sets_aside_both_metrics(self, pricing):
        rows = {"data": [
            {"model": "openai/gpt-4o", "prompt_tokens": 10, "completion_tokens": 5, "usage": "free"},
            {"model": "meta/llama", "prompt_tokens": 200, "completion_tokens": 0},
        ]}
        collector = self._collector(pricing, lambda request: httpx.Response(200, json=rows))

        result = collector.collect(_params())

        assert len(result.events) == 2
        assert {r.metric_key for r in result.rejected} == {"openrouter.input_tokens", "openrouter.output_tokens"}
        assert all(r.errors == ["non-numeric usage"] for r in result.rejected)
        assert result.rejected[0].dedup_key == (
            "openrouter:t1:c1:2024-05-01:openai/gpt-4o:default:openrouter.input_tokens"
        )

    def test_unfinished_day_not_collected(self, pricing):
        requests = []
        collector = self._collector(
            pricing, self._handler(requests), now=T0 + timedelta(hours=12)
        )

        result = collector.collect(_params())

        assert result.events == []
        assert not result.has_more
        assert requests == []

    def test_missing_data_list(self, pricing):
        collector = self._collector(pricing, lambda request: httpx.Response(200, json={"rows": []}))
        with pytest.raises(PermanentProviderError):
            collector.collect(_params())


class TestSplitCost:
    """Test the input/output cost split."""

    def test_split_sums_to_total(self):
        input_cost, output_cost = split_cost(
            Decimal("333"), Decimal("777"), Decimal("0.012345"), Decimal("0.000003"), Decimal("0.000015")
        )
        assert input_cost + output_cost == Decimal("0.012345")

    def test_zero_weight(self):
        assert split_cost(Decimal("0"), Decimal("0"), Decimal("0.5"), Decimal("1"), Decimal("1")) == (
            Decimal("0"), Decimal("0.5"),
        )
