"""
Canonical wire schema for usage events.

Converts between ``UsageEvent`` and its JSON representation and validates
documents against the published JSON Schema. Only the documented ``tags``
extension point accepts arbitrary keys.
"""

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from usage_engine.storage.db import to_db_timestamp
from usage_engine.storage.models import CollectionMetadata, UsageEvent, VendorCostData

_DECIMAL_PATTERN = r"^-?[0-9]+(\.[0-9]+)?$"

_NULLABLE_STRING = {"type": ["string", "null"]}

USAGE_EVENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "UsageEvent",
    "type": "object",
    "required": [
        "eventId", "provider", "eventType", "metricKey", "quantity", "unit",
        "tenantId", "clientId", "eventTimestamp", "vendorCostData",
        "collectionMetadata",
    ],
    "additionalProperties": False,
    "properties": {
        "eventId": {"type": "string", "minLength": 1},
        "provider": {"type": "string", "minLength": 1},
        "eventType": {"type": "string", "minLength": 1},
        "metricKey": {"type": "string", "pattern": r"^[a-z0-9_]+\.[a-z0-9_.]+$"},
        "quantity": {"type": "string", "pattern": _DECIMAL_PATTERN},
        "unit": {"type": "string", "minLength": 1},
        "tenantId": {"type": "string", "minLength": 1},
        "clientId": {"type": "string", "minLength": 1},
        "agentId": _NULLABLE_STRING,
        "resourceId": _NULLABLE_STRING,
        "eventTimestamp": {"type": "string", "minLength": 1},
        "vendorCostData": {
            "type": "object",
            "required": ["unitCost", "currency", "totalCost", "costCapturedAt"],
            "additionalProperties": False,
            "properties": {
                "unitCost": {"type": "string", "pattern": _DECIMAL_PATTERN},
                "currency": {"type": "string", "pattern": "^[A-Z]{3}$"},
                "totalCost": {"type": "string", "pattern": _DECIMAL_PATTERN},
                "costCapturedAt": {"type": "string", "minLength": 1},
                "pricingTier": _NULLABLE_STRING,
            },
        },
        "collectionMetadata": {
            "type": "object",
            "required": ["collectedAt", "collectorVersion", "correlationId", "retryCount"],
            "additionalProperties": False,
            "properties": {
                "collectedAt": {"type": "string", "minLength": 1},
                "collectorVersion": {"type": "string", "minLength": 1},
                "correlationId": {"type": "string", "minLength": 1},
                "retryCount": {"type": "integer", "minimum": 0},
                "sourcePagination": _NULLABLE_STRING,
            },
        },
        "tags": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
    },
}

_VALIDATOR = Draft202012Validator(USAGE_EVENT_SCHEMA)


def _decimal_text(value: Decimal) -> str:
    # Fixed-point text so the schema pattern never sees exponent notation
    return format(value, "f")


def usage_event_to_wire(event: UsageEvent) -> Dict[str, Any]:
    """Convert an event to its canonical JSON-compatible dict."""
    cost = event.vendor_cost_data
    meta = event.collection_metadata
    return {
        "eventId": event.event_id,
        "provider": event.provider,
        "eventType": event.event_type,
        "metricKey": event.metric_key,
        "quantity": _decimal_text(event.quantity),
        "unit": event.unit,
        "tenantId": event.tenant_id,
        "clientId": event.client_id,
        "agentId": event.agent_id,
        "resourceId": event.resource_id,
        "eventTimestamp": to_db_timestamp(event.event_timestamp),
        "vendorCostData": {
            "unitCost": _decimal_text(cost.unit_cost),
            "currency": cost.currency,
            "totalCost": _decimal_text(cost.total_cost),
            "costCapturedAt": to_db_timestamp(cost.cost_captured_at),
            "pricingTier": cost.pricing_tier,
        },
        "collectionMetadata": {
            "collectedAt": to_db_timestamp(meta.collected_at),
            "collectorVersion": meta.collector_version,
            "correlationId": meta.correlation_id,
            "retryCount": meta.retry_count,
            "sourcePagination": meta.source_pagination,
        },
        "tags": dict(event.tags),
    }


def usage_event_to_json(event: UsageEvent) -> str:
    return json.dumps(usage_event_to_wire(event), sort_keys=True)


def schema_errors(document: Dict[str, Any]) -> List[str]:
    """Return human-readable schema violations for a wire document.

    Args:
        document: Candidate wire document

    Returns:
        List of error messages (empty if the document is valid)
    """
    errors = []
    for error in sorted(_VALIDATOR.iter_errors(document), key=lambda e: list(e.absolute_path)):
        location = "/".join(str(part) for part in error.absolute_path) or "<root>"
        errors.append(f"{location}: {error.message}")
    return errors


def usage_event_from_wire(document: Dict[str, Any]) -> UsageEvent:
    """Build an event from a canonical wire document.

    Raises:
        ValueError: If the document violates the schema or carries
            unparseable timestamps or decimals
    """
    errors = schema_errors(document)
    if errors:
        raise ValueError("Invalid usage event document: " + "; ".join(errors))

    cost = document["vendorCostData"]
    meta = document["collectionMetadata"]
    try:
        return UsageEvent(
            event_id=document["eventId"],
            provider=document["provider"],
            event_type=document["eventType"],
            metric_key=document["metricKey"],
            unit=document["unit"],
            quantity=Decimal(document["quantity"]),
            tenant_id=document["tenantId"],
            client_id=document["clientId"],
            agent_id=document.get("agentId"),
            resource_id=document.get("resourceId"),
            event_timestamp=datetime.fromisoformat(document["eventTimestamp"]),
            vendor_cost_data=VendorCostData(
                unit_cost=Decimal(cost["unitCost"]),
                currency=cost["currency"],
                total_cost=Decimal(cost["totalCost"]),
                cost_captured_at=datetime.fromisoformat(cost["costCapturedAt"]),
                pricing_tier=cost.get("pricingTier"),
            ),
            collection_metadata=CollectionMetadata(
                collected_at=datetime.fromisoformat(meta["collectedAt"]),
                collector_version=meta["collectorVersion"],
                correlation_id=meta["correlationId"],
                retry_count=meta["retryCount"],
                source_pagination=meta.get("sourcePagination"),
            ),
            tags=dict(document.get("tags") or {}),
        )
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid usage event document: {e}") from e
