"""Pydantic schema and strict decoder for raw ingestion events.

Wire format (camelCase, as emitted by IoT and ERP integrations):
    {
        "nodeId": "n1",
        "timestamp": "2026-01-01T12:00:00Z",
        "sensorType": "inventory",
        "metrics": {"currentInventory": 480, "utilizationRate": 0.72, "temperature": 4.1},
        "source": "iot-core",
        "messageId": "msg-123"
    }

Anything that does not match the required shape is rejected with
ValidationError; fields are never read optimistically.
"""

from __future__ import annotations

import json
import math
import uuid
from datetime import datetime
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from omnitwin.common.exceptions import ValidationError
from omnitwin.graph.models import NodeMetrics, ensure_aware


class EventMetrics(BaseModel):
    """Metric readings carried by an event. Extra sensor readings are kept aside."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", allow_inf_nan=False)

    current_inventory: float = Field(..., alias="currentInventory", ge=0)
    utilization_rate: float = Field(..., alias="utilizationRate", ge=0.0, le=1.0)

    @field_validator("current_inventory", "utilization_rate", mode="before")
    @classmethod
    def _reject_non_numeric(cls, v: Any) -> Any:
        # bool is an int subclass and numeric strings would coerce silently
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("must be a number")
        if isinstance(v, float) and not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v

    @property
    def readings(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class IngestionEvent(BaseModel):
    """A validated ingestion event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    node_id: str = Field(..., alias="nodeId", min_length=1)
    timestamp: datetime
    metrics: EventMetrics
    source: str = Field(..., min_length=1)
    sensor_type: str = Field(default="unknown", alias="sensorType")
    message_id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4().hex}", alias="messageId")

    @field_validator("node_id", "source", mode="before")
    @classmethod
    def _strip_required(cls, v: Any) -> Any:
        if not isinstance(v, str):
            raise ValueError("must be a string")
        return v.strip()

    @field_validator("timestamp", mode="before")
    @classmethod
    def _require_iso_string(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return v
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be an ISO-8601 timestamp string")
        return v

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    def to_metrics(self) -> NodeMetrics:
        """Metrics object this event proposes for its node."""
        return NodeMetrics(
            current_inventory=self.metrics.current_inventory,
            utilization_rate=self.metrics.utilization_rate,
            last_update_timestamp=self.timestamp,
            last_update_source=self.source,
        )


MAX_ENVELOPE_DEPTH = 4


def _unwrap(raw: Any) -> Any:
    for _ in range(MAX_ENVELOPE_DEPTH + 1):
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            raw = json.loads(raw)
        if isinstance(raw, dict) and "body" in raw and "nodeId" not in raw:
            raw = raw["body"]
            continue
        return raw
    raise ValueError(f"Event nested deeper than {MAX_ENVELOPE_DEPTH} envelopes")


def decode_event(raw: Any) -> IngestionEvent:
    """Decode a raw event (dict, JSON text/bytes, or ``{"body": ...}`` envelope).

    Raises:
        ValidationError: payload is not valid JSON or does not match the schema
    """
    try:
        data = _unwrap(raw)
    except (ValueError, RecursionError) as e:
        # ValueError covers UnicodeDecodeError and JSONDecodeError
        raise ValidationError(f"Event payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError("Event payload must be a JSON object")

    node_id = data.get("nodeId") if isinstance(data.get("nodeId"), str) else None
    source = data.get("source") if isinstance(data.get("source"), str) else None
    try:
        return IngestionEvent.model_validate(data)
    except RecursionError as e:
        raise ValidationError(
            "Event payload nested too deeply", node_id=node_id, source=source
        ) from e
    except pydantic.ValidationError as e:
        problems = [
            {"field": ".".join(str(p) for p in err["loc"]), "error": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            "Invalid ingestion event",
            node_id=node_id or None,
            source=source or None,
            details={"problems": problems},
        ) from e
