"""Unit tests for ingestion event decoding.

Tests:
- Valid events (dict, JSON text, bytes, body envelope)
- Required field checks fail closed
- Metric range, type and finiteness checks
- Nesting limits on envelopes and JSON text
- Timestamp handling

Run with:
    pytest tests/test_ingestion_events.py -v
"""

from __future__ import annotations

import json
from datetime import timezone

import pytest
from conftest import T0, make_event

from omnitwin.common.exceptions import ErrorKind, ValidationError
from omnitwin.ingestion.events import MAX_ENVELOPE_DEPTH, decode_event


class TestValidEvents:
    def test_decodes_dict(self):
        event = decode_event(make_event(inventory=480, utilization=0.72))

        assert event.node_id == "n1"
        assert event.source == "manual-entry"
        assert event.timestamp == T0
        assert event.metrics.current_inventory == 480
        assert event.metrics.utilization_rate == 0.72
        assert event.message_id == "msg-1"

    def test_decodes_json_text_and_bytes(self):
        raw = json.dumps(make_event())
        assert decode_event(raw).node_id == "n1"
        assert decode_event(raw.encode("utf-8")).node_id == "n1"

    def test_unwraps_body_envelope(self):
        envelope = {"body": json.dumps(make_event(node_id="n7"))}
        assert decode_event(envelope).node_id == "n7"

    def test_zulu_timestamp_parsed_as_utc(self):
        event = decode_event(make_event(ts="2026-03-01T12:00:00Z"))
        assert event.timestamp == T0
        assert event.timestamp.tzinfo is not None

    def test_naive_timestamp_assumed_utc(self):
        event = decode_event(make_event(ts="2026-03-01T12:00:00"))
        assert event.timestamp.tzinfo == timezone.utc

    def test_extra_sensor_readings_kept(self):
        raw = make_event()
        raw["metrics"]["temperature"] = 4.1
        event = decode_event(raw)
        assert event.metrics.readings == {"temperature": 4.1}

    def test_defaults_for_optional_fields(self):
        raw = make_event()
        del raw["messageId"]
        del raw["sensorType"]
        event = decode_event(raw)
        assert event.sensor_type == "unknown"
        assert event.message_id.startswith("msg-")

    def test_to_metrics_carries_timestamp_and_source(self):
        metrics = decode_event(make_event(inventory=10, utilization=0.1)).to_metrics()
        assert metrics.current_inventory == 10
        assert metrics.last_update_timestamp == T0
        assert metrics.last_update_source == "manual-entry"


class TestRejectedEvents:
    @pytest.mark.parametrize("field", ["nodeId", "timestamp", "metrics", "source"])
    def test_missing_required_field(self, field):
        raw = make_event()
        del raw[field]
        with pytest.raises(ValidationError) as exc_info:
            decode_event(raw)
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.details["problems"]

    def test_empty_node_id(self):
        with pytest.raises(ValidationError):
            decode_event(make_event(node_id="   "))

    def test_missing_metric_field(self):
        raw = make_event()
        del raw["metrics"]["utilizationRate"]
        with pytest.raises(ValidationError) as exc_info:
            decode_event(raw)
        fields = [p["field"] for p in exc_info.value.details["problems"]]
        assert "metrics.utilizationRate" in fields

    @pytest.mark.parametrize("utilization", [-0.1, 1.01])
    def test_utilization_out_of_range(self, utilization):
        with pytest.raises(ValidationError):
            decode_event(make_event(utilization=utilization))

    def test_negative_inventory(self):
        with pytest.raises(ValidationError):
            decode_event(make_event(inventory=-1))

    @pytest.mark.parametrize("value", ["480", True, None])
    def test_non_numeric_inventory(self, value):
        with pytest.raises(ValidationError):
            decode_event(make_event(inventory=value))

    def test_unparseable_timestamp(self):
        with pytest.raises(ValidationError):
            decode_event(make_event(ts="yesterday"))

    def test_invalid_json(self):
        with pytest.raises(ValidationError):
            decode_event("{not json")

    def test_non_object_payload(self):
        with pytest.raises(ValidationError):
            decode_event([make_event()])

    def test_error_carries_node_and_source_when_known(self):
        with pytest.raises(ValidationError) as exc_info:
            decode_event(make_event(utilization=5))
        assert exc_info.value.node_id == "n1"
        assert exc_info.value.source == "manual-entry"

    def test_deeply_nested_json_text(self):
        raw = '{"body": ' * 5000 + "{}" + "}" * 5000
        with pytest.raises(ValidationError):
            decode_event(raw)

    def test_deeply_nested_metrics_value(self):
        raw = json.dumps(make_event())
        nested = "[" * 5000 + "]" * 5000
        raw = raw.replace('"currentInventory": 480', f'"currentInventory": {nested}')
        with pytest.raises(ValidationError):
            decode_event(raw)

    def test_envelope_depth_is_bounded(self):
        envelope = make_event(node_id="n9")
        for _ in range(MAX_ENVELOPE_DEPTH):
            envelope = {"body": json.dumps(envelope)}
        assert decode_event(envelope).node_id == "n9"

        with pytest.raises(ValidationError):
            decode_event({"body": envelope})

    @pytest.mark.parametrize("literal", ["Infinity", "-Infinity", "NaN"])
    def test_non_finite_inventory_in_json_text(self, literal):
        raw = json.dumps(make_event()).replace(
            '"currentInventory": 480', f'"currentInventory": {literal}'
        )
        with pytest.raises(ValidationError):
            decode_event(raw)

    @pytest.mark.parametrize("value", [float("inf"), float("nan")])
    def test_non_finite_utilization(self, value):
        with pytest.raises(ValidationError):
            decode_event(make_event(utilization=value))
