"""Tests for RawEvent validation and coercion."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.fusion.errors import CorruptEventError
from src.models.events import EventType, RawEvent, coerce_event
from src.fusion.tests.conftest import make_event


class TestCoerceEvent:
    def test_snake_case_mapping(self) -> None:
        event = coerce_event(
            {"id": "e1", "type": "steps", "timestamp": 1000, "value": 120, "source_name": "google_fit"}
        )
        assert event.type is EventType.STEPS
        assert event.numeric_value == pytest.approx(120.0)

    def test_camel_case_mapping(self) -> None:
        event = coerce_event(
            {"type": "calls", "timestamp": 5, "sourceName": "call_log", "confidenceHint": 0.7}
        )
        assert event.source_name == "call_log"
        assert event.confidence_hint == pytest.approx(0.7)

    def test_missing_id_is_derived(self) -> None:
        event = coerce_event({"type": "sleep", "timestamp": 42}, source_name="samsung_health")
        assert event.id.startswith("samsung_health:sleep:42:")

    def test_derived_id_depends_on_content(self) -> None:
        strava = {"type": "app_usage", "timestamp": 7, "attributes": {"app_name": "Strava"}}
        instagram = {"type": "app_usage", "timestamp": 7, "attributes": {"app_name": "Instagram"}}
        first = coerce_event(strava, source_name="app_usage")
        assert first.id != coerce_event(instagram, source_name="app_usage").id
        assert first.id == coerce_event(dict(strava), source_name="app_usage").id

    def test_source_fallback_does_not_override(self) -> None:
        event = coerce_event({"type": "steps", "timestamp": 1, "source_name": "gps"}, source_name="x")
        assert event.source_name == "gps"

    def test_float_timestamp_truncated(self) -> None:
        event = coerce_event({"type": "steps", "timestamp": 1500.7, "source_name": "gps"})
        assert event.timestamp == 1500

    def test_existing_model_passes_through(self) -> None:
        event = make_event(EventType.STEPS, 10, value=5)
        assert coerce_event(event) is event

    @pytest.mark.parametrize(
        "item",
        [
            {"type": "steps", "source_name": "gps"},  # no timestamp
            {"timestamp": 1000, "source_name": "gps"},  # no type
            {"type": "teleport", "timestamp": 1000, "source_name": "gps"},
            {"type": "steps", "timestamp": -1, "source_name": "gps"},
            {"type": "steps", "timestamp": 1, "source_name": "gps", "confidence_hint": 1.5},
            {"type": "steps", "timestamp": 1},  # no source at all
            "not an event",
        ],
    )
    def test_corrupt_items_raise(self, item: object) -> None:
        with pytest.raises(CorruptEventError):
            coerce_event(item)  # type: ignore[arg-type]


class TestRawEvent:
    def test_is_frozen(self) -> None:
        event = make_event(EventType.STEPS, 10, value=5)
        with pytest.raises(ValidationError):
            event.value = 6  # type: ignore[misc]

    def test_duration_and_end(self) -> None:
        event = make_event(EventType.WORKOUT, 1000, duration=1_800_000)
        assert event.duration_ms == 1_800_000
        assert event.end_timestamp == 1_801_000

    def test_instantaneous_event(self) -> None:
        event = make_event(EventType.LOCATION, 1000, name="Home")
        assert event.duration_ms == 0
        assert event.end_timestamp == 1000

    def test_boolean_value_is_not_numeric(self) -> None:
        assert make_event(EventType.CALLS, 1, value=True).numeric_value is None

    def test_strength_defaults_and_clamps(self) -> None:
        assert make_event(EventType.STEPS, 1).strength == pytest.approx(0.5)
        assert make_event(EventType.STEPS, 1, strength=3).strength == pytest.approx(1.0)
        assert make_event(EventType.STEPS, 1, strength=0.8).strength == pytest.approx(0.8)

    def test_direct_construction_validates(self) -> None:
        with pytest.raises(ValidationError):
            RawEvent(id="x", type="steps", timestamp=-5, source_name="gps")
