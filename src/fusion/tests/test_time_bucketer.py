"""Tests for time bucketing — slot alignment and per-source aggregation."""

from __future__ import annotations

import pytest

from src.fusion.time_bucketer import TimeBucketer, aggregate_source, slot_for
from src.models.events import EventType
from src.fusion.tests.conftest import make_event

WIDTH = 300_000


class TestSlotFor:
    @pytest.mark.parametrize(
        ("timestamp", "start"),
        [(0, 0), (299_999, 0), (300_000, 300_000), (1_002_000, 900_000)],
    )
    def test_floor_alignment(self, timestamp: int, start: int) -> None:
        slot = slot_for(timestamp, WIDTH)
        assert slot.start == start
        assert slot.end == start + WIDTH
        assert slot.contains(timestamp)

    def test_slot_is_half_open(self) -> None:
        slot = slot_for(0, WIDTH)
        assert not slot.contains(WIDTH)


class TestAggregateSource:
    def test_numeric_stats(self) -> None:
        events = [
            make_event(EventType.STEPS, 10, value=100),
            make_event(EventType.STEPS, 20, value=300),
            make_event(EventType.STEPS, 30, value=200),
        ]
        agg = aggregate_source(events)
        stats = agg.numeric["value"]
        assert agg.count == 3
        assert stats.sum == pytest.approx(600.0)
        assert stats.avg == pytest.approx(200.0)
        assert stats.min == pytest.approx(100.0)
        assert stats.max == pytest.approx(300.0)
        assert stats.count == 3

    def test_categorical_values_deduplicated_in_order(self) -> None:
        events = [
            make_event(EventType.LOCATION, 10, source="gps", name="Home"),
            make_event(EventType.LOCATION, 20, source="gps", name="Office"),
            make_event(EventType.LOCATION, 30, source="gps", name="Home"),
        ]
        agg = aggregate_source(events)
        assert agg.categorical["name"] == ["Home", "Office"]

    def test_booleans_are_categorical(self) -> None:
        agg = aggregate_source([make_event(EventType.CALLS, 1, source="call_log", missed=True)])
        assert agg.categorical["missed"] == [True]
        assert "missed" not in agg.numeric

    def test_numeric_attributes_aggregate(self) -> None:
        events = [
            make_event(EventType.HEART_RATE, 1, value=60, accuracy=2),
            make_event(EventType.HEART_RATE, 2, value=70, accuracy=4),
        ]
        agg = aggregate_source(events)
        assert agg.numeric["accuracy"].avg == pytest.approx(3.0)

    def test_nested_values_ignored(self) -> None:
        agg = aggregate_source([make_event(EventType.WORKOUT, 1, laps=[1, 2], gear={"id": 3})])
        assert "laps" not in agg.numeric and "laps" not in agg.categorical
        assert "gear" not in agg.numeric and "gear" not in agg.categorical


class TestTimeBucketer:
    def test_sparse_slots_ordered(self) -> None:
        sources = {
            "health_connect": [
                make_event(EventType.STEPS, 1_000_000, value=50),
                make_event(EventType.STEPS, 10, value=20),
            ],
        }
        buckets = TimeBucketer().bucket(sources, WIDTH)
        assert list(buckets) == [0, 900_000]

    def test_sources_share_a_slot(self) -> None:
        sources = {
            "health_connect": [make_event(EventType.STEPS, 100, value=9000)],
            "google_fit": [make_event(EventType.STEPS, 250_000, source="google_fit", value=9050)],
        }
        buckets = TimeBucketer().bucket(sources, WIDTH)
        assert list(buckets) == [0]
        assert set(buckets[0].sources) == {"health_connect", "google_fit"}

    def test_lineage_breadcrumbs(self) -> None:
        sources = {
            "health_connect": [
                make_event(EventType.STEPS, 100, value=1),
                make_event(EventType.STEPS, 200, value=2),
            ],
        }
        lineage = TimeBucketer().bucket(sources, WIDTH)[0].lineage
        assert len(lineage) == 1
        assert lineage[0].source == "health_connect"
        assert lineage[0].count == 2
        assert lineage[0].time_range == (100, 200)

    def test_empty_input(self) -> None:
        assert TimeBucketer().bucket({}, WIDTH) == {}
        assert TimeBucketer().bucket({"gps": []}, WIDTH) == {}

    @pytest.mark.parametrize("width", [0, -5])
    def test_non_positive_width_raises(self, width: int) -> None:
        with pytest.raises(ValueError):
            TimeBucketer().bucket({}, width)

    def test_deterministic_and_idempotent(self) -> None:
        events = [make_event(EventType.STEPS, t, value=t % 7) for t in range(0, 2_000_000, 123_457)]
        first = TimeBucketer().bucket({"health_connect": events}, WIDTH)
        second = TimeBucketer().bucket({"health_connect": list(reversed(events))}, WIDTH)
        assert list(first) == list(second)
        for start in first:
            a = first[start].sources["health_connect"]
            b = second[start].sources["health_connect"]
            assert a.numeric == b.numeric
            assert [e.id for e in a.events] == [e.id for e in b.events]

    def test_rebucketing_slot_events_reproduces_aggregates(self) -> None:
        events = [make_event(EventType.STEPS, t, value=10) for t in (5, 400_000, 410_000, 900_001)]
        buckets = TimeBucketer().bucket({"health_connect": events}, WIDTH)
        for start, bucket in buckets.items():
            again = TimeBucketer().bucket(
                {"health_connect": bucket.sources["health_connect"].events}, WIDTH
            )
            assert list(again) == [start]
            assert again[start].sources["health_connect"].numeric == bucket.sources["health_connect"].numeric
