"""Tests for lineage tracking and the daily data-quality report."""

from __future__ import annotations

import json
from datetime import date, timedelta, timezone

import pytest

from src.fusion.base import Contributor, FusedDataPoint, Health
from src.fusion.config_loader import FusionConfig
from src.fusion.lineage import LineageTracker, lineage_id, local_date
from src.models.events import EventType
from src.fusion.tests.conftest import DAY_START_MS, HOUR_MS, TEST_DATE


def fused(timestamp: int, confidence: float, source: str = "health_connect") -> FusedDataPoint:
    return FusedDataPoint(
        timestamp=timestamp, type=EventType.STEPS, value=100, source_name=source, confidence=confidence
    )


@pytest.fixture
def tracker(fusion_config: FusionConfig) -> LineageTracker:
    return LineageTracker(fusion_config)


class TestRecord:
    def test_deterministic_id(self, tracker: LineageTracker) -> None:
        lid = tracker.record(fused(1000, 0.9), [])
        assert lid == "steps_1000_health_connect"
        assert lid == lineage_id("steps", 1000, "health_connect")

    def test_rerecord_overwrites(self, tracker: LineageTracker) -> None:
        tracker.record(fused(1000, 0.9), [])
        tracker.record(fused(1000, 0.5), [Contributor("google_fit", 98, 1.0, 0.85)])
        assert len(tracker) == 1
        rec = tracker.get("steps_1000_health_connect")
        assert rec is not None
        assert rec.confidence == pytest.approx(0.5)
        assert rec.contributors[0].source == "google_fit"

    def test_records_sorted(self, tracker: LineageTracker) -> None:
        for ts in (300, 100, 200):
            tracker.record(fused(ts, 0.9), [])
        assert [r.timestamp for r in tracker.records()] == [100, 200, 300]

    def test_unknown_id(self, tracker: LineageTracker) -> None:
        assert tracker.get("nope") is None

    def test_record_row(self, tracker: LineageTracker) -> None:
        lid = tracker.record(
            fused(1000, 0.9),
            [Contributor("health_connect", 100, 1.0, 0.95)],
            [{"type": "time_bucketing", "width_ms": 300000}],
        )
        row = tracker.get(lid).to_record()
        assert row["id"] == lid
        assert json.loads(row["contributors"])[0]["source"] == "health_connect"
        assert json.loads(row["transformations"]) == [{"type": "time_bucketing", "width_ms": 300000}]


class TestDailyReport:
    def test_poor_quality_day(self, tracker: LineageTracker) -> None:
        confidences = [0.9, 0.85, 0.95, 0.7, 0.65, 0.8, 0.5, 0.4, 0.3, 0.55]
        for i, conf in enumerate(confidences):
            tracker.record(fused(DAY_START_MS + i * HOUR_MS, conf), [])
        report = tracker.daily_report(TEST_DATE)
        assert report.total == 10
        assert report.confidence_histogram == {"high": 4, "medium": 2, "low": 4}
        assert report.low_confidence_ratio == pytest.approx(0.4)
        assert report.data_quality is Health.POOR

    def test_fair_quality_day(self, tracker: LineageTracker) -> None:
        for i, conf in enumerate([0.9] * 8 + [0.3] * 2):
            tracker.record(fused(DAY_START_MS + i * HOUR_MS, conf), [])
        assert tracker.daily_report(TEST_DATE).data_quality is Health.FAIR

    def test_good_quality_day(self, tracker: LineageTracker) -> None:
        for i in range(5):
            tracker.record(fused(DAY_START_MS + i * HOUR_MS, 0.9), [])
        assert tracker.daily_report(TEST_DATE).data_quality is Health.GOOD

    def test_empty_day(self, tracker: LineageTracker) -> None:
        report = tracker.daily_report(TEST_DATE)
        assert report.total == 0
        assert report.data_quality is Health.GOOD

    def test_only_requested_day(self, tracker: LineageTracker) -> None:
        tracker.record(fused(DAY_START_MS + HOUR_MS, 0.9), [])
        tracker.record(fused(DAY_START_MS + 25 * HOUR_MS, 0.9), [])
        assert tracker.daily_report(TEST_DATE).total == 1

    def test_by_source_and_transformations(self, tracker: LineageTracker) -> None:
        steps = [{"type": "time_bucketing"}, {"type": "aggregation"}]
        tracker.record(fused(DAY_START_MS, 0.9), [], steps)
        tracker.record(fused(DAY_START_MS + HOUR_MS, 0.9, "google_fit"), [], steps)
        report = tracker.daily_report(TEST_DATE)
        assert report.by_source == {"health_connect": 1, "google_fit": 1}
        assert report.transformations == {"time_bucketing": 2, "aggregation": 2}

    def test_timezone_shifts_the_day(self, fusion_config: FusionConfig) -> None:
        # 23:30 UTC on the 14th is already the 15th in UTC+2
        tracker = LineageTracker(fusion_config, tz=timezone(timedelta(hours=2)))
        tracker.record(fused(DAY_START_MS + 23 * HOUR_MS + 30 * 60_000, 0.9), [])
        assert tracker.daily_report(TEST_DATE).total == 0
        assert tracker.daily_report(date(2026, 3, 15)).total == 1


def test_local_date() -> None:
    assert local_date(DAY_START_MS, timezone.utc) == TEST_DATE
