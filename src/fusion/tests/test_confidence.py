"""Tests for confidence scoring — base confidence, boosts, clamping."""

from __future__ import annotations

from dataclasses import replace

import pytest

from src.fusion.base import (
    FusedDataPoint,
    HistoricalAverage,
    LocationContext,
    ScoringContext,
    ShadowReading,
)
from src.fusion.confidence import ConfidenceScorer, location_matches
from src.fusion.config_loader import FusionConfig
from src.models.events import EventType


def point(event_type: EventType, value: float, source: str = "manual") -> FusedDataPoint:
    return FusedDataPoint(timestamp=0, type=event_type, value=value, source_name=source)


@pytest.fixture
def scorer(fusion_config: FusionConfig) -> ConfidenceScorer:
    return ConfidenceScorer(fusion_config)


class TestBaseConfidence:
    def test_known_source(self, scorer: ConfidenceScorer) -> None:
        result = scorer.score(point(EventType.STEPS, 100, "google_fit"))
        assert result.confidence == pytest.approx(0.85)
        assert result.boost == pytest.approx(0.0)
        assert result.reasons == []

    def test_unknown_source_defaults(self, scorer: ConfidenceScorer) -> None:
        assert scorer.score(point(EventType.STEPS, 100, "pedometer_x")).confidence == pytest.approx(0.50)


class TestLocationBoosts:
    def test_workout_at_gym(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="Basic-Fit Gym"))
        result = scorer.score(point(EventType.WORKOUT, 30), ctx)
        assert result.confidence == pytest.approx(0.65)
        assert "Basic-Fit Gym" in result.reasons[0]

    def test_workout_elsewhere(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="Central Park"))
        assert scorer.score(point(EventType.WORKOUT, 30), ctx).confidence == pytest.approx(0.50)

    def test_sleep_at_home_by_category(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="Apartment", category="home"))
        assert scorer.score(point(EventType.SLEEP, 7), ctx).confidence == pytest.approx(0.60)

    def test_steps_outdoors(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="Park", accuracy_m=8))
        assert scorer.score(point(EventType.STEPS, 500), ctx).confidence == pytest.approx(0.58)

    def test_steps_with_poor_gps(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="Mall", accuracy_m=65))
        assert scorer.score(point(EventType.STEPS, 500), ctx).confidence == pytest.approx(0.50)

    def test_gym_does_not_boost_sleep(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(location=LocationContext(name="CrossFit Box"))
        assert scorer.score(point(EventType.SLEEP, 7), ctx).confidence == pytest.approx(0.50)


class TestCrossSource:
    def test_strong_agreement(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(shadow_readings=(ShadowReading("google_fit", 9050),))
        result = scorer.score(point(EventType.STEPS, 9000), ctx)
        assert result.boost == pytest.approx(0.12)
        assert result.confidence == pytest.approx(0.62)

    def test_weak_agreement(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(shadow_readings=(ShadowReading("google_fit", 8500),))
        # deviation = 1500 / 10000 = 0.15
        result = scorer.score(point(EventType.STEPS, 10000), ctx)
        assert result.boost == pytest.approx(0.06)

    def test_disagreement_adds_nothing(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(shadow_readings=(ShadowReading("google_fit", 5000),))
        assert scorer.score(point(EventType.STEPS, 10000), ctx).boost == pytest.approx(0.0)

    def test_boost_is_capped(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(
            shadow_readings=(
                ShadowReading("google_fit", 9000),
                ShadowReading("samsung_health", 9010),
                ShadowReading("health_connect", 8990),
            )
        )
        result = scorer.score(point(EventType.STEPS, 9000), ctx)
        assert result.boost == pytest.approx(0.20)
        assert len(result.adjustments) == 2

    def test_same_source_shadow_ignored(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(shadow_readings=(ShadowReading("manual", 9000),))
        assert scorer.score(point(EventType.STEPS, 9000), ctx).boost == pytest.approx(0.0)


class TestHistory:
    def test_consistent(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(history=HistoricalAverage(average=8000))
        result = scorer.score(point(EventType.STEPS, 8500), ctx)
        assert result.confidence == pytest.approx(0.58)
        assert result.reasons == ["Consistent with pattern"]

    def test_unusual(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(history=HistoricalAverage(average=8000))
        result = scorer.score(point(EventType.STEPS, 20000), ctx)
        assert result.confidence == pytest.approx(0.45)
        assert result.reasons == ["Unusual compared to pattern"]

    def test_in_between_is_neutral(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(history=HistoricalAverage(average=8000))
        assert scorer.score(point(EventType.STEPS, 10400), ctx).adjustments == []


class TestBounds:
    def test_upper_clamp(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(
            location=LocationContext(name="Gym"),
            shadow_readings=(ShadowReading("google_fit", 30),),
            history=HistoricalAverage(average=30),
        )
        result = scorer.score(point(EventType.WORKOUT, 30, "health_connect"), ctx)
        assert result.confidence == pytest.approx(0.99)

    def test_lower_clamp(self, fusion_config: FusionConfig) -> None:
        harsh = replace(fusion_config, scoring=replace(fusion_config.scoring, unusual_penalty=0.9))
        ctx = ScoringContext(history=HistoricalAverage(average=1))
        result = ConfidenceScorer(harsh).score(point(EventType.STEPS, 1000), ctx)
        assert result.boost == pytest.approx(-0.9)
        assert result.confidence == pytest.approx(0.10)

    @pytest.mark.parametrize("source", ["health_connect", "manual", "unknown"])
    @pytest.mark.parametrize("value", [0, 1, 9000, 1e9])
    def test_always_within_bounds(self, scorer: ConfidenceScorer, source: str, value: float) -> None:
        ctx = ScoringContext(
            location=LocationContext(name="Home Gym", category="home", accuracy_m=1),
            shadow_readings=(ShadowReading("a", value), ShadowReading("b", value * 1.05)),
            history=HistoricalAverage(average=value),
        )
        for event_type in EventType:
            result = scorer.score(point(event_type, value, source), ctx)
            assert 0.10 <= result.confidence <= 0.99

    def test_confidence_reproducible_from_adjustments(self, scorer: ConfidenceScorer) -> None:
        ctx = ScoringContext(
            location=LocationContext(name="Park", accuracy_m=5),
            shadow_readings=(ShadowReading("google_fit", 4100),),
            history=HistoricalAverage(average=4000),
        )
        result = scorer.score(point(EventType.STEPS, 4000), ctx)
        total = result.base_confidence + sum(a.amount for a in result.adjustments)
        assert result.confidence == pytest.approx(min(max(total, 0.10), 0.99))


class TestLocationMatches:
    def test_keyword_in_name(self) -> None:
        assert location_matches(LocationContext(name="My SportSchool"), ("sportschool",), "gym")

    def test_category_wins(self) -> None:
        assert location_matches(LocationContext(name="Unit 4", category="GYM"), (), "gym")

    def test_no_match(self) -> None:
        assert not location_matches(LocationContext(name="Library"), ("gym",), "gym")
