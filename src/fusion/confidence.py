"""Confidence scoring for fused datapoints.

Scores are built additively: a fixed per-source base confidence plus
contextual boosts, each of which carries a human-readable reason::

    base (per source, unknown → 0.50)
    + location     workout at a gym-like place, sleep at home, steps outdoors
    + cross-source each agreeing shadow (+0.12 / +0.06), capped at +0.20
    ± history      within 15 % of the usual value (+0.08), beyond 50 % (−0.05)

The final value is clamped to [0.10, 0.99]: never total distrust and never
absolute certainty.  All weights come from fusion_config.yaml.
"""

from __future__ import annotations

import logging

from src.fusion.base import (
    Adjustment,
    ConfidenceScore,
    FusedDataPoint,
    LocationContext,
    ScoringContext,
)
from src.fusion.config_loader import FusionConfig, get_fusion_config
from src.fusion.shadow_validator import deviation
from src.models.events import EventType

logger = logging.getLogger("minakami.fusion.confidence")


def clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def location_matches(location: LocationContext, keywords: tuple[str, ...], category: str) -> bool:
    """True if a place is tagged with ``category`` or its name contains a keyword."""
    if location.category and location.category.lower() == category:
        return True
    name = location.name.lower()
    return any(word in name for word in keywords)


class ConfidenceScorer:
    """Pure confidence scorer; persisting the result is the caller's job.

    Usage::

        scorer = ConfidenceScorer()
        result = scorer.score(point, ScoringContext(shadow_readings=(...,)))
        result.confidence, result.reasons
    """

    def __init__(self, config: FusionConfig | None = None) -> None:
        self._config = config or get_fusion_config()
        self._scoring = self._config.scoring
        self._keywords = self._config.correlation.keywords

    def base_confidence(self, source: str) -> float:
        return self._config.source_confidence(source)

    def score(self, point: FusedDataPoint, context: ScoringContext | None = None) -> ConfidenceScore:
        """Score one datapoint against its corroborating context.

        Args:
            point:   The datapoint (its ``source_name``, ``type`` and ``value`` are used).
            context: Location, shadow readings and historical average, any of
                     which may be absent.

        Returns:
            ConfidenceScore whose confidence equals the clamped sum of the base
            and every listed adjustment.
        """
        context = context or ScoringContext()
        base = self.base_confidence(point.source_name)

        adjustments: list[Adjustment] = []
        adjustments.extend(self._location_adjustments(point, context.location))
        adjustments.extend(self._cross_source_adjustments(point, context))
        adjustments.extend(self._history_adjustments(point, context))

        boost = sum(a.amount for a in adjustments)
        confidence = clamp(base + boost, self._scoring.min_confidence, self._scoring.max_confidence)
        return ConfidenceScore(
            confidence=round(confidence, 4),
            base_confidence=base,
            boost=round(boost, 4),
            adjustments=adjustments,
        )

    # ------------------------------------------------------------------
    # Individual signals
    # ------------------------------------------------------------------

    def _location_adjustments(
        self, point: FusedDataPoint, location: LocationContext | None
    ) -> list[Adjustment]:
        if location is None:
            return []
        sc = self._scoring
        out: list[Adjustment] = []
        label = location.name or location.category or "this location"

        if point.type is EventType.WORKOUT and location_matches(
            location, self._keywords.get("gym", ()), "gym"
        ):
            out.append(Adjustment("location", sc.gym_workout_boost, f"Workout at gym location ({label})"))

        if point.type is EventType.SLEEP and location_matches(
            location, self._keywords.get("home", ()), "home"
        ):
            out.append(Adjustment("location", sc.home_sleep_boost, f"Sleep recorded at home ({label})"))

        if (
            point.type is EventType.STEPS
            and location.accuracy_m is not None
            and location.accuracy_m <= sc.outdoor_max_accuracy_m
        ):
            out.append(
                Adjustment(
                    "location",
                    sc.outdoor_steps_boost,
                    f"Steps recorded outdoors (GPS accuracy {location.accuracy_m:.0f} m)",
                )
            )
        return out

    def _cross_source_adjustments(
        self, point: FusedDataPoint, context: ScoringContext
    ) -> list[Adjustment]:
        sc = self._scoring
        out: list[Adjustment] = []
        remaining = sc.max_cross_source_boost

        for shadow in context.shadow_readings:
            if shadow.source == point.source_name or remaining <= 0:
                continue
            dev = deviation(point.value, shadow.value)
            if dev < sc.strong_agreement_deviation:
                amount = sc.strong_agreement_boost
            elif dev < sc.weak_agreement_deviation:
                amount = sc.weak_agreement_boost
            else:
                continue
            amount = min(amount, remaining)
            remaining -= amount
            out.append(
                Adjustment(
                    "cross_source",
                    round(amount, 4),
                    f"Confirmed by {shadow.source} ({dev:.1%} deviation)",
                )
            )
        return out

    def _history_adjustments(
        self, point: FusedDataPoint, context: ScoringContext
    ) -> list[Adjustment]:
        if context.history is None:
            return []
        sc = self._scoring
        average = context.history.average
        rel = abs(point.value - average) / max(abs(average), 1.0)

        if rel <= sc.consistent_deviation:
            return [Adjustment("history", sc.consistent_boost, "Consistent with pattern")]
        if rel > sc.unusual_deviation:
            return [Adjustment("history", -sc.unusual_penalty, "Unusual compared to pattern")]
        return []
