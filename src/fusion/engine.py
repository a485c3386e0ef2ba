"""Daily fusion pass — the orchestrator tying every component together.

For one calendar day:

1. fetch the day's events from the data store and validate them,
2. per event type, bucket every source onto the slot grid and fuse each
   slot into one confidence-scored datapoint (primary source, shadow
   validation, lineage),
3. correlate all events and compose ranked narratives,
4. summarise lineage and dataset health, and emit pattern and
   data-quality insights.

Store lookups are the only awaited calls.  Each one is guarded by a
timeout; a failing lookup removes its contribution and nothing else.
Persisting the result is a separate, explicit ``save`` call.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timezone, tzinfo
from typing import Any, Awaitable, Mapping, Sequence

from src.fusion.base import (
    Contributor,
    Correlation,
    DailyFusionResult,
    DataQualityInsight,
    FusedDataPoint,
    Health,
    HistoricalAverage,
    LocationContext,
    NumericStats,
    ScoringContext,
    ShadowReading,
    SlotBucket,
    TimeSlot,
    ValidationReport,
)
from src.fusion.confidence import ConfidenceScorer
from src.fusion.config_loader import FusionConfig, get_fusion_config
from src.fusion.correlation_engine import CorrelationEngine, HistoricalSupport
from src.fusion.errors import CorruptEventError, SourceUnavailableError
from src.fusion.event_types import location_name
from src.fusion.lineage import LineageTracker
from src.fusion.narrative import NarrativeComposer
from src.fusion.shadow_validator import ShadowValidator
from src.fusion.store import DataStore
from src.fusion.time_bucketer import TimeBucketer
from src.models.events import EventType, RawEvent, coerce_event

logger = logging.getLogger("minakami.fusion.engine")

DEFAULT_BUCKET_WIDTH_MS = 5 * 60 * 1000


def aggregate_value(stats: NumericStats, method: str) -> float:
    """Collapse a slot's running statistics with the configured method."""
    return {
        "sum": stats.sum,
        "avg": stats.avg,
        "min": stats.min,
        "max": stats.max,
    }[method]


def _as_history(raw: Any) -> HistoricalAverage | None:
    """Normalise whatever the store returned into a HistoricalAverage."""
    if raw is None or isinstance(raw, HistoricalAverage):
        return raw
    if isinstance(raw, Mapping):
        average = raw.get("average")
        if isinstance(average, (int, float)) and not isinstance(average, bool):
            return HistoricalAverage(float(average), raw.get("sample_count"))
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return HistoricalAverage(float(raw))
    return None


class FusionEngine:
    """Runs the complete fusion pipeline for one user's day.

    Usage::

        engine = FusionEngine(store)
        result = await engine.run_day(date(2026, 3, 14))
        for narrative in result.narratives:
            print(narrative.text)
        await engine.save(result)

    Args:
        store:              Data store collaborator.
        config:             FusionConfig (loaded from singleton if None).
        bucket_width_ms:    Slot width for time bucketing.
        timeout:            Per-lookup store timeout, in seconds.
        tz:                 Timezone defining calendar days and bedtimes.
        historical_support: Optional correlation support hook.
    """

    def __init__(
        self,
        store: DataStore,
        config: FusionConfig | None = None,
        bucket_width_ms: int = DEFAULT_BUCKET_WIDTH_MS,
        timeout: float = 2.0,
        tz: tzinfo = timezone.utc,
        historical_support: HistoricalSupport | None = None,
    ) -> None:
        if bucket_width_ms <= 0:
            raise ValueError(f"Slot width must be positive, got {bucket_width_ms}")
        self._store = store
        self._config = config or get_fusion_config()
        self._width_ms = bucket_width_ms
        self._timeout = timeout
        self._tz = tz

        self.bucketer = TimeBucketer()
        self.scorer = ConfidenceScorer(self._config)
        self.validator = ShadowValidator(self._config)
        self.lineage = LineageTracker(self._config, tz=tz)
        self.correlator = CorrelationEngine(self._config, historical_support)
        self.composer = NarrativeComposer(self._config, tz=tz)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run_day(self, day: date) -> DailyFusionResult:
        """Fuse, validate, correlate and narrate one calendar day.

        Args:
            day: Calendar date in the engine's timezone.

        Returns:
            DailyFusionResult.  A day the store cannot deliver is an empty
            result, not an error.
        """
        raw = await self._fetch_events(day)
        events, dropped = self._coerce(raw)
        result = DailyFusionResult(date=day, dropped_events=dropped)

        locations = sorted(
            (e for e in events if e.type is EventType.LOCATION),
            key=lambda e: (e.timestamp, e.id),
        )

        for event_type in EventType:
            if event_type is EventType.LOCATION:
                continue
            per_source: dict[str, list[RawEvent]] = {}
            for event in events:
                if event.type is event_type and event.numeric_value is not None:
                    per_source.setdefault(event.source_name, []).append(event)
            if not per_source:
                continue

            buckets = self.bucketer.bucket(per_source, self._width_ms)
            for bucket in buckets.values():
                point, report = await self._fuse_slot(event_type, bucket, locations)
                result.fused_points.append(point)
                result.validation_reports.append(report)

        result.dataset_health = self.validator.assess(result.validation_reports)
        result.correlations = self.correlator.analyze(events)
        result.narratives = self.composer.compose_all(result.correlations)
        result.lineage_report = self.lineage.daily_report(day)
        result.insights = self._insights(events, result)

        logger.info(
            "Fusion pass %s: %d events (%d dropped), %d points, %d correlations, "
            "%d narratives, health=%s",
            day.isoformat(), len(events), dropped, len(result.fused_points),
            len(result.correlations), len(result.narratives), result.dataset_health.value,
        )
        return result

    async def save(self, result: DailyFusionResult) -> None:
        """Persist a pass through the store's save methods.

        Store errors propagate: unlike lookups, a failed save is the
        caller's to handle.
        """
        records = [
            rec for rec in (self.lineage.get(p.lineage_id) for p in result.fused_points if p.lineage_id)
            if rec is not None
        ]
        await self._store.save_fused_points(result.fused_points)
        await self._store.save_lineage(records)
        await self._store.save_validation_results(
            [r for report in result.validation_reports for r in report.results]
        )
        await self._store.save_correlations(result.correlations, result.narratives)
        logger.info(
            "Saved %s: %d points, %d lineage records, %d correlations",
            result.date.isoformat(), len(result.fused_points), len(records),
            len(result.correlations),
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _guarded(self, awaitable: Awaitable[Any], source: str, operation: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except Exception as exc:  # every store failure is a soft failure
            raise SourceUnavailableError(source, operation, exc) from exc

    async def _fetch_events(self, day: date) -> Mapping[str, Sequence[Any]]:
        try:
            raw = await self._guarded(self._store.get_events_for_day(day), "store", "events for day")
        except SourceUnavailableError as exc:
            logger.warning("No events for %s: %s", day.isoformat(), exc)
            return {}
        return raw or {}

    def _coerce(self, raw: Mapping[str, Sequence[Any]]) -> tuple[list[RawEvent], int]:
        """Validate every collected item; corrupt ones are dropped and counted."""
        events: dict[str, RawEvent] = {}
        dropped = 0
        for source, items in raw.items():
            for item in items:
                try:
                    event = coerce_event(item, source_name=source)
                except CorruptEventError as exc:
                    dropped += 1
                    logger.warning("Dropping corrupt event from %s: %s", source, exc)
                    continue
                if event.id in events:
                    logger.warning("Ignoring duplicate event %s from %s", event.id, source)
                    continue
                events[event.id] = event
        return sorted(events.values(), key=lambda e: (e.timestamp, e.id)), dropped

    # ------------------------------------------------------------------
    # Slot fusion
    # ------------------------------------------------------------------

    def select_primary(self, sources: Sequence[str]) -> str:
        """Highest base confidence wins; ties go to the alphabetically first name."""
        return min(sources, key=lambda s: (-self._config.source_confidence(s), s))

    def location_context(
        self, locations: Sequence[RawEvent], slot: TimeSlot
    ) -> LocationContext | None:
        """Nearest location fix within the configured window of the slot."""
        window = self._config.scoring.location_match_window_ms
        best: tuple[int, RawEvent] | None = None
        for event in locations:
            if event.timestamp < slot.start:
                distance = slot.start - event.timestamp
            elif event.timestamp >= slot.end:
                distance = event.timestamp - slot.end + 1
            else:
                distance = 0
            if distance <= window and (best is None or distance < best[0]):
                best = (distance, event)
        if best is None:
            return None

        event = best[1]
        accuracy = event.attributes.get("accuracy_m", event.attributes.get("accuracy"))
        category = event.attributes.get("category")
        return LocationContext(
            name=location_name(event) or "",
            category=category if isinstance(category, str) else None,
            accuracy_m=(
                float(accuracy)
                if isinstance(accuracy, (int, float)) and not isinstance(accuracy, bool)
                else None
            ),
        )

    async def _historical_average(self, event_type: EventType, timestamp: int) -> HistoricalAverage | None:
        try:
            raw = await self._guarded(
                self._store.get_historical_average(event_type.value, timestamp),
                "history", "historical average",
            )
        except SourceUnavailableError as exc:
            logger.debug("Skipping history adjustment: %s", exc)
            return None
        return _as_history(raw)

    async def _fuse_slot(
        self,
        event_type: EventType,
        bucket: SlotBucket,
        locations: Sequence[RawEvent],
    ) -> tuple[FusedDataPoint, ValidationReport]:
        slot = bucket.slot
        method = self._config.fusion.aggregation_for(event_type.value)
        readings = {
            source: aggregate_value(agg.numeric["value"], method)
            for source, agg in bucket.sources.items()
        }
        primary = self.select_primary(sorted(readings))
        base = self._config.source_confidence(primary)
        point = FusedDataPoint(
            timestamp=slot.start,
            type=event_type,
            value=readings[primary],
            source_name=primary,
            confidence=base,
            base_confidence=base,
        )

        in_slot = [
            ShadowReading(source=source, value=value)
            for source, value in sorted(readings.items())
            if source != primary
        ]
        store_sources = [
            s for s in self._config.validation.shadow_sources.get(event_type.value, ())
            if s not in readings
        ]
        report = await self.validator.validate_from_store(
            point, store_sources, self._store, self._timeout, extra_shadows=in_slot
        )

        context = ScoringContext(
            location=self.location_context(locations, slot),
            shadow_readings=tuple(
                ShadowReading(r.shadow_source, r.shadow_value) for r in report.results
            ),
            history=await self._historical_average(event_type, slot.start),
        )
        score = self.scorer.score(point, context)
        point.confidence = score.confidence
        point.boost_reasons = score.reasons
        point.adjustments = score.adjustments

        total = sum(agg.count for agg in bucket.sources.values())
        contributors = [
            Contributor(
                source=source,
                value=readings[source],
                weight=round(bucket.sources[source].count / total, 4),
                confidence=self._config.source_confidence(source),
            )
            for source in sorted(readings)
        ]
        transformations = [
            {"type": "time_bucketing", "slot_start": slot.start, "slot_end": slot.end,
             "width_ms": slot.width_ms},
            {"type": "aggregation", "method": method,
             "events": bucket.sources[primary].count},
            {"type": "primary_selection", "source": primary, "candidates": sorted(readings)},
            {"type": "shadow_validation",
             "compared": [r.shadow_source for r in report.results],
             "skipped": report.skipped_sources,
             "anomalies": len(report.anomalies)},
            {"type": "confidence_scoring", "base": base, "boost": score.boost,
             "confidence": score.confidence},
        ]
        point.lineage_id = self.lineage.record(point, contributors, transformations)
        return point, report

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def pattern_insights(self, correlations: Sequence[Correlation]) -> list[DataQualityInsight]:
        """One insight per matched rule, in rule order, with its match count."""
        counts: dict[str, int] = {}
        for correlation in correlations:
            counts[correlation.rule_id] = counts.get(correlation.rule_id, 0) + 1

        insights = []
        for rule_id, matches in counts.items():
            text = self._config.insights.for_rule(rule_id)
            insights.append(
                DataQualityInsight(
                    type=text.type,
                    severity=text.severity,
                    message=text.message.format(rule_id=rule_id, matches=matches),
                    recommendation=text.recommendation.format(rule_id=rule_id, matches=matches),
                    rule_id=rule_id,
                )
            )
        return insights

    def _insights(self, events: Sequence[RawEvent], result: DailyFusionResult) -> list[DataQualityInsight]:
        insights = self.pattern_insights(result.correlations)
        fusion = self._config.fusion

        if fusion.expected_sources:
            present = {e.source_name for e in events}
            found = [s for s in fusion.expected_sources if s in present]
            completeness = len(found) / len(fusion.expected_sources)
            if completeness < fusion.min_completeness:
                missing = [s for s in fusion.expected_sources if s not in present]
                insights.append(
                    DataQualityInsight(
                        type="data_completeness",
                        severity="warning",
                        message=f"Only {completeness:.0%} of expected data sources reported today",
                        recommendation=(
                            "Make sure all data sources are connected: " + ", ".join(missing)
                        ),
                        completeness=round(completeness, 4),
                    )
                )

        if result.dataset_health is Health.POOR:
            anomalies = sum(len(r.anomalies) for r in result.validation_reports)
            insights.append(
                DataQualityInsight(
                    type="source_disagreement",
                    severity="warning",
                    message=f"Data sources disagreed strongly ({anomalies} anomalies)",
                    recommendation="Check that devices are worn and synced correctly",
                )
            )

        report = result.lineage_report
        if report is not None and report.data_quality is Health.POOR:
            insights.append(
                DataQualityInsight(
                    type="low_confidence",
                    severity="info",
                    message=(
                        f"{report.low_confidence_ratio:.0%} of today's readings "
                        "have low confidence"
                    ),
                    recommendation="Readings from more reliable sources will raise confidence",
                )
            )
        return insights
