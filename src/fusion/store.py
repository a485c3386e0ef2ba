"""Data store interface consumed by the fusion engine.

The engine never talks to a database directly.  Hosts implement
``DataStore`` over whatever persistence they have; lookups may fail or be
slow, and the engine treats every failure as "no data" (see
``FusionEngine``).  ``InMemoryDataStore`` is the reference implementation
used by the tests and the command-line entry point.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, timezone, tzinfo
from typing import Any, Mapping, Sequence

from src.fusion.base import (
    Correlation,
    FusedDataPoint,
    GeneratedNarrative,
    HistoricalAverage,
    LineageRecord,
    ShadowValidationResult,
)
from src.fusion.lineage import local_date
from src.models.events import RawEvent

logger = logging.getLogger("minakami.fusion.store")

# A collected item: a validated event or the raw mapping a collector produced
EventItem = RawEvent | Mapping[str, Any]


class DataStore(ABC):
    """Abstract persistence boundary for one user's collected data.

    Subclasses must implement:
        - get_events_for_day()
        - get_shadow_reading()
        - get_historical_average()
        - save_fused_points()
        - save_lineage()
        - save_validation_results()
        - save_correlations()
    """

    @abstractmethod
    async def get_events_for_day(self, day: date) -> Mapping[str, Sequence[EventItem]]:
        """Return every event collected on ``day``, grouped by source name.

        Items may be raw mappings; the engine validates them and drops the
        corrupt ones.
        """

    @abstractmethod
    async def get_shadow_reading(self, source: str, timestamp: int, data_type: str) -> Any:
        """Return ``source``'s reading of ``data_type`` at ``timestamp``, or None."""

    @abstractmethod
    async def get_historical_average(
        self, data_type: str, timestamp: int
    ) -> HistoricalAverage | Mapping[str, Any] | float | None:
        """Return the usual value of ``data_type`` around this time of day, or None."""

    @abstractmethod
    async def save_fused_points(self, points: Sequence[FusedDataPoint]) -> None:
        """Persist fused datapoints (``confidence_data``)."""

    @abstractmethod
    async def save_lineage(self, records: Sequence[LineageRecord]) -> None:
        """Persist lineage records (``data_lineage``)."""

    @abstractmethod
    async def save_validation_results(self, results: Sequence[ShadowValidationResult]) -> None:
        """Persist shadow comparisons (``shadow_validation_logs``)."""

    @abstractmethod
    async def save_correlations(
        self,
        correlations: Sequence[Correlation],
        narratives: Sequence[GeneratedNarrative] = (),
    ) -> None:
        """Persist correlations with their narrative text (``event_correlations``)."""


class InMemoryDataStore(DataStore):
    """Dict-backed store; persisted rows are kept as ``to_record()`` dicts.

    Usage::

        store = InMemoryDataStore({"strava": [workout], "gps": [fix]})
        store.set_shadow_reading("google_fit", ts, "steps", 9050)
        store.set_historical_average("steps", 8800)
    """

    def __init__(
        self,
        events: Mapping[str, Sequence[EventItem]] | None = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._tz = tz
        self._events: dict[str, list[EventItem]] = defaultdict(list)
        self._shadows: dict[tuple[str, int, str], Any] = {}
        self._history: dict[str, HistoricalAverage] = {}

        self.fused_rows: list[dict] = []
        self.lineage_rows: list[dict] = []
        self.validation_rows: list[dict] = []
        self.correlation_rows: list[dict] = []

        for source, items in (events or {}).items():
            self.add_events(source, items)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_events(self, source: str, items: Sequence[EventItem]) -> None:
        self._events[source].extend(items)

    def set_shadow_reading(self, source: str, timestamp: int, data_type: str, value: Any) -> None:
        self._shadows[(source, timestamp, data_type)] = value

    def set_historical_average(
        self, data_type: str, average: float, sample_count: int | None = None
    ) -> None:
        self._history[data_type] = HistoricalAverage(average=average, sample_count=sample_count)

    # ------------------------------------------------------------------
    # DataStore
    # ------------------------------------------------------------------

    def _on_day(self, item: EventItem, day: date) -> bool:
        if isinstance(item, RawEvent):
            timestamp: Any = item.timestamp
        elif isinstance(item, Mapping):
            timestamp = item.get("timestamp")
        else:
            return True
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            # Malformed items are handed over so the engine can report them
            return True
        return local_date(int(timestamp), self._tz) == day

    async def get_events_for_day(self, day: date) -> dict[str, list[EventItem]]:
        grouped = {
            source: [item for item in items if self._on_day(item, day)]
            for source, items in self._events.items()
        }
        return {source: items for source, items in grouped.items() if items}

    async def get_shadow_reading(self, source: str, timestamp: int, data_type: str) -> Any:
        return self._shadows.get((source, timestamp, data_type))

    async def get_historical_average(self, data_type: str, timestamp: int) -> HistoricalAverage | None:
        return self._history.get(data_type)

    async def save_fused_points(self, points: Sequence[FusedDataPoint]) -> None:
        self.fused_rows.extend(p.to_record() for p in points)

    async def save_lineage(self, records: Sequence[LineageRecord]) -> None:
        self.lineage_rows.extend(r.to_record() for r in records)

    async def save_validation_results(self, results: Sequence[ShadowValidationResult]) -> None:
        self.validation_rows.extend(r.to_record() for r in results)

    async def save_correlations(
        self,
        correlations: Sequence[Correlation],
        narratives: Sequence[GeneratedNarrative] = (),
    ) -> None:
        texts = {n.correlation_id: n.text for n in narratives}
        for correlation in correlations:
            self.correlation_rows.append(correlation.to_record(texts.get(correlation.id)))
        logger.debug("Saved %d correlations", len(correlations))
