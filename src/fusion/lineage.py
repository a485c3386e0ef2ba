"""Lineage tracking — record which raw contributors produced every fused
value and which transformations were applied on the way.

Lineage IDs are deterministic (``{type}_{timestamp}_{primary_source}``), so
re-recording the same derived point overwrites its previous record instead
of duplicating it.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Iterable, Sequence

from src.fusion.base import Contributor, FusedDataPoint, Health, LineageRecord, LineageReport
from src.fusion.config_loader import FusionConfig, get_fusion_config

logger = logging.getLogger("minakami.fusion.lineage")


def lineage_id(data_type: str, timestamp: int, primary_source: str) -> str:
    return f"{data_type}_{timestamp}_{primary_source}"


def local_date(timestamp_ms: int, tz: tzinfo) -> date:
    """Calendar date of a millisecond epoch in the given timezone."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=tz).date()


class LineageTracker:
    """Append-only (per id) provenance store owned by one engine instance.

    Usage::

        tracker = LineageTracker()
        lid = tracker.record(point, contributors, [{"type": "time_bucketing"}])
        tracker.get(lid).contributors
        tracker.daily_report(date(2026, 3, 14)).data_quality
    """

    def __init__(self, config: FusionConfig | None = None, tz: tzinfo = timezone.utc) -> None:
        self._config = (config or get_fusion_config()).lineage
        self._tz = tz
        self._records: dict[str, LineageRecord] = {}
        self._lock = threading.Lock()

    def record(
        self,
        point: FusedDataPoint,
        contributors: Sequence[Contributor],
        transformations: Iterable[dict[str, Any]] = (),
    ) -> str:
        """Record (or overwrite) the lineage of one fused datapoint.

        Args:
            point:           The fused datapoint.
            contributors:    Raw inputs with their weights and confidences.
            transformations: Ordered transformation descriptors, each with a
                             ``type`` key.

        Returns:
            The deterministic lineage id.
        """
        lid = lineage_id(point.type.value, point.timestamp, point.source_name)
        rec = LineageRecord(
            id=lid,
            timestamp=point.timestamp,
            type=point.type.value,
            value=point.value,
            primary_source=point.source_name,
            confidence=point.confidence,
            contributors=list(contributors),
            transformations=list(transformations),
        )
        with self._lock:
            if lid in self._records:
                logger.debug("Overwriting lineage record %s", lid)
            self._records[lid] = rec
        return lid

    def get(self, lid: str) -> LineageRecord | None:
        with self._lock:
            return self._records.get(lid)

    def records(self) -> list[LineageRecord]:
        """All records, ordered by timestamp."""
        with self._lock:
            return sorted(self._records.values(), key=lambda r: (r.timestamp, r.id))

    def __len__(self) -> int:
        return len(self._records)

    def daily_report(self, day: date) -> LineageReport:
        """Summarise every record whose timestamp falls on ``day``.

        Confidence histogram: high ≥ 0.8, medium ≥ 0.6, low < 0.6.
        Data quality: poor if more than 30 % low, fair if more than 15 %,
        otherwise good.  A day with no records reports good quality.
        """
        cfg = self._config
        todays = [r for r in self.records() if local_date(r.timestamp, self._tz) == day]

        report = LineageReport(date=day, total=len(todays))
        if not todays:
            return report

        report.by_source = dict(Counter(r.primary_source for r in todays))
        transformations: Counter[str] = Counter()
        for rec in todays:
            if rec.confidence >= cfg.high_confidence_min:
                report.confidence_histogram["high"] += 1
            elif rec.confidence >= cfg.medium_confidence_min:
                report.confidence_histogram["medium"] += 1
            else:
                report.confidence_histogram["low"] += 1
            transformations.update(str(t.get("type", "unknown")) for t in rec.transformations)
        report.transformations = dict(transformations)

        ratio = report.confidence_histogram["low"] / report.total
        report.low_confidence_ratio = round(ratio, 4)
        if ratio > cfg.poor_quality_low_ratio:
            report.data_quality = Health.POOR
        elif ratio > cfg.fair_quality_low_ratio:
            report.data_quality = Health.FAIR
        else:
            report.data_quality = Health.GOOD
        return report
