"""Canonical data models for the Minakami fusion engine.

These dataclasses are the single source of truth passed between the
bucketer, scorer, validator, lineage tracker and correlation engine, and
handed back to the journal layer.  Row serialisers (``to_record``) mirror the
persistence tables the host app writes after each pass.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from src.models.base import now_ms
from src.models.events import EventType, RawEvent, content_hash


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Agreement(str, Enum):
    """How closely a shadow reading agrees with the primary one."""

    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class Severity(str, Enum):
    """Severity of a shadow-validation anomaly."""

    MEDIUM = "medium"
    HIGH = "high"


class Health(str, Enum):
    """Overall health / quality band of a dataset or day."""

    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


# ---------------------------------------------------------------------------
# Time bucketing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeSlot:
    """Half-open interval ``[start, end)`` of width ``width_ms``."""

    start: int
    end: int
    width_ms: int

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp < self.end


@dataclass
class NumericStats:
    """Running statistics for one numeric field."""

    sum: float = 0.0
    avg: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")
    count: int = 0

    def add(self, value: float) -> None:
        self.sum += value
        self.count += 1
        self.avg = self.sum / self.count
        self.min = min(self.min, value)
        self.max = max(self.max, value)


@dataclass
class SlotAggregate:
    """Everything one source contributed to one time slot.

    Attributes:
        count:       Number of events.
        numeric:     field → running statistics.
        categorical: field → distinct observed values, in first-seen order.
        events:      The contributing events, in timestamp order.
    """

    count: int = 0
    numeric: dict[str, NumericStats] = field(default_factory=dict)
    categorical: dict[str, list[Any]] = field(default_factory=dict)
    events: list[RawEvent] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class SlotLineage:
    """Breadcrumb describing one source's contribution to a slot."""

    source: str
    count: int
    time_range: tuple[int, int]


@dataclass
class SlotBucket:
    """All per-source aggregates for one time slot."""

    slot: TimeSlot
    sources: dict[str, SlotAggregate] = field(default_factory=dict)
    lineage: list[SlotLineage] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Confidence scoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocationContext:
    """The location the user was at when a datapoint was measured.

    Attributes:
        name:       Display name of the place (e.g. "Basic-Fit Gym").
        category:   Optional collector-assigned category ('gym', 'home', ...).
        accuracy_m: GPS accuracy in metres; low values indicate outdoors.
    """

    name: str = ""
    category: str | None = None
    accuracy_m: float | None = None


@dataclass(frozen=True)
class ShadowReading:
    """A secondary source's value for the same timestamp and type."""

    source: str
    value: float


@dataclass(frozen=True)
class HistoricalAverage:
    """Stored average for a type at this time of day."""

    average: float
    sample_count: int | None = None


@dataclass(frozen=True)
class ScoringContext:
    """Corroborating context available for one datapoint."""

    location: LocationContext | None = None
    shadow_readings: tuple[ShadowReading, ...] = ()
    history: HistoricalAverage | None = None


@dataclass(frozen=True)
class Adjustment:
    """One additive contribution to a confidence score.

    Attributes:
        kind:   'location', 'cross_source' or 'history'.
        amount: Signed contribution (penalties are negative).
        reason: Human-readable explanation shown to the user.
    """

    kind: str
    amount: float
    reason: str


@dataclass
class ConfidenceScore:
    """Result of scoring one datapoint.

    ``confidence == clamp(base_confidence + sum(a.amount for a in adjustments))``
    always holds, so every score can be audited from its reasons.
    """

    confidence: float
    base_confidence: float
    boost: float
    adjustments: list[Adjustment] = field(default_factory=list)

    @property
    def reasons(self) -> list[str]:
        return [a.reason for a in self.adjustments]


@dataclass
class FusedDataPoint:
    """A slot-level, confidence-annotated reading.

    Attributes:
        timestamp:       Slot start (ms epoch).
        type:            Event type of the reading.
        value:           Aggregated value from the primary source.
        source_name:     Primary source slug.
        confidence:      Final confidence in [0.1, 0.99].
        boost_reasons:   Reasons behind every adjustment.
        lineage_id:      Key into the lineage log.
        base_confidence: Source base confidence before adjustments.
        adjustments:     The signed adjustments themselves.
    """

    timestamp: int
    type: EventType
    value: float
    source_name: str
    confidence: float = 0.5
    boost_reasons: list[str] = field(default_factory=list)
    lineage_id: str | None = None
    base_confidence: float = 0.5
    adjustments: list[Adjustment] = field(default_factory=list)

    def to_record(self) -> dict:
        """Row for the ``confidence_data`` table."""
        return {
            "timestamp": self.timestamp,
            "data_type": self.type.value,
            "value": self.value,
            "source": self.source_name,
            "confidence": round(self.confidence, 4),
            "lineage_id": self.lineage_id,
            "boost_reasons": json.dumps(self.boost_reasons),
            "created_at": now_ms(),
        }


# ---------------------------------------------------------------------------
# Shadow validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShadowValidationResult:
    """Comparison of a primary reading against one shadow source."""

    timestamp: int
    data_type: str
    primary_source: str
    shadow_source: str
    primary_value: float
    shadow_value: float
    deviation: float
    agreement: Agreement
    severity: Severity | None = None

    @property
    def is_anomaly(self) -> bool:
        return self.severity is not None

    def to_record(self) -> dict:
        """Row for the ``shadow_validation_logs`` table."""
        return {
            "timestamp": self.timestamp,
            "data_type": self.data_type,
            "primary_source": self.primary_source,
            "primary_value": self.primary_value,
            "shadow_source": self.shadow_source,
            "shadow_value": self.shadow_value,
            "deviation": round(self.deviation, 4),
            "severity": self.severity.value if self.severity else None,
            "created_at": now_ms(),
        }


@dataclass
class ValidationReport:
    """Outcome of validating one primary reading against its shadows."""

    results: list[ShadowValidationResult] = field(default_factory=list)
    skipped_sources: list[str] = field(default_factory=list)
    overall_health: Health = Health.GOOD

    @property
    def anomalies(self) -> list[ShadowValidationResult]:
        return [r for r in self.results if r.is_anomaly]


# ---------------------------------------------------------------------------
# Lineage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Contributor:
    """One raw input that fed a derived value."""

    source: str
    value: float | None
    weight: float
    confidence: float


@dataclass
class LineageRecord:
    """Full provenance of one fused datapoint."""

    id: str
    timestamp: int
    type: str
    value: float | None
    primary_source: str
    confidence: float
    contributors: list[Contributor] = field(default_factory=list)
    transformations: list[dict[str, Any]] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)

    def to_record(self) -> dict:
        """Row for the ``data_lineage`` table."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "data_type": self.type,
            "value": self.value,
            "primary_source": self.primary_source,
            "confidence": round(self.confidence, 4),
            "contributors": json.dumps([c.__dict__ for c in self.contributors]),
            "transformations": json.dumps(self.transformations, default=str),
            "created_at": self.created_at,
        }


@dataclass
class LineageReport:
    """Per-day provenance summary."""

    date: date
    total: int = 0
    by_source: dict[str, int] = field(default_factory=dict)
    confidence_histogram: dict[str, int] = field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    transformations: dict[str, int] = field(default_factory=dict)
    low_confidence_ratio: float = 0.0
    data_quality: Health = Health.GOOD


# ---------------------------------------------------------------------------
# Correlation & narratives
# ---------------------------------------------------------------------------


@dataclass
class Correlation:
    """One rule matched against concrete events during a single pass.

    Attributes:
        rule_id:        Rule that matched.
        matched_events: One event per required type, in rule order.
        time_window:    (earliest start, latest end) of the matched events.
        span_ms:        Gap measured for the window check.
        confidence:     Scored confidence in [0.1, 0.99].
        strength:       Match strength in [0, 1].
        narrative_key:  Template key for the narrative composer.
    """

    rule_id: str
    matched_events: list[RawEvent]
    time_window: tuple[int, int]
    span_ms: int
    confidence: float
    strength: float
    narrative_key: str

    @property
    def event_ids(self) -> list[str]:
        return [e.id for e in self.matched_events]

    @property
    def id(self) -> str:
        """Stable key: rule, window start and a digest of the matched event set."""
        digest = content_hash(sorted(self.event_ids))[:12]
        return f"{self.rule_id}_{self.time_window[0]}_{digest}"

    def to_record(self, narrative_text: str | None = None) -> dict:
        """Row for the ``event_correlations`` table."""
        return {
            "id": self.id,
            "timestamp": self.time_window[0],
            "rule_id": self.rule_id,
            "events": json.dumps(self.event_ids),
            "confidence": round(self.confidence, 4),
            "strength": round(self.strength, 4),
            "narrative_type": self.narrative_key,
            "narrative_text": narrative_text,
            "created_at": now_ms(),
        }


@dataclass
class GeneratedNarrative:
    """A filled-in narrative sentence ready for the journal layer."""

    id: str
    narrative_key: str
    text: str
    confidence: float
    strength: float
    correlation_id: str = ""
    contributing_event_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DataQualityInsight:
    """A note about the day: a recognised pattern or the state of the data.

    Pattern insights carry the ``rule_id`` they describe; data-quality
    insights leave it unset.
    """

    type: str
    severity: str
    message: str
    recommendation: str = ""
    completeness: float | None = None
    rule_id: str | None = None


@dataclass
class DailyFusionResult:
    """Everything one analysis pass produced for a day."""

    date: date
    fused_points: list[FusedDataPoint] = field(default_factory=list)
    validation_reports: list[ValidationReport] = field(default_factory=list)
    dataset_health: Health = Health.GOOD
    correlations: list[Correlation] = field(default_factory=list)
    narratives: list[GeneratedNarrative] = field(default_factory=list)
    lineage_report: LineageReport | None = None
    insights: list[DataQualityInsight] = field(default_factory=list)
    dropped_events: int = 0
