"""Load and validate the Minakami fusion configuration.

The config lives in ``fusion_config.yaml`` alongside this module.  It holds
every tunable number the engine uses plus the two static registries
(correlation rules and narrative templates).  It is loaded once, validated
as a whole, and frozen; a malformed file fails fast with a
``ConfigurationError`` listing every problem found.

Usage::

    from src.fusion.config_loader import get_fusion_config

    config = get_fusion_config()
    config.source_confidence("strava")          # 0.90
    config.correlation.rule("workout_location")  # CorrelationRule(...)
"""

from __future__ import annotations

import logging
import string
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from src.fusion.errors import ConfigurationError

logger = logging.getLogger("minakami.fusion.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "fusion_config.yaml"

_AGGREGATION_METHODS = frozenset({"sum", "avg", "min", "max"})


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringConfig:
    """Datapoint confidence scoring parameters."""

    default_source_confidence: float
    source_confidence: Mapping[str, float]
    min_confidence: float
    max_confidence: float
    gym_workout_boost: float
    home_sleep_boost: float
    outdoor_steps_boost: float
    outdoor_max_accuracy_m: float
    location_match_window_ms: int
    strong_agreement_deviation: float
    strong_agreement_boost: float
    weak_agreement_deviation: float
    weak_agreement_boost: float
    max_cross_source_boost: float
    consistent_deviation: float
    consistent_boost: float
    unusual_deviation: float
    unusual_penalty: float


@dataclass(frozen=True)
class ValidationConfig:
    """Shadow validation thresholds."""

    good_agreement_below: float
    fair_agreement_below: float
    anomaly_above: float
    high_severity_above: float
    fair_health_max_anomalies: int
    shadow_sources: Mapping[str, tuple[str, ...]]


@dataclass(frozen=True)
class LineageConfig:
    """Daily lineage report thresholds."""

    high_confidence_min: float
    medium_confidence_min: float
    poor_quality_low_ratio: float
    fair_quality_low_ratio: float


@dataclass(frozen=True)
class SlotFusionConfig:
    """How slot readings collapse into fused datapoints."""

    aggregation: Mapping[str, str]
    expected_sources: tuple[str, ...]
    min_completeness: float

    def aggregation_for(self, event_type: str) -> str:
        return self.aggregation.get(event_type, self.aggregation.get("default", "avg"))


@dataclass(frozen=True)
class CorrelationRule:
    """A multi-event behavioural pattern.

    Attributes:
        id:                  Rule identifier.
        required_event_types: Correlation event types, all required, in order.
        time_window_ms:      Maximum span between the matched events.
        base_confidence:     Starting confidence before adjustments.
        narrative_key:       Template used to describe a match.
    """

    id: str
    required_event_types: tuple[str, ...]
    time_window_ms: int
    base_confidence: float
    narrative_key: str


@dataclass(frozen=True)
class CorrelationConfig:
    """Correlation engine parameters and the rule registry."""

    time_windows: Mapping[str, int]
    grouping_window_ms: int
    max_span_duration_ms: int
    high_event_confidence: float
    high_event_bonus: float
    low_event_confidence: float
    low_event_penalty: float
    tight_spread_ratio: float
    tight_spread_bonus: float
    max_historical_support: float
    default_historical_support: float
    strength_saturation_events: int
    keywords: Mapping[str, tuple[str, ...]]
    min_step_increase: float
    rules: tuple[CorrelationRule, ...] = ()

    def rule(self, rule_id: str) -> CorrelationRule | None:
        return next((r for r in self.rules if r.id == rule_id), None)


@dataclass(frozen=True)
class NarrativeTemplate:
    """Candidate sentences for one narrative key.

    Attributes:
        key:             Narrative key referenced by rules.
        candidates:      Sentences with ``{field}`` placeholders, best first.
        required_fields: Fields that must resolve for any narrative to emit.
        optional_fields: Fields that may be missing (a leaner candidate wins).
    """

    key: str
    candidates: tuple[str, ...]
    required_fields: tuple[str, ...]
    optional_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class NarrativeConfig:
    """Narrative composition settings and the template registry."""

    max_narratives: int
    missing_marker: str
    templates: Mapping[str, NarrativeTemplate] = field(default_factory=dict)


@dataclass(frozen=True)
class PatternInsight:
    """Insight text for a recognised pattern.

    ``message`` and ``recommendation`` may use ``{rule_id}`` and ``{matches}``.
    """

    type: str
    severity: str
    message: str
    recommendation: str = ""


@dataclass(frozen=True)
class InsightConfig:
    """Per-rule pattern insights plus the fallback for unlisted rules."""

    patterns: Mapping[str, PatternInsight] = field(default_factory=dict)
    default: PatternInsight = PatternInsight(
        type="general", severity="info", message="Pattern detected: {rule_id}"
    )

    def for_rule(self, rule_id: str) -> PatternInsight:
        return self.patterns.get(rule_id, self.default)


@dataclass(frozen=True)
class FusionConfig:
    """Complete, validated, read-only fusion configuration.

    Attributes:
        version:     Config schema version string.
        scoring:     Datapoint confidence scoring parameters.
        validation:  Shadow validation thresholds.
        lineage:     Lineage report thresholds.
        fusion:      Slot fusion settings.
        correlation: Correlation parameters and rule registry.
        narratives:  Narrative settings and template registry.
        insights:    Pattern insight texts per correlation rule.
    """

    version: str
    scoring: ScoringConfig
    validation: ValidationConfig
    lineage: LineageConfig
    fusion: SlotFusionConfig
    correlation: CorrelationConfig
    narratives: NarrativeConfig
    insights: InsightConfig = field(default_factory=InsightConfig)

    def source_confidence(self, source: str) -> float:
        """Return the base confidence for a source slug.

        Falls back to the configured default (0.50) for unknown sources.
        """
        return self.scoring.source_confidence.get(
            source, self.scoring.default_source_confidence
        )


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        ConfigurationError: If the file is missing or the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise ConfigurationError(f"Fusion config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return raw


def template_fields(text: str) -> list[str]:
    """Return the placeholder names in a template string, in order.

    Raises:
        ValueError: If the braces in ``text`` are unbalanced.
    """
    return [
        name
        for _, name, _, _ in string.Formatter().parse(text)
        if name is not None
    ]


class _Builder:
    """Accumulates validation errors while reading raw sections."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def section(self, raw: dict, key: str) -> dict:
        value = raw.get(key, {})
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    def number(
        self,
        raw: dict,
        key: str,
        path: str,
        default: float,
        lo: float = 0.0,
        hi: float = 1.0,
    ) -> float:
        value = raw.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            self.errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if not (lo <= number <= hi):
            self.errors.append(f"{path}.{key} = {number} is out of range [{lo}, {hi}]")
        return number

    def names(self, raw: Any, path: str) -> tuple[str, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, list) or not all(isinstance(x, str) and x for x in raw):
            self.errors.append(f"{path} must be a list of non-empty strings")
            return ()
        return tuple(raw)


def _build_scoring(b: _Builder, raw: dict) -> ScoringConfig:
    sc = b.section(raw, "scoring")
    path = "scoring"

    sources: dict[str, float] = {}
    for source, weight in (sc.get("source_confidence") or {}).items():
        sources[str(source)] = b.number({source: weight}, source, f"{path}.source_confidence", 0.5)

    bounds = sc.get("bounds") or {}
    loc = sc.get("location") or {}
    cross = sc.get("cross_source") or {}
    hist = sc.get("history") or {}

    min_c = b.number(bounds, "min", f"{path}.bounds", 0.10)
    max_c = b.number(bounds, "max", f"{path}.bounds", 0.99)
    if min_c >= max_c:
        b.errors.append(f"{path}.bounds.min must be below {path}.bounds.max")

    return ScoringConfig(
        default_source_confidence=b.number(sc, "default_source_confidence", path, 0.50),
        source_confidence=MappingProxyType(sources),
        min_confidence=min_c,
        max_confidence=max_c,
        gym_workout_boost=b.number(loc, "gym_workout_boost", f"{path}.location", 0.15),
        home_sleep_boost=b.number(loc, "home_sleep_boost", f"{path}.location", 0.10),
        outdoor_steps_boost=b.number(loc, "outdoor_steps_boost", f"{path}.location", 0.08),
        outdoor_max_accuracy_m=b.number(
            loc, "outdoor_max_accuracy_m", f"{path}.location", 20.0, hi=10_000.0
        ),
        location_match_window_ms=int(
            b.number(loc, "match_window_ms", f"{path}.location", 900_000, hi=86_400_000)
        ),
        strong_agreement_deviation=b.number(
            cross, "strong_agreement_deviation", f"{path}.cross_source", 0.10
        ),
        strong_agreement_boost=b.number(cross, "strong_agreement_boost", f"{path}.cross_source", 0.12),
        weak_agreement_deviation=b.number(
            cross, "weak_agreement_deviation", f"{path}.cross_source", 0.20
        ),
        weak_agreement_boost=b.number(cross, "weak_agreement_boost", f"{path}.cross_source", 0.06),
        max_cross_source_boost=b.number(cross, "max_total_boost", f"{path}.cross_source", 0.20),
        consistent_deviation=b.number(hist, "consistent_deviation", f"{path}.history", 0.15),
        consistent_boost=b.number(hist, "consistent_boost", f"{path}.history", 0.08),
        unusual_deviation=b.number(hist, "unusual_deviation", f"{path}.history", 0.50, hi=100.0),
        unusual_penalty=b.number(hist, "unusual_penalty", f"{path}.history", 0.05),
    )


def _build_validation(b: _Builder, raw: dict) -> ValidationConfig:
    vc = b.section(raw, "validation")
    path = "validation"
    shadow_raw = vc.get("shadow_sources") or {}
    shadow_sources: dict[str, tuple[str, ...]] = {}
    if not isinstance(shadow_raw, dict):
        b.errors.append(f"{path}.shadow_sources must be a mapping of type→sources")
    else:
        for event_type, sources in shadow_raw.items():
            shadow_sources[str(event_type)] = b.names(sources, f"{path}.shadow_sources.{event_type}")

    return ValidationConfig(
        good_agreement_below=b.number(vc, "good_agreement_below", path, 0.20),
        fair_agreement_below=b.number(vc, "fair_agreement_below", path, 0.40),
        anomaly_above=b.number(vc, "anomaly_above", path, 0.30),
        high_severity_above=b.number(vc, "high_severity_above", path, 0.50),
        fair_health_max_anomalies=int(
            b.number(vc, "fair_health_max_anomalies", path, 2, hi=1_000)
        ),
        shadow_sources=MappingProxyType(shadow_sources),
    )


def _build_lineage(b: _Builder, raw: dict) -> LineageConfig:
    lc = b.section(raw, "lineage")
    return LineageConfig(
        high_confidence_min=b.number(lc, "high_confidence_min", "lineage", 0.80),
        medium_confidence_min=b.number(lc, "medium_confidence_min", "lineage", 0.60),
        poor_quality_low_ratio=b.number(lc, "poor_quality_low_ratio", "lineage", 0.30),
        fair_quality_low_ratio=b.number(lc, "fair_quality_low_ratio", "lineage", 0.15),
    )


def _build_slot_fusion(b: _Builder, raw: dict) -> SlotFusionConfig:
    fc = b.section(raw, "fusion")
    aggregation: dict[str, str] = {"default": "avg"}
    for event_type, method in (fc.get("aggregation") or {}).items():
        if method not in _AGGREGATION_METHODS:
            b.errors.append(
                f"fusion.aggregation.{event_type} must be one of "
                f"{sorted(_AGGREGATION_METHODS)}, got {method!r}"
            )
            continue
        aggregation[str(event_type)] = method
    return SlotFusionConfig(
        aggregation=MappingProxyType(aggregation),
        expected_sources=b.names(fc.get("expected_sources"), "fusion.expected_sources"),
        min_completeness=b.number(fc, "min_completeness", "fusion", 0.70),
    )


def _build_correlation(b: _Builder, raw: dict, template_keys: set[str]) -> CorrelationConfig:
    from src.fusion.event_types import PREDICATES

    cc = b.section(raw, "correlation")
    path = "correlation"

    windows: dict[str, int] = {}
    for name, ms in (cc.get("time_windows") or {}).items():
        windows[str(name)] = int(b.number({name: ms}, name, f"{path}.time_windows", 0, 1, 86_400_000))

    def window_ms(value: Any, where: str) -> int:
        if isinstance(value, str):
            if value not in windows:
                b.errors.append(f"{where} refers to unknown time window {value!r}")
                return 0
            return windows[value]
        return int(b.number({"w": value}, "w", where, 0, 1, 86_400_000))

    grouping_window_ms = window_ms(cc.get("grouping_window", 1_800_000), f"{path}.grouping_window")
    max_span_duration_ms = window_ms(
        cc.get("max_span_duration", 1_800_000), f"{path}.max_span_duration"
    )

    scoring = cc.get("scoring") or {}
    sp = f"{path}.scoring"

    keywords: dict[str, tuple[str, ...]] = {}
    for group, words in (cc.get("keywords") or {}).items():
        keywords[str(group)] = tuple(
            w.lower() for w in b.names(words, f"{path}.keywords.{group}")
        )

    rules: list[CorrelationRule] = []
    rules_raw = cc.get("rules") or {}
    if not rules_raw:
        b.errors.append(f"'{path}.rules' section is missing or empty")
    for rule_id, rule_raw in (rules_raw if isinstance(rules_raw, dict) else {}).items():
        rp = f"{path}.rules.{rule_id}"
        if not isinstance(rule_raw, dict):
            b.errors.append(f"{rp} must be a mapping")
            continue
        required = b.names(rule_raw.get("events"), f"{rp}.events")
        if not required:
            b.errors.append(f"{rp}.events must list at least one event type")
        for event_type in required:
            if event_type not in PREDICATES:
                b.errors.append(f"{rp}.events: unknown correlation event type {event_type!r}")
        narrative = rule_raw.get("narrative")
        if narrative not in template_keys:
            b.errors.append(f"{rp}.narrative {narrative!r} has no matching template")
        if "time_window" not in rule_raw:
            b.errors.append(f"Missing required key 'time_window' in section '{rp}'")
        rules.append(
            CorrelationRule(
                id=str(rule_id),
                required_event_types=required,
                time_window_ms=window_ms(rule_raw.get("time_window", 0), f"{rp}.time_window"),
                base_confidence=b.number(rule_raw, "confidence", rp, 0.5),
                narrative_key=str(narrative),
            )
        )

    return CorrelationConfig(
        time_windows=MappingProxyType(windows),
        grouping_window_ms=grouping_window_ms,
        max_span_duration_ms=max_span_duration_ms,
        high_event_confidence=b.number(scoring, "high_event_confidence", sp, 0.80),
        high_event_bonus=b.number(scoring, "high_event_bonus", sp, 0.05),
        low_event_confidence=b.number(scoring, "low_event_confidence", sp, 0.60),
        low_event_penalty=b.number(scoring, "low_event_penalty", sp, 0.10),
        tight_spread_ratio=b.number(scoring, "tight_spread_ratio", sp, 0.50),
        tight_spread_bonus=b.number(scoring, "tight_spread_bonus", sp, 0.10),
        max_historical_support=b.number(scoring, "max_historical_support", sp, 0.15),
        default_historical_support=b.number(scoring, "default_historical_support", sp, 0.0),
        strength_saturation_events=int(
            b.number(scoring, "strength_saturation_events", sp, 3, 1, 100)
        ),
        keywords=MappingProxyType(keywords),
        min_step_increase=b.number(cc, "min_step_increase", path, 1, 0, 1_000_000),
        rules=tuple(rules),
    )


def _build_narratives(b: _Builder, raw: dict) -> NarrativeConfig:
    from src.fusion.narrative import NARRATIVE_FIELDS

    nc = b.section(raw, "narratives")
    path = "narratives"
    templates: dict[str, NarrativeTemplate] = {}
    templates_raw = nc.get("templates") or {}
    if not templates_raw:
        b.errors.append(f"'{path}.templates' section is missing or empty")

    for key, t_raw in (templates_raw if isinstance(templates_raw, dict) else {}).items():
        tp = f"{path}.templates.{key}"
        if not isinstance(t_raw, dict):
            b.errors.append(f"{tp} must be a mapping")
            continue
        required = b.names(t_raw.get("required"), f"{tp}.required")
        optional = b.names(t_raw.get("optional"), f"{tp}.optional")
        candidates = b.names(t_raw.get("candidates"), f"{tp}.candidates")
        if not candidates:
            b.errors.append(f"{tp}.candidates must contain at least one sentence")

        declared = set(required) | set(optional)
        for name in declared - NARRATIVE_FIELDS:
            b.errors.append(f"{tp}: unknown narrative field {name!r}")
        for idx, text in enumerate(candidates):
            try:
                names = template_fields(text)
            except ValueError as exc:
                b.errors.append(f"{tp}.candidates[{idx}] is malformed: {exc}")
                continue
            for name in names:
                if name not in declared:
                    b.errors.append(
                        f"{tp}.candidates[{idx}] uses undeclared placeholder {{{name}}}"
                    )
        templates[str(key)] = NarrativeTemplate(
            key=str(key),
            candidates=candidates,
            required_fields=required,
            optional_fields=optional,
        )

    marker = nc.get("missing_marker", "[data unavailable]")
    if not isinstance(marker, str) or "{" in marker or "}" in marker:
        b.errors.append(f"{path}.missing_marker must be a plain string without braces")
        marker = "[data unavailable]"

    return NarrativeConfig(
        max_narratives=int(b.number(nc, "max_narratives", path, 10, 1, 1_000)),
        missing_marker=marker,
        templates=MappingProxyType(templates),
    )


_INSIGHT_FIELDS = frozenset({"rule_id", "matches"})


def _build_pattern_insight(b: _Builder, raw: Any, path: str, fallback: PatternInsight) -> PatternInsight:
    if not isinstance(raw, dict):
        b.errors.append(f"{path} must be a mapping")
        return fallback
    texts: dict[str, str] = {}
    for key in ("type", "severity", "message", "recommendation"):
        value = raw.get(key, getattr(fallback, key))
        if not isinstance(value, str):
            b.errors.append(f"{path}.{key} must be a string")
            value = getattr(fallback, key)
        texts[key] = value
    for key in ("message", "recommendation"):
        try:
            names = template_fields(texts[key])
        except ValueError as exc:
            b.errors.append(f"{path}.{key} is malformed: {exc}")
            continue
        for name in set(names) - _INSIGHT_FIELDS:
            b.errors.append(f"{path}.{key} uses unknown placeholder {{{name}}}")
    return PatternInsight(**texts)


def _build_insights(b: _Builder, raw: dict, rule_ids: set[str]) -> InsightConfig:
    ic = b.section(raw, "insights")
    path = "insights"
    fallback = InsightConfig.default
    default = _build_pattern_insight(b, ic.get("default") or {}, f"{path}.default", fallback)

    patterns: dict[str, PatternInsight] = {}
    patterns_raw = ic.get("patterns") or {}
    if not isinstance(patterns_raw, dict):
        b.errors.append(f"{path}.patterns must be a mapping of rule id → insight")
        patterns_raw = {}
    for rule_id, p_raw in patterns_raw.items():
        pp = f"{path}.patterns.{rule_id}"
        if rule_id not in rule_ids:
            b.errors.append(f"{pp} refers to unknown correlation rule {rule_id!r}")
        patterns[str(rule_id)] = _build_pattern_insight(b, p_raw, pp, default)

    return InsightConfig(patterns=MappingProxyType(patterns), default=default)


def _validate_and_build(raw: dict) -> FusionConfig:
    """Validate the raw YAML dict and construct a FusionConfig.

    Raises:
        ConfigurationError: If any section is missing or invalid.  The message
            lists every problem, not just the first.
    """
    b = _Builder()
    narratives = _build_narratives(b, raw)
    correlation = _build_correlation(b, raw, set(narratives.templates))
    config_kwargs = dict(
        version=str(raw.get("version", "1.0")),
        scoring=_build_scoring(b, raw),
        validation=_build_validation(b, raw),
        lineage=_build_lineage(b, raw),
        fusion=_build_slot_fusion(b, raw),
        correlation=correlation,
        narratives=narratives,
        insights=_build_insights(b, raw, {r.id for r in correlation.rules}),
    )

    if b.errors:
        raise ConfigurationError(
            f"fusion_config.yaml has {len(b.errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in b.errors)
        )

    return FusionConfig(**config_kwargs)


def load_fusion_config(path: Path | None = None) -> FusionConfig:
    """Load and validate the fusion config from disk.

    Args:
        path: Override path to YAML. Uses the bundled fusion_config.yaml by default.

    Returns:
        Validated FusionConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info(
        "Loaded fusion config v%s from %s (%d rules, %d templates)",
        config.version,
        target,
        len(config.correlation.rules),
        len(config.narratives.templates),
    )
    return config


# ---------------------------------------------------------------------------
# Process-wide singleton
# ---------------------------------------------------------------------------

_config: FusionConfig | None = None
_config_lock = threading.Lock()


def get_fusion_config() -> FusionConfig:
    """Return the global FusionConfig, loading it on first call.

    Thread-safe.  The registries are immutable for the lifetime of the
    process; build a separate ``FusionConfig`` (``load_fusion_config``) to
    run an engine against an alternate rule set.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_fusion_config()
    return _config
