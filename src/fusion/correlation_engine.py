"""Event correlation engine — detect multi-event behavioural patterns.

Each analysis pass is a pure function of the supplied events and the static
rule registry:

1. Group:  events are keyed by ``floor(ts / short_window) * short_window``.
           Grouping only picks anchor events; it never bounds a match.
2. Match:  per rule and group, find one distinct event per required type
           such that the matched events' span is within the rule window.
3. Score:  start from the rule's base confidence and adjust for event
           confidence, time spread and historical support.

The span of a set of events is ``max(starts) - min(ends)`` (floored at 0),
where an event with a ``duration`` attribute occupies
``[timestamp, timestamp + duration]``, with the duration capped by
``max_span_duration``.  For instantaneous events this is simply latest
timestamp minus earliest timestamp.
"""

from __future__ import annotations

import logging
import statistics
from typing import Callable, Iterable, Sequence

from src.fusion.base import Correlation
from src.fusion.config_loader import CorrelationRule, FusionConfig, get_fusion_config
from src.fusion.confidence import clamp
from src.fusion.event_types import event_matches
from src.models.events import RawEvent

logger = logging.getLogger("minakami.fusion.correlation")

# (rule, matched events) → support in [0, max_historical_support]
HistoricalSupport = Callable[[CorrelationRule, Sequence[RawEvent]], float]


def span_ms(events: Sequence[RawEvent], max_duration_ms: int | None = None) -> int:
    """Gap between the latest start and the earliest end of the events.

    ``max_duration_ms`` caps how much of an event's duration counts, so a
    long workout does not absorb every event that happens during it.
    """
    if not events:
        return 0

    def end(e: RawEvent) -> int:
        if max_duration_ms is None:
            return e.end_timestamp
        return e.timestamp + min(e.duration_ms, max_duration_ms)

    return max(0, max(e.timestamp for e in events) - min(end(e) for e in events))


class CorrelationEngine:
    """Match typed events against the correlation rule registry.

    Usage::

        engine = CorrelationEngine()
        for match in engine.analyze(events):
            print(match.rule_id, match.confidence, match.strength)

    Args:
        config:             FusionConfig (loaded from singleton if None).
        historical_support: Hook returning how well a match is supported by
                            the user's history.  Defaults to the configured
                            constant.
    """

    def __init__(
        self,
        config: FusionConfig | None = None,
        historical_support: HistoricalSupport | None = None,
    ) -> None:
        self._config = config or get_fusion_config()
        self._cc = self._config.correlation
        self._historical_support = historical_support or self._default_historical_support

    @property
    def rules(self) -> tuple[CorrelationRule, ...]:
        return self._cc.rules

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def analyze(self, events: Iterable[RawEvent]) -> list[Correlation]:
        """Run one correlation pass.

        Matches are emitted rule by rule, group by group, in registration
        order.  The same rule matching the same set of events from two
        neighbouring groups is emitted once.

        Args:
            events: The day's events, any order, any source.

        Returns:
            List of Correlation.
        """
        ordered = sorted(events, key=lambda e: (e.timestamp, e.id))
        if not ordered:
            return []

        groups = self.group(ordered)
        seen: set[tuple[str, frozenset[str]]] = set()
        correlations: list[Correlation] = []

        for rule in self._cc.rules:
            for start in sorted(groups):
                matched = self._match_in_group(rule, groups[start], ordered)
                if matched is None:
                    continue
                key = (rule.id, frozenset(e.id for e in matched))
                if key in seen:
                    continue
                seen.add(key)
                correlations.append(self.score(rule, matched))

        logger.info(
            "Correlation pass: %d events, %d groups, %d matches",
            len(ordered), len(groups), len(correlations),
        )
        return correlations

    def group(self, ordered: Sequence[RawEvent]) -> dict[int, list[RawEvent]]:
        """Key events by their short-window group start."""
        width = self._cc.grouping_window_ms
        groups: dict[int, list[RawEvent]] = {}
        for event in ordered:
            groups.setdefault((event.timestamp // width) * width, []).append(event)
        return groups

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _match_in_group(
        self,
        rule: CorrelationRule,
        anchors: Sequence[RawEvent],
        ordered: Sequence[RawEvent],
    ) -> list[RawEvent] | None:
        """Return the first complete match anchored on an event of this group."""
        window = rule.time_window_ms
        for anchor in anchors:
            positions = [
                i for i, name in enumerate(rule.required_event_types)
                if event_matches(anchor, name, self._cc)
            ]
            if not positions:
                continue
            # Only events close enough to the anchor can share a window with it
            nearby = [
                e for e in ordered
                if e.timestamp <= anchor.end_timestamp + window
                and e.end_timestamp >= anchor.timestamp - window
            ]
            for position in positions:
                matched = self.find_sequence(rule, anchor, position, nearby)
                if matched is not None:
                    return matched
        return None

    def find_sequence(
        self,
        rule: CorrelationRule,
        anchor: RawEvent,
        anchor_position: int,
        candidates: Sequence[RawEvent],
    ) -> list[RawEvent] | None:
        """Complete a match around ``anchor`` by depth-first search.

        Candidates for each remaining required type are tried nearest-first;
        a branch is abandoned as soon as its span exceeds the rule window
        (adding events can only widen a span).

        Returns:
            One distinct event per required type, in rule order, or None.
        """
        required = rule.required_event_types
        window = rule.time_window_ms
        cap = self._cc.max_span_duration_ms

        def distance(e: RawEvent) -> int:
            return span_ms([anchor, e], cap)

        options: list[list[RawEvent]] = []
        for i, name in enumerate(required):
            if i == anchor_position:
                options.append([anchor])
                continue
            matching = [
                e for e in candidates
                if e.id != anchor.id and event_matches(e, name, self._cc)
            ]
            if not matching:
                return None
            options.append(sorted(matching, key=lambda e: (distance(e), e.timestamp, e.id)))

        chosen: list[RawEvent] = []

        def search(i: int) -> bool:
            if i == len(required):
                return True
            used = {e.id for e in chosen}
            for event in options[i]:
                if event.id in used:
                    continue
                chosen.append(event)
                if span_ms(chosen, cap) <= window and search(i + 1):
                    return True
                chosen.pop()
            return False

        return list(chosen) if search(0) else None

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def event_confidence(self, event: RawEvent) -> float:
        """Collector hint if present, otherwise the source's base confidence."""
        if event.confidence_hint is not None:
            return event.confidence_hint
        return self._config.source_confidence(event.source_name)

    def score(self, rule: CorrelationRule, matched: Sequence[RawEvent]) -> Correlation:
        """Build a scored Correlation for a complete match."""
        cc = self._cc
        confidence = rule.base_confidence

        for event in matched:
            event_conf = self.event_confidence(event)
            if event_conf > cc.high_event_confidence:
                confidence += cc.high_event_bonus
            elif event_conf < cc.low_event_confidence:
                confidence -= cc.low_event_penalty

        spread = span_ms(matched, cc.max_span_duration_ms)
        if spread < cc.tight_spread_ratio * rule.time_window_ms:
            confidence += cc.tight_spread_bonus

        confidence += clamp(self._historical_support(rule, matched), 0.0, cc.max_historical_support)
        scoring = self._config.scoring
        confidence = clamp(confidence, scoring.min_confidence, scoring.max_confidence)

        strength = statistics.fmean(e.strength for e in matched) * min(
            1.0, len(matched) / cc.strength_saturation_events
        )

        return Correlation(
            rule_id=rule.id,
            matched_events=list(matched),
            time_window=(
                min(e.timestamp for e in matched),
                max(e.end_timestamp for e in matched),
            ),
            span_ms=spread,
            confidence=round(confidence, 4),
            strength=round(strength, 4),
            narrative_key=rule.narrative_key,
        )

    def _default_historical_support(
        self, rule: CorrelationRule, matched: Sequence[RawEvent]
    ) -> float:
        return self._cc.default_historical_support
