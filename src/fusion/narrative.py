"""Narrative composition — turn correlations into short journal sentences.

Templates are small and typed: a list of candidate sentences with
``{field}`` placeholders plus the fields each template requires.  A
correlation whose events cannot supply every required field produces no
narrative at all; that is the normal outcome for sparse days, not an error.
"""

from __future__ import annotations

import logging
import string
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Sequence

from src.fusion.base import Correlation, GeneratedNarrative
from src.fusion.config_loader import FusionConfig, NarrativeTemplate, get_fusion_config
from src.fusion.event_types import location_name
from src.models.events import EventType, RawEvent

logger = logging.getLogger("minakami.fusion.narrative")

NARRATIVE_FIELDS = frozenset(
    {
        "workout_type",
        "duration_minutes",
        "calories",
        "intensity",
        "location_name",
        "sleep_hours",
        "bedtime",
        "step_count",
        "call_count",
        "contact_name",
        "app_name",
        "screen_time_minutes",
    }
)

_MS_PER_MINUTE = 60_000
_MS_PER_HOUR = 3_600_000


def _number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_text(attributes: dict, *keys: str) -> str | None:
    for key in keys:
        found = _text(attributes.get(key))
        if found:
            return found
    return None


def format_value(value: Any) -> str:
    """Render a field value for a sentence.  Whole floats lose their '.0'."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    # No substituted value may reintroduce template syntax
    return str(value).replace("{", "").replace("}", "")


def render(text: str, data: dict[str, Any], marker: str) -> str:
    """Fill every placeholder in ``text``; unresolved ones become ``marker``."""
    parts: list[str] = []
    for literal, name, _spec, _conversion in string.Formatter().parse(text):
        parts.append(literal.replace("{", "").replace("}", ""))
        if name is None:
            continue
        parts.append(format_value(data[name]) if name in data else marker)
    return "".join(parts)


def resolvable_fraction(text: str, data: dict[str, Any]) -> float:
    """Share of a candidate's placeholders that ``data`` can fill (1.0 if none)."""
    names = [name for _, name, _, _ in string.Formatter().parse(text) if name is not None]
    if not names:
        return 1.0
    return sum(1 for name in names if name in data) / len(names)


class NarrativeComposer:
    """Compose and rank narratives for matched correlations.

    Usage::

        composer = NarrativeComposer()
        narratives = [n for c in correlations if (n := composer.compose(c))]
        top = composer.rank(narratives)
    """

    def __init__(self, config: FusionConfig | None = None, tz: tzinfo = timezone.utc) -> None:
        self._config = (config or get_fusion_config()).narratives
        self._tz = tz

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------

    def extract(self, events: Iterable[RawEvent]) -> dict[str, Any]:
        """Flatten the events' typed fields into one narrative data map.

        Events are read in timestamp order, so a later event of the same type
        overwrites fields extracted from an earlier one.
        """
        data: dict[str, Any] = {}
        for event in sorted(events, key=lambda e: (e.timestamp, e.id)):
            extractor = getattr(self, f"_extract_{event.type.value}", None)
            if extractor is not None:
                data.update(extractor(event))
        return data

    def _extract_workout(self, event: RawEvent) -> dict[str, Any]:
        attrs = event.attributes
        out: dict[str, Any] = {}
        workout_type = _first_text(attrs, "type", "activity_type", "sport") or _text(event.value)
        if workout_type:
            out["workout_type"] = workout_type
        if event.duration_ms:
            out["duration_minutes"] = round(event.duration_ms / _MS_PER_MINUTE)
        calories = _number(attrs.get("calories"))
        if calories is not None:
            out["calories"] = round(calories)
        intensity = _text(attrs.get("intensity"))
        if intensity:
            out["intensity"] = intensity
        return out

    def _extract_location(self, event: RawEvent) -> dict[str, Any]:
        name = location_name(event)
        return {"location_name": name} if name else {}

    def _extract_sleep(self, event: RawEvent) -> dict[str, Any]:
        out: dict[str, Any] = {
            "bedtime": datetime.fromtimestamp(event.timestamp / 1000, tz=self._tz).strftime("%H:%M")
        }
        hours = _number(event.attributes.get("hours"))
        if event.duration_ms:
            hours = event.duration_ms / _MS_PER_HOUR
        if hours is not None and hours > 0:
            out["sleep_hours"] = round(hours, 1)
        return out

    def _extract_steps(self, event: RawEvent) -> dict[str, Any]:
        steps = event.numeric_value
        return {"step_count": int(steps)} if steps is not None else {}

    def _extract_calls(self, event: RawEvent) -> dict[str, Any]:
        out: dict[str, Any] = {}
        count = _number(event.attributes.get("count"))
        if count is None:
            count = event.numeric_value
        if count is not None:
            out["call_count"] = int(count)
        contact = _first_text(event.attributes, "contact_name", "contact")
        if contact:
            out["contact_name"] = contact
        return out

    def _extract_app_usage(self, event: RawEvent) -> dict[str, Any]:
        out: dict[str, Any] = {}
        app = _first_text(event.attributes, "app_name", "package")
        if app:
            out["app_name"] = app
        minutes = _number(event.attributes.get("screen_time_minutes"))
        if minutes is None and event.duration_ms:
            minutes = event.duration_ms / _MS_PER_MINUTE
        if minutes is not None:
            out["screen_time_minutes"] = round(minutes)
        return out

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def template(self, key: str) -> NarrativeTemplate | None:
        return self._config.templates.get(key)

    def choose_candidate(self, template: NarrativeTemplate, data: dict[str, Any]) -> str:
        """Best candidate by resolvable-placeholder share; earliest wins ties."""
        best = template.candidates[0]
        best_score = resolvable_fraction(best, data)
        for candidate in template.candidates[1:]:
            score = resolvable_fraction(candidate, data)
            if score > best_score:
                best, best_score = candidate, score
        return best

    def compose(self, correlation: Correlation) -> GeneratedNarrative | None:
        """Render one correlation, or return None when required data is missing.

        Args:
            correlation: A scored match from the correlation engine.

        Returns:
            GeneratedNarrative, or None if the template is unknown or any of
            its required fields could not be extracted.
        """
        template = self.template(correlation.narrative_key)
        if template is None:
            logger.debug("No narrative template for %r", correlation.narrative_key)
            return None

        data = self.extract(correlation.matched_events)
        missing = [f for f in template.required_fields if f not in data]
        if missing:
            logger.debug(
                "Skipping %s narrative for %s: missing %s",
                template.key, correlation.rule_id, ", ".join(missing),
            )
            return None

        text = render(self.choose_candidate(template, data), data, self._config.missing_marker)
        return GeneratedNarrative(
            id=correlation.id,
            narrative_key=template.key,
            text=text,
            confidence=correlation.confidence,
            strength=correlation.strength,
            correlation_id=correlation.id,
            contributing_event_ids=correlation.event_ids,
            metadata={
                "rule_id": correlation.rule_id,
                "time_window": correlation.time_window,
                "fields": data,
            },
        )

    def compose_all(self, correlations: Iterable[Correlation]) -> list[GeneratedNarrative]:
        """Compose every correlation and return the ranked survivors."""
        narratives = [n for n in (self.compose(c) for c in correlations) if n is not None]
        return self.rank(narratives)

    def rank(
        self, narratives: Sequence[GeneratedNarrative], limit: int | None = None
    ) -> list[GeneratedNarrative]:
        """Stable sort by confidence then strength (both descending), truncated.

        Args:
            narratives: Narratives to order.
            limit:      Maximum to keep; defaults to the configured maximum.
        """
        limit = self._config.max_narratives if limit is None else limit
        ordered = sorted(narratives, key=lambda n: (-n.confidence, -n.strength))
        return ordered[:limit]
