"""Pydantic models for raw collected events.

A ``RawEvent`` is immutable once recorded.  Collectors hand the engine plain
dicts (or ready-made models); ``coerce_event`` turns each one into a validated
``RawEvent`` or raises ``CorruptEventError`` so the caller can drop it.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Mapping

from pydantic import Field, ValidationError, field_validator, model_validator

from src.fusion.errors import CorruptEventError
from src.models.base import FusionBase


def content_hash(payload: Any) -> str:
    """SHA-256 hex digest of the canonicalized JSON of ``payload``.

    Two collected items without an id only share a derived id when their
    content is identical, i.e. when they are true duplicates.
    """
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class EventType(str, Enum):
    """Kinds of signal collected on the device."""

    WORKOUT = "workout"
    LOCATION = "location"
    SLEEP = "sleep"
    STEPS = "steps"
    HEART_RATE = "heart_rate"
    CALLS = "calls"
    APP_USAGE = "app_usage"


class RawEvent(FusionBase):
    """One loosely-timestamped measurement from a single source.

    Attributes:
        id:              Collector-assigned identifier.  When absent it is derived
                         from source, type, timestamp and a content hash.
        type:            Event kind.
        timestamp:       Millisecond epoch of the measurement.
        value:           Primary value (step count, bpm, duration...), if any.
        attributes:      Type-specific fields (name, intensity, duration...).
        source_name:     Source slug, e.g. ``health_connect`` or ``gps``.
        confidence_hint: Collector's own confidence in the reading (0–1).
    """

    id: str
    type: EventType
    timestamp: int = Field(ge=0)
    value: bool | int | float | str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    source_name: str = Field(min_length=1)
    confidence_hint: float | None = Field(default=None, ge=0.0, le=1.0)

    @model_validator(mode="before")
    @classmethod
    def _derive_id(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and not data.get("id"):
            data = dict(data)
            source = data.get("source_name") or data.get("sourceName") or "unknown"
            digest = content_hash({"value": data.get("value"), "attributes": data.get("attributes")})
            data["id"] = f"{source}:{data.get('type')}:{data.get('timestamp')}:{digest[:12]}"
        return data

    @field_validator("timestamp", mode="before")
    @classmethod
    def _whole_milliseconds(cls, value: Any) -> Any:
        # Collectors occasionally emit float epochs; sub-millisecond noise is dropped.
        if isinstance(value, float):
            return int(value)
        return value

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def duration_ms(self) -> int:
        """Duration carried in ``attributes['duration']`` (ms), or 0."""
        duration = self.attributes.get("duration")
        if isinstance(duration, (int, float)) and not isinstance(duration, bool) and duration > 0:
            return int(duration)
        return 0

    @property
    def end_timestamp(self) -> int:
        return self.timestamp + self.duration_ms

    @property
    def numeric_value(self) -> float | None:
        if isinstance(self.value, (int, float)) and not isinstance(self.value, bool):
            return float(self.value)
        return None

    @property
    def strength(self) -> float:
        """Per-event correlation strength, 0.5 unless the collector set one."""
        raw = self.attributes.get("strength")
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return min(max(float(raw), 0.0), 1.0)
        return 0.5


def coerce_event(item: RawEvent | Mapping[str, Any], source_name: str | None = None) -> RawEvent:
    """Validate one collected item into a ``RawEvent``.

    Args:
        item:        A ``RawEvent`` or a mapping in snake_case or camelCase.
        source_name: Source slug to assume when the item does not carry one.

    Returns:
        The validated event.

    Raises:
        CorruptEventError: If the item is not a mapping or fails validation.
    """
    if isinstance(item, RawEvent):
        return item
    if not isinstance(item, Mapping):
        raise CorruptEventError(f"event must be a mapping, got {type(item).__name__}", item)

    data = dict(item)
    if source_name and not (data.get("source_name") or data.get("sourceName")):
        data["source_name"] = source_name
    try:
        return RawEvent.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "event" for err in exc.errors())
        raise CorruptEventError(f"invalid event ({fields})", item) from exc
