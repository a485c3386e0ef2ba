"""Correlation event types and the predicates that classify raw events.

A correlation rule names the events it needs (``location_gym``,
``workout_start``...).  Each name maps to the raw ``EventType`` it applies
to plus an optional refinement test, so a raw event can only ever satisfy
names declared for its own type.
"""

from __future__ import annotations

from typing import Callable, NamedTuple

from src.fusion.config_loader import CorrelationConfig
from src.models.events import EventType, RawEvent

_NAME_KEYS = ("name", "display_name", "place_name", "address")


def location_name(event: RawEvent) -> str | None:
    """Display name of a location event, if the collector provided one."""
    for key in _NAME_KEYS:
        value = event.attributes.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    if isinstance(event.value, str) and event.value.strip():
        return event.value.strip()
    return None


def _tagged(event: RawEvent, category: str, config: CorrelationConfig) -> bool:
    """Location/app tagged with ``category`` or named after one of its keywords."""
    tag = event.attributes.get("category")
    if isinstance(tag, str) and tag.lower() == category:
        return True
    name = (location_name(event) or "").lower()
    return any(word in name for word in config.keywords.get(category, ()))


def _is_intense(event: RawEvent, config: CorrelationConfig) -> bool:
    return str(event.attributes.get("intensity", "")).lower() == "high"


def _is_gym(event: RawEvent, config: CorrelationConfig) -> bool:
    return _tagged(event, "gym", config)


def _is_home(event: RawEvent, config: CorrelationConfig) -> bool:
    return _tagged(event, "home", config)


def _is_work(event: RawEvent, config: CorrelationConfig) -> bool:
    return _tagged(event, "work", config)


def _is_fitness_app(event: RawEvent, config: CorrelationConfig) -> bool:
    category = str(event.attributes.get("category", "")).lower()
    if category in ("fitness", "health_fitness", "health & fitness"):
        return True
    app = str(event.attributes.get("app_name") or event.attributes.get("package") or "").lower()
    return any(word in app for word in config.keywords.get("fitness_apps", ()))


def _is_usage_decrease(event: RawEvent, config: CorrelationConfig) -> bool:
    if str(event.attributes.get("trend", "")).lower() == "decrease":
        return True
    change = event.attributes.get("change")
    return isinstance(change, (int, float)) and not isinstance(change, bool) and change < 0


def _is_step_increase(event: RawEvent, config: CorrelationConfig) -> bool:
    steps = event.numeric_value
    return steps is not None and steps >= config.min_step_increase


def _is_personal_call(event: RawEvent, config: CorrelationConfig) -> bool:
    category = event.attributes.get("category") or event.attributes.get("contact_type")
    return isinstance(category, str) and category.lower() == "personal"


class Predicate(NamedTuple):
    """Raw event type plus an optional refinement test."""

    event_type: EventType
    test: Callable[[RawEvent, CorrelationConfig], bool] | None = None


PREDICATES: dict[str, Predicate] = {
    "workout_start": Predicate(EventType.WORKOUT),
    "workout_intense": Predicate(EventType.WORKOUT, _is_intense),
    "location_change": Predicate(EventType.LOCATION),
    "location_gym": Predicate(EventType.LOCATION, _is_gym),
    "location_home": Predicate(EventType.LOCATION, _is_home),
    "location_work": Predicate(EventType.LOCATION, _is_work),
    "app_usage_fitness": Predicate(EventType.APP_USAGE, _is_fitness_app),
    "app_usage_decrease": Predicate(EventType.APP_USAGE, _is_usage_decrease),
    "sleep_start": Predicate(EventType.SLEEP),
    "step_increase": Predicate(EventType.STEPS, _is_step_increase),
    "call_personal": Predicate(EventType.CALLS, _is_personal_call),
}


def event_matches(event: RawEvent, required: str, config: CorrelationConfig) -> bool:
    """Return True if ``event`` satisfies the correlation event type ``required``.

    Unknown names never match.
    """
    predicate = PREDICATES.get(required)
    if predicate is None or event.type is not predicate.event_type:
        return False
    return predicate.test is None or predicate.test(event, config)
