"""Shared fixtures and event builders for fusion engine tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import pytest

from src.fusion.config_loader import FusionConfig, load_fusion_config
from src.fusion.store import InMemoryDataStore
from src.models.events import EventType, RawEvent

# Canonical test day, and its midnight in ms (UTC)
TEST_DATE = date(2026, 3, 14)
DAY_START_MS = int(datetime(2026, 3, 14, tzinfo=timezone.utc).timestamp() * 1000)

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS

# 07:00 on the test day
MORNING_MS = DAY_START_MS + 7 * HOUR_MS


def morning_export() -> dict[str, list]:
    """A run at the gym plus steps from two sources, as collectors send it."""
    return {
        "strava": [
            {"type": "workout", "timestamp": MORNING_MS + 1000,
             "attributes": {"type": "running", "duration": 1_800_000}},
        ],
        "gps": [
            {"type": "location", "timestamp": MORNING_MS + 1_002_000,
             "attributes": {"name": "Basic-Fit Gym", "accuracy": 50}},
        ],
        "health_connect": [
            {"type": "steps", "timestamp": MORNING_MS + MINUTE_MS, "value": 9000},
        ],
        "google_fit": [
            {"type": "steps", "timestamp": MORNING_MS + 2 * MINUTE_MS, "value": 9050},
        ],
    }


def make_event(
    event_type: EventType | str,
    timestamp: int,
    source: str = "health_connect",
    value: Any = None,
    event_id: str | None = None,
    confidence_hint: float | None = None,
    **attributes: Any,
) -> RawEvent:
    """Build a RawEvent with keyword attributes."""
    return RawEvent(
        id=event_id or f"{source}:{EventType(event_type).value}:{timestamp}",
        type=EventType(event_type),
        timestamp=timestamp,
        value=value,
        attributes=attributes,
        source_name=source,
        confidence_hint=confidence_hint,
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fusion_config() -> FusionConfig:
    """Load the real fusion config for tests."""
    return load_fusion_config()


# ---------------------------------------------------------------------------
# Event fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gym_workout_events() -> list[RawEvent]:
    """A 30-minute run followed two seconds later by a gym location fix."""
    return [
        make_event(
            EventType.WORKOUT, 1000, source="strava",
            type="running", duration=1_800_000,
        ),
        make_event(
            EventType.LOCATION, 1_002_000, source="gps",
            name="Basic-Fit Gym",
        ),
    ]


@pytest.fixture
def bedtime_events() -> list[RawEvent]:
    """Screen time drop, arriving home, then sleep, within two hours."""
    start = DAY_START_MS + 21 * HOUR_MS
    return [
        make_event(
            EventType.APP_USAGE, start, source="app_usage",
            app_name="Instagram", trend="decrease", duration=20 * MINUTE_MS,
        ),
        make_event(
            EventType.LOCATION, start + 30 * MINUTE_MS, source="gps",
            name="Home", category="home",
        ),
        make_event(
            EventType.SLEEP, start + 90 * MINUTE_MS, source="samsung_health",
            duration=int(7.5 * HOUR_MS),
        ),
    ]


@pytest.fixture
def store() -> InMemoryDataStore:
    return InMemoryDataStore()
