"""Minakami fusion — host entry point.

Runs one daily pass over a JSON export of collected events and prints the
ranked narratives.

Run locally:
    python -m src.main events.json 2026-03-14

The export maps source names to event lists::

    {"strava": [{"type": "workout", "timestamp": 1773480000000, ...}], "gps": [...]}
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from zoneinfo import ZoneInfo

from src.config import Settings, get_settings
from src.fusion.config_loader import get_fusion_config, load_fusion_config
from src.fusion.engine import FusionEngine
from src.fusion.store import DataStore, InMemoryDataStore

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("minakami")


# ---------- Engine factory ----------

def create_engine(store: DataStore, settings: Settings | None = None) -> FusionEngine:
    """Build a FusionEngine from environment settings.

    A broken fusion config raises ConfigurationError here, at startup.
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    if settings.fusion_config_path:
        config = load_fusion_config(Path(settings.fusion_config_path))
    else:
        config = get_fusion_config()

    return FusionEngine(
        store,
        config=config,
        bucket_width_ms=settings.bucket_width_ms,
        timeout=settings.store_timeout_seconds,
        tz=ZoneInfo(settings.timezone),
    )


async def run(events_path: Path, day: date, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    with events_path.open("r", encoding="utf-8") as fh:
        export = json.load(fh)
    if not isinstance(export, dict):
        logger.error("%s must map source names to event lists", events_path)
        return 1

    store = InMemoryDataStore(export, tz=ZoneInfo(settings.timezone))
    engine = create_engine(store, settings)
    logger.info("Starting %s v%s for %s", settings.app_name, settings.app_version, day)

    result = await engine.run_day(day)
    await engine.save(result)

    for narrative in result.narratives:
        print(f"[{narrative.confidence:.2f}] {narrative.text}")
    for insight in result.insights:
        print(f"({insight.severity}) {insight.message}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="minakami-fusion", description=__doc__.splitlines()[0])
    parser.add_argument("events", type=Path, help="JSON export of collected events")
    parser.add_argument("day", type=date.fromisoformat, help="calendar day, YYYY-MM-DD")
    args = parser.parse_args(argv)
    return asyncio.run(run(args.events, args.day))


if __name__ == "__main__":
    sys.exit(main())
