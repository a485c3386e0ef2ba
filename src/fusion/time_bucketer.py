"""Time bucketing — align imprecisely-timed events from many sources onto a
common grid of fixed-width slots.

Slots are sparse: a slot exists only where at least one event landed.  Each
slot holds one ``SlotAggregate`` per contributing source plus a lineage
breadcrumb recording how many events (and which time range) it came from.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping, Sequence

from src.fusion.base import NumericStats, SlotAggregate, SlotBucket, SlotLineage, TimeSlot
from src.models.events import RawEvent

logger = logging.getLogger("minakami.fusion.time_bucketer")


def slot_for(timestamp: int, width_ms: int) -> TimeSlot:
    """Return the slot containing ``timestamp``.

    ``start = floor(timestamp / width) * width``; the slot is ``[start, start + width)``.
    """
    start = (timestamp // width_ms) * width_ms
    return TimeSlot(start=start, end=start + width_ms, width_ms=width_ms)


def _event_fields(event: RawEvent) -> Iterator[tuple[str, Any]]:
    """Yield the aggregatable (field, value) pairs of an event."""
    if event.value is not None:
        yield "value", event.value
    for key, value in event.attributes.items():
        if key in ("timestamp", "value"):
            continue
        yield key, value


def aggregate_source(events: Sequence[RawEvent]) -> SlotAggregate:
    """Aggregate one source's events inside one slot.

    Numeric fields accumulate sum/count/min/max with a running average.
    Strings and booleans collect into a de-duplicated list of observed
    values.  Nested values (dicts, lists) are not aggregated.
    """
    agg = SlotAggregate()
    for event in sorted(events, key=lambda e: (e.timestamp, e.id)):
        agg.count += 1
        agg.events.append(event)
        for name, value in _event_fields(event):
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                agg.numeric.setdefault(name, NumericStats()).add(float(value))
            elif isinstance(value, (str, bool)):
                seen = agg.categorical.setdefault(name, [])
                if value not in seen:
                    seen.append(value)
    return agg


class TimeBucketer:
    """Partition per-source event lists into fixed-width slots.

    Usage::

        bucketer = TimeBucketer()
        buckets = bucketer.bucket({"strava": events, "gps": fixes}, 5 * 60 * 1000)
        for start, bucket in buckets.items():
            print(start, list(bucket.sources))
    """

    def bucket(
        self,
        sources: Mapping[str, Sequence[RawEvent]],
        width_ms: int,
    ) -> dict[int, SlotBucket]:
        """Bucket every source's events into sparse time slots.

        Args:
            sources:  source name → events from that source.
            width_ms: Slot width in milliseconds.

        Returns:
            slot start → SlotBucket, ordered by slot start.  Empty input (or
            sources with no events) yields an empty dict.

        Raises:
            ValueError: If ``width_ms`` is not positive.
        """
        if width_ms <= 0:
            raise ValueError(f"Slot width must be positive, got {width_ms}")

        starts = sorted(
            {
                slot_for(event.timestamp, width_ms).start
                for events in sources.values()
                for event in events
            }
        )
        buckets: dict[int, SlotBucket] = {
            start: SlotBucket(slot=TimeSlot(start, start + width_ms, width_ms))
            for start in starts
        }

        # Single pass per source: route each event to its slot
        for source_name in sorted(sources):
            per_slot: dict[int, list[RawEvent]] = {}
            for event in sources[source_name]:
                per_slot.setdefault(slot_for(event.timestamp, width_ms).start, []).append(event)

            for start, items in per_slot.items():
                bucket = buckets[start]
                bucket.sources[source_name] = aggregate_source(items)
                timestamps = [e.timestamp for e in items]
                bucket.lineage.append(
                    SlotLineage(
                        source=source_name,
                        count=len(items),
                        time_range=(min(timestamps), max(timestamps)),
                    )
                )

        logger.debug(
            "Bucketed %d sources into %d slots of %d ms",
            len(sources), len(buckets), width_ms,
        )
        return buckets
