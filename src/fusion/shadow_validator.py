"""Shadow validation — cross-check a primary reading against secondary
("shadow") sources for the same timestamp and type.

Deviation is relative and symmetric::

    deviation(a, b) = |a - b| / max(|a|, |b|, 1)

Agreement bands and anomaly thresholds come from fusion_config.yaml.
Anomalies are appended to a rolling, time-ordered log owned by the
validator; retention is the caller's concern (see ``prune``).
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import threading
from typing import TYPE_CHECKING, Iterable, Sequence

from src.fusion.base import (
    Agreement,
    FusedDataPoint,
    Health,
    Severity,
    ShadowReading,
    ShadowValidationResult,
    ValidationReport,
)
from src.fusion.config_loader import FusionConfig, ValidationConfig, get_fusion_config
from src.fusion.errors import SourceUnavailableError

if TYPE_CHECKING:
    from src.fusion.store import DataStore

logger = logging.getLogger("minakami.fusion.shadow_validator")


def deviation(a: float, b: float) -> float:
    """Relative deviation between two readings, guarded against divide-by-zero.

    Symmetric in its arguments and clamped to [0, 1].
    """
    denominator = max(abs(a), abs(b), 1.0)
    return min(abs(a - b) / denominator, 1.0)


def classify_agreement(dev: float, config: ValidationConfig) -> Agreement:
    if dev < config.good_agreement_below:
        return Agreement.GOOD
    if dev < config.fair_agreement_below:
        return Agreement.FAIR
    return Agreement.POOR


def classify_severity(dev: float, config: ValidationConfig) -> Severity | None:
    """Return the anomaly severity for a deviation, or None if not anomalous."""
    if dev <= config.anomaly_above:
        return None
    return Severity.HIGH if dev > config.high_severity_above else Severity.MEDIUM


def assess_health(
    anomalies: Iterable[ShadowValidationResult], config: ValidationConfig
) -> Health:
    """Poor if any high-severity anomaly, fair if more than N anomalies, else good."""
    anomalies = list(anomalies)
    if any(a.severity is Severity.HIGH for a in anomalies):
        return Health.POOR
    if len(anomalies) > config.fair_health_max_anomalies:
        return Health.FAIR
    return Health.GOOD


class ShadowValidator:
    """Compare primary readings with shadow sources and keep an anomaly log.

    Usage::

        validator = ShadowValidator()
        report = validator.validate(point, [ShadowReading("google_fit", 9050)])
        report.overall_health   # Health.GOOD
    """

    def __init__(self, config: FusionConfig | None = None) -> None:
        self._config = (config or get_fusion_config()).validation
        self._log: list[ShadowValidationResult] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare(
        self, primary: FusedDataPoint, shadow: ShadowReading
    ) -> ShadowValidationResult:
        """Compare one primary reading against one shadow reading."""
        dev = deviation(primary.value, shadow.value)
        return ShadowValidationResult(
            timestamp=primary.timestamp,
            data_type=primary.type.value,
            primary_source=primary.source_name,
            shadow_source=shadow.source,
            primary_value=primary.value,
            shadow_value=shadow.value,
            deviation=dev,
            agreement=classify_agreement(dev, self._config),
            severity=classify_severity(dev, self._config),
        )

    def validate(
        self,
        primary: FusedDataPoint,
        shadows: Sequence[ShadowReading],
        skipped_sources: Sequence[str] = (),
    ) -> ValidationReport:
        """Validate a primary reading against every available shadow.

        Anomalies are appended to the rolling log.  ``overall_health`` reflects
        the anomalies of this call only.

        Args:
            primary:         The fused datapoint under test.
            shadows:         Shadow readings for the same timestamp and type.
            skipped_sources: Sources that could not be consulted (recorded as-is).

        Returns:
            ValidationReport.
        """
        results = [self.compare(primary, s) for s in shadows]
        report = ValidationReport(results=results, skipped_sources=list(skipped_sources))
        anomalies = report.anomalies
        if anomalies:
            self._append(anomalies)
            for a in anomalies:
                logger.info(
                    "Shadow anomaly on %s@%d: %s=%.2f vs %s=%.2f (deviation=%.3f, %s)",
                    a.data_type, a.timestamp, a.primary_source, a.primary_value,
                    a.shadow_source, a.shadow_value, a.deviation, a.severity.value,
                )
        report.overall_health = assess_health(anomalies, self._config)
        return report

    async def validate_from_store(
        self,
        primary: FusedDataPoint,
        shadow_sources: Sequence[str],
        store: DataStore,
        timeout: float = 2.0,
        extra_shadows: Sequence[ShadowReading] = (),
    ) -> ValidationReport:
        """Fetch shadow readings from the data store, then validate.

        A shadow source whose lookup raises or times out is skipped and logged
        at debug level; the remaining shadows are still compared.  Sources
        that return ``None`` (no reading) are simply absent.

        Args:
            primary:        The fused datapoint under test.
            shadow_sources: Source slugs to ask the store for.
            store:          Data store collaborator.
            timeout:        Per-lookup timeout in seconds.
            extra_shadows:  Readings already in hand (e.g. from the same slot).

        Returns:
            ValidationReport covering every shadow that could be read.
        """
        shadows = list(extra_shadows)
        skipped: list[str] = []
        for source in shadow_sources:
            try:
                value = await fetch_shadow(store, source, primary, timeout)
            except SourceUnavailableError as exc:
                logger.debug("Skipping shadow comparison: %s", exc)
                skipped.append(source)
                continue
            if value is not None:
                shadows.append(ShadowReading(source=source, value=value))
        return self.validate(primary, shadows, skipped)

    # ------------------------------------------------------------------
    # Rolling log
    # ------------------------------------------------------------------

    def _append(self, anomalies: Iterable[ShadowValidationResult]) -> None:
        with self._lock:
            for anomaly in anomalies:
                # Keep the log time-ordered even when slots arrive out of order
                bisect.insort(self._log, anomaly, key=lambda r: r.timestamp)

    @property
    def log(self) -> tuple[ShadowValidationResult, ...]:
        """Snapshot of the anomaly log, oldest first."""
        with self._lock:
            return tuple(self._log)

    def anomalies_since(self, timestamp: int) -> list[ShadowValidationResult]:
        with self._lock:
            return [r for r in self._log if r.timestamp >= timestamp]

    def prune(self, before_timestamp: int) -> int:
        """Drop log entries older than ``before_timestamp``.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            keep = [r for r in self._log if r.timestamp >= before_timestamp]
            removed = len(self._log) - len(keep)
            self._log = keep
        return removed

    def assess(self, reports: Iterable[ValidationReport]) -> Health:
        """Overall health of a whole pass, from every report's anomalies."""
        return assess_health(
            (a for report in reports for a in report.anomalies), self._config
        )


async def fetch_shadow(
    store: DataStore, source: str, primary: FusedDataPoint, timeout: float
) -> float | None:
    """Ask the store for a shadow reading, normalising every failure.

    Returns:
        The numeric shadow value, or None when the store has no reading (or a
        non-numeric one).

    Raises:
        SourceUnavailableError: If the lookup raises or exceeds ``timeout``.
    """
    try:
        value = await asyncio.wait_for(
            store.get_shadow_reading(source, primary.timestamp, primary.type.value),
            timeout=timeout,
        )
    except Exception as exc:  # any store failure degrades to a skip
        raise SourceUnavailableError(source, "shadow reading", exc) from exc
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
