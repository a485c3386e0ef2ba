"""Minakami Data Fusion & Event Correlation Engine.

Turns loosely-timestamped events from many on-device sources into
confidence-scored, validated, provenance-tracked datapoints and short
behavioural narratives for the journal layer.

Core modules:
    time_bucketer      — Align events from all sources onto a fixed slot grid
    confidence         — Additive, explainable per-datapoint confidence
    shadow_validator   — Cross-check primary readings against shadow sources
    lineage            — Provenance records and daily data-quality reports
    correlation_engine — Match multi-event behavioural rules
    narrative          — Fill narrative templates and rank the results
    engine             — Daily fusion pass over a DataStore
    config_loader      — Load/validate fusion_config.yaml
"""

from src.fusion.config_loader import FusionConfig, get_fusion_config, load_fusion_config
from src.fusion.errors import (
    ConfigurationError,
    CorruptEventError,
    FusionError,
    SourceUnavailableError,
)

__all__ = [
    "FusionConfig",
    "get_fusion_config",
    "load_fusion_config",
    "FusionError",
    "ConfigurationError",
    "CorruptEventError",
    "SourceUnavailableError",
]
