"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current UTC time as a millisecond epoch."""
    return int(utc_now().timestamp() * 1000)


class FusionBase(BaseModel):
    """Base model with shared config for all inbound fusion schemas.

    Accepts both snake_case field names and the camelCase keys produced by
    the mobile collectors (``sourceName``, ``confidenceHint``).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )
