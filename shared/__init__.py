"""Shared modules for the signal consensus pipeline."""

from .models import (
    ConsensusEvent,
    IngestResult,
    NormalizedItem,
    RawItem,
    Score,
    ScoreLevel,
    WindowEntry,
)

__all__ = [
    "ConsensusEvent",
    "IngestResult",
    "NormalizedItem",
    "RawItem",
    "Score",
    "ScoreLevel",
    "WindowEntry",
]
