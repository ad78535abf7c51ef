"""
Speech-recognition confidence classification.

Two threshold sets are in use: one for finalized turns (0.9 / 0.6) and a
looser one for raw recognition observations (0.8 / 0.5). Both come from config.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ConfidenceThresholds:
    high: float = 0.9
    medium: float = 0.6

    @classmethod
    def for_turns(cls, config: Any) -> "ConfidenceThresholds":
        return cls(high=config.confidence_high, medium=config.confidence_medium)

    @classmethod
    def for_observations(cls, config: Any) -> "ConfidenceThresholds":
        return cls(high=config.observation_confidence_high, medium=config.observation_confidence_medium)


DEFAULT_TURN_THRESHOLDS = ConfidenceThresholds(high=0.9, medium=0.6)
DEFAULT_OBSERVATION_THRESHOLDS = ConfidenceThresholds(high=0.8, medium=0.5)


def classify(score: float, thresholds: ConfidenceThresholds = DEFAULT_TURN_THRESHOLDS) -> ConfidenceLevel:
    """Map a recognition score to HIGH / MEDIUM / LOW (strictly-greater comparisons)."""
    if score > thresholds.high:
        return ConfidenceLevel.HIGH
    if score > thresholds.medium:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def coerce_confidence(value: Any) -> Optional[float]:
    """Return a usable float score, or None for missing / malformed / NaN values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(score) or math.isinf(score):
        return None
    return score
