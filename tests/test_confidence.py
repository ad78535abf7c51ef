"""
Tests for confidence classification.
"""

import math

import pytest

from src.supportline.confidence import (
    DEFAULT_OBSERVATION_THRESHOLDS,
    ConfidenceLevel,
    ConfidenceThresholds,
    classify,
    coerce_confidence,
)


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        "score, expected",
        [
            (0.95, ConfidenceLevel.HIGH),
            (0.9, ConfidenceLevel.MEDIUM),
            (0.61, ConfidenceLevel.MEDIUM),
            (0.6, ConfidenceLevel.LOW),
            (0.0, ConfidenceLevel.LOW),
        ],
    )
    def test_turn_thresholds_are_strict(self, score, expected):
        assert classify(score) == expected

    def test_observation_thresholds(self):
        assert classify(0.85, DEFAULT_OBSERVATION_THRESHOLDS) == ConfidenceLevel.HIGH
        assert classify(0.8, DEFAULT_OBSERVATION_THRESHOLDS) == ConfidenceLevel.MEDIUM
        assert classify(0.5, DEFAULT_OBSERVATION_THRESHOLDS) == ConfidenceLevel.LOW

    def test_thresholds_follow_config(self, config):
        assert ConfidenceThresholds.for_turns(config) == ConfidenceThresholds(0.9, 0.6)
        assert ConfidenceThresholds.for_observations(config) == ConfidenceThresholds(0.8, 0.5)


class TestCoerceConfidence:
    """Malformed confidence values are treated as absent."""

    @pytest.mark.parametrize("value", [None, "abc", math.nan, math.inf, True, {"x": 1}])
    def test_malformed_values(self, value):
        assert coerce_confidence(value) is None

    def test_numeric_strings_accepted(self):
        assert coerce_confidence("0.75") == 0.75
        assert coerce_confidence(1) == 1.0
