"""
Tests for the migraine correlation engine computations.

Covers: pooled standard deviation, confidence, per-channel effect size and
direction, pattern ordering, top-trigger selection, row conversion and the
recompute driver with its DB layers monkeypatched.
"""

import math
from datetime import date, timedelta
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from correlation_engine import (
    CHANNELS,
    MIN_CONFIDENCE,
    CorrelationEngine,
    confidence,
    discover_patterns,
    evaluate_channel,
    pattern_from_row,
    pooled_std,
    sort_patterns,
    top_trigger,
)

MIGRAINE_HRV = [20.0, 25.0, 22.0, 28.0]
NORMAL_HRV = [45.0, 50.0, 48.0, 52.0, 47.0, 49.0]


def _days_frame(migraine_values, normal_values, column="avg_hrv"):
    start = date(2025, 1, 1)
    values = list(migraine_values) + list(normal_values)
    days = [start + timedelta(days=i) for i in range(len(values))]
    migraine_days = set(days[: len(migraine_values)])
    return pd.DataFrame({"day": days, column: values}), migraine_days


# ─── Effect size primitives ──────────────────────────────────


class TestPooledStd:

    def test_matches_textbook_formula(self):
        a = np.array(MIGRAINE_HRV)
        b = np.array(NORMAL_HRV)
        expected = math.sqrt((3 * 12.25 + 5 * 5.9) / 8)
        assert pooled_std(a, b) == pytest.approx(expected)

    def test_single_values_have_no_spread(self):
        assert pooled_std(np.array([1.0]), np.array([2.0])) is None

    def test_one_singleton_group(self):
        assert pooled_std(np.array([1.0]), np.array([2.0, 4.0])) == pytest.approx(math.sqrt(2.0))


class TestConfidence:

    def test_small_samples_discounted(self):
        assert confidence(4, 6, -8.6) == pytest.approx(0.24)

    def test_saturates_at_one(self):
        assert confidence(20, 30, 2.0) == 1.0

    def test_weak_effect(self):
        assert confidence(10, 10, 0.05) == pytest.approx(0.05)


# ─── evaluate_channel ────────────────────────────────────────


class TestEvaluateChannel:

    def test_low_hrv_pattern(self):
        patterns = evaluate_channel("hrv", np.array(MIGRAINE_HRV), np.array(NORMAL_HRV))
        assert len(patterns) == 1
        p = patterns[0]
        assert p["patternType"] == "low_hrv"
        assert p["patternName"] == "Low HRV"
        assert p["correlationStrength"] == -1.0
        assert p["patternDefinition"]["effectSize"] < -5
        assert p["patternDefinition"]["operator"] == "<"
        assert p["patternDefinition"]["metric"] == "avg_hrv"
        assert p["confidenceScore"] == pytest.approx(0.24)
        assert p["thresholdValue"] == pytest.approx(36.125, abs=0.01)
        assert p["avgValueOnMigraineDays"] == pytest.approx(23.75)
        assert p["avgValueOnNormalDays"] == pytest.approx(48.5)
        assert p["migraineDaysCount"] == 4
        assert p["totalDaysAnalyzed"] == 10

    def test_high_direction(self):
        patterns = evaluate_channel(
            "stress", np.array([70.0, 75.0, 80.0, 75.0]), np.array([30.0, 35.0, 40.0, 35.0])
        )
        assert [p["patternType"] for p in patterns] == ["high_stress"]
        assert patterns[0]["patternDefinition"]["operator"] == ">"

    def test_empty_group(self):
        assert evaluate_channel("hrv", np.array([]), np.array(NORMAL_HRV)) == []

    def test_no_variance(self):
        assert evaluate_channel("hrv", np.array([40.0]), np.array([40.0])) == []
        assert evaluate_channel("hrv", np.array([40.0] * 4), np.array([40.0] * 4)) == []

    def test_constant_groups_with_different_means(self):
        patterns = evaluate_channel("hrv", np.array([20.0] * 4), np.array([40.0] * 4))
        assert [p["patternType"] for p in patterns] == ["low_hrv"]
        assert patterns[0]["correlationStrength"] == -1.0
        assert patterns[0]["patternDefinition"]["effectSize"] == -1.0
        assert patterns[0]["confidenceScore"] == pytest.approx(0.16)

    def test_weak_pattern_dropped(self):
        # d is large but one migraine day and one normal day give 0.1 * 0.1
        migraine = np.array([20.0])
        normal = np.array([45.0, 46.0])
        assert confidence(1, 2, -10) < MIN_CONFIDENCE
        assert evaluate_channel("hrv", migraine, normal) == []


# ─── discover_patterns ───────────────────────────────────────


class TestDiscoverPatterns:

    def test_hrv_scenario(self):
        days, migraine_days = _days_frame(MIGRAINE_HRV, NORMAL_HRV)
        patterns = discover_patterns(days, migraine_days)
        assert [p["patternType"] for p in patterns] == ["low_hrv"]

    def test_requires_both_kinds_of_day(self):
        days, _ = _days_frame(MIGRAINE_HRV, NORMAL_HRV)
        assert discover_patterns(days, set()) == []
        assert discover_patterns(days, set(days["day"])) == []

    def test_empty_frame(self):
        assert discover_patterns(pd.DataFrame(columns=["day", "avg_hrv"]), {date(2025, 1, 1)}) == []

    def test_missing_values_are_excluded(self):
        days, migraine_days = _days_frame(MIGRAINE_HRV + [None], NORMAL_HRV)
        patterns = discover_patterns(days, migraine_days)
        assert patterns[0]["migraineDaysCount"] == 4

    def test_every_channel_is_known(self):
        assert set(CHANNELS) == {
            "stress", "recovery", "hrv", "heart_rate", "sleep_efficiency", "skin_temp_variation",
        }


# ─── Ordering and top trigger ────────────────────────────────


def _p(kind, strength, conf):
    return {"patternType": kind, "correlationStrength": strength, "confidenceScore": conf}


class TestOrdering:

    def test_sort_by_absolute_strength(self):
        out = sort_patterns([_p("high_stress", 0.4, 0.5), _p("low_hrv", -0.9, 0.2), _p("low_recovery", 0.6, 0.9)])
        assert [p["patternType"] for p in out] == ["low_hrv", "low_recovery", "high_stress"]

    def test_ties_break_on_type(self):
        out = sort_patterns([_p("low_hrv", -0.5, 0.5), _p("high_stress", 0.5, 0.5)])
        assert [p["patternType"] for p in out] == ["high_stress", "low_hrv"]

    def test_top_trigger_needs_confidence(self):
        patterns = [_p("low_hrv", -0.9, 0.2), _p("high_stress", 0.5, 0.3)]
        assert top_trigger(patterns)["patternType"] == "high_stress"

    def test_no_top_trigger(self):
        assert top_trigger([_p("low_hrv", -0.9, 0.29)]) is None
        assert top_trigger([]) is None


class TestPatternFromRow:

    def test_converts_json_and_decimals(self):
        from decimal import Decimal

        row = {
            "id": "7f9c",
            "pattern_type": "low_hrv",
            "pattern_name": "Low HRV",
            "pattern_definition": '{"metric": "avg_hrv", "operator": "<", "threshold": 36.12}',
            "correlation_strength": Decimal("-1.000"),
            "confidence_score": Decimal("0.240"),
            "migraine_days_count": 4,
            "total_days_analyzed": 10,
            "avg_value_on_migraine_days": Decimal("23.75"),
            "avg_value_on_normal_days": Decimal("48.50"),
            "threshold_value": Decimal("36.13"),
            "first_detected_at": None,
            "last_updated_at": None,
        }
        p = pattern_from_row(row)
        assert p["patternDefinition"]["metric"] == "avg_hrv"
        assert p["correlationStrength"] == -1.0
        assert p["confidenceScore"] == pytest.approx(0.24)
        assert p["migraineDaysCount"] == 4


# ─── CorrelationEngine.recompute ─────────────────────────────


class TestRecompute:

    def test_recompute_replaces_patterns(self, monkeypatch):
        days, migraine_days = _days_frame(MIGRAINE_HRV, NORMAL_HRV)
        markers = MagicMock()
        markers.migraine_days.return_value = migraine_days
        engine = CorrelationEngine(MagicMock(), markers=markers)
        monkeypatch.setattr(engine, "_load_days", lambda user_id: days)
        saved = {}
        monkeypatch.setattr(engine, "_replace_patterns", lambda user_id, patterns: saved.update(patterns=patterns))

        result = engine.recompute("u1")

        assert result["migraineDaysCount"] == 4
        assert result["normalDaysCount"] == 6
        assert result["totalDaysAnalyzed"] == 10
        assert [p["patternType"] for p in result["patterns"]] == ["low_hrv"]
        assert result["topTrigger"] is None
        assert saved["patterns"] == result["patterns"]
        markers.migraine_days.assert_called_once_with("u1", days["day"].min(), days["day"].max())

    def test_no_summary_rows(self, monkeypatch):
        markers = MagicMock()
        engine = CorrelationEngine(MagicMock(), markers=markers)
        monkeypatch.setattr(engine, "_load_days", lambda user_id: pd.DataFrame(columns=["day", "avg_hrv"]))
        saved = {}
        monkeypatch.setattr(engine, "_replace_patterns", lambda user_id, patterns: saved.update(patterns=patterns))

        result = engine.recompute("u1")

        assert result["patterns"] == []
        assert result["totalDaysAnalyzed"] == 0
        assert saved["patterns"] == []
        markers.migraine_days.assert_not_called()
