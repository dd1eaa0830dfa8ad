"""
Per-day summary indicators from raw wearable samples.

compute_day_indicators() is pure (DataFrame in, column dict out) so the
statistics can be tested without a database; SummaryAggregator wraps it with
the cache check and the upsert on (user_id, period_start, period_end).
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from psycopg2.extras import RealDictCursor
from scipy import stats as sp_stats

from constants import SAMPLE_COLUMNS
from pipeline.day_markers import day_bounds

log = logging.getLogger("summary_aggregator")

# |slope| below this (units per sample) is "stable"
TREND_EPSILON = {
    "stress": 0.5,
    "hrv": 0.3,
    "recovery": 0.5,
}

# (channel, weight, normaliser) for the composite wellness score.  Negative
# weights mean "lower is better" and contribute |w| * (1 - normalised).
WELLNESS_WEIGHTS = [
    ("avg_stress", -0.30, lambda v: v / 100.0),
    ("avg_recovery", 0.30, lambda v: v / 100.0),
    ("avg_hrv", 0.20, lambda v: (v - 20.0) / 60.0),
    ("avg_sleep_efficiency", 0.20, lambda v: v / 100.0),
]

SUMMARY_COLUMNS = [
    "avg_stress", "max_stress", "stress_volatility", "stress_trend",
    "avg_recovery", "min_recovery", "recovery_trend",
    "avg_heart_rate", "resting_heart_rate", "max_heart_rate",
    "avg_hrv", "hrv_trend", "hrv_volatility",
    "avg_sleep_efficiency", "avg_sleep_heart_rate", "avg_restless_periods",
    "avg_skin_temperature", "temperature_variation",
    "overall_wellness_score", "risk_factors", "data_points_count",
]


# ─── Statistics ────────────────────────────────────────────

def _values(df: pd.DataFrame, column: str) -> np.ndarray:
    if column not in df.columns:
        return np.array([], dtype=float)
    return pd.to_numeric(df[column], errors="coerce").dropna().to_numpy(dtype=float)


def _mean(values: np.ndarray) -> Optional[float]:
    return float(np.mean(values)) if values.size else None


def volatility(values: np.ndarray) -> Optional[float]:
    """Sample standard deviation (n-1); 0 for a single value."""
    if values.size == 0:
        return None
    if values.size < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def trend(values: np.ndarray, epsilon: float) -> Optional[str]:
    """Sign of the least-squares slope of value vs sample index."""
    if values.size == 0:
        return None
    if values.size < 2:
        return "stable"
    slope = sp_stats.linregress(np.arange(values.size, dtype=float), values).slope
    if abs(slope) < epsilon:
        return "stable"
    return "increasing" if slope > 0 else "decreasing"


def wellness_score(indicators: Dict[str, Any]) -> Optional[float]:
    total = 0.0
    weight_sum = 0.0
    for column, weight, normalise in WELLNESS_WEIGHTS:
        value = indicators.get(column)
        if value is None:
            continue
        norm = min(1.0, max(0.0, normalise(float(value))))
        total += weight * norm if weight > 0 else abs(weight) * (1.0 - norm)
        weight_sum += abs(weight)
    if weight_sum == 0:
        return None
    return round(min(100.0, max(0.0, 100.0 * total / weight_sum)), 2)


def risk_factors(indicators: Dict[str, Any]) -> List[Dict[str, Any]]:
    factors: List[Dict[str, Any]] = []

    def add(kind: str, value: Any, severity: str) -> None:
        factors.append({
            "type": kind,
            "value": round(value, 2) if isinstance(value, float) else value,
            "severity": severity,
        })

    hrv = indicators.get("avg_hrv")
    if hrv is not None and hrv < 30:
        add("low_hrv", hrv, "high" if hrv < 20 else "medium")

    stress = indicators.get("avg_stress")
    if stress is not None and stress > 60:
        add("high_stress", stress, "high" if stress > 80 else "medium")

    sleep = indicators.get("avg_sleep_efficiency")
    if sleep is not None and sleep < 70:
        add("poor_sleep", sleep, "high" if sleep < 60 else "medium")

    recovery = indicators.get("avg_recovery")
    if recovery is not None and recovery < 30:
        add("low_recovery", recovery, "high" if recovery < 15 else "medium")

    stress_vol = indicators.get("stress_volatility")
    if stress_vol is not None and stress_vol > 15:
        add("stress_volatility", stress_vol, "low")

    if indicators.get("stress_trend") == "increasing":
        add("increasing_stress", "increasing", "low")
    if indicators.get("recovery_trend") == "decreasing":
        add("decreasing_recovery", "decreasing", "low")
    if indicators.get("hrv_trend") == "decreasing":
        add("decreasing_hrv", "decreasing", "low")
    return factors


def compute_day_indicators(df: pd.DataFrame) -> Dict[str, Any]:
    """Aggregate one day of samples (rows in timestamp order)."""
    if "timestamp" in df.columns:
        df = df.sort_values("timestamp", kind="mergesort")

    stress = _values(df, "stress_value")
    recovery = _values(df, "recovery_value")
    heart = _values(df, "heart_rate")
    hrv = _values(df, "hrv")
    sleep = _values(df, "sleep_efficiency")
    sleep_hr = _values(df, "sleep_heart_rate")
    restless = _values(df, "restless_periods")
    skin = _values(df, "skin_temperature")

    out: Dict[str, Any] = {
        "avg_stress": _mean(stress),
        "max_stress": float(stress.max()) if stress.size else None,
        "stress_volatility": volatility(stress),
        "stress_trend": trend(stress, TREND_EPSILON["stress"]),
        "avg_recovery": _mean(recovery),
        "min_recovery": float(recovery.min()) if recovery.size else None,
        "recovery_trend": trend(recovery, TREND_EPSILON["recovery"]),
        "avg_heart_rate": _mean(heart),
        "resting_heart_rate": float(np.percentile(heart, 10)) if heart.size else None,
        "max_heart_rate": float(heart.max()) if heart.size else None,
        "avg_hrv": _mean(hrv),
        "hrv_trend": trend(hrv, TREND_EPSILON["hrv"]),
        "hrv_volatility": volatility(hrv),
        "avg_sleep_efficiency": _mean(sleep),
        "avg_sleep_heart_rate": _mean(sleep_hr),
        "avg_restless_periods": _mean(restless),
        "avg_skin_temperature": _mean(skin),
        "temperature_variation": float(skin.max() - skin.min()) if skin.size else None,
        "data_points_count": int(len(df)),
    }
    out["overall_wellness_score"] = wellness_score(out)
    out["risk_factors"] = risk_factors(out)
    return out


# ─── Persistence ───────────────────────────────────────────

class SummaryAggregator:
    """Computes and caches summary_indicators rows for one user-day."""

    def __init__(self, conn):
        self.conn = conn

    def _fetch(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def _sample_stats(self, user_id: str, start, end) -> Tuple[int, Any]:
        row = self._fetch(
            """
            SELECT COUNT(*) AS n, MAX(updated_at) AS last_updated
            FROM wearable_data
            WHERE user_id = %s AND timestamp >= %s AND timestamp < %s
            """,
            (user_id, start, end),
        )[0]
        return int(row["n"]), row["last_updated"]

    def _existing(self, user_id: str, start, end) -> Optional[Dict[str, Any]]:
        rows = self._fetch(
            """
            SELECT * FROM summary_indicators
            WHERE user_id = %s AND period_start = %s AND period_end = %s
            """,
            (user_id, start, end),
        )
        return rows[0] if rows else None

    def _load_samples(self, user_id: str, start, end) -> pd.DataFrame:
        rows = self._fetch(
            f"""
            SELECT timestamp, {", ".join(SAMPLE_COLUMNS)}
            FROM wearable_data
            WHERE user_id = %s AND timestamp >= %s AND timestamp < %s
            ORDER BY timestamp
            """,
            (user_id, start, end),
        )
        return pd.DataFrame(rows, columns=["timestamp"] + SAMPLE_COLUMNS)

    def _delete(self, user_id: str, start, end) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM summary_indicators
                WHERE user_id = %s AND period_start = %s AND period_end = %s
                """,
                (user_id, start, end),
            )

    def _upsert(self, user_id: str, start, end, indicators: Dict[str, Any]) -> Dict[str, Any]:
        values = [
            json.dumps(indicators[c]) if c == "risk_factors" else indicators[c]
            for c in SUMMARY_COLUMNS
        ]
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in SUMMARY_COLUMNS)
        rows = self._fetch(
            f"""
            INSERT INTO summary_indicators (user_id, period_start, period_end,
                                            {", ".join(SUMMARY_COLUMNS)}, processed_at)
            VALUES (%s, %s, %s, {", ".join(["%s"] * len(SUMMARY_COLUMNS))}, NOW())
            ON CONFLICT (user_id, period_start, period_end) DO UPDATE SET
                {updates},
                processed_at = NOW(),
                updated_at = NOW()
            RETURNING *
            """,
            tuple([user_id, start, end] + values),
        )
        return rows[0]

    def aggregate(self, user_id: str, day: date, force: bool = False) -> Tuple[Optional[Dict[str, Any]], str]:
        """Return (summary row or None, outcome) with outcome one of
        'processed', 'cached' or 'empty'.  The caller owns the transaction."""
        start, end = day_bounds(day)
        count, last_updated = self._sample_stats(user_id, start, end)

        if count == 0:
            self._delete(user_id, start, end)
            return None, "empty"

        if not force:
            existing = self._existing(user_id, start, end)
            if (
                existing is not None
                and existing.get("processed_at") is not None
                and last_updated is not None
                and existing["processed_at"] > last_updated
                and int(existing.get("data_points_count") or 0) == count
            ):
                return existing, "cached"

        indicators = compute_day_indicators(self._load_samples(user_id, start, end))
        row = self._upsert(user_id, start, end, indicators)
        log.debug("Aggregated %s for user %s (%d samples)", day, user_id, count)
        return row, "processed"
