"""
Migraine Correlation Engine
===========================
Discovers, per user, which daily indicators separate migraine days from
normal days.

Architecture (3 layers):
  Layer 0 - Data loading:  one row per local day from summary_indicators,
            joined with the resolved migraine-day set (day_markers).
  Layer 1 - Effect size:  for every channel and direction, Cohen's d with
            an unbiased pooled standard deviation.
  Layer 2 - Persistence:  patterns above the confidence floor replace the
            user's previous set in a single transaction.

Notes:
  - Strength is d clamped to [-1, 1]; the raw d is kept in the definition.
  - Confidence = min(1, |M|/10) * min(1, |N|/10) * min(1, |d|), so small
    samples are discounted no matter how large the effect.
  - These are per-user heuristics, not clinical statistics.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np
import pandas as pd
from psycopg2.extras import RealDictCursor

import config
from pipeline.day_markers import DayMarkerStore

log = logging.getLogger("correlation_engine")


# ═══════════════════════════════════════════════════════════════
#  CONSTANTS
# ═══════════════════════════════════════════════════════════════

# channel key -> (summary_indicators column, display name)
CHANNELS = {
    "stress":              ("avg_stress", "Stress"),
    "recovery":            ("avg_recovery", "Recovery"),
    "hrv":                 ("avg_hrv", "HRV"),
    "heart_rate":          ("avg_heart_rate", "Heart Rate"),
    "sleep_efficiency":    ("avg_sleep_efficiency", "Sleep Efficiency"),
    "skin_temp_variation": ("temperature_variation", "Skin Temperature Variation"),
}

DIRECTIONS = ("high", "low")

MIN_CONFIDENCE = 0.1
TOP_TRIGGER_MIN_CONFIDENCE = 0.3
FULL_CONFIDENCE_DAYS = 10


# ═══════════════════════════════════════════════════════════════
#  LAYER 1: EFFECT SIZE
# ═══════════════════════════════════════════════════════════════

def pooled_std(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    """Unbiased two-sample pooled standard deviation, None if df <= 0."""
    dof = a.size + b.size - 2
    if dof <= 0:
        return None
    var_a = float(np.var(a, ddof=1)) if a.size > 1 else 0.0
    var_b = float(np.var(b, ddof=1)) if b.size > 1 else 0.0
    return math.sqrt(((a.size - 1) * var_a + (b.size - 1) * var_b) / dof)


def confidence(n_migraine: int, n_normal: int, d: float) -> float:
    return (
        min(1.0, n_migraine / FULL_CONFIDENCE_DAYS)
        * min(1.0, n_normal / FULL_CONFIDENCE_DAYS)
        * min(1.0, abs(d))
    )


def evaluate_channel(channel: str, migraine: np.ndarray, normal: np.ndarray) -> List[Dict[str, Any]]:
    """Return the (at most one) pattern this channel supports."""
    if migraine.size == 0 or normal.size == 0:
        return []
    sp = pooled_std(migraine, normal)
    if sp is None:
        return []

    column, label = CHANNELS[channel]
    mu_m = float(migraine.mean())
    mu_n = float(normal.mean())
    if sp == 0:
        # constant groups: any separation is complete, |d| saturates at 1
        if mu_m == mu_n:
            return []
        d = math.copysign(1.0, mu_m - mu_n)
    else:
        d = (mu_m - mu_n) / sp
    conf = confidence(migraine.size, normal.size, d)

    out: List[Dict[str, Any]] = []
    for direction in DIRECTIONS:
        if (direction == "high" and d <= 0) or (direction == "low" and d >= 0):
            continue
        if conf < MIN_CONFIDENCE:
            continue
        threshold = mu_n + 0.5 * (mu_m - mu_n)
        out.append({
            "patternType": f"{direction}_{channel}",
            "patternName": f"{direction.capitalize()} {label}",
            "patternDefinition": {
                "metric": column,
                "operator": ">" if direction == "high" else "<",
                "threshold": round(threshold, 2),
                "direction": direction,
                "effectSize": round(d, 3),
            },
            "correlationStrength": round(max(-1.0, min(1.0, d)), 3),
            "confidenceScore": round(min(1.0, max(0.0, conf)), 3),
            "migraineDaysCount": int(migraine.size),
            "totalDaysAnalyzed": int(migraine.size + normal.size),
            "avgValueOnMigraineDays": round(mu_m, 2),
            "avgValueOnNormalDays": round(mu_n, 2),
            "thresholdValue": round(threshold, 2),
        })
    return out


def discover_patterns(days: pd.DataFrame, migraine_days: Set[date]) -> List[Dict[str, Any]]:
    """days: one row per local day, column 'day' plus channel columns."""
    if days.empty:
        return []
    is_migraine = days["day"].isin(list(migraine_days))
    if not is_migraine.any() or is_migraine.all():
        return []

    patterns: List[Dict[str, Any]] = []
    for channel, (column, _) in CHANNELS.items():
        if column not in days.columns:
            continue
        values = pd.to_numeric(days[column], errors="coerce")
        present = values.notna()
        migraine = values[present & is_migraine].to_numpy(dtype=float)
        normal = values[present & ~is_migraine].to_numpy(dtype=float)
        patterns.extend(evaluate_channel(channel, migraine, normal))
    return sort_patterns(patterns)


def sort_patterns(patterns: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(
        patterns,
        key=lambda p: (-abs(p.get("correlationStrength") or 0.0), p.get("patternType") or ""),
    )


def top_trigger(patterns: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    eligible = [p for p in patterns if (p.get("confidenceScore") or 0.0) >= TOP_TRIGGER_MIN_CONFIDENCE]
    if not eligible:
        return None
    return sort_patterns(eligible)[0]


def pattern_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    definition = row.get("pattern_definition")
    if isinstance(definition, str):
        definition = json.loads(definition)

    def _f(value):
        return float(value) if value is not None else None

    def _iso(value):
        return value.isoformat() if hasattr(value, "isoformat") else value

    return {
        "id": str(row["id"]) if row.get("id") is not None else None,
        "patternType": row["pattern_type"],
        "patternName": row["pattern_name"],
        "patternDefinition": definition or {},
        "correlationStrength": _f(row.get("correlation_strength")),
        "confidenceScore": _f(row.get("confidence_score")),
        "migraineDaysCount": int(row.get("migraine_days_count") or 0),
        "totalDaysAnalyzed": int(row.get("total_days_analyzed") or 0),
        "avgValueOnMigraineDays": _f(row.get("avg_value_on_migraine_days")),
        "avgValueOnNormalDays": _f(row.get("avg_value_on_normal_days")),
        "thresholdValue": _f(row.get("threshold_value")),
        "firstDetectedAt": _iso(row.get("first_detected_at")),
        "lastUpdatedAt": _iso(row.get("last_updated_at")),
    }


# ═══════════════════════════════════════════════════════════════
#  MAIN ENGINE CLASS
# ═══════════════════════════════════════════════════════════════

class CorrelationEngine:
    """Recomputes and serves migraine_correlations for one connection."""

    def __init__(self, conn, markers: Optional[DayMarkerStore] = None):
        self.conn = conn
        self.markers = markers or DayMarkerStore(conn)

    # ─── Layer 0: data loading ──────────────────────────────

    def _load_days(self, user_id: str) -> pd.DataFrame:
        columns = [c for c, _ in CHANNELS.values()]
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT (period_start AT TIME ZONE %s)::date AS day, {", ".join(columns)}
                FROM summary_indicators
                WHERE user_id = %s
                ORDER BY period_start
                """,
                (config.DAY_BUCKET_TZ, user_id),
            )
            rows = [dict(r) for r in cur.fetchall()]
        df = pd.DataFrame(rows, columns=["day"] + columns)
        return df.drop_duplicates(subset="day", keep="last").reset_index(drop=True)

    # ─── Layer 2: persistence ───────────────────────────────

    def _replace_patterns(self, user_id: str, patterns: List[Dict[str, Any]]) -> None:
        keep = [p["patternType"] for p in patterns]
        with self.conn.cursor() as cur:
            cur.execute(
                "DELETE FROM migraine_correlations WHERE user_id = %s AND NOT (pattern_type = ANY(%s))",
                (user_id, keep),
            )
            for p in patterns:
                cur.execute(
                    """
                    INSERT INTO migraine_correlations (
                        user_id, pattern_type, pattern_name, pattern_definition,
                        correlation_strength, confidence_score,
                        migraine_days_count, total_days_analyzed,
                        avg_value_on_migraine_days, avg_value_on_normal_days,
                        threshold_value, last_updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
                    ON CONFLICT (user_id, pattern_type) DO UPDATE SET
                        pattern_name = EXCLUDED.pattern_name,
                        pattern_definition = EXCLUDED.pattern_definition,
                        correlation_strength = EXCLUDED.correlation_strength,
                        confidence_score = EXCLUDED.confidence_score,
                        migraine_days_count = EXCLUDED.migraine_days_count,
                        total_days_analyzed = EXCLUDED.total_days_analyzed,
                        avg_value_on_migraine_days = EXCLUDED.avg_value_on_migraine_days,
                        avg_value_on_normal_days = EXCLUDED.avg_value_on_normal_days,
                        threshold_value = EXCLUDED.threshold_value,
                        last_updated_at = NOW(),
                        updated_at = NOW()
                    """,
                    (
                        user_id,
                        p["patternType"],
                        p["patternName"],
                        json.dumps(p["patternDefinition"]),
                        p["correlationStrength"],
                        p["confidenceScore"],
                        p["migraineDaysCount"],
                        p["totalDaysAnalyzed"],
                        p["avgValueOnMigraineDays"],
                        p["avgValueOnNormalDays"],
                        p["thresholdValue"],
                    ),
                )

    # ─── Public API ─────────────────────────────────────────

    def recompute(self, user_id: str) -> Dict[str, Any]:
        """Rebuild the user's patterns from committed summary rows.

        The caller commits; the delete + upserts land atomically.
        """
        days = self._load_days(user_id)
        if days.empty:
            migraine_days: Set[date] = set()
        else:
            migraine_days = self.markers.migraine_days(user_id, days["day"].min(), days["day"].max())

        n_migraine = int(days["day"].isin(list(migraine_days)).sum()) if not days.empty else 0
        n_normal = len(days) - n_migraine

        patterns = discover_patterns(days, migraine_days)
        self._replace_patterns(user_id, patterns)

        trigger = top_trigger(patterns)
        log.info(
            "Correlations for user %s: %d days (%d migraine), %d patterns, top=%s",
            user_id, len(days), n_migraine, len(patterns),
            trigger["patternType"] if trigger else None,
        )
        return {
            "patterns": patterns,
            "migraineDaysCount": n_migraine,
            "normalDaysCount": n_normal,
            "totalDaysAnalyzed": len(days),
            "topTrigger": trigger,
        }

    def list_patterns(self, user_id: str) -> List[Dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT * FROM migraine_correlations
                WHERE user_id = %s
                ORDER BY ABS(correlation_strength) DESC NULLS LAST, pattern_type
                """,
                (user_id,),
            )
            return [pattern_from_row(dict(r)) for r in cur.fetchall()]
