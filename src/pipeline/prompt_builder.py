"""
Risk-analysis prompt assembly.

The prompt is a plain-text document with fixed section headers so the reply
parser (risk_agent.parse_risk_response) can rely on the requested output
schema.  assemble_prompt() is pure: the same inputs and ``now`` always give
the same prompt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from psycopg2.extras import RealDictCursor

import config
from constants import FIELD_COLUMNS
from correlation_engine import CorrelationEngine, sort_patterns
from errors import InvalidRequest

log = logging.getLogger("prompt_builder")

# wearable_data column -> key used in the risk data bundle
BUNDLE_KEYS = {
    "stress_value": "stress",
    "recovery_value": "recovery",
    "heart_rate": "heartRate",
    "hrv": "hrv",
    "sleep_efficiency": "sleepEfficiency",
    "sleep_heart_rate": "sleepHeartRate",
    "skin_temperature": "skinTemperature",
    "restless_periods": "restlessPeriods",
}

# accepted override names -> bundle key
OVERRIDE_ALIASES = {key: key for key in BUNDLE_KEYS.values()}
OVERRIDE_ALIASES.update({canonical: BUNDLE_KEYS[col] for canonical, col in FIELD_COLUMNS.items()})
OVERRIDE_ALIASES["skinTemp"] = "skinTemperature"

# (bundle key, label, format)
SAMPLE_FIELDS = [
    ("stress", "Stress", "{:.1f}"),
    ("recovery", "Recovery", "{:.1f}"),
    ("hrv", "HRV", "{:.1f} ms"),
    ("heartRate", "HR", "{:.0f} bpm"),
    ("sleepEfficiency", "Sleep Efficiency", "{:.1f}%"),
    ("sleepHeartRate", "Sleep HR", "{:.0f} bpm"),
    ("skinTemperature", "Skin Temp", "{:.2f} C"),
    ("restlessPeriods", "Restless Periods", "{:.0f}"),
]

PAIN_LOCATION = {1: "unilateral", 2: "bilateral"}
PAIN_CHARACTER = {1: "throbbing", 2: "persistent"}
PAIN_INTENSITY = {1: "mild", 2: "moderate", 3: "severe"}
SYMPTOM_FLAGS = [
    ("experiences_nausea", "nausea"),
    ("experiences_vomit", "vomiting"),
    ("experiences_photophobia", "light sensitivity"),
    ("experiences_phonophobia", "sound sensitivity"),
    ("experiences_dysphasia", "dysphasia"),
    ("experiences_dysarthria", "dysarthria"),
    ("experiences_vertigo", "vertigo"),
    ("experiences_tinnitus", "tinnitus"),
    ("experiences_hypoacusis", "hypoacusis"),
    ("experiences_diplopia", "diplopia"),
    ("experiences_defect", "visual field defect"),
    ("experiences_ataxia", "ataxia"),
    ("experiences_conscience", "altered consciousness"),
    ("experiences_paresthesia", "paresthesia"),
]

SIMULATED_LABEL = "[SIMULATED NOW]"

PROMPT_HEADER = """# Migraine Risk Analysis Request

You are an expert migraine specialist analyzing wearable device data to predict migraine risk. Based on the following information, provide a 12-hour migraine risk assessment. Compare the current metrics with the patient's historical migraine patterns."""

OUTPUT_SCHEMA = """## Requested Output Schema

Answer using exactly these headings, in this order:

Risk Level: N%
Risk Category: Low|Moderate|High|Very High
Key Risk Factors:
- one factor per bullet
Trend Analysis: how current metrics compare to the patient's migraine patterns
Recommendations:
- one action per bullet
Confidence Level: Low|Medium|High

Risk Level is the probability of a migraine in the next 12 hours (0-100%).
Risk Category bands: Low (0-25%), Moderate (25-50%), High (50-75%), Very High (75-100%)."""


def _fmt_ts(value: Any) -> str:
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def sample_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"timestamp": _fmt_ts(row.get("timestamp"))}
    for column, key in BUNDLE_KEYS.items():
        out[key] = _num(row.get(column))
    return out


def normalize_overrides(overrides: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    """Map override aliases to bundle keys; None or {} means no override."""
    if not overrides:
        return None
    out: Dict[str, float] = {}
    for name, value in overrides.items():
        key = OVERRIDE_ALIASES.get(name)
        if key is None:
            raise InvalidRequest(f"Unknown simulated field '{name}'")
        if value is None:
            continue
        number = _num(value)
        if number is None:
            raise InvalidRequest(f"Simulated field '{name}' must be numeric")
        out[key] = number
    return out or None


# ─── Sections ──────────────────────────────────────────────

def format_profile(profile: Optional[Dict[str, Any]]) -> str:
    lines: List[str] = []
    if profile:
        if profile.get("diagnosed_type"):
            lines.append(f"- Diagnosed Type: {profile['diagnosed_type']}")
        if profile.get("monthly_frequency"):
            lines.append(f"- Monthly Frequency: {profile['monthly_frequency']} episodes per month")
        if profile.get("typical_duration"):
            lines.append(f"- Typical Duration: {profile['typical_duration']} day(s)")
        for column, label, names in (
            ("typical_pain_location", "Pain Location", PAIN_LOCATION),
            ("typical_pain_character", "Pain Character", PAIN_CHARACTER),
            ("typical_pain_intensity", "Pain Intensity", PAIN_INTENSITY),
        ):
            value = profile.get(column)
            if value:
                lines.append(f"- {label}: {names.get(int(value), value)}")
        if profile.get("typical_visual_symptoms"):
            lines.append(f"- Visual Aura Symptoms: {profile['typical_visual_symptoms']}")
        if profile.get("typical_sensory_symptoms"):
            lines.append(f"- Sensory Aura Symptoms: {profile['typical_sensory_symptoms']}")
        symptoms = [label for column, label in SYMPTOM_FLAGS if profile.get(column)]
        if symptoms:
            lines.append(f"- Common Symptoms: {', '.join(symptoms)}")
        if profile.get("family_history"):
            lines.append("- Family History: Yes")
    body = "\n".join(lines) if lines else "No profile information available."
    return f"## Patient Profile\n\n{body}"


def _sample_line(sample: Dict[str, Any], label: str = "") -> str:
    parts = []
    for key, name, fmt in SAMPLE_FIELDS:
        value = sample.get(key)
        if value is not None:
            parts.append(f"{name}={fmt.format(value)}")
    values = ", ".join(parts) if parts else "no values"
    prefix = f"{label} " if label else ""
    return f"- {prefix}{sample['timestamp']}: {values}"


def format_samples(
    samples: List[Dict[str, Any]],
    simulated: Optional[Dict[str, Any]],
    window_hours: int,
) -> str:
    ordered = sorted(samples, key=lambda s: s["timestamp"])
    lines = [_sample_line(s) for s in ordered]
    if simulated is not None:
        lines.append(_sample_line(simulated, SIMULATED_LABEL))
    header = f"## Last {window_hours} Hours Wearable Samples"
    if not lines:
        return f"{header}\n\nNo recent wearable data available."
    count_line = f"Data points: {len(ordered)}" + (" (+1 simulated)" if simulated is not None else "")
    return f"{header}\n\n{count_line}\n" + "\n".join(lines)


def format_patterns(patterns: List[Dict[str, Any]]) -> str:
    header = "## Active Correlation Patterns"
    if not patterns:
        return f"{header}\n\nNo historical migraine correlation patterns identified yet."
    lines = []
    for p in sort_patterns(patterns):
        definition = p.get("patternDefinition") or {}
        strength = p.get("correlationStrength") or 0.0
        conf = p.get("confidenceScore") or 0.0
        line = (
            f"- {p.get('patternName')} ({p.get('patternType')}): strength {strength:+.2f}, "
            f"confidence {conf:.2f}"
        )
        m_avg = p.get("avgValueOnMigraineDays")
        n_avg = p.get("avgValueOnNormalDays")
        if m_avg is not None and n_avg is not None:
            line += f"; avg on migraine days {m_avg:.1f} vs normal days {n_avg:.1f}"
        if definition.get("metric") and p.get("thresholdValue") is not None:
            line += f"; risk when {definition['metric']} {definition.get('operator', '?')} {p['thresholdValue']:.2f}"
        line += f" ({p.get('migraineDaysCount', 0)} migraine days of {p.get('totalDaysAnalyzed', 0)} analyzed)"
        lines.append(line)
    return f"{header}\n\n" + "\n".join(lines)


# ─── Assembly ──────────────────────────────────────────────

def assemble_prompt(
    samples: List[Dict[str, Any]],
    patterns: List[Dict[str, Any]],
    profile: Optional[Dict[str, Any]],
    simulated_overrides: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    window_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Return {prompt, summary, metadata} for one user's risk request."""
    now = now or datetime.now(timezone.utc)
    window_hours = window_hours or config.RISK_WINDOW_HOURS
    window = {"start": (now - timedelta(hours=window_hours)).isoformat(), "end": now.isoformat()}

    overrides = normalize_overrides(simulated_overrides)
    simulated = dict(overrides, timestamp=now.isoformat()) if overrides else None
    ordered = sorted(samples, key=lambda s: s["timestamp"])

    prompt = "\n\n".join([
        PROMPT_HEADER,
        format_profile(profile),
        format_samples(ordered, simulated, window_hours),
        format_patterns(patterns),
        OUTPUT_SCHEMA,
    ])

    summary = {
        "hasWearableData": bool(ordered),
        "dataPoints": len(ordered),
        "patternCount": len(patterns),
        "migraineType": (profile or {}).get("diagnosed_type") or "Unknown",
        "timeRange": {"start": ordered[0]["timestamp"], "end": ordered[-1]["timestamp"]} if ordered else None,
    }
    metadata = {
        "generatedAt": now.isoformat(),
        "dataPointsCount": len(ordered),
        "patternsCount": len(patterns),
        "hasProfile": profile is not None,
        "timeRange": window,
        "simulated": simulated is not None,
    }
    return {"prompt": prompt, "summary": summary, "metadata": metadata}


# ─── Data loading ──────────────────────────────────────────

class RiskDataLoader:
    """Collects the raw bundle the prompt is built from."""

    def __init__(self, conn):
        self.conn = conn

    def _rows(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def load(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        start = now - timedelta(hours=config.RISK_WINDOW_HOURS)
        rows = self._rows(
            f"""
            SELECT timestamp, {", ".join(BUNDLE_KEYS)}
            FROM wearable_data
            WHERE user_id = %s AND timestamp >= %s AND timestamp <= %s
            ORDER BY timestamp
            """,
            (user_id, start, now),
        )
        profiles = self._rows("SELECT * FROM user_profiles WHERE user_id = %s", (user_id,))
        patterns = CorrelationEngine(self.conn).list_patterns(user_id)
        samples = [sample_from_row(r) for r in rows]
        return {
            "wearableData": samples,
            "patterns": patterns,
            "profile": profiles[0] if profiles else None,
            "timeRange": {"start": start.isoformat(), "end": now.isoformat()},
            "dataPointsCount": len(samples),
            "patternsCount": len(patterns),
        }

    def assemble(self, user_id: str, simulated_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        bundle = self.load(user_id, now)
        result = assemble_prompt(
            bundle["wearableData"],
            bundle["patterns"],
            bundle["profile"],
            simulated_overrides=simulated_overrides,
            now=now,
        )
        log.info(
            "Prompt assembled for user %s: %d samples, %d patterns, simulated=%s",
            user_id, result["metadata"]["dataPointsCount"],
            result["metadata"]["patternsCount"], result["metadata"]["simulated"],
        )
        return result
