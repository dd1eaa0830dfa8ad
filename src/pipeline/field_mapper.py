"""
Header -> canonical field mapping for wearable CSV exports.

The mapper is table driven: every canonical field owns an ordered list of
synonyms, and each synonym may carry the vendor it is typical for.  Adding a
vendor means adding rows to FIELD_SYNONYMS, not code.

Matching works on a normalised header (case-folded, only [0-9a-z] kept):
  pass 1  exact synonym match, fields in table order
  pass 2  containment, only for synonyms of MIN_CONTAINMENT_LEN chars or more
The first field that matches wins; a second header resolving to a field that
is already claimed is reported as unrecognised instead.

The source is a majority vote over the vendor hints of the matched synonyms,
plus one vote per vendor named in the filename or in a header.  Ties follow
SOURCE_PRIORITY.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from constants import SOURCE_FIELD, SOURCE_PRIORITY, TIMESTAMP_FIELD, UNKNOWN_SOURCE
from errors import InvalidSchema

log = logging.getLogger("field_mapper")

MIN_CONTAINMENT_LEN = 5

# (canonical field, [(synonym, vendor hint)]).  Order matters: hrv and
# sleepHeartRate precede heartRate so "hrv_*" / "sleep_heart_rate" never
# fall through to plain heart rate.
FIELD_SYNONYMS: List[Tuple[str, List[Tuple[str, Optional[str]]]]] = [
    (TIMESTAMP_FIELD, [
        ("timestamp", None), ("datetime", None), ("date_time", None),
        ("date", None), ("time", None), ("recorded_at", None),
        ("measured_at", None), ("created_at", None),
        ("summary_date", "oura"), ("log_date", "fitbit"),
        ("calendar_date", "garmin"),
    ]),
    (SOURCE_FIELD, [
        ("source", None), ("device", None), ("device_name", None), ("data_source", None),
    ]),
    ("hrv", [
        ("hrv", None), ("heart_rate_variability", None), ("hr_variability", None),
        ("hrv_value", None), ("hrv_ms", None), ("sdnn", None),
        ("hrv_rmssd", "oura"), ("average_hrv", "oura"),
        ("daily_rmssd", "fitbit"), ("rmssd", "fitbit"),
        ("hrv_last_night", "garmin"), ("hrv_weekly_avg", "garmin"),
    ]),
    ("sleepHeartRate", [
        ("sleep_heart_rate", "manualUpload"), ("sleep_hr", None), ("sleep_bpm", None),
        ("avg_sleep_heart_rate", None), ("avg_sleep_hr", None),
        ("nightly_heart_rate", None), ("lowest_heart_rate", "oura"),
    ]),
    ("sleepEfficiency", [
        ("sleep_efficiency", "manualUpload"), ("sleep_efficiency_percent", None),
        ("efficiency", "fitbit"), ("sleep_quality", None),
        ("sleep_score", "garmin"),
    ]),
    ("heartRate", [
        ("heart_rate", None), ("heartrate", None), ("bpm", None), ("pulse", None),
        ("beats_per_minute", None), ("avg_heart_rate", None), ("average_heart_rate", None),
        ("hr_bpm", None), ("heart_rate_bpm", None), ("avg_hr", None),
        ("resting_heart_rate", "fitbit"), ("rhr", None),
        ("resting_hr", "garmin"),
    ]),
    ("stressValue", [
        ("stress_value", "manualUpload"), ("stress", None), ("stress_level", "garmin"),
        ("avg_stress", "garmin"), ("avg_stress_value", "manualUpload"),
        ("stress_score", "fitbit"), ("stress_management_score", "fitbit"),
        ("stress_measurement", None), ("stress_summary", "oura"), ("stress_high", "oura"),
    ]),
    ("recoveryValue", [
        ("recovery_value", "manualUpload"), ("recovery", None), ("recovery_score", None),
        ("avg_recovery", None), ("avg_recovery_value", "manualUpload"),
        ("recovery_index", "oura"), ("readiness", "oura"), ("readiness_score", "oura"),
        ("body_battery", "garmin"), ("training_readiness", "garmin"),
    ]),
    ("skinTemperature", [
        ("skin_temperature", "manualUpload"), ("skin_temp", None), ("temperature", None),
        ("temp", None), ("avg_skin_temp", None), ("avg_skin_temperature", None),
        ("body_temperature", None), ("body_temp", None),
        ("temperature_deviation", "oura"), ("nightly_temperature", "fitbit"),
    ]),
    ("restlessPeriods", [
        ("restless_periods", "oura"), ("restlessness", None), ("restless_count", None),
        ("movements", None), ("sleep_movements", None),
    ]),
]

_VENDOR_NAMES = {name: name for name in SOURCE_PRIORITY if name != "manualUpload"}


def normalize_header(name: str) -> str:
    """Case-fold and keep only ASCII letters/digits."""
    return re.sub(r"[^0-9a-z]", "", (name or "").casefold())


_NORMALIZED_TABLE: List[Tuple[str, List[Tuple[str, Optional[str]]]]] = [
    (fld, [(normalize_header(syn), hint) for syn, hint in synonyms])
    for fld, synonyms in FIELD_SYNONYMS
]


@dataclass
class HeaderMapping:
    """Result of mapping one header row."""

    columns: Dict[str, str] = field(default_factory=dict)
    timestamp_column: Optional[str] = None
    source_column: Optional[str] = None
    source: str = UNKNOWN_SOURCE
    unrecognized: List[str] = field(default_factory=list)

    @property
    def field_mapping(self) -> Dict[str, str]:
        """Header -> canonical field for the physiological channels only."""
        return {
            header: canonical
            for header, canonical in self.columns.items()
            if canonical not in (TIMESTAMP_FIELD, SOURCE_FIELD)
        }


def match_header(header: str) -> Optional[Tuple[str, Optional[str]]]:
    """Return (canonical field, vendor hint) for one header, or None."""
    norm = normalize_header(header)
    if not norm:
        return None

    for fld, synonyms in _NORMALIZED_TABLE:
        for syn, hint in synonyms:
            if norm == syn:
                return fld, hint

    for fld, synonyms in _NORMALIZED_TABLE:
        if fld == "heartRate" and "hrv" in norm:
            continue
        for syn, hint in synonyms:
            if len(syn) >= MIN_CONTAINMENT_LEN and syn in norm:
                return fld, hint
    return None


def detect_source(hints: Iterable[Optional[str]], headers: Iterable[str], filename: str = "") -> str:
    votes: Counter = Counter(h for h in hints if h)
    haystacks = [normalize_header(filename)] + [normalize_header(h) for h in headers]
    for vendor, token in _VENDOR_NAMES.items():
        if any(token in text for text in haystacks):
            votes[vendor] += 1
    if not votes:
        return UNKNOWN_SOURCE
    best = max(votes.values())
    for vendor in SOURCE_PRIORITY:
        if votes.get(vendor) == best:
            return vendor
    return UNKNOWN_SOURCE


def map_headers(headers: List[str], filename: str = "") -> HeaderMapping:
    """Map a CSV header row.  Raises InvalidSchema unless exactly one
    header resolves to the timestamp field."""
    result = HeaderMapping()
    claimed: Dict[str, str] = {}
    timestamp_headers: List[str] = []
    hints: List[Optional[str]] = []

    for header in headers:
        if not normalize_header(header):
            continue
        match = match_header(header)
        if match is None:
            result.unrecognized.append(header)
            continue
        canonical, hint = match
        if canonical == TIMESTAMP_FIELD:
            timestamp_headers.append(header)
        if canonical in claimed:
            result.unrecognized.append(header)
            continue
        claimed[canonical] = header
        result.columns[header] = canonical
        hints.append(hint)

    if len(timestamp_headers) != 1:
        reason = "no timestamp column" if not timestamp_headers else (
            "multiple timestamp columns: " + ", ".join(timestamp_headers)
        )
        raise InvalidSchema(f"CSV header must contain exactly one timestamp column ({reason})", headers)

    result.timestamp_column = timestamp_headers[0]
    result.source_column = claimed.get(SOURCE_FIELD)
    result.source = detect_source(hints, headers, filename)
    log.debug(
        "Mapped %d/%d headers (source=%s, unrecognized=%s)",
        len(result.columns), len(headers), result.source, result.unrecognized,
    )
    return result
