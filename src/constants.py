"""
Shared constants used across multiple modules.
Single source of truth for canonical wearable fields and source identifiers.
"""

# Canonical physiological fields -> wearable_data column
FIELD_COLUMNS = {
    "stressValue":     "stress_value",
    "recoveryValue":   "recovery_value",
    "heartRate":       "heart_rate",
    "hrv":             "hrv",
    "sleepEfficiency": "sleep_efficiency",
    "sleepHeartRate":  "sleep_heart_rate",
    "skinTemperature": "skin_temperature",
    "restlessPeriods": "restless_periods",
}
CANONICAL_FIELDS = list(FIELD_COLUMNS)
SAMPLE_COLUMNS = list(FIELD_COLUMNS.values())

# Non-numeric canonical fields
TIMESTAMP_FIELD = "timestamp"
SOURCE_FIELD = "source"

# Source identifiers, in tie-break priority order
SOURCE_PRIORITY = ("oura", "fitbit", "garmin", "manualUpload")
UNKNOWN_SOURCE = "unknown"

# Upload session terminal states (+ transient 'processing', never exposed)
STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_PROCESSING = "processing"
