"""
Tracker Database Schema
=======================
Idempotent DDL for the eight relations the service owns.

Tables:
  - users                  (identity, owned by the auth collaborator)
  - user_profiles          (typical migraine characteristics)
  - migraine_entries       (episodes)
  - upload_sessions        (one audit row per CSV ingest)
  - wearable_data          (raw samples, unique per user + timestamp)
  - migraine_day_markers   (explicit migraine / non-migraine days)
  - summary_indicators     (per-day aggregates)
  - migraine_correlations  (per-user discriminating patterns)

Everything cascades from users.  Statements are split on ';' so no
statement may contain one.
"""
import logging

logger = logging.getLogger("tracker_schema")

TRACKER_SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    name VARCHAR(255) NOT NULL,
    password VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    typical_duration INTEGER CHECK (typical_duration BETWEEN 1 AND 3),
    monthly_frequency INTEGER CHECK (monthly_frequency BETWEEN 1 AND 8),
    typical_pain_location INTEGER DEFAULT 0 CHECK (typical_pain_location BETWEEN 0 AND 2),
    typical_pain_character INTEGER DEFAULT 0 CHECK (typical_pain_character BETWEEN 0 AND 2),
    typical_pain_intensity INTEGER DEFAULT 0 CHECK (typical_pain_intensity BETWEEN 0 AND 3),
    experiences_nausea INTEGER DEFAULT 0 CHECK (experiences_nausea BETWEEN 0 AND 1),
    experiences_vomit INTEGER DEFAULT 0 CHECK (experiences_vomit BETWEEN 0 AND 1),
    experiences_phonophobia INTEGER DEFAULT 0 CHECK (experiences_phonophobia BETWEEN 0 AND 1),
    experiences_photophobia INTEGER DEFAULT 0 CHECK (experiences_photophobia BETWEEN 0 AND 1),
    typical_visual_symptoms INTEGER DEFAULT 0 CHECK (typical_visual_symptoms BETWEEN 0 AND 4),
    typical_sensory_symptoms INTEGER DEFAULT 0 CHECK (typical_sensory_symptoms BETWEEN 0 AND 2),
    experiences_dysphasia INTEGER DEFAULT 0 CHECK (experiences_dysphasia BETWEEN 0 AND 1),
    experiences_dysarthria INTEGER DEFAULT 0 CHECK (experiences_dysarthria BETWEEN 0 AND 1),
    experiences_vertigo INTEGER DEFAULT 0 CHECK (experiences_vertigo BETWEEN 0 AND 1),
    experiences_tinnitus INTEGER DEFAULT 0 CHECK (experiences_tinnitus BETWEEN 0 AND 1),
    experiences_hypoacusis INTEGER DEFAULT 0 CHECK (experiences_hypoacusis BETWEEN 0 AND 1),
    experiences_diplopia INTEGER DEFAULT 0 CHECK (experiences_diplopia BETWEEN 0 AND 1),
    experiences_defect INTEGER DEFAULT 0 CHECK (experiences_defect BETWEEN 0 AND 1),
    experiences_ataxia INTEGER DEFAULT 0 CHECK (experiences_ataxia BETWEEN 0 AND 1),
    experiences_conscience INTEGER DEFAULT 0 CHECK (experiences_conscience BETWEEN 0 AND 1),
    experiences_paresthesia INTEGER DEFAULT 0 CHECK (experiences_paresthesia BETWEEN 0 AND 1),
    family_history INTEGER DEFAULT 0 CHECK (family_history BETWEEN 0 AND 1),
    diagnosed_type VARCHAR(100),
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS migraine_entries (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    intensity INTEGER NOT NULL CHECK (intensity BETWEEN 1 AND 10),
    location VARCHAR(255),
    triggers TEXT,
    symptoms TEXT,
    medication TEXT,
    notes TEXT,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_migraine_entries_user_start ON migraine_entries(user_id, start_time DESC);

CREATE TABLE IF NOT EXISTS upload_sessions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    filename VARCHAR(255) NOT NULL,
    file_size BIGINT NOT NULL,
    source VARCHAR(100),
    total_rows INTEGER NOT NULL DEFAULT 0,
    inserted_rows INTEGER NOT NULL DEFAULT 0,
    updated_rows INTEGER NOT NULL DEFAULT 0,
    skipped_rows INTEGER NOT NULL DEFAULT 0,
    error_rows INTEGER NOT NULL DEFAULT 0,
    field_mapping JSONB,
    unrecognized_fields TEXT[],
    error_details JSONB,
    status VARCHAR(50) DEFAULT 'completed',
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_upload_sessions_user_created ON upload_sessions(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS wearable_data (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    timestamp TIMESTAMPTZ NOT NULL,
    stress_value NUMERIC(10, 2),
    recovery_value NUMERIC(10, 2),
    heart_rate NUMERIC(10, 2),
    hrv NUMERIC(10, 2),
    sleep_efficiency NUMERIC(5, 2),
    sleep_heart_rate NUMERIC(10, 2),
    skin_temperature NUMERIC(5, 2),
    restless_periods NUMERIC(10, 2),
    additional_data JSONB,
    source VARCHAR(100),
    upload_session_id UUID REFERENCES upload_sessions(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_wearable_data_user_timestamp_unique ON wearable_data(user_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_wearable_data_upload_session_id ON wearable_data(upload_session_id);

CREATE TABLE IF NOT EXISTS migraine_day_markers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    date DATE NOT NULL,
    is_migraine_day BOOLEAN NOT NULL DEFAULT true,
    severity INTEGER CHECK (severity BETWEEN 1 AND 10),
    notes TEXT,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, date)
);

CREATE TABLE IF NOT EXISTS summary_indicators (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    avg_stress NUMERIC(10, 2),
    max_stress NUMERIC(10, 2),
    stress_volatility NUMERIC(10, 2),
    stress_trend VARCHAR(20),
    avg_recovery NUMERIC(10, 2),
    min_recovery NUMERIC(10, 2),
    recovery_trend VARCHAR(20),
    avg_heart_rate NUMERIC(10, 2),
    resting_heart_rate NUMERIC(10, 2),
    max_heart_rate NUMERIC(10, 2),
    avg_hrv NUMERIC(10, 2),
    hrv_trend VARCHAR(20),
    hrv_volatility NUMERIC(10, 2),
    avg_sleep_efficiency NUMERIC(5, 2),
    avg_sleep_heart_rate NUMERIC(10, 2),
    avg_restless_periods NUMERIC(10, 2),
    avg_skin_temperature NUMERIC(5, 2),
    temperature_variation NUMERIC(5, 2),
    overall_wellness_score NUMERIC(5, 2),
    risk_factors JSONB,
    data_points_count INTEGER NOT NULL DEFAULT 0,
    processed_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, period_start, period_end)
);
CREATE INDEX IF NOT EXISTS idx_summary_indicators_user_period ON summary_indicators(user_id, period_start DESC);

CREATE TABLE IF NOT EXISTS migraine_correlations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    pattern_type VARCHAR(50) NOT NULL,
    pattern_name VARCHAR(100) NOT NULL,
    pattern_definition JSONB NOT NULL,
    correlation_strength NUMERIC(5, 3) CHECK (correlation_strength BETWEEN -1 AND 1),
    confidence_score NUMERIC(5, 3) CHECK (confidence_score BETWEEN 0 AND 1),
    migraine_days_count INTEGER NOT NULL DEFAULT 0,
    total_days_analyzed INTEGER NOT NULL DEFAULT 0,
    avg_value_on_migraine_days NUMERIC(10, 2),
    avg_value_on_normal_days NUMERIC(10, 2),
    threshold_value NUMERIC(10, 2),
    first_detected_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    last_updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, pattern_type),
    CHECK (migraine_days_count <= total_days_analyzed)
)
"""

TRACKER_TABLES = [
    "users",
    "user_profiles",
    "migraine_entries",
    "upload_sessions",
    "wearable_data",
    "migraine_day_markers",
    "summary_indicators",
    "migraine_correlations",
]


def schema_statements():
    for statement in TRACKER_SCHEMA_SQL.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def upgrade_database(conn) -> None:
    """
    Apply the tracker schema on an open connection.
    Safe to run multiple times (uses IF NOT EXISTS).
    """
    with conn.cursor() as cur:
        for stmt in schema_statements():
            cur.execute(stmt)
    logger.info("Tracker schema ensured (%d tables).", len(TRACKER_TABLES))
