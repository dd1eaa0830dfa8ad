"""Startup migration and audit helpers for the tracker schema."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from db_utils import get_connection
from tracker_schema import TRACKER_TABLES, upgrade_database

log = logging.getLogger("pipeline.migrations")

# Columns added after the first release; checked by the audit and
# back-filled here on older databases.
_LATE_COLUMNS = [
    ("upload_sessions", "error_details", "JSONB"),
    ("wearable_data", "upload_session_id", "UUID REFERENCES upload_sessions(id) ON DELETE CASCADE"),
    ("wearable_data", "updated_at", "TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP"),
]

REQUIRED_COLUMNS = {
    "wearable_data": ["user_id", "timestamp", "additional_data", "source", "upload_session_id", "updated_at"],
    "upload_sessions": ["field_mapping", "unrecognized_fields", "error_details", "status"],
    "summary_indicators": ["period_start", "period_end", "risk_factors", "processed_at"],
    "migraine_correlations": ["pattern_type", "pattern_definition", "correlation_strength", "confidence_score"],
    "migraine_day_markers": ["date", "is_migraine_day", "severity"],
}


def ensure_startup_schema() -> None:
    """Run idempotent startup migrations before serving requests."""
    with get_connection() as conn:
        upgrade_database(conn)
        with conn.cursor() as cur:
            for table, column, ddl in _LATE_COLUMNS:
                cur.execute(
                    f"ALTER TABLE IF EXISTS {table} ADD COLUMN IF NOT EXISTS {column} {ddl}"
                )
    log.info("Startup migrations completed.")


def schema_audit() -> Dict[str, Any]:
    """Return table/column audit data for runtime inspection."""
    out: Dict[str, Any] = {"ok": True, "tables": {}, "missing_tables": []}
    with get_connection() as conn:
        with conn.cursor() as cur:
            for table in TRACKER_TABLES:
                cur.execute(
                    """
                    SELECT column_name
                    FROM information_schema.columns
                    WHERE table_schema = 'public' AND table_name = %s
                    ORDER BY ordinal_position
                    """,
                    (table,),
                )
                cols: List[str] = [r[0] for r in cur.fetchall()]
                table_info: Dict[str, Any] = {"exists": bool(cols), "columns": cols, "missing_columns": []}
                if not cols:
                    out["missing_tables"].append(table)
                else:
                    expected = REQUIRED_COLUMNS.get(table, [])
                    table_info["missing_columns"] = [c for c in expected if c not in cols]
                out["tables"][table] = table_info

    out["ok"] = not out["missing_tables"] and not any(
        info.get("missing_columns") for info in out["tables"].values()
    )
    return out
