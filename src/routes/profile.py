"""/profile endpoints: the patient profile the risk prompt is built from."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from db_utils import get_connection
from errors import InvalidRequest
from routes.auth import current_user
from routes.helpers import _camel, _camel_row, _fetch_one, ok

log = logging.getLogger("api.profile")

router = APIRouter(tags=["profile"])

# column -> inclusive (min, max), mirrors the CHECK constraints
PROFILE_RANGES = {
    "typical_duration": (1, 3),
    "monthly_frequency": (1, 8),
    "typical_pain_location": (0, 2),
    "typical_pain_character": (0, 2),
    "typical_pain_intensity": (0, 3),
    "experiences_nausea": (0, 1),
    "experiences_vomit": (0, 1),
    "experiences_phonophobia": (0, 1),
    "experiences_photophobia": (0, 1),
    "typical_visual_symptoms": (0, 4),
    "typical_sensory_symptoms": (0, 2),
    "experiences_dysphasia": (0, 1),
    "experiences_dysarthria": (0, 1),
    "experiences_vertigo": (0, 1),
    "experiences_tinnitus": (0, 1),
    "experiences_hypoacusis": (0, 1),
    "experiences_diplopia": (0, 1),
    "experiences_defect": (0, 1),
    "experiences_ataxia": (0, 1),
    "experiences_conscience": (0, 1),
    "experiences_paresthesia": (0, 1),
    "family_history": (0, 1),
}
PROFILE_FIELDS = {_camel(c): c for c in PROFILE_RANGES}
PROFILE_FIELDS["diagnosedType"] = "diagnosed_type"


def validate_profile(payload: Dict[str, Any]) -> Dict[str, Any]:
    """camelCase request body -> {column: value}, enforcing the ranges."""
    values: Dict[str, Any] = {}
    for key, raw in payload.items():
        column = PROFILE_FIELDS.get(key)
        if column is None:
            raise InvalidRequest(f"Unknown profile field '{key}'")
        if raw is None:
            values[column] = None
            continue
        if column == "diagnosed_type":
            text = str(raw).strip()
            if len(text) > 100:
                raise InvalidRequest("diagnosedType must be at most 100 characters")
            values[column] = text or None
            continue
        if isinstance(raw, bool):
            raw = int(raw)
        if not isinstance(raw, int):
            raise InvalidRequest(f"{key} must be an integer")
        lo, hi = PROFILE_RANGES[column]
        if not lo <= raw <= hi:
            raise InvalidRequest(f"{key} must be between {lo} and {hi}")
        values[column] = raw
    return values


def profile_out(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return _camel_row(row) if row else None


@router.get("/profile")
def get_profile(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        row = _fetch_one(conn, "SELECT * FROM user_profiles WHERE user_id = %s", (user_id,))
    return ok(profile_out(row))


@router.put("/profile")
@router.post("/profile")
def save_profile(
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    values = validate_profile(payload)
    columns = list(values)
    if columns:
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns) + ", updated_at = NOW()"
        sql = f"""
            INSERT INTO user_profiles (user_id, {", ".join(columns)})
            VALUES (%s, {", ".join(["%s"] * len(columns))})
            ON CONFLICT (user_id) DO UPDATE SET {updates}
            RETURNING *
        """
    else:
        sql = """
            INSERT INTO user_profiles (user_id) VALUES (%s)
            ON CONFLICT (user_id) DO UPDATE SET updated_at = NOW()
            RETURNING *
        """
    with get_connection() as conn:
        row = _fetch_one(conn, sql, tuple([user_id] + [values[c] for c in columns]))
    log.info("Profile saved for user %s (%d fields)", user_id, len(columns))
    return ok(profile_out(row))
