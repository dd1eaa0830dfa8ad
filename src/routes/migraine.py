"""/migraine endpoints: episode entries (they also mark migraine days)."""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

import config
from db_utils import get_connection
from errors import Forbidden, InvalidRequest, NotFound
from pipeline.day_markers import bucket_zone
from routes.auth import current_user
from routes.helpers import (
    _camel_row, _execute, _fetch_all, _fetch_one, _num, _parse_date, _parse_datetime, _parse_uuid,
    ok,
)

log = logging.getLogger("api.migraine")

router = APIRouter(tags=["migraine"])

ENTRY_COLUMNS = (
    "id, user_id, start_time, end_time, intensity, location, "
    "triggers, symptoms, medication, notes, created_at, updated_at"
)


class EntryRequest(BaseModel):
    startTime: str
    date: Optional[str] = None
    endTime: Optional[str] = None
    intensity: int
    location: Optional[str] = None
    triggers: Optional[Union[List[str], str]] = None
    symptoms: Optional[Union[List[str], str]] = None
    medication: Optional[str] = None
    notes: Optional[str] = None


class EntryUpdateRequest(BaseModel):
    startTime: Optional[str] = None
    date: Optional[str] = None
    endTime: Optional[str] = None
    intensity: Optional[int] = None
    location: Optional[str] = None
    triggers: Optional[Union[List[str], str]] = None
    symptoms: Optional[Union[List[str], str]] = None
    medication: Optional[str] = None
    notes: Optional[str] = None


def _check_intensity(intensity: int) -> None:
    if not 1 <= intensity <= 10:
        raise InvalidRequest("intensity must be between 1 and 10")


def _check_order(start: datetime, end: Optional[datetime]) -> None:
    if end is not None and end < start:
        raise InvalidRequest("endTime must not be before startTime")


def _entry_time(value: Optional[str], day: Optional[str], name: str) -> Optional[datetime]:
    """Full ISO timestamp, or HH:MM on ``day`` in the bucketing zone."""
    if not value:
        return None
    if day and "T" not in value and len(value) <= 8:
        d = _parse_date(day, "date")
        try:
            t = datetime.strptime(value, "%H:%M:%S" if value.count(":") == 2 else "%H:%M").time()
        except ValueError:
            raise InvalidRequest(f"{name} must be HH:MM")
        return datetime.combine(d, t, tzinfo=bucket_zone())
    return _parse_datetime(value, name)


def _joined(value: Optional[Union[List[str], str]]) -> str:
    if isinstance(value, list):
        return ", ".join(v.strip() for v in value if v and v.strip())
    return (value or "").strip()


def entry_out(row: Dict[str, Any]) -> Dict[str, Any]:
    out = _camel_row(row, drop=())
    for key in ("triggers", "symptoms"):
        out[key] = [p.strip() for p in (row.get(key) or "").split(",") if p.strip()]
    return out


def _owned_entry(conn, user_id: str, entry_id: str) -> Dict[str, Any]:
    row = _fetch_one(
        conn,
        f"SELECT {ENTRY_COLUMNS} FROM migraine_entries WHERE id = %s",
        (_parse_uuid(entry_id, "entry id"),),
    )
    if row is None:
        raise NotFound("Migraine entry not found")
    if str(row["user_id"]) != str(user_id):
        raise Forbidden("Access denied")
    return row


@router.get("/migraine")
def list_entries(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=500),
    search: str = Query(default=""),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    where = "user_id = %s"
    params: list = [user_id]
    if search:
        where += " AND (triggers ILIKE %s OR symptoms ILIKE %s OR location ILIKE %s)"
        params += [f"%{search}%"] * 3

    with get_connection() as conn:
        total = int(_fetch_one(conn, f"SELECT COUNT(*) AS n FROM migraine_entries WHERE {where}", tuple(params))["n"])
        rows = _fetch_all(
            conn,
            f"""
            SELECT {ENTRY_COLUMNS} FROM migraine_entries
            WHERE {where}
            ORDER BY start_time DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [limit, (page - 1) * limit]),
        )
    return ok({
        "entries": [entry_out(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    })


STATISTICS_MONTHS = 6
TOP_TRIGGERS = 5


def _month_starts(now: datetime, months: int = STATISTICS_MONTHS) -> List[date]:
    """First day of each of the last ``months`` months, oldest first."""
    year, month = now.year, now.month
    out = []
    for _ in range(months):
        out.append(date(year, month, 1))
        year, month = (year - 1, 12) if month == 1 else (year, month - 1)
    return out[::-1]


def trigger_counts(rows: List[Dict[str, Any]], top: int = TOP_TRIGGERS) -> List[Dict[str, Any]]:
    counts: Counter = Counter()
    for row in rows:
        counts.update(p.strip() for p in (row.get("triggers") or "").split(",") if p.strip())
    return [{"trigger": t, "count": n} for t, n in counts.most_common(top)]


def monthly_series(rows: List[Dict[str, Any]], now: datetime) -> Dict[str, List[Dict[str, Any]]]:
    """Zero-filled per-month counts and mean intensity for the statistics view."""
    by_month = {r["month"]: r for r in rows}
    frequency, trend = [], []
    for start in _month_starts(now):
        row = by_month.get(start.strftime("%Y-%m"), {})
        label = start.strftime("%b %Y")
        frequency.append({"month": label, "count": int(row.get("count") or 0)})
        avg = _num(row.get("avg_intensity"))
        trend.append({"month": label, "averageIntensity": round(avg, 1) if avg is not None else None})
    return {"frequencyByMonth": frequency, "intensityTrend": trend}


@router.get("/migraine/statistics")
def entry_statistics(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    now = datetime.now(bucket_zone())
    window_start = datetime.combine(_month_starts(now)[0], time(), tzinfo=bucket_zone())

    with get_connection() as conn:
        totals = _fetch_one(
            conn,
            """
            SELECT COUNT(*) AS total, COALESCE(AVG(intensity), 0) AS avg_intensity
            FROM migraine_entries WHERE user_id = %s
            """,
            (user_id,),
        )
        trigger_rows = _fetch_all(
            conn,
            "SELECT triggers FROM migraine_entries WHERE user_id = %s AND COALESCE(triggers, '') <> ''",
            (user_id,),
        )
        monthly = _fetch_all(
            conn,
            """
            SELECT to_char(start_time AT TIME ZONE %s, 'YYYY-MM') AS month,
                   COUNT(*) AS count,
                   AVG(intensity) AS avg_intensity
            FROM migraine_entries
            WHERE user_id = %s AND start_time >= %s
            GROUP BY 1
            """,
            (config.DAY_BUCKET_TZ, user_id, window_start),
        )

    return ok({
        "totalEntries": int(totals["total"]),
        "averageIntensity": round(_num(totals["avg_intensity"]) or 0.0, 1),
        "mostCommonTriggers": trigger_counts(trigger_rows),
        **monthly_series(monthly, now),
    })


@router.get("/migraine/recent")
def recent_entries(
    limit: int = Query(default=5, ge=1, le=100),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    with get_connection() as conn:
        rows = _fetch_all(
            conn,
            f"""
            SELECT {ENTRY_COLUMNS} FROM migraine_entries
            WHERE user_id = %s
            ORDER BY start_time DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
    return ok([entry_out(r) for r in rows])


@router.get("/migraine/{entry_id}")
def get_entry(entry_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        row = _owned_entry(conn, user_id, entry_id)
    return ok(entry_out(row))


@router.post("/migraine", status_code=201)
def create_entry(body: EntryRequest, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    _check_intensity(body.intensity)
    start = _entry_time(body.startTime, body.date, "startTime")
    if start is None:
        raise InvalidRequest("startTime is required")
    end = _entry_time(body.endTime, body.date, "endTime")
    _check_order(start, end)

    with get_connection() as conn:
        row = _fetch_one(
            conn,
            f"""
            INSERT INTO migraine_entries
                (user_id, start_time, end_time, intensity, location, triggers, symptoms, medication, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {ENTRY_COLUMNS}
            """,
            (
                user_id, start, end, body.intensity, body.location or "",
                _joined(body.triggers), _joined(body.symptoms),
                body.medication or "", body.notes or "",
            ),
        )
    log.info("Migraine entry %s created for user %s", row["id"], user_id)
    return ok(entry_out(row))


@router.put("/migraine/{entry_id}")
def update_entry(entry_id: str, body: EntryUpdateRequest, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    """Partial update: omitted fields keep their stored values."""
    if body.intensity is not None:
        _check_intensity(body.intensity)
    start = _entry_time(body.startTime, body.date, "startTime")
    end = _entry_time(body.endTime, body.date, "endTime")

    with get_connection() as conn:
        current = _owned_entry(conn, user_id, entry_id)
        _check_order(start or current["start_time"], end if end is not None else current["end_time"])
        row = _fetch_one(
            conn,
            f"""
            UPDATE migraine_entries
            SET start_time = COALESCE(%s, start_time),
                end_time = COALESCE(%s, end_time),
                intensity = COALESCE(%s, intensity),
                location = COALESCE(%s, location),
                triggers = COALESCE(%s, triggers),
                symptoms = COALESCE(%s, symptoms),
                medication = COALESCE(%s, medication),
                notes = COALESCE(%s, notes),
                updated_at = NOW()
            WHERE id = %s
            RETURNING {ENTRY_COLUMNS}
            """,
            (
                start, end, body.intensity, body.location,
                None if body.triggers is None else _joined(body.triggers),
                None if body.symptoms is None else _joined(body.symptoms),
                body.medication, body.notes, current["id"],
            ),
        )
    log.info("Migraine entry %s updated for user %s", row["id"], user_id)
    return ok(entry_out(row))


@router.delete("/migraine/{entry_id}")
def delete_entry(entry_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        row = _owned_entry(conn, user_id, entry_id)
        _execute(conn, "DELETE FROM migraine_entries WHERE id = %s", (row["id"],))
    return ok(message="Migraine entry deleted")
