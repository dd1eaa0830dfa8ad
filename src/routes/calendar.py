"""/calendar endpoints: month view and migraine-day markers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from db_utils import get_connection
from errors import InvalidRequest
from pipeline.day_markers import DayMarkerStore, bucket_zone
from routes.auth import current_user
from routes.helpers import _parse_date, ok

router = APIRouter(tags=["calendar"])


class MarkerRequest(BaseModel):
    date: str
    isMigraineDay: bool = True
    severity: Optional[int] = None
    notes: Optional[str] = None


@router.get("/calendar")
def calendar_month(
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    today = datetime.now(bucket_zone()).date()
    year = year or today.year
    month = month or today.month
    if not 1 <= year <= 9999:
        raise InvalidRequest("year is out of range")
    with get_connection() as conn:
        data = DayMarkerStore(conn).calendar_month(user_id, year, month)
    return ok(data)


@router.post("/calendar/migraine-day")
def set_migraine_day(body: MarkerRequest, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    day = _parse_date(body.date, "date")
    if day is None:
        raise InvalidRequest("date is required")
    with get_connection() as conn:
        marker = DayMarkerStore(conn).upsert_marker(
            user_id, day, is_migraine_day=body.isMigraineDay, severity=body.severity, notes=body.notes,
        )
    return ok(marker)


@router.delete("/calendar/migraine-day/{day}")
def delete_migraine_day(day: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    parsed = _parse_date(day, "date")
    with get_connection() as conn:
        DayMarkerStore(conn).delete_marker(user_id, parsed)
    return ok(message="Migraine day marker removed")
