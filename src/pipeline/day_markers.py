"""Migraine-day resolution and the calendar view.

A local day is a migraine day when the user marked it as one, or when a
migraine entry started on it, unless the user explicitly marked it as a
non-migraine day.  All local dates use config.DAY_BUCKET_TZ.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from psycopg2.extras import RealDictCursor

import config
from errors import InvalidRequest, NotFound

log = logging.getLogger("day_markers")


# ─── Time-zone helpers ─────────────────────────────────────

def bucket_zone() -> ZoneInfo:
    return ZoneInfo(config.DAY_BUCKET_TZ)


def local_day(ts: datetime) -> date:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(bucket_zone()).date()


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """[start, end) of a local calendar day, expressed in UTC."""
    tz = bucket_zone()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def resolve_migraine_days(
    positive_markers: Iterable[date],
    negative_markers: Iterable[date],
    entry_days: Iterable[date],
) -> Set[date]:
    return (set(positive_markers) | set(entry_days)) - set(negative_markers)


def build_calendar_month(
    year: int,
    month: int,
    sample_counts: Dict[date, int],
    markers: Dict[date, Dict[str, Any]],
    entry_stats: Dict[date, Dict[str, Any]],
) -> Dict[str, Any]:
    """Assemble the per-day calendar payload for one month."""
    days: List[Dict[str, Any]] = []
    migraine_days = resolve_migraine_days(
        [d for d, m in markers.items() if m.get("is_migraine_day")],
        [d for d, m in markers.items() if not m.get("is_migraine_day")],
        entry_stats.keys(),
    )
    n_days = calendar.monthrange(year, month)[1]
    for dom in range(1, n_days + 1):
        d = date(year, month, dom)
        points = int(sample_counts.get(d, 0))
        marker = markers.get(d) or {}
        entries = entry_stats.get(d) or {}
        severity = marker.get("severity")
        if severity is None:
            severity = entries.get("max_intensity")
        days.append({
            "date": d.isoformat(),
            "hasData": points > 0,
            "dataPoints": points,
            "isMigraineDay": d in migraine_days,
            "migraineCount": int(entries.get("count", 0)),
            "severity": severity,
            "notes": marker.get("notes"),
        })
    return {
        "year": year,
        "month": month,
        "days": days,
        "totalDaysWithData": sum(1 for day in days if day["hasData"]),
        "totalMigraineDays": sum(1 for day in days if day["isMigraineDay"]),
    }


def marker_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    def _iso(v):
        return v.isoformat() if hasattr(v, "isoformat") else v

    return {
        "id": str(row["id"]) if row.get("id") is not None else None,
        "date": _iso(row.get("date")),
        "isMigraineDay": bool(row.get("is_migraine_day")),
        "severity": row.get("severity"),
        "notes": row.get("notes"),
        "createdAt": _iso(row.get("created_at")),
        "updatedAt": _iso(row.get("updated_at")),
    }


# ─── Store ─────────────────────────────────────────────────

class DayMarkerStore:
    """Reads/writes migraine_day_markers and derives migraine days."""

    def __init__(self, conn):
        self.conn = conn

    def _rows(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def markers(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> Dict[date, Dict[str, Any]]:
        query = "SELECT * FROM migraine_day_markers WHERE user_id = %s"
        params: list = [user_id]
        if start is not None:
            query += " AND date >= %s"
            params.append(start)
        if end is not None:
            query += " AND date <= %s"
            params.append(end)
        return {r["date"]: r for r in self._rows(query, tuple(params))}

    def entry_stats(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> Dict[date, Dict[str, Any]]:
        """Per local day: number of entries started and their max intensity."""
        query = """
            SELECT (start_time AT TIME ZONE %s)::date AS day,
                   COUNT(*) AS count,
                   MAX(intensity) AS max_intensity
            FROM migraine_entries
            WHERE user_id = %s
        """
        params: list = [config.DAY_BUCKET_TZ, user_id]
        if start is not None:
            query += " AND start_time >= %s"
            params.append(day_bounds(start)[0])
        if end is not None:
            query += " AND start_time < %s"
            params.append(day_bounds(end)[1])
        query += " GROUP BY 1"
        return {
            r["day"]: {"count": int(r["count"]), "max_intensity": r["max_intensity"]}
            for r in self._rows(query, tuple(params))
        }

    def migraine_days(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> Set[date]:
        markers = self.markers(user_id, start, end)
        return resolve_migraine_days(
            [d for d, m in markers.items() if m["is_migraine_day"]],
            [d for d, m in markers.items() if not m["is_migraine_day"]],
            self.entry_stats(user_id, start, end).keys(),
        )

    def upsert_marker(
        self,
        user_id: str,
        day: date,
        is_migraine_day: bool = True,
        severity: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        if severity is not None and not 1 <= int(severity) <= 10:
            raise InvalidRequest("severity must be between 1 and 10")
        rows = self._rows(
            """
            INSERT INTO migraine_day_markers (user_id, date, is_migraine_day, severity, notes)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, date) DO UPDATE SET
                is_migraine_day = EXCLUDED.is_migraine_day,
                severity = EXCLUDED.severity,
                notes = EXCLUDED.notes,
                updated_at = NOW()
            RETURNING *
            """,
            (user_id, day, is_migraine_day, severity, notes),
        )
        log.info("Marker %s set for user %s (migraine=%s)", day, user_id, is_migraine_day)
        return marker_to_dict(rows[0])

    def delete_marker(self, user_id: str, day: date) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                "DELETE FROM migraine_day_markers WHERE user_id = %s AND date = %s",
                (user_id, day),
            )
            if cur.rowcount == 0:
                raise NotFound(f"No migraine-day marker for {day.isoformat()}")

    def sample_counts(self, user_id: str, start: date, end: date) -> Dict[date, int]:
        rows = self._rows(
            """
            SELECT (timestamp AT TIME ZONE %s)::date AS day, COUNT(*) AS n
            FROM wearable_data
            WHERE user_id = %s AND timestamp >= %s AND timestamp < %s
            GROUP BY 1
            """,
            (config.DAY_BUCKET_TZ, user_id, day_bounds(start)[0], day_bounds(end)[1]),
        )
        return {r["day"]: int(r["n"]) for r in rows}

    def calendar_month(self, user_id: str, year: int, month: int) -> Dict[str, Any]:
        if not 1 <= month <= 12:
            raise InvalidRequest("month must be between 1 and 12")
        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
        return build_calendar_month(
            year,
            month,
            self.sample_counts(user_id, first, last),
            self.markers(user_id, first, last),
            self.entry_stats(user_id, first, last),
        )
