"""
Shared helpers for API routes.
Contains: row fetching, type coercion, query-parameter parsing, response
shaping.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from psycopg2.extras import RealDictCursor

from errors import InvalidRequest

log = logging.getLogger("api")

MAX_LIST_LIMIT = 10000


# ─── DB helpers ─────────────────────────────────────────────

def _to_jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    return value


def _fetch_all(conn, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(query, params or ())
        return [dict(row) for row in cur.fetchall()]


def _fetch_one(conn, query: str, params: Optional[tuple] = None) -> Optional[Dict[str, Any]]:
    rows = _fetch_all(conn, query, params=params)
    return rows[0] if rows else None


def _execute(conn, query: str, params: Optional[tuple] = None) -> int:
    """Run a write statement, return the affected row count."""
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.rowcount


# ─── Type coercion ──────────────────────────────────────────

def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    return str(value) if value is not None else ""


def _clip_text(text: str, max_len: int = 280) -> str:
    s = _text(text).replace("\n", " ").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 3].rstrip() + "..."


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _camel_row(row: Dict[str, Any], drop: tuple = ("user_id",)) -> Dict[str, Any]:
    return {_camel(k): _to_jsonable(v) for k, v in row.items() if k not in drop}


# ─── Query parsing ─────────────────────────────────────────

def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidRequest(f"{name} must be an ISO date (YYYY-MM-DD), got {_clip_text(value, 40)!r}")


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    """ISO date or datetime; naive values are read as UTC."""
    if value in (None, ""):
        return None
    raw = str(value).strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an ISO date or timestamp, got {_clip_text(value, 40)!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_limit(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    if value < 1 or value > MAX_LIST_LIMIT:
        raise InvalidRequest(f"limit must be between 1 and {MAX_LIST_LIMIT}")
    return value


def _parse_uuid(value: str, name: str = "id") -> str:
    try:
        return str(UUID(str(value)))
    except ValueError:
        raise InvalidRequest(f"{name} is not a valid identifier")


# ─── Response shaping ──────────────────────────────────────

def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": True}
    if message:
        out["message"] = message
    if data is not None:
        out["data"] = data
    return out
