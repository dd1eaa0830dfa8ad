"""/summary endpoints: per-day indicators, batch processing, correlations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from correlation_engine import CorrelationEngine, top_trigger
from db_utils import get_connection
from pipeline.day_markers import day_bounds, local_day
from pipeline.summary_pipeline import SummaryPipeline
from routes.auth import current_user
from routes.helpers import _camel_row, _fetch_all, _parse_date, _parse_limit, ok

log = logging.getLogger("api.summary")

router = APIRouter(tags=["summary"])

DEFAULT_SUMMARY_LIMIT = 365


class ProcessRequest(BaseModel):
    forceReprocess: bool = False


def summary_out(row: Dict[str, Any]) -> Dict[str, Any]:
    out = _camel_row(row)
    out["date"] = local_day(row["period_start"]).isoformat()
    out["riskFactors"] = row.get("risk_factors") or []
    return out


@router.get("/summary")
def list_summaries(
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    start = _parse_date(startDate, "startDate")
    end = _parse_date(endDate, "endDate")
    n = _parse_limit(limit, DEFAULT_SUMMARY_LIMIT)

    clauses = ["user_id = %s"]
    params: list = [user_id]
    if start is not None:
        clauses.append("period_start >= %s")
        params.append(day_bounds(start)[0])
    if end is not None:
        clauses.append("period_start < %s")
        params.append(day_bounds(end)[1])
    params.append(n)

    with get_connection() as conn:
        rows = _fetch_all(
            conn,
            f"""
            SELECT * FROM summary_indicators
            WHERE {" AND ".join(clauses)}
            ORDER BY period_start DESC
            LIMIT %s
            """,
            tuple(params),
        )
    data = [summary_out(r) for r in rows]
    return ok({"summaries": data, "count": len(data)})


@router.post("/summary/process")
def process_summaries(
    body: Optional[ProcessRequest] = None,
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    force = bool(body and body.forceReprocess)
    with get_connection() as conn:
        result = SummaryPipeline(conn).run(user_id, force=force)
    return ok(result, message=f"Processed {result['processed']} days ({result['cached']} cached)")


@router.get("/summary/correlations")
def list_correlations(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        patterns = CorrelationEngine(conn).list_patterns(user_id)
    return ok({"correlations": patterns, "count": len(patterns), "topTrigger": top_trigger(patterns)})
