"""Summary + correlation batch driver with explicit per-user state."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import config
from correlation_engine import CorrelationEngine
from pipeline.summary_aggregator import SummaryAggregator

log = logging.getLogger("summary_pipeline")

STATE_IDLE = "idle"
STATE_PROCESSING = "processing"


class SummaryPipeline:
    """Aggregates every local day with samples, then recomputes patterns.

    Each day is its own transaction on the shared connection so one bad day
    cannot abort the batch; the correlation recompute reads whatever is
    committed once aggregation has finished.
    """

    def __init__(self, conn, lookback_days: Optional[int] = None):
        self.conn = conn
        self.lookback_days = lookback_days or config.SUMMARY_LOOKBACK_DAYS
        self.aggregator = SummaryAggregator(conn)
        self.engine = CorrelationEngine(conn)

    def _candidate_days(self, user_id: str) -> List[date]:
        """Local days that have samples or a summary row inside the window."""
        since = datetime.now(timezone.utc) - timedelta(days=self.lookback_days)
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT (timestamp AT TIME ZONE %s)::date AS day
                FROM wearable_data
                WHERE user_id = %s AND timestamp >= %s
                UNION
                SELECT DISTINCT (period_start AT TIME ZONE %s)::date AS day
                FROM summary_indicators
                WHERE user_id = %s AND period_start >= %s
                ORDER BY day
                """,
                (config.DAY_BUCKET_TZ, user_id, since, config.DAY_BUCKET_TZ, user_id, since),
            )
            return [r[0] for r in cur.fetchall()]

    def run(self, user_id: str, force: bool = False) -> Dict[str, Any]:
        """Run the batch for one user and return a machine-readable digest."""
        status: Dict[str, Any] = {
            "processed": 0,
            "cached": 0,
            "removed": 0,
            "errors": 0,
            "processedDays": [],
            "errorDetails": [],
            "correlations": None,
            "state": STATE_IDLE,
        }

        days = self._candidate_days(user_id)
        self.conn.commit()
        log.info("Summary batch for user %s: %d candidate days (force=%s)", user_id, len(days), force)

        for day in days:
            try:
                _, outcome = self.aggregator.aggregate(user_id, day, force=force)
                self.conn.commit()
            except Exception as e:
                self.conn.rollback()
                log.warning("Aggregation failed for %s (user %s): %s", day, user_id, e)
                status["errors"] += 1
                status["errorDetails"].append({"date": day.isoformat(), "error": str(e)})
                continue
            if outcome == "processed":
                status["processed"] += 1
                status["processedDays"].append(day.isoformat())
            elif outcome == "cached":
                status["cached"] += 1
            else:
                status["removed"] += 1

        status["state"] = STATE_PROCESSING
        log.info("Correlation state for user %s: %s -> %s", user_id, STATE_IDLE, STATE_PROCESSING)
        try:
            status["correlations"] = self.engine.recompute(user_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            status["state"] = STATE_IDLE
            log.info("Correlation state for user %s: %s -> %s", user_id, STATE_PROCESSING, STATE_IDLE)

        status["overallStatus"] = self._overall_status(status)
        log.info(
            "Summary batch done for user %s: processed=%d cached=%d removed=%d errors=%d (%s)",
            user_id, status["processed"], status["cached"], status["removed"],
            status["errors"], status["overallStatus"],
        )
        return status

    @staticmethod
    def _overall_status(status: Dict[str, Any]) -> str:
        if status.get("correlations") is None:
            return "failed"
        if status.get("errors"):
            return "degraded"
        return "success"
