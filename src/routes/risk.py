"""/risk-prediction endpoints: prompt assembly, raw bundle, LLM analysis."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from db_utils import get_connection
from errors import RequestCancelled
from pipeline.prompt_builder import RiskDataLoader
from risk_agent import RiskAgent
from routes.auth import current_user
from routes.helpers import _to_jsonable, ok

log = logging.getLogger("api.risk")

router = APIRouter(tags=["risk-prediction"])

DISCONNECT_POLL_SEC = 0.5


class SimulationRequest(BaseModel):
    simulatedData: Optional[Dict[str, Any]] = None


def _assemble(user_id: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    with get_connection() as conn:
        return RiskDataLoader(conn).assemble(user_id, overrides)


def _analyze(prompt: str) -> Dict[str, Any]:
    return RiskAgent().analyze(prompt)


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SEC)


@router.get("/risk-prediction/prompt")
def get_prompt(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    return ok(_assemble(user_id))


@router.post("/risk-prediction/prompt")
def simulate_prompt(body: SimulationRequest, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    return ok(_assemble(user_id, body.simulatedData))


@router.get("/risk-prediction/data")
def get_risk_data(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        bundle = RiskDataLoader(conn).load(user_id)
    if bundle["profile"] is not None:
        bundle["profile"] = {
            k: _to_jsonable(v) for k, v in bundle["profile"].items() if k != "user_id"
        }
    return ok(bundle)


@router.post("/risk-prediction/analyze")
async def analyze_risk(
    request: Request,
    body: Optional[SimulationRequest] = None,
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    overrides = body.simulatedData if body else None
    assembled = await run_in_threadpool(_assemble, user_id, overrides)

    llm = asyncio.ensure_future(run_in_threadpool(_analyze, assembled["prompt"]))
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait({llm, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
    if llm not in done:
        llm.cancel()
        log.info("Risk analysis for user %s cancelled by client", user_id)
        raise RequestCancelled("Client disconnected before the analysis finished")

    analysis = llm.result()
    log.info(
        "Risk analysis for user %s: level=%s (found=%s) category=%s",
        user_id, analysis["riskLevel"], analysis["riskLevelFound"], analysis["riskCategory"],
    )
    return ok({
        "analysis": analysis,
        "summary": assembled["summary"],
        "metadata": assembled["metadata"],
    })
