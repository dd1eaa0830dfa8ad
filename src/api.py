"""
FastAPI backend for the migraine tracker.

App setup, error envelope and health/admin routes live here; the tracker
endpoints are split across routes/*.py and mounted under /api.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from db_utils import close_pool, get_connection, init_pool
from errors import (
    InternalError, InvalidRequest, InvalidSchema, ParseError, ResourceBusy, TrackerError,
)
from pipeline.migrations import ensure_startup_schema, schema_audit
from routes import calendar, migraine, profile, risk, summary, wearable
from routes.helpers import _clip_text

log = logging.getLogger("api")

API_PREFIX = "/api"


# ─── App setup ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        init_pool()
        ensure_startup_schema()
    except Exception as e:
        # Keep serving; /health reports the database as unreachable.
        log.error("Database not ready at startup: %s", e)
    yield
    close_pool()


app = FastAPI(title="Migraine Tracker API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.FRONTEND_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# ─── Error envelope ────────────────────────────────────────

def error_envelope(exc: TrackerError) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "message": exc.message,
        "code": exc.code,
        "status": exc.status_code,
    }
    if isinstance(exc, InvalidSchema) and exc.headers:
        body["headers"] = exc.headers
    if isinstance(exc, ParseError) and exc.session_id:
        body["uploadSessionId"] = exc.session_id
    if isinstance(exc, InternalError) and exc.correlation_id:
        body["correlationId"] = exc.correlation_id
    return body


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    headers = None
    if isinstance(exc, ResourceBusy):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=error_envelope(exc), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    error = InvalidRequest(_clip_text("; ".join(problems) or "Invalid request", 400))
    return JSONResponse(status_code=error.status_code, content=error_envelope(error))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "status": exc.status_code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    correlation_id = str(uuid.uuid4())
    log.error(
        "Unhandled error on %s %s [%s]", request.method, request.url.path, correlation_id,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    error = InternalError(correlation_id=correlation_id)
    return JSONResponse(status_code=error.status_code, content=error_envelope(error))


# ─── Routes ────────────────────────────────────────────────

for _module in (wearable, summary, calendar, risk, profile, migraine):
    app.include_router(_module.router, prefix=API_PREFIX)


@app.get("/")
def root() -> Dict[str, Any]:
    return {"service": "migraine-tracker-api", "status": "ok"}


@app.get("/health")
@app.get(API_PREFIX + "/health")
def health() -> JSONResponse:
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        return JSONResponse({"success": True, "message": "Migraine Tracker API is running", "database": "connected"})
    except Exception as e:
        log.warning("Health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": "Service unavailable", "database": "disconnected"},
        )


@app.get(API_PREFIX + "/admin/schema-audit")
def migration_audit() -> Dict[str, Any]:
    return schema_audit()
