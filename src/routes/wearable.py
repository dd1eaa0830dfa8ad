"""
/wearable endpoints: CSV upload, sample listing, statistics and upload
session management.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from starlette.concurrency import run_in_threadpool

import config
from constants import FIELD_COLUMNS, SAMPLE_COLUMNS, STATUS_PROCESSING
from db_utils import get_connection
from errors import FileTooLarge, Forbidden, NotFound
from pipeline.csv_ingest import PgSampleStore, UploadSession, ingest
from routes.auth import current_user
from routes.helpers import (
    _camel_row, _execute, _fetch_all, _fetch_one, _num,
    _parse_datetime, _parse_limit, _parse_uuid, _to_jsonable, ok,
)

log = logging.getLogger("api.wearable")

router = APIRouter(tags=["wearable"])

DISCONNECT_POLL_SEC = 0.5
DEFAULT_SAMPLE_LIMIT = 1000


# ─── Upload ─────────────────────────────────────────────────

def _spooled_size(upload: UploadFile) -> int:
    if getattr(upload, "size", None) is not None:
        return int(upload.size)
    fh = upload.file
    pos = fh.tell()
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    fh.seek(pos)
    return size


def _run_ingest(user_id: str, fileobj, filename: str, size: int, cancel: threading.Event) -> UploadSession:
    with get_connection() as conn:
        return ingest(
            user_id,
            fileobj,
            filename,
            PgSampleStore(conn),
            file_size=size,
            should_cancel=cancel.is_set,
        )


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            log.info("Client went away, cancelling ingest")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SEC)


@router.post("/wearable/upload")
async def upload_wearable(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    filename = file.filename or "upload.csv"
    size = _spooled_size(file)
    if size > config.MAX_UPLOAD_BYTES:
        raise FileTooLarge(
            f"{filename} is {size} bytes; the limit is {config.MAX_UPLOAD_BYTES} bytes"
        )

    cancel = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        session = await run_in_threadpool(_run_ingest, user_id, file.file, filename, size, cancel)
    finally:
        cancel.set()
        watcher.cancel()
        await file.close()

    summary = session.to_dict()
    message = (
        f"Processed {session.total_rows} rows: {session.inserted_rows} inserted, "
        f"{session.updated_rows} updated, {session.skipped_rows} skipped, "
        f"{session.error_rows} errors"
    )
    return ok(summary, message=message)


# ─── Samples ────────────────────────────────────────────────

def sample_out(row: Dict[str, Any]) -> Dict[str, Any]:
    out = _camel_row(row)
    for key, column in FIELD_COLUMNS.items():
        out[key] = _num(row.get(column))
    out["additionalData"] = row.get("additional_data") or {}
    return out


@router.get("/wearable")
def list_wearable(
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    start = _parse_datetime(startDate, "startDate")
    end = _parse_datetime(endDate, "endDate")
    n = _parse_limit(limit, DEFAULT_SAMPLE_LIMIT)

    clauses = ["user_id = %s"]
    params: list = [user_id]
    if start is not None:
        clauses.append("timestamp >= %s")
        params.append(start)
    if end is not None:
        clauses.append("timestamp <= %s")
        params.append(end)
    params.append(n)

    with get_connection() as conn:
        rows = _fetch_all(
            conn,
            f"""
            SELECT id, timestamp, {", ".join(SAMPLE_COLUMNS)},
                   additional_data, source, upload_session_id, created_at
            FROM wearable_data
            WHERE {" AND ".join(clauses)}
            ORDER BY timestamp DESC
            LIMIT %s
            """,
            tuple(params),
        )
    data = [sample_out(r) for r in rows]
    return ok({"data": data, "count": len(data)})


@router.get("/wearable/statistics")
def wearable_statistics(
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    start = _parse_datetime(startDate, "startDate")
    end = _parse_datetime(endDate, "endDate")

    clauses = ["user_id = %s"]
    params: list = [user_id]
    if start is not None:
        clauses.append("timestamp >= %s")
        params.append(start)
    if end is not None:
        clauses.append("timestamp <= %s")
        params.append(end)

    averages_sql = ", ".join(f"AVG({c}) AS {c}" for c in SAMPLE_COLUMNS)
    with get_connection() as conn:
        row = _fetch_one(
            conn,
            f"""
            SELECT COUNT(*) AS total, MIN(timestamp) AS earliest, MAX(timestamp) AS latest,
                   {averages_sql}
            FROM wearable_data
            WHERE {" AND ".join(clauses)}
            """,
            tuple(params),
        ) or {}

    averages = {}
    for key, column in FIELD_COLUMNS.items():
        value = _num(row.get(column))
        averages[key] = round(value, 2) if value is not None else None
    return ok({
        "totalRecords": int(row.get("total") or 0),
        "averages": averages,
        "dateRange": {
            "earliest": _to_jsonable(row.get("earliest")),
            "latest": _to_jsonable(row.get("latest")),
        },
    })


# ─── Upload sessions ───────────────────────────────────────

def session_out(row: Dict[str, Any]) -> Dict[str, Any]:
    out = _camel_row(row)
    out["unrecognizedFields"] = list(row.get("unrecognized_fields") or [])
    out["fieldMapping"] = row.get("field_mapping") or {}
    out["errorDetails"] = row.get("error_details") or []
    return out


def _owned_session(conn, user_id: str, session_id: str) -> Dict[str, Any]:
    row = _fetch_one(
        conn,
        "SELECT * FROM upload_sessions WHERE id = %s AND status <> %s",
        (_parse_uuid(session_id, "upload session id"), STATUS_PROCESSING),
    )
    if row is None:
        raise NotFound("Upload session not found")
    if str(row["user_id"]) != str(user_id):
        raise Forbidden("Access denied")
    return row


@router.get("/wearable/uploads")
def list_uploads(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        rows = _fetch_all(
            conn,
            """
            SELECT * FROM upload_sessions
            WHERE user_id = %s AND status <> %s
            ORDER BY created_at DESC
            """,
            (user_id, STATUS_PROCESSING),
        )
    uploads = [session_out(r) for r in rows]
    return ok({"uploads": uploads, "count": len(uploads)})


@router.get("/wearable/uploads/{session_id}")
def get_upload(session_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        row = _owned_session(conn, user_id, session_id)
    return ok(session_out(row))


@router.delete("/wearable/uploads/{session_id}")
def delete_upload(session_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        row = _owned_session(conn, user_id, session_id)
        deleted = _execute(conn, "DELETE FROM wearable_data WHERE upload_session_id = %s", (row["id"],))
        _execute(conn, "DELETE FROM upload_sessions WHERE id = %s", (row["id"],))
    log.info("Deleted upload %s for user %s (%d samples)", row["id"], user_id, deleted)
    return ok({"deletedRecords": deleted}, message="Upload and its data deleted")


@router.delete("/wearable/uploads")
def delete_all_uploads(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        samples = _execute(
            conn,
            """
            DELETE FROM wearable_data
            WHERE user_id = %s AND upload_session_id IN (
                SELECT id FROM upload_sessions WHERE user_id = %s
            )
            """,
            (user_id, user_id),
        )
        sessions = _execute(conn, "DELETE FROM upload_sessions WHERE user_id = %s", (user_id,))
    log.info("Deleted all uploads for user %s (%d sessions, %d samples)", user_id, sessions, samples)
    return ok({"deletedCount": sessions, "deletedRecords": samples}, message="All uploads deleted")


@router.post("/wearable/cleanup-orphaned")
def cleanup_orphaned(user_id: str = Depends(current_user)) -> Dict[str, Any]:
    with get_connection() as conn:
        deleted = _execute(
            conn,
            "DELETE FROM wearable_data WHERE user_id = %s AND upload_session_id IS NULL",
            (user_id,),
        )
    log.info("Removed %d orphaned samples for user %s", deleted, user_id)
    return ok({"deletedCount": deleted})
