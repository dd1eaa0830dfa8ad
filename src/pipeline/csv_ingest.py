"""
Streaming CSV ingest for wearable exports.

One pass over the file: the first non-empty line decides the delimiter and
is mapped by field_mapper; every following row is parsed, normalised and
upserted into wearable_data on (user_id, timestamp) as its own committed
transaction.  Row-level failures are collected on the UploadSession; only
whole-file failures raise.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import psycopg2

from constants import (
    FIELD_COLUMNS,
    SAMPLE_COLUMNS,
    SOURCE_FIELD,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_PROCESSING,
    TIMESTAMP_FIELD,
)
from errors import Conflict, EmptyFile, ParseError, UnsupportedDelimiter
from pipeline.field_mapper import HeaderMapping, map_headers

log = logging.getLogger("csv_ingest")

DELIMITERS = (",", ";", "\t")
NULL_TOKENS = {"", "na", "n/a", "null", "none", "-", "nan"}
MAX_ERROR_DETAILS = 50

# NUMERIC(p, s) columns hold |value| < 10 ** (p - s)
NUMERIC_LIMITS = {column: 10 ** 8 for column in SAMPLE_COLUMNS}
NUMERIC_LIMITS.update({"sleep_efficiency": 10 ** 3, "skin_temperature": 10 ** 3})
MAX_SOURCE_LENGTH = 100

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"


class RowError(ValueError):
    """A single row could not be parsed; recorded, never raised to callers."""

    def __init__(self, reason: str, timestamp: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.timestamp = timestamp


@dataclass
class ParsedSample:
    timestamp: datetime
    values: Dict[str, Optional[float]]
    additional_data: Dict[str, Any]
    source: str
    naive_timestamp: bool = False


@dataclass
class UploadSession:
    user_id: str
    filename: str
    file_size: int
    source: str = "unknown"
    field_mapping: Dict[str, str] = field(default_factory=dict)
    unrecognized_fields: List[str] = field(default_factory=list)
    id: Optional[str] = None
    total_rows: int = 0
    inserted_rows: int = 0
    updated_rows: int = 0
    skipped_rows: int = 0
    error_rows: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    earliest_timestamp: Optional[datetime] = None
    status: str = STATUS_PROCESSING
    cancelled: bool = False

    def record(self, outcome: str) -> None:
        if outcome == INSERTED:
            self.inserted_rows += 1
        elif outcome == UPDATED:
            self.updated_rows += 1
        else:
            self.skipped_rows += 1

    def record_error(self, row_number: int, reason: str, timestamp: Optional[str] = None) -> None:
        self.error_rows += 1
        if len(self.error_details) < MAX_ERROR_DETAILS:
            self.error_details.append({"row": row_number, "timestamp": timestamp, "error": reason})

    def terminal_status(self) -> str:
        if self.cancelled:
            return STATUS_PARTIAL
        if self.error_rows == 0:
            return STATUS_COMPLETED
        if self.inserted_rows + self.updated_rows > 0:
            return STATUS_PARTIAL
        return STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uploadSessionId": self.id,
            "filename": self.filename,
            "fileSize": self.file_size,
            "source": self.source,
            "total": self.total_rows,
            "inserted": self.inserted_rows,
            "updated": self.updated_rows,
            "skipped": self.skipped_rows,
            "errors": self.error_rows,
            "status": self.status,
            "fieldMapping": dict(self.field_mapping),
            "unrecognizedFields": list(self.unrecognized_fields),
            "errorDetails": list(self.error_details),
            "earliestDate": self.earliest_timestamp.isoformat() if self.earliest_timestamp else None,
        }


# ─── Parsing primitives ────────────────────────────────────

def detect_delimiter(line: str) -> str:
    counts = {d: line.count(d) for d in DELIMITERS}
    best = max(counts.values())
    if best == 0:
        if "|" in line:
            raise UnsupportedDelimiter("Unsupported delimiter '|'; use comma, semicolon or tab")
        return ","
    # DELIMITERS is ordered so ties resolve to ','
    for d in DELIMITERS:
        if counts[d] == best:
            return d
    return ","


def parse_timestamp(raw: str) -> Tuple[datetime, bool]:
    """Parse ISO-8601 (or epoch seconds/ms).  Returns (aware dt, was_naive)."""
    s = (raw or "").strip()
    if not s:
        raise RowError("missing timestamp")
    if s.isdigit():
        value = int(s)
        if value > 10 ** 11:
            value = value / 1000.0
        return datetime.fromtimestamp(value, tz=timezone.utc), False
    if s[-1] in ("Z", "z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise RowError(f"unparseable timestamp {raw!r}", timestamp=raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc), True
    return dt, False


def _is_null(raw: Optional[str]) -> bool:
    return raw is None or raw.strip().lower() in NULL_TOKENS


def parse_number(raw: Optional[str]) -> Optional[float]:
    """Locale-agnostic numeric parse; null tokens become None."""
    if _is_null(raw):
        return None
    s = raw.strip().replace(" ", "")
    if "," in s and "." in s:
        s = s.replace(",", "")
    elif s.count(",") == 1:
        s = s.replace(",", ".")
    value = float(s)
    if not math.isfinite(value):
        raise ValueError(f"non-finite value {raw!r}")
    return value


def parse_row(row: List[str], headers: List[str], mapping: HeaderMapping) -> ParsedSample:
    if len(row) != len(headers):
        raise RowError(f"expected {len(headers)} fields, found {len(row)}")

    if any("\x00" in cell for cell in row):
        raise RowError("row contains a NUL character")

    cells = dict(zip(headers, row))
    raw_ts = cells.get(mapping.timestamp_column)
    timestamp, naive = parse_timestamp(raw_ts)
    ts_label = timestamp.isoformat()

    values: Dict[str, Optional[float]] = {col: None for col in SAMPLE_COLUMNS}
    additional: Dict[str, Any] = {}
    source = mapping.source

    for header, raw in zip(headers, row):
        canonical = mapping.columns.get(header)
        if canonical == TIMESTAMP_FIELD:
            continue
        if canonical == SOURCE_FIELD:
            if not _is_null(raw):
                source = raw.strip()
                if len(source) > MAX_SOURCE_LENGTH:
                    raise RowError(
                        f"source longer than {MAX_SOURCE_LENGTH} characters", timestamp=ts_label
                    )
            continue
        if canonical is not None:
            column = FIELD_COLUMNS[canonical]
            try:
                value = parse_number(raw)
            except ValueError:
                raise RowError(f"invalid number for {header}: {raw!r}", timestamp=ts_label)
            if value is not None and abs(round(value, 2)) >= NUMERIC_LIMITS[column]:
                raise RowError(f"value out of range for {header}: {raw!r}", timestamp=ts_label)
            values[column] = value
            continue
        if not header.strip() or _is_null(raw):
            continue
        try:
            additional[header] = parse_number(raw)
        except ValueError:
            additional[header] = raw.strip()

    return ParsedSample(
        timestamp=timestamp,
        values=values,
        additional_data=additional,
        source=source,
        naive_timestamp=naive,
    )


def _open_text(data: Any) -> io.TextIOWrapper:
    binary = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    return io.TextIOWrapper(binary, encoding="utf-8-sig", newline="")


def _first_content_line(text: io.TextIOBase) -> Optional[str]:
    for line in text:
        if line.strip():
            return line
    return None


# ─── Persistence ───────────────────────────────────────────

_INSERT_COLS = ", ".join(SAMPLE_COLUMNS)
_PLACEHOLDERS = ", ".join(["%s"] * len(SAMPLE_COLUMNS))
_MERGE_SET = ",\n        ".join(f"{c} = COALESCE(EXCLUDED.{c}, w.{c})" for c in SAMPLE_COLUMNS)
_MERGED = ", ".join(f"COALESCE(EXCLUDED.{c}, w.{c})" for c in SAMPLE_COLUMNS)
_EXISTING = ", ".join(f"w.{c}" for c in SAMPLE_COLUMNS)

# Empty cells never erase stored values; RETURNING yields no row when the
# merged canonical values equal the stored ones (skipped).
UPSERT_SAMPLE_SQL = f"""
    INSERT INTO wearable_data AS w (
        user_id, timestamp, {_INSERT_COLS},
        additional_data, source, upload_session_id
    )
    VALUES (%s, %s, {_PLACEHOLDERS}, %s, %s, %s)
    ON CONFLICT (user_id, timestamp) DO UPDATE SET
        {_MERGE_SET},
        additional_data = COALESCE(w.additional_data, '{{}}'::jsonb)
                          || COALESCE(EXCLUDED.additional_data, '{{}}'::jsonb),
        source = COALESCE(EXCLUDED.source, w.source),
        upload_session_id = EXCLUDED.upload_session_id,
        updated_at = NOW()
    WHERE ({_MERGED}) IS DISTINCT FROM ({_EXISTING})
    RETURNING (xmax = 0) AS inserted
"""


class PgSampleStore:
    """wearable_data / upload_sessions writer bound to one pooled connection.

    Every call commits on its own so rows already written survive a
    cancelled or failed ingest.
    """

    def __init__(self, conn):
        self.conn = conn

    def create_session(self, session: UploadSession) -> str:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO upload_sessions (user_id, filename, file_size, source,
                                             field_mapping, unrecognized_fields, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    session.user_id,
                    session.filename[:255],
                    session.file_size,
                    session.source,
                    json.dumps(session.field_mapping),
                    session.unrecognized_fields,
                    STATUS_PROCESSING,
                ),
            )
            session_id = str(cur.fetchone()[0])
        self.conn.commit()
        return session_id

    def upsert_sample(self, user_id: str, session_id: str, sample: ParsedSample) -> str:
        params = (
            [user_id, sample.timestamp]
            + [sample.values.get(c) for c in SAMPLE_COLUMNS]
            + [json.dumps(sample.additional_data) if sample.additional_data else None,
               sample.source, session_id]
        )
        try:
            with self.conn.cursor() as cur:
                cur.execute(UPSERT_SAMPLE_SQL, params)
                row = cur.fetchone()
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        if row is None:
            return SKIPPED
        return INSERTED if row[0] else UPDATED

    def finalize_session(self, session: UploadSession) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE upload_sessions
                SET total_rows = %s, inserted_rows = %s, updated_rows = %s,
                    skipped_rows = %s, error_rows = %s, unrecognized_fields = %s,
                    error_details = %s, status = %s, updated_at = NOW()
                WHERE id = %s
                """,
                (
                    session.total_rows,
                    session.inserted_rows,
                    session.updated_rows,
                    session.skipped_rows,
                    session.error_rows,
                    session.unrecognized_fields,
                    json.dumps(session.error_details),
                    session.status,
                    session.id,
                ),
            )
        self.conn.commit()


# ─── Ingest driver ─────────────────────────────────────────

def _upsert_with_retry(store, user_id: str, session_id: str, sample: ParsedSample) -> str:
    try:
        return store.upsert_sample(user_id, session_id, sample)
    except psycopg2.IntegrityError as first:
        log.warning("Upsert collision at %s, retrying once: %s", sample.timestamp, first)
    try:
        return store.upsert_sample(user_id, session_id, sample)
    except psycopg2.IntegrityError as e:
        raise Conflict(f"Could not upsert sample at {sample.timestamp.isoformat()}: {e}") from e


def _rows(text: io.TextIOBase, delimiter: str) -> Iterator[List[str]]:
    for row in csv.reader(text, delimiter=delimiter):
        if not row or all(not cell.strip() for cell in row):
            continue
        yield row


def ingest(
    user_id: str,
    data: Any,
    filename: str,
    store,
    file_size: Optional[int] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> UploadSession:
    """Ingest one CSV file for one user.

    ``data`` is the raw bytes or a binary file object.  Raises EmptyFile,
    UnsupportedDelimiter or InvalidSchema before anything is written, and
    ParseError when the file cannot be read to the end (the session is
    finalised as failed first).  Every other outcome returns the finished
    UploadSession.
    """
    if file_size is None:
        file_size = len(data) if isinstance(data, (bytes, bytearray)) else 0

    text = _open_text(data)
    try:
        try:
            header_line = _first_content_line(text)
        except (UnicodeDecodeError, OSError) as e:
            raise ParseError(f"Could not read {filename}: {e}") from e
        if header_line is None:
            raise EmptyFile(f"{filename or 'upload'} is empty")

        delimiter = detect_delimiter(header_line)
        headers = [h.strip() for h in next(csv.reader([header_line], delimiter=delimiter))]
        mapping = map_headers(headers, filename)

        session = UploadSession(
            user_id=user_id,
            filename=filename,
            file_size=file_size,
            source=mapping.source,
            field_mapping=mapping.field_mapping,
            unrecognized_fields=list(mapping.unrecognized),
        )
        session.id = store.create_session(session)
        log.info(
            "Ingest %s started for user %s (source=%s, delimiter=%r, session=%s)",
            filename, user_id, mapping.source, delimiter, session.id,
        )

        naive_flagged = False
        row_number = 1
        try:
            for row in _rows(text, delimiter):
                if should_cancel is not None and should_cancel():
                    session.cancelled = True
                    log.info("Ingest %s cancelled after %d rows", session.id, session.total_rows)
                    break
                row_number += 1
                session.total_rows += 1
                try:
                    sample = parse_row(row, headers, mapping)
                except RowError as e:
                    log.debug("Row %d rejected: %s", row_number, e.reason)
                    session.record_error(row_number, e.reason, e.timestamp)
                    continue

                if sample.naive_timestamp and not naive_flagged:
                    session.unrecognized_fields.append(
                        f"{mapping.timestamp_column} (no timezone, treated as UTC)"
                    )
                    naive_flagged = True

                try:
                    outcome = _upsert_with_retry(store, user_id, session.id, sample)
                except Conflict as e:
                    session.record_error(row_number, e.message, sample.timestamp.isoformat())
                    session.status = STATUS_FAILED
                    store.finalize_session(session)
                    raise
                except (psycopg2.DataError, ValueError) as e:
                    # rejected by the database (overflow, bad text); the row is skipped
                    log.warning("Row %d rejected by the database: %s", row_number, e)
                    session.record_error(row_number, str(e).strip(), sample.timestamp.isoformat())
                    continue
                session.record(outcome)
                if session.earliest_timestamp is None or sample.timestamp < session.earliest_timestamp:
                    session.earliest_timestamp = sample.timestamp
        except (UnicodeDecodeError, OSError, csv.Error) as e:
            session.status = STATUS_FAILED
            store.finalize_session(session)
            log.error("Ingest %s aborted at row %d: %s", session.id, row_number, e)
            raise ParseError(f"Could not read {filename} past row {row_number}: {e}", session_id=session.id) from e
        except Conflict:
            raise
        except Exception:
            session.status = STATUS_FAILED
            store.finalize_session(session)
            log.exception("Ingest %s failed at row %d", session.id, row_number)
            raise

        session.status = session.terminal_status()
        store.finalize_session(session)
    finally:
        if not text.closed:
            text.detach()

    log.info(
        "Ingest %s finished: status=%s total=%d inserted=%d updated=%d skipped=%d errors=%d",
        session.id, session.status, session.total_rows, session.inserted_rows,
        session.updated_rows, session.skipped_rows, session.error_rows,
    )
    return session
