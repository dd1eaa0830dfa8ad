"""
Shared test configuration.

Adds both the project root and src/ to sys.path so flat modules
(csv_ingest's neighbours, correlation_engine, api, ...) import with plain
`import module_name`, and provides an in-memory sample store that mimics
the (user_id, timestamp) upsert of wearable_data.
"""

import os
import sys
from typing import Any, Dict, List, Tuple

import pytest

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")

if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

if _src_dir not in sys.path:
    sys.path.insert(1, _src_dir)


class FakeSampleStore:
    """Same contract as csv_ingest.PgSampleStore, backed by dicts."""

    def __init__(self):
        self.rows: Dict[Tuple[str, Any], Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.finalized: List[Dict[str, Any]] = []
        self._next_id = 0

    def create_session(self, session) -> str:
        self._next_id += 1
        session_id = f"session-{self._next_id}"
        self.sessions[session_id] = {"status": session.status, "filename": session.filename}
        return session_id

    def upsert_sample(self, user_id, session_id, sample) -> str:
        key = (user_id, sample.timestamp)
        existing = self.rows.get(key)
        if existing is None:
            self.rows[key] = {
                "values": dict(sample.values),
                "additional_data": dict(sample.additional_data),
                "source": sample.source,
                "upload_session_id": session_id,
            }
            return "inserted"
        merged = {
            k: sample.values.get(k) if sample.values.get(k) is not None else existing["values"].get(k)
            for k in set(existing["values"]) | set(sample.values)
        }
        if merged == existing["values"]:
            return "skipped"
        existing["values"] = merged
        existing["upload_session_id"] = session_id
        return "updated"

    def finalize_session(self, session) -> None:
        self.sessions[session.id]["status"] = session.status
        self.finalized.append(session.to_dict())


@pytest.fixture
def sample_store():
    return FakeSampleStore()
