"""
Contract/behavior tests for the HTTP layer (src/api.py + src/routes).

These tests mock DB access and validate:
- bearer-token auth and the error envelope
- upload summary / size limit / schema errors / pool exhaustion
- ownership checks on upload sessions and migraine entries
- profile range validation
- risk analysis payload shape
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt

import api as api_mod
import config
import routes.calendar as calendar_mod
import routes.migraine as migraine_mod
import routes.profile as profile_mod
import routes.risk as risk_mod
import routes.summary as summary_mod
import routes.wearable as wearable_mod
from errors import InvalidRequest, ResourceBusy, Unauthorized
from pipeline.csv_ingest import ingest
from risk_agent import parse_risk_response
from routes.auth import current_user, decode_user_id

SESSION_ID = "0b7e1f8a-3c1d-4e55-9a0e-2f4c8d6b1a22"
ENTRY_ID = "5d2c9b10-8f7e-4a3b-b1c2-6e9f0a4d3c21"
OURA_CSV = (
    b"timestamp,hrv_rmssd,stress_summary,recovery_index\n"
    b"2025-01-05T08:00:00Z,42,55,60\n"
)


@contextmanager
def fake_connection():
    yield MagicMock()


@pytest.fixture
def client():
    api_mod.app.dependency_overrides[current_user] = lambda: "u1"
    yield TestClient(api_mod.app)
    api_mod.app.dependency_overrides.clear()


@pytest.fixture
def anon_client():
    api_mod.app.dependency_overrides.clear()
    return TestClient(api_mod.app)


# ─── Auth ───────────────────────────────────────────────────


class TestAuth:

    def test_missing_token_is_401_envelope(self, anon_client):
        r = anon_client.get("/api/wearable")
        assert r.status_code == 401
        assert r.json() == {
            "success": False,
            "message": "Authentication required",
            "code": "UNAUTHORIZED",
            "status": 401,
        }

    def test_decode_user_id(self, monkeypatch):
        monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
        token = jwt.encode({"userId": "u42"}, "test-secret", algorithm="HS256")
        assert decode_user_id(token) == "u42"
        assert decode_user_id(jwt.encode({"sub": "u7"}, "test-secret", algorithm="HS256")) == "u7"

    def test_wrong_signature(self, monkeypatch):
        monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
        token = jwt.encode({"userId": "u42"}, "other-secret", algorithm="HS256")
        with pytest.raises(Unauthorized):
            decode_user_id(token)

    def test_token_without_identity(self, monkeypatch):
        monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
        with pytest.raises(Unauthorized):
            decode_user_id(jwt.encode({"role": "x"}, "test-secret", algorithm="HS256"))

    def test_unconfigured_secret(self, monkeypatch):
        monkeypatch.setattr(config, "JWT_SECRET", "")
        with pytest.raises(Unauthorized):
            decode_user_id("anything")

    def test_bearer_header_end_to_end(self, anon_client, monkeypatch):
        monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        monkeypatch.setattr(wearable_mod, "_fetch_all", lambda conn, q, p=None: [])
        token = jwt.encode({"userId": "u42"}, "test-secret", algorithm="HS256")
        r = anon_client.get("/api/wearable/uploads", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200
        assert r.json() == {"success": True, "data": {"uploads": [], "count": 0}}


# ─── Upload ─────────────────────────────────────────────────


class TestUpload:

    def _patch_ingest(self, monkeypatch, store):
        def run(user_id, fileobj, filename, size, cancel):
            return ingest(user_id, fileobj, filename, store, file_size=size, should_cancel=cancel.is_set)

        monkeypatch.setattr(wearable_mod, "_run_ingest", run)

    def test_upload_summary(self, client, monkeypatch, sample_store):
        self._patch_ingest(monkeypatch, sample_store)
        r = client.post("/api/wearable/upload", files={"file": ("export.csv", OURA_CSV, "text/csv")})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["message"] == "Processed 1 rows: 1 inserted, 0 updated, 0 skipped, 0 errors"
        assert body["data"]["source"] == "oura"
        assert body["data"]["inserted"] == 1
        assert body["data"]["filename"] == "export.csv"

    def test_file_too_large(self, client, monkeypatch, sample_store):
        self._patch_ingest(monkeypatch, sample_store)
        monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 10)
        r = client.post("/api/wearable/upload", files={"file": ("export.csv", OURA_CSV, "text/csv")})
        assert r.status_code == 400
        assert r.json()["code"] == "FILE_TOO_LARGE"
        assert sample_store.sessions == {}

    def test_missing_timestamp_lists_headers(self, client, monkeypatch, sample_store):
        self._patch_ingest(monkeypatch, sample_store)
        r = client.post("/api/wearable/upload", files={"file": ("x.csv", b"hrv,stress\n42,30\n", "text/csv")})
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "INVALID_SCHEMA"
        assert body["headers"] == ["hrv", "stress"]

    def test_empty_file(self, client, monkeypatch, sample_store):
        self._patch_ingest(monkeypatch, sample_store)
        r = client.post("/api/wearable/upload", files={"file": ("x.csv", b"", "text/csv")})
        assert r.status_code == 400
        assert r.json()["code"] == "EMPTY_FILE"

    def test_pool_exhaustion_sets_retry_after(self, client, monkeypatch):
        def busy():
            raise ResourceBusy(retry_after=3)

        monkeypatch.setattr(wearable_mod, "get_connection", busy)
        r = client.get("/api/wearable")
        assert r.status_code == 503
        assert r.headers["Retry-After"] == "3"
        assert r.json()["code"] == "RESOURCE_BUSY"


# ─── Samples and upload sessions ───────────────────────────


class TestWearableQueries:

    def test_bad_limit(self, client):
        r = client.get("/api/wearable", params={"limit": 0})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_REQUEST"

    def test_bad_date(self, client):
        r = client.get("/api/wearable", params={"startDate": "yesterday"})
        assert r.status_code == 400

    def test_sample_rows_are_camel_case(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        monkeypatch.setattr(wearable_mod, "_fetch_all", lambda conn, q, p=None: [{
            "id": 1,
            "timestamp": "2025-01-05T08:00:00+00:00",
            "stress_value": 55,
            "hrv": 42,
            "additional_data": None,
            "source": "oura",
            "upload_session_id": SESSION_ID,
        }])
        data = client.get("/api/wearable").json()["data"]
        assert data["count"] == 1
        row = data["data"][0]
        assert row["stressValue"] == 55.0
        assert row["hrv"] == 42.0
        assert row["heartRate"] is None
        assert row["uploadSessionId"] == SESSION_ID
        assert row["additionalData"] == {}

    def test_session_not_found(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        monkeypatch.setattr(wearable_mod, "_fetch_one", lambda conn, q, p=None: None)
        r = client.get(f"/api/wearable/uploads/{SESSION_ID}")
        assert r.status_code == 404
        assert r.json()["code"] == "NOT_FOUND"

    def test_foreign_session_is_forbidden(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        monkeypatch.setattr(wearable_mod, "_fetch_one", lambda conn, q, p=None: {"id": SESSION_ID, "user_id": "u2"})
        deleted = []
        monkeypatch.setattr(wearable_mod, "_execute", lambda conn, q, p=None: deleted.append(q) or 0)
        r = client.delete(f"/api/wearable/uploads/{SESSION_ID}")
        assert r.status_code == 403
        assert deleted == []

    def test_malformed_session_id(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        r = client.get("/api/wearable/uploads/not-a-uuid")
        assert r.status_code == 400

    def test_delete_session_cascades_samples(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        monkeypatch.setattr(wearable_mod, "_fetch_one", lambda conn, q, p=None: {"id": SESSION_ID, "user_id": "u1"})
        counts = iter([12, 1])
        monkeypatch.setattr(wearable_mod, "_execute", lambda conn, q, p=None: next(counts))
        r = client.delete(f"/api/wearable/uploads/{SESSION_ID}")
        assert r.status_code == 200
        assert r.json()["data"] == {"deletedRecords": 12}

    def test_delete_all_uploads(self, client, monkeypatch):
        monkeypatch.setattr(wearable_mod, "get_connection", fake_connection)
        counts = iter([30, 2])
        monkeypatch.setattr(wearable_mod, "_execute", lambda conn, q, p=None: next(counts))
        r = client.delete("/api/wearable/uploads")
        assert r.json()["data"] == {"deletedCount": 2, "deletedRecords": 30}


# ─── Summary / calendar ────────────────────────────────────


class TestSummaryAndCalendar:

    def test_process_forwards_force_flag(self, client, monkeypatch):
        pipeline_cls = MagicMock()
        pipeline_cls.return_value.run.return_value = {"processed": 3, "cached": 1, "overallStatus": "success"}
        monkeypatch.setattr(summary_mod, "get_connection", fake_connection)
        monkeypatch.setattr(summary_mod, "SummaryPipeline", pipeline_cls)
        r = client.post("/api/summary/process", json={"forceReprocess": True})
        assert r.status_code == 200
        assert r.json()["message"] == "Processed 3 days (1 cached)"
        pipeline_cls.return_value.run.assert_called_once_with("u1", force=True)

    def test_process_without_body(self, client, monkeypatch):
        pipeline_cls = MagicMock()
        pipeline_cls.return_value.run.return_value = {"processed": 0, "cached": 0}
        monkeypatch.setattr(summary_mod, "get_connection", fake_connection)
        monkeypatch.setattr(summary_mod, "SummaryPipeline", pipeline_cls)
        client.post("/api/summary/process")
        pipeline_cls.return_value.run.assert_called_once_with("u1", force=False)

    def test_correlations_with_top_trigger(self, client, monkeypatch):
        engine_cls = MagicMock()
        engine_cls.return_value.list_patterns.return_value = [
            {"patternType": "low_hrv", "correlationStrength": -0.8, "confidenceScore": 0.5},
        ]
        monkeypatch.setattr(summary_mod, "get_connection", fake_connection)
        monkeypatch.setattr(summary_mod, "CorrelationEngine", engine_cls)
        data = client.get("/api/summary/correlations").json()["data"]
        assert data["count"] == 1
        assert data["topTrigger"]["patternType"] == "low_hrv"

    def test_calendar_month(self, client, monkeypatch):
        store_cls = MagicMock()
        store_cls.return_value.calendar_month.return_value = {"year": 2025, "month": 1, "days": []}
        monkeypatch.setattr(calendar_mod, "get_connection", fake_connection)
        monkeypatch.setattr(calendar_mod, "DayMarkerStore", store_cls)
        r = client.get("/api/calendar", params={"year": 2025, "month": 1})
        assert r.json()["data"]["month"] == 1
        store_cls.return_value.calendar_month.assert_called_once_with("u1", 2025, 1)

    def test_marker_needs_date(self, client, monkeypatch):
        monkeypatch.setattr(calendar_mod, "get_connection", fake_connection)
        r = client.post("/api/calendar/migraine-day", json={"date": ""})
        assert r.status_code == 400


# ─── Profile ───────────────────────────────────────────────


class TestProfile:

    def test_validate_ranges(self):
        assert profile_mod.validate_profile({"monthlyFrequency": 4, "familyHistory": True}) == {
            "monthly_frequency": 4,
            "family_history": 1,
        }

    @pytest.mark.parametrize("payload", [
        {"monthlyFrequency": 9},
        {"typicalDuration": 0},
        {"typicalPainIntensity": "3"},
        {"mood": 2},
        {"diagnosedType": "x" * 101},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(InvalidRequest):
            profile_mod.validate_profile(payload)

    def test_save_profile(self, client, monkeypatch):
        captured = {}

        def fake_fetch_one(conn, q, p=None):
            captured["params"] = p
            return {"user_id": "u1", "monthly_frequency": 4, "diagnosed_type": "episodic"}

        monkeypatch.setattr(profile_mod, "get_connection", fake_connection)
        monkeypatch.setattr(profile_mod, "_fetch_one", fake_fetch_one)
        r = client.put("/api/profile", json={"monthlyFrequency": 4, "diagnosedType": "episodic"})
        assert r.status_code == 200
        assert r.json()["data"] == {"monthlyFrequency": 4, "diagnosedType": "episodic"}
        assert captured["params"] == ("u1", 4, "episodic")

    def test_profile_out_of_range_over_http(self, client):
        r = client.post("/api/profile", json={"monthlyFrequency": 12})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_REQUEST"


# ─── Migraine entries ──────────────────────────────────────


class TestMigraineEntries:

    def test_body_validation_envelope(self, client):
        r = client.post("/api/migraine", json={"startTime": "08:00", "intensity": "severe"})
        assert r.status_code == 400
        body = r.json()
        assert body["success"] is False
        assert body["code"] == "INVALID_REQUEST"
        assert "intensity" in body["message"]

    def test_intensity_range(self, client):
        r = client.post("/api/migraine", json={"startTime": "2025-01-05T08:00:00Z", "intensity": 11})
        assert r.status_code == 400

    def test_end_before_start(self, client):
        r = client.post(
            "/api/migraine",
            json={"date": "2025-01-05", "startTime": "08:00", "endTime": "07:00", "intensity": 5},
        )
        assert r.status_code == 400

    def test_create_entry(self, client, monkeypatch):
        captured = {}

        def fake_fetch_one(conn, q, p=None):
            captured["params"] = p
            return {
                "id": ENTRY_ID, "user_id": "u1", "start_time": p[1], "end_time": p[2],
                "intensity": 6, "location": "left temple", "triggers": "stress, poor sleep",
                "symptoms": "", "medication": "", "notes": "",
            }

        monkeypatch.setattr(config, "DAY_BUCKET_TZ", "UTC")
        monkeypatch.setattr(migraine_mod, "get_connection", fake_connection)
        monkeypatch.setattr(migraine_mod, "_fetch_one", fake_fetch_one)
        r = client.post("/api/migraine", json={
            "date": "2025-01-05", "startTime": "08:00", "intensity": 6,
            "location": "left temple", "triggers": ["stress", "poor sleep"],
        })
        assert r.status_code == 201
        data = r.json()["data"]
        assert data["triggers"] == ["stress", "poor sleep"]
        assert data["symptoms"] == []
        assert data["startTime"] == "2025-01-05T08:00:00+00:00"
        assert captured["params"][5] == "stress, poor sleep"

    def test_foreign_entry_is_forbidden(self, client, monkeypatch):
        monkeypatch.setattr(migraine_mod, "get_connection", fake_connection)
        monkeypatch.setattr(migraine_mod, "_fetch_one", lambda conn, q, p=None: {"id": ENTRY_ID, "user_id": "u2"})
        assert client.get(f"/api/migraine/{ENTRY_ID}").status_code == 403

    STORED = {
        "id": ENTRY_ID, "user_id": "u1",
        "start_time": datetime(2025, 1, 5, 8, 0, tzinfo=timezone.utc),
        "end_time": datetime(2025, 1, 5, 10, 0, tzinfo=timezone.utc),
        "intensity": 6, "location": "left temple", "triggers": "stress",
        "symptoms": "", "medication": "", "notes": "",
    }

    def _patch_update(self, monkeypatch, captured, owner="u1"):
        def fake_fetch_one(conn, q, p=None):
            if q.lstrip().startswith("UPDATE"):
                captured["params"] = p
                return {**self.STORED, "intensity": p[2] or 6, "triggers": p[4] or "stress"}
            return {**self.STORED, "user_id": owner}

        monkeypatch.setattr(config, "DAY_BUCKET_TZ", "UTC")
        monkeypatch.setattr(migraine_mod, "get_connection", fake_connection)
        monkeypatch.setattr(migraine_mod, "_fetch_one", fake_fetch_one)

    def test_update_entry(self, client, monkeypatch):
        captured = {}
        self._patch_update(monkeypatch, captured)
        r = client.put(f"/api/migraine/{ENTRY_ID}", json={"intensity": 8, "triggers": ["stress", "wine"]})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["intensity"] == 8
        assert data["triggers"] == ["stress", "wine"]
        start, end, intensity, location, triggers, symptoms = captured["params"][:6]
        assert (start, end, intensity, location, symptoms) == (None, None, 8, None, None)
        assert triggers == "stress, wine"

    def test_update_validates_intensity(self, client, monkeypatch):
        captured = {}
        self._patch_update(monkeypatch, captured)
        r = client.put(f"/api/migraine/{ENTRY_ID}", json={"intensity": 0})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_REQUEST"
        assert "params" not in captured

    def test_update_end_before_stored_start(self, client, monkeypatch):
        captured = {}
        self._patch_update(monkeypatch, captured)
        r = client.put(f"/api/migraine/{ENTRY_ID}", json={"date": "2025-01-05", "endTime": "07:00"})
        assert r.status_code == 400
        assert "params" not in captured

    def test_update_foreign_entry_is_forbidden(self, client, monkeypatch):
        captured = {}
        self._patch_update(monkeypatch, captured, owner="u2")
        assert client.put(f"/api/migraine/{ENTRY_ID}", json={"intensity": 5}).status_code == 403
        assert "params" not in captured

    def test_statistics(self, client, monkeypatch):
        this_month = datetime.now(timezone.utc).strftime("%Y-%m")

        def fake_fetch_all(conn, q, p=None):
            if "SELECT triggers" in q:
                return [{"triggers": "stress, wine"}, {"triggers": "stress"}, {"triggers": " , poor sleep"}]
            return [{"month": this_month, "count": 3, "avg_intensity": Decimal("6.6667")}]

        monkeypatch.setattr(config, "DAY_BUCKET_TZ", "UTC")
        monkeypatch.setattr(migraine_mod, "get_connection", fake_connection)
        monkeypatch.setattr(
            migraine_mod, "_fetch_one", lambda conn, q, p=None: {"total": 3, "avg_intensity": Decimal("6.6667")}
        )
        monkeypatch.setattr(migraine_mod, "_fetch_all", fake_fetch_all)
        r = client.get("/api/migraine/statistics")
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["totalEntries"] == 3
        assert data["averageIntensity"] == 6.7
        assert data["mostCommonTriggers"][0] == {"trigger": "stress", "count": 2}
        assert {t["trigger"] for t in data["mostCommonTriggers"]} == {"stress", "wine", "poor sleep"}
        assert len(data["frequencyByMonth"]) == 6
        assert data["frequencyByMonth"][-1]["count"] == 3
        assert data["frequencyByMonth"][0]["count"] == 0
        assert data["intensityTrend"][-1]["averageIntensity"] == 6.7
        assert data["intensityTrend"][0]["averageIntensity"] is None

    def test_recent(self, client, monkeypatch):
        seen = {}

        def fake_fetch_all(conn, q, p=None):
            seen["params"] = p
            return [{**self.STORED, "triggers": "stress, wine"}]

        monkeypatch.setattr(migraine_mod, "get_connection", fake_connection)
        monkeypatch.setattr(migraine_mod, "_fetch_all", fake_fetch_all)
        r = client.get("/api/migraine/recent")
        assert r.status_code == 200
        assert r.json()["data"][0]["triggers"] == ["stress", "wine"]
        assert seen["params"] == ("u1", 5)
        client.get("/api/migraine/recent?limit=2")
        assert seen["params"] == ("u1", 2)


class TestMonthlySeries:

    def test_window_crosses_year_boundary(self):
        now = datetime(2025, 2, 14, tzinfo=timezone.utc)
        out = migraine_mod.monthly_series([{"month": "2024-10", "count": 2, "avg_intensity": 4}], now)
        assert [m["month"] for m in out["frequencyByMonth"]] == [
            "Sep 2024", "Oct 2024", "Nov 2024", "Dec 2024", "Jan 2025", "Feb 2025",
        ]
        assert [m["count"] for m in out["frequencyByMonth"]] == [0, 2, 0, 0, 0, 0]
        assert out["intensityTrend"][1]["averageIntensity"] == 4.0

    def test_trigger_counts_top_five(self):
        rows = [{"triggers": ", ".join(f"t{i}" for i in range(n))} for n in range(1, 8)]
        top = migraine_mod.trigger_counts(rows)
        assert len(top) == 5
        assert top[0] == {"trigger": "t0", "count": 7}


# ─── Risk prediction ───────────────────────────────────────


class TestRiskPrediction:

    ASSEMBLED = {
        "prompt": "# Migraine Risk Analysis Request",
        "summary": {"hasWearableData": True, "dataPoints": 3},
        "metadata": {"simulated": False},
    }

    def test_prompt(self, client, monkeypatch):
        seen = {}

        def fake_assemble(user_id, overrides=None):
            seen["overrides"] = overrides
            return self.ASSEMBLED

        monkeypatch.setattr(risk_mod, "_assemble", fake_assemble)
        r = client.post("/api/risk-prediction/prompt", json={"simulatedData": {"stress": 65, "hrv": 25}})
        assert r.status_code == 200
        assert r.json()["data"]["prompt"].startswith("# Migraine")
        assert seen["overrides"] == {"stress": 65, "hrv": 25}

    def test_analyze(self, client, monkeypatch):
        monkeypatch.setattr(risk_mod, "_assemble", lambda user_id, overrides=None: self.ASSEMBLED)
        monkeypatch.setattr(
            risk_mod, "_analyze",
            lambda prompt: parse_risk_response("**Risk Level:** 72%\n**Risk Category:** High\n"),
        )
        r = client.post("/api/risk-prediction/analyze", json={})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["analysis"]["riskLevel"] == 72
        assert data["analysis"]["riskCategory"] == "High"
        assert data["summary"]["dataPoints"] == 3
        assert data["metadata"] == {"simulated": False}

    def test_unconfigured_llm_is_502(self, client, monkeypatch):
        monkeypatch.setattr(risk_mod, "_assemble", lambda user_id, overrides=None: self.ASSEMBLED)
        monkeypatch.setattr(config, "LLM_API_URL", "")
        r = client.post("/api/risk-prediction/analyze", json={})
        assert r.status_code == 502
        assert r.json()["code"] == "UPSTREAM_UNAVAILABLE"


# ─── Health / unexpected errors ────────────────────────────


class TestServiceRoutes:

    def test_health_reports_database_down(self, monkeypatch):
        def broken():
            raise RuntimeError("no database")

        monkeypatch.setattr(api_mod, "get_connection", broken)
        r = TestClient(api_mod.app).get("/api/health")
        assert r.status_code == 503
        assert r.json()["database"] == "disconnected"

    def test_unexpected_error_has_correlation_id(self, monkeypatch):
        api_mod.app.dependency_overrides[current_user] = lambda: "u1"
        engine_cls = MagicMock()
        engine_cls.return_value.list_patterns.side_effect = RuntimeError("kaboom")
        monkeypatch.setattr(summary_mod, "get_connection", fake_connection)
        monkeypatch.setattr(summary_mod, "CorrelationEngine", engine_cls)
        try:
            r = TestClient(api_mod.app, raise_server_exceptions=False).get("/api/summary/correlations")
        finally:
            api_mod.app.dependency_overrides.clear()
        assert r.status_code == 500
        body = r.json()
        assert body["code"] == "INTERNAL_ERROR"
        assert body["message"] == "Internal server error"
        assert "kaboom" not in body["message"]
        assert len(body["correlationId"]) == 36
