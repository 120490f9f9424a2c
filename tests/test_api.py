from __future__ import annotations

import base64
import json

import pytest
from fastapi.testclient import TestClient

from inkflow.main import create_app
from inkflow.services.token_store import new_job_token
from tests.support import FakeOcrStarter, FakeProvider, RecordingCallbacks, seed_shards


def _set_env(monkeypatch):
    monkeypatch.setenv("PROJECT_ID", "proj")
    monkeypatch.setenv("REGION", "us-central1")
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("STORAGE_BUCKET", "ocr-bucket")
    monkeypatch.setenv("TOKEN_STORE_BACKEND", "memory")
    monkeypatch.setenv("AI_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ENABLE_METRICS", "false")
    monkeypatch.delenv("OCR_SERVICE_URL", raising=False)


def _build_app(monkeypatch):
    _set_env(monkeypatch)
    app = create_app()
    callbacks = RecordingCallbacks()
    app.state.ingestion._signaler._callbacks = callbacks
    return app, callbacks


def test_healthz(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    response = TestClient(app).get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_shard_event_completes_job(monkeypatch):
    app, callbacks = _build_app(monkeypatch)
    storage = app.state.object_storage
    app.state.token_store.put(
        new_job_token("job-1", "https://workflows.test/cb", source_location="gs://uploads/a.pdf")
    )
    seed_shards(storage, "job-1", 2, only=[1])
    client = TestClient(app)

    first = client.post("/events/shards", json={"bucket": "ocr-bucket", "name": "ocr-output/job-1/1"})
    seed_shards(storage, "job-1", 2, only=[2])
    last = client.post(
        "/events/shards",
        json={"data": {"bucket": "ocr-bucket", "name": "ocr-output/job-1/2", "generation": 5}},
        headers={"ce-id": "evt-2"},
    )

    assert first.status_code == 200
    assert first.json()["outcome"] == "incomplete"
    assert last.json()["outcome"] == "signaled_success"
    assert len(callbacks.successes) == 1
    assert callbacks.successes[0][1]["mergedResultKey"] == last.json()["mergedKey"]


def test_pubsub_envelope_is_accepted(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    data = base64.b64encode(json.dumps({"bucket": "ocr-bucket", "name": "ocr-output/job-9/1"}).encode()).decode()

    response = TestClient(app).post("/events/shards", json={"message": {"data": data, "messageId": "m-1"}})

    assert response.status_code == 200
    assert response.json()["outcome"] == "skipped_no_token"


def test_invalid_event_is_400(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    client = TestClient(app)

    missing_name = client.post("/events/shards", json={"bucket": "ocr-bucket"})
    not_json = client.post("/events/shards", content=b"nope", headers={"content-type": "application/json"})

    assert missing_name.status_code == 400
    assert missing_name.json()["error"] == "ValidationError"
    assert not_json.status_code == 400


def test_extract_stage_registers_token(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    app.state.stage_executor._ocr = FakeOcrStarter("job-55")

    response = TestClient(app).post(
        "/stages/extract",
        json={"state": {"sourceLocation": "gs://uploads/a.pdf"}, "callbackToken": "https://workflows.test/cb"},
    )

    assert response.status_code == 200
    assert response.json() == {"jobId": "job-55"}
    assert app.state.token_store.get("job-55").callback_token == "https://workflows.test/cb"


def test_extract_without_ocr_service_is_400(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)

    response = TestClient(app).post(
        "/stages/extract",
        json={"state": {"sourceLocation": "gs://uploads/a.pdf"}, "callbackToken": "https://workflows.test/cb"},
    )

    assert response.status_code == 400


def test_format_stage_returns_state_without_text(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    app.state.stage_executor._provider = FakeProvider(reply="Tidy text")
    app.state.object_storage.seed(
        "merged-ocr-output/job-1/r.json",
        json.dumps({"Blocks": [{"BlockType": "LINE", "Text": "raw"}]}),
    )

    response = TestClient(app).post(
        "/stages/format",
        json={"state": {"sourceLocation": "gs://uploads/a.pdf", "mergedResultLocation": "merged-ocr-output/job-1/r.json"}},
    )

    assert response.status_code == 200
    state = response.json()["state"]
    assert state["formattedTextLocation"] == "users/anonymous/formatted/a.txt"
    assert state["stagesRun"] == ["format"]
    assert "formattedText" not in state


def test_stage_failure_maps_to_500_with_code(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    app.state.stage_executor._provider = FakeProvider(reply=None)
    app.state.object_storage.seed(
        "merged-ocr-output/job-1/r.json",
        json.dumps({"Blocks": [{"BlockType": "LINE", "Text": "raw"}]}),
    )

    response = TestClient(app).post(
        "/stages/format",
        json={"state": {"sourceLocation": "gs://uploads/a.pdf", "mergedResultLocation": "merged-ocr-output/job-1/r.json"}},
    )

    assert response.status_code == 500
    assert response.json()["error"] == "EmptyResponseError"


def test_stage_requires_state(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    response = TestClient(app).post("/stages/translate", json={"nope": True})
    assert response.status_code == 400


def test_metrics_endpoint_when_enabled(monkeypatch):
    _set_env(monkeypatch)
    monkeypatch.setenv("ENABLE_METRICS", "true")
    app = create_app()
    client = TestClient(app)
    client.post("/events/shards", json={"bucket": "ocr-bucket", "name": "ocr-output/job-404/1"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "inkflow_events_total" in response.text
    assert 'inkflow_shard_events_total{outcome="skipped_no_token"}' in response.text


def test_pipeline_run_reports_failure(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)

    response = TestClient(app).post("/pipeline/runs", json={"state": {"sourceLocation": "gs://uploads/a.pdf"}})

    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "FAILED"
    assert body["failedStage"] == "extract"
    assert body["error"] == "ValidationError"

    record = TestClient(app).get(f"/pipeline/runs/{body['state']['workflowId']}")
    assert record.status_code == 200
    assert record.json()["status"] == "FAILED"
    assert record.json()["failedStage"] == "extract"


def test_startup_rejects_missing_required_config(monkeypatch):
    _set_env(monkeypatch)
    monkeypatch.delenv("OPENAI_API_KEY")
    monkeypatch.delenv("OPENAI_API_KEY_SECRET", raising=False)
    app = create_app()

    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        with TestClient(app):
            pass


def test_startup_passes_with_complete_config(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    with TestClient(app) as client:
        assert client.get("/readyz").status_code == 200


def test_workflow_status_follows_stage_calls_and_terminal_report(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    app.state.stage_executor._ocr = FakeOcrStarter("job-55")
    client = TestClient(app)
    state = {"sourceLocation": "gs://uploads/a.pdf", "workflowId": "exec-1", "userId": "u-1"}

    client.post("/stages/extract", json={"state": state, "callbackToken": "https://workflows.test/cb"})
    running = client.get("/pipeline/runs/exec-1").json()
    reported = client.post(
        "/pipeline/runs/exec-1/status",
        json={"status": "TIMED_OUT", "error": "States.Timeout", "cause": "callback never arrived", "state": state},
    )
    final = client.get("/pipeline/runs/exec-1").json()

    assert running["status"] == "RUNNING"
    assert running["currentStage"] == "extract"
    assert reported.status_code == 200
    assert final["status"] == "TIMED_OUT"
    assert final["failedStage"] == "extract"
    assert final["userId"] == "u-1"
    assert final["cause"] == "callback never arrived"


def test_workflow_status_lookup_errors(monkeypatch):
    app, _callbacks = _build_app(monkeypatch)
    client = TestClient(app)

    assert client.get("/pipeline/runs/unknown").status_code == 404
    assert client.post("/pipeline/runs/exec-1/status", json={"status": "RUNNING"}).status_code == 400
    assert client.post("/pipeline/runs/exec-1/status", json={"status": "bogus"}).status_code == 400
