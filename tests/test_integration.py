import json

import pytest
from fastapi.testclient import TestClient

from agents import orchestrator_agent
from main import app
from session_repository import InMemorySessionRepository
from session_store import ContextIdentityProvider, SessionStore


client = TestClient(app)

USER_HEADERS = {"X-User-Id": "user-123"}


@pytest.fixture
def completion(monkeypatch, fake_completion):
    fake = fake_completion()
    store = SessionStore(InMemorySessionRepository(), identity_provider=ContextIdentityProvider())
    monkeypatch.setattr(orchestrator_agent, "completion_client", fake)
    monkeypatch.setattr(orchestrator_agent, "session_store", store)
    monkeypatch.setattr(orchestrator_agent, "_sessions", {})
    monkeypatch.setattr(orchestrator_agent, "_session_locks", {})
    monkeypatch.setattr(orchestrator_agent, "streaming_enabled", False)
    return fake


def _start(payload):
    resp = client.post("/chain/sessions", json=payload, headers=USER_HEADERS)
    assert resp.status_code == 200
    return resp.json()


def test_health_reports_backend(completion):
    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["session_store_backend"] == "memory"
    assert body["completion_base_url"] == "https://completion.test"


def test_stepwise_chain_flow(completion, user_input_payload):
    start_body = _start(user_input_payload)
    assert start_body["success"] is True
    assert start_body["current_step"] == 1
    assert start_body["next_stage"] == "general_physician"
    session_id = start_body["session_id"]

    next_resp = client.post(f"/chain/sessions/{session_id}/next", headers=USER_HEADERS)
    assert next_resp.status_code == 200
    next_body = next_resp.json()
    assert next_body["stage"] == "general_physician"
    assert next_body["current_step"] == 2
    assert next_body["next_stage"] == "specialist_doctor"
    assert next_body["response"]["recommended_specialist_type"] == "Cardiologist"

    stage_resp = client.post(
        f"/chain/sessions/{session_id}/stages/specialist_doctor",
        headers=USER_HEADERS,
    )
    assert stage_resp.status_code == 200
    assert stage_resp.json()["response"]["specialist_type"] == "Cardiologist"

    session_resp = client.get(f"/chain/sessions/{session_id}")
    assert session_resp.status_code == 200
    session = session_resp.json()["session"]
    assert session["user_id"] == "user-123"
    assert session["current_step"] == 3
    assert session["medical_analyst_response"] is None
    assert session["raw_specialist_doctor_response"]

    list_resp = client.get("/chain/users/user-123/sessions")
    assert list_resp.status_code == 200
    assert [s["id"] for s in list_resp.json()["sessions"]] == [session_id]


def test_out_of_order_stage_is_rejected(completion, report_input_payload):
    session_id = _start(report_input_payload)["session_id"]

    resp = client.post(f"/chain/sessions/{session_id}/stages/pathologist", headers=USER_HEADERS)

    assert resp.status_code == 400
    assert "next stage is medical_analyst" in resp.json()["detail"]
    assert completion.calls == []


def test_unknown_session_and_stage(completion):
    assert client.get("/chain/sessions/missing").status_code == 404
    assert client.post("/chain/sessions/missing/next").status_code == 404
    assert client.post("/chain/sessions/missing/stages/radiologist").status_code == 422


def test_completion_failure_then_retry(completion, user_input_payload):
    completion.failures["general_physician"] = 1
    session_id = _start(user_input_payload)["session_id"]

    failed = client.post(f"/chain/sessions/{session_id}/next", headers=USER_HEADERS)
    assert failed.status_code == 502
    assert "backend unavailable" in failed.json()["detail"]

    halted = client.get(f"/chain/sessions/{session_id}").json()["session"]
    assert halted["status"] == "error"
    assert halted["current_step"] == 1

    blocked = client.post(f"/chain/sessions/{session_id}/next", headers=USER_HEADERS)
    assert blocked.status_code == 400

    retried = client.post(f"/chain/sessions/{session_id}/retry", headers=USER_HEADERS)
    assert retried.status_code == 200
    assert retried.json()["stage"] == "general_physician"
    assert retried.json()["status"] == "in_progress"
    assert retried.json()["current_step"] == 2


def test_missing_specialty_returns_422(completion, user_input_payload, stage_replies):
    reply = stage_replies["general_physician"]
    reply.pop("recommended_specialist_type")
    completion.replies["general_physician"] = reply
    session_id = _start(user_input_payload)["session_id"]
    client.post(f"/chain/sessions/{session_id}/next", headers=USER_HEADERS)

    resp = client.post(f"/chain/sessions/{session_id}/next", headers=USER_HEADERS)

    assert resp.status_code == 422
    assert "recommended_specialist_type" in resp.json()["detail"]
    session = client.get(f"/chain/sessions/{session_id}").json()["session"]
    assert session["status"] == "error"
    assert session["general_physician_response"] is not None


def test_full_chain_endpoint(completion, report_input_payload):
    resp = client.post("/chain/run", json=report_input_payload, headers=USER_HEADERS)

    assert resp.status_code == 200
    session = resp.json()["session"]
    assert session["status"] == "completed"
    assert session["current_step"] == 8
    assert session["medical_analyst_response"]["report_type_analyzed"] == "Blood Test"
    assert session["summarizer_response"]["disclaimer"]
    assert [call["stage"] for call in completion.calls][0] == "medical_analyst"


def test_stream_next_stage_emits_chunks_and_final_status(monkeypatch, completion, user_input_payload):
    monkeypatch.setattr(orchestrator_agent, "streaming_enabled", True)
    session_id = _start(user_input_payload)["session_id"]

    resp = client.get(f"/chain/sessions/{session_id}/next/stream", headers=USER_HEADERS)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [block for block in resp.text.split("\n\n") if block.strip()]
    assert events[-1] == "data: [DONE]"
    status_event = events[-2]
    assert status_event.startswith("event: session\n")
    status = json.loads(status_event.split("data: ", 1)[1])
    assert status == {
        "stage": "general_physician",
        "status": "in_progress",
        "current_step": 2,
        "error_message": None,
    }
    chunks = [json.loads(block[len("data: "):]) for block in events[:-2]]
    assert chunks[-1]["is_final"] is True
    assert "Cardiologist" in "".join(chunk["delta"] for chunk in chunks)


def test_stream_for_missing_session(completion):
    assert client.get("/chain/sessions/missing/next/stream").status_code == 404


def test_session_is_hidden_from_other_users(completion, user_input_payload):
    session_id = _start(user_input_payload)["session_id"]

    other = client.get(f"/chain/sessions/{session_id}", headers={"X-User-Id": "intruder-9"})
    owner = client.get(f"/chain/sessions/{session_id}", headers=USER_HEADERS)

    assert other.status_code == 404
    assert owner.status_code == 200
    assert owner.json()["session"]["id"] == session_id


def test_listing_another_users_sessions_is_forbidden(completion, user_input_payload):
    _start(user_input_payload)

    resp = client.get("/chain/users/user-123/sessions", headers={"X-User-Id": "intruder-9"})
    own = client.get("/chain/users/intruder-9/sessions", headers={"X-User-Id": "intruder-9"})

    assert resp.status_code == 403
    assert own.status_code == 200
    assert own.json()["sessions"] == []
