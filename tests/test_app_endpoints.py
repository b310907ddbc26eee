import asyncio
import json
import threading

import pytest

import app
from attempt_store import InMemoryAttemptStore
from case_library import CaseLibrary
from engines.case_orchestrator import ClinicalCaseOrchestrator
from sync import SAVED_LOCALLY_NOTICE, AttemptSyncManager


def _request(method: str, path: str, payload=None) -> tuple[int, dict]:
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [(b"host", b"testserver")]
        if payload is not None:
            headers += [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": b"",
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post_json(path: str, payload=None) -> tuple[int, dict]:
    return _request("POST", path, payload if payload is not None else {})


def _get(path: str) -> tuple[int, dict]:
    return _request("GET", path)


@pytest.fixture
def orchestrator(monkeypatch, case_file):
    instance = ClinicalCaseOrchestrator(
        CaseLibrary(case_file),
        AttemptSyncManager(InMemoryAttemptStore()),
    )
    monkeypatch.setattr(app, "ORCHESTRATOR", instance)
    return instance


def _start(case_id="case-test") -> str:
    status, payload = _post_json("/sessions", {"caseId": case_id})
    assert status == 200
    return payload["sessionId"]


def test_list_and_get_cases(orchestrator):
    status, payload = _get("/cases")
    assert status == 200
    assert payload["cases"] == [
        {"id": "case-test", "moduleId": "mod-test", "title": "Test case", "stepCount": 2, "decisionCount": 3}
    ]

    status, case = _get("/cases/mod-test")
    assert status == 200
    assert case["steps"][1]["decisions"][0]["options"][0]["isExpertChoice"] is True

    status, _ = _get("/cases/unknown")
    assert status == 404


def test_session_flow(orchestrator):
    session_id = _start()

    status, payload = _post_json(
        f"/sessions/{session_id}/answers",
        {"stepId": "s1", "decisionId": "d1", "selectedOptionIds": ["B"]},
    )
    assert status == 200
    assert payload["interim"]["score"] == 50
    assert payload["navigation"]["currentStepIndex"] == 0

    status, payload = _post_json(f"/sessions/{session_id}/next")
    assert status == 200
    assert payload["navigation"]["isLastStep"] is True
    assert payload["step"]["id"] == "s2"

    _post_json(
        f"/sessions/{session_id}/answers",
        {"stepId": "s2", "decisionId": "d2", "selectedOptionIds": ["X", "Y"]},
    )
    status, result = _post_json(f"/sessions/{session_id}/finalize")
    assert status == 200
    assert result["score"] == 75
    assert result["grade"] == "adequate"
    assert result["breakdownByDomain"]["oxygenation"]["averageScore"] == 100
    assert result["report"]["domainAnalysis"][0]["domain"] == "airway"
    assert result["storedLocally"] is True

    status, history = _get("/cases/case-test/history")
    assert status == 200
    assert [attempt["score"] for attempt in history["attempts"]] == [75]

    status, last = _get("/cases/case-test/last-result")
    assert last["lastResult"]["score"] == 75


def test_finalized_session_rejects_changes(orchestrator):
    session_id = _start()
    _post_json(f"/sessions/{session_id}/finalize")

    status, _ = _post_json(
        f"/sessions/{session_id}/answers",
        {"stepId": "s1", "decisionId": "d1", "selectedOptionIds": ["A"]},
    )
    assert status == 409

    status, _ = _post_json(f"/sessions/{session_id}/finalize")
    assert status == 409


def test_retry_returns_new_session(orchestrator):
    session_id = _start()
    status, _ = _post_json(f"/sessions/{session_id}/retry")
    assert status == 409

    _post_json(f"/sessions/{session_id}/finalize")
    status, payload = _post_json(f"/sessions/{session_id}/retry")

    assert status == 200
    assert payload["sessionId"] != session_id
    assert payload["attempt"] == 2
    assert payload["answers"] == {}


def test_unknown_targets_return_404(orchestrator):
    status, _ = _post_json("/sessions", {"caseId": "missing"})
    assert status == 404

    status, _ = _get("/sessions/missing")
    assert status == 404

    session_id = _start()
    status, _ = _post_json(
        f"/sessions/{session_id}/answers",
        {"stepId": "s1", "decisionId": "zzz", "selectedOptionIds": ["A"]},
    )
    assert status == 404


def test_invalid_body_is_rejected(orchestrator):
    session_id = _start()
    status, _ = _post_json(f"/sessions/{session_id}/answers", {"stepId": "s1"})
    assert status == 422


def test_sync_pending_reports_outcomes(orchestrator):
    session_id = _start()
    _post_json(f"/sessions/{session_id}/finalize")

    status, payload = _post_json("/sync/pending", {"caseId": "case-test"})

    assert status == 200
    assert payload["attempted"] == 1
    assert payload["synced"] == 0
    assert payload["results"][0]["ok"] is False


def test_finalize_reports_pending_then_saved_locally(monkeypatch, case_file):
    release = threading.Event()

    class OfflineClient:
        def submit(self, case_id, payload):
            release.wait(5)
            raise ConnectionError("network unreachable")

    instance = ClinicalCaseOrchestrator(
        CaseLibrary(case_file),
        AttemptSyncManager(InMemoryAttemptStore(), OfflineClient()),
    )
    monkeypatch.setattr(app, "ORCHESTRATOR", instance)
    assert not asyncio.iscoroutinefunction(app.finalize_session)

    session_id = _start()
    status, result = _post_json(f"/sessions/{session_id}/finalize")

    assert status == 200
    assert result["syncStatus"] == "pending"
    assert "notice" not in result
    job = instance.sync_job(session_id)
    assert isinstance(job, threading.Thread)

    release.set()
    job.join(timeout=5)
    assert not job.is_alive()

    status, summary = _get(f"/sessions/{session_id}")
    assert status == 200
    assert summary["syncStatus"] == "saved_locally"
    assert summary["notice"] == SAVED_LOCALLY_NOTICE
    status, history = _get("/cases/case-test/history")
    assert history["attempts"][0]["pendingSync"] is True
