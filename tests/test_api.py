"""
API tests for the code execution service.

These tests exercise the HTTP endpoints using FastAPI's TestClient.  They
verify that code can be submitted, polled and cancelled, that admission
and validation failures map onto the right status codes, and that
workspaces keep their invariants.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from coderun.api.main import app, config, executor, queue, storage


# Use the same API key as in the config for tests
API_KEY_HEADER = {"x-api-key": config.api_key or ""}


@pytest.fixture(autouse=True)
def isolate_storage(tmp_path, monkeypatch):
    """Provide temporary directories for workspaces and sandboxes during tests."""
    if hasattr(storage, "base_dir"):
        monkeypatch.setattr(storage, "base_dir", Path(tmp_path / "workspaces"))
    monkeypatch.setattr(executor, "sandbox_root", Path(tmp_path / "sandboxes"))
    yield


@pytest.fixture
def client():
    return TestClient(app)


def wait_for_result(client, submission_id, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        res = client.get(f"/submissions/{submission_id}", headers=API_KEY_HEADER)
        assert res.status_code == 200
        data = res.json()
        if data["status"] not in ("queued", "running"):
            return data
        time.sleep(0.05)
    raise AssertionError(f"submission {submission_id} did not finish in {timeout}s")


def test_health(client):
    response = client.get("/health", headers=API_KEY_HEADER)
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_languages_lists_profiles(client):
    res = client.get("/languages", headers=API_KEY_HEADER)
    assert res.status_code == 200
    by_key = {lang["key"]: lang for lang in res.json()}
    assert by_key["python"]["extension"] == "py"
    assert by_key["python"]["defaultEntry"] == "main.py"
    assert by_key["java"]["defaultEntry"] == "Main.java"
    assert by_key["c"]["compiled"] is True


def test_submit_python_hello(client):
    res = client.post(
        "/submissions",
        json={"language": "python", "source": "print('hi')"},
        headers=API_KEY_HEADER,
    )
    assert res.status_code == 202
    submission_id = res.json()["submissionId"]

    data = wait_for_result(client, submission_id)
    assert data["status"] == "succeeded"
    assert data["result"]["exitCode"] == 0
    assert data["result"]["stdout"] == "hi\n"
    assert data["result"]["stderr"] == ""
    assert data["result"]["truncated"] is False
    assert "error" not in data


def test_result_is_idempotent(client):
    res = client.post(
        "/submissions",
        json={"language": "bash", "source": "echo 'test bash'"},
        headers=API_KEY_HEADER,
    )
    submission_id = res.json()["submissionId"]
    first = wait_for_result(client, submission_id)
    second = client.get(f"/submissions/{submission_id}", headers=API_KEY_HEADER).json()
    assert first == second
    assert "test bash" in first["result"]["stdout"]


def test_nonzero_exit_is_reported_as_crash(client):
    res = client.post(
        "/submissions",
        json={"language": "python", "source": "import sys\nsys.exit(3)"},
        headers=API_KEY_HEADER,
    )
    data = wait_for_result(client, res.json()["submissionId"])
    assert data["status"] == "failed"
    assert data["result"]["exitCode"] == 3
    assert data["error"]["kind"] == "ExecutionCrash"


def test_stdin_is_passed_to_program(client):
    res = client.post(
        "/submissions",
        json={"language": "python", "source": "print(input().upper())", "stdin": "shout\n"},
        headers=API_KEY_HEADER,
    )
    data = wait_for_result(client, res.json()["submissionId"])
    assert data["result"]["stdout"] == "SHOUT\n"


def test_timeout_reported(client):
    res = client.post(
        "/submissions",
        json={"language": "python", "source": "import time\ntime.sleep(30)", "timeoutSeconds": 1},
        headers=API_KEY_HEADER,
    )
    data = wait_for_result(client, res.json()["submissionId"])
    assert data["status"] == "timed-out"
    assert data["error"]["kind"] == "ExecutionTimeout"
    assert "timed out" in data["result"]["stderr"]


def test_unknown_language_rejected(client):
    res = client.post(
        "/submissions",
        json={"language": "cobol", "source": "DISPLAY 'HI'."},
        headers=API_KEY_HEADER,
    )
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"


def test_oversized_source_rejected(client):
    source = "#" * (config.max_source_bytes + 1)
    res = client.post("/submissions", json={"language": "python", "source": source}, headers=API_KEY_HEADER)
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"


def test_admission_rejected_when_saturated(client, monkeypatch):
    monkeypatch.setattr(queue, "max_pending", 0)
    res = client.post("/submissions", json={"language": "python", "source": "print(1)"}, headers=API_KEY_HEADER)
    assert res.status_code == 429
    assert res.json()["kind"] == "AdmissionRejected"
    assert res.headers["retry-after"] == "1"


def test_cancel_running_submission(client):
    res = client.post(
        "/submissions",
        json={"language": "python", "source": "import time\nprint('started', flush=True)\ntime.sleep(30)"},
        headers=API_KEY_HEADER,
    )
    submission_id = res.json()["submissionId"]
    deadline = time.monotonic() + 10
    while client.get(f"/submissions/{submission_id}", headers=API_KEY_HEADER).json()["status"] == "queued":
        assert time.monotonic() < deadline
        time.sleep(0.05)

    res = client.delete(f"/submissions/{submission_id}", headers=API_KEY_HEADER)
    assert res.status_code == 204
    data = client.get(f"/submissions/{submission_id}", headers=API_KEY_HEADER).json()
    assert data["status"] == "cancelled"


def test_cancel_unknown_submission(client):
    res = client.delete("/submissions/does-not-exist", headers=API_KEY_HEADER)
    assert res.status_code == 404
    res = client.get("/submissions/does-not-exist", headers=API_KEY_HEADER)
    assert res.status_code == 404
    assert res.json()["kind"] == "NotFound"


def test_cancel_finished_submission_keeps_result(client):
    res = client.post("/submissions", json={"language": "python", "source": "print(1)"}, headers=API_KEY_HEADER)
    submission_id = res.json()["submissionId"]
    wait_for_result(client, submission_id)
    assert client.delete(f"/submissions/{submission_id}", headers=API_KEY_HEADER).status_code == 204
    data = client.get(f"/submissions/{submission_id}", headers=API_KEY_HEADER).json()
    assert data["status"] == "succeeded"


def test_workspace_lifecycle(client):
    res = client.post("/workspaces", json={"ownerId": "alice"}, headers=API_KEY_HEADER)
    assert res.status_code == 201
    workspace = res.json()
    workspace_id = workspace["workspaceId"]
    assert [f["name"] for f in workspace["files"]] == ["main.py"]
    assert workspace["files"][0]["content"] == 'print("Hello, World!")\n'

    res = client.post(
        f"/workspaces/{workspace_id}/files",
        json={"name": "util.py", "content": "X = 1\n"},
        headers=API_KEY_HEADER,
    )
    assert res.status_code == 201
    assert res.json()["language"] == "python"

    res = client.patch(
        f"/workspaces/{workspace_id}/files/util.py",
        json={"newName": "helpers.py", "content": "X = 2\n"},
        headers=API_KEY_HEADER,
    )
    assert res.status_code == 200
    assert res.json() == {"name": "helpers.py", "content": "X = 2\n", "language": "python"}

    res = client.get(f"/workspaces/{workspace_id}/files", headers=API_KEY_HEADER)
    assert [f["name"] for f in res.json()] == ["main.py", "helpers.py"]

    res = client.get("/workspaces?ownerId=alice", headers=API_KEY_HEADER)
    assert [w["workspaceId"] for w in res.json()] == [workspace_id]

    assert client.delete(f"/workspaces/{workspace_id}", headers=API_KEY_HEADER).status_code == 204
    assert client.get(f"/workspaces/{workspace_id}", headers=API_KEY_HEADER).status_code == 404


def test_workspace_rename_conflict_and_last_file(client):
    workspace_id = client.post("/workspaces", json={"ownerId": "bob"}, headers=API_KEY_HEADER).json()["workspaceId"]
    client.post(f"/workspaces/{workspace_id}/files", json={"name": "b.py"}, headers=API_KEY_HEADER)

    res = client.patch(
        f"/workspaces/{workspace_id}/files/b.py", json={"newName": "main.py"}, headers=API_KEY_HEADER
    )
    assert res.status_code == 409
    assert res.json()["kind"] == "Conflict"

    assert client.delete(f"/workspaces/{workspace_id}/files/b.py", headers=API_KEY_HEADER).status_code == 204
    res = client.delete(f"/workspaces/{workspace_id}/files/main.py", headers=API_KEY_HEADER)
    assert res.status_code == 409
    assert res.json()["kind"] == "InvariantViolation"

    files = client.get(f"/workspaces/{workspace_id}/files", headers=API_KEY_HEADER).json()
    assert [f["name"] for f in files] == ["main.py"]


def test_upload_files(client):
    workspace_id = client.post("/workspaces", json={"ownerId": "carol"}, headers=API_KEY_HEADER).json()["workspaceId"]
    res = client.post(
        f"/workspaces/{workspace_id}/files/upload",
        files=[
            ("files", ("data.txt", b"hello world", "text/plain")),
            ("files", ("main.py", b"print(open('data.txt').read())", "text/x-python")),
        ],
        headers=API_KEY_HEADER,
    )
    assert res.status_code == 200
    assert res.json()["paths"] == ["data.txt", "main.py"]
    res = client.get(f"/workspaces/{workspace_id}/files/main.py", headers=API_KEY_HEADER)
    assert res.json()["content"] == "print(open('data.txt').read())"


def test_run_workspace(client):
    workspace_id = client.post("/workspaces", json={"ownerId": "dave"}, headers=API_KEY_HEADER).json()["workspaceId"]
    client.post(
        f"/workspaces/{workspace_id}/files",
        json={"name": "greet.py", "content": "def greet(name):\n    return 'hello ' + name\n"},
        headers=API_KEY_HEADER,
    )
    client.patch(
        f"/workspaces/{workspace_id}/files/main.py",
        json={"content": "from greet import greet\nprint(greet('world'))\n"},
        headers=API_KEY_HEADER,
    )
    res = client.post(f"/workspaces/{workspace_id}/submissions", json={}, headers=API_KEY_HEADER)
    assert res.status_code == 202
    data = wait_for_result(client, res.json()["submissionId"])
    assert data["status"] == "succeeded"
    assert data["result"]["stdout"] == "hello world\n"


def test_run_workspace_unknown_entry(client):
    workspace_id = client.post("/workspaces", json={"ownerId": "erin"}, headers=API_KEY_HEADER).json()["workspaceId"]
    res = client.post(
        f"/workspaces/{workspace_id}/submissions", json={"entryFile": "nope.py"}, headers=API_KEY_HEADER
    )
    assert res.status_code == 404
