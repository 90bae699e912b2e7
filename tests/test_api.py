from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("COMMANDPILOT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("COMMANDPILOT_LOG_FORMAT", "console")
    with TestClient(app) as test_client:
        yield test_client


def test_health_check(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_process_command(client) -> None:
    response = client.post("/commands", json={"command": "--- recent deployments"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"]
    assert "errors" not in body
    assert body["results"][0]["step"] == "load"

    session = client.get("/session").json()
    assert session["id"] == body["session_id"]
    assert session["commands"][0]["task_description"] == "recent deployments"


def test_invalid_command(client) -> None:
    body = client.post("/commands", json={"command": "hello"}).json()

    assert not body["success"]
    assert body["errors"] == ["Invalid command format"]


def test_disabled_capability_is_reported_per_capability(client) -> None:
    body = client.post("/commands", json={"command": "+++ scrape https://example.org"}).json()

    assert body["success"]
    (capability,) = body["results"][0]["data"]["results"]
    assert not capability["success"]
    assert capability["error"] == "browser integration is disabled"


def test_marathon_lifecycle(client) -> None:
    assert client.get("/marathon").json() == {"status": "idle", "task": None}

    client.post("/commands", json={"command": "*** Setup CI/CD pipeline"})
    marathon = client.get("/marathon").json()
    assert marathon["status"] == "active"
    assert marathon["task"]["task_description"] == "Setup CI/CD pipeline"

    checkpoint = client.post(
        "/marathon/checkpoints", json={"description": "drafted", "data": {"stage": 1}}
    ).json()
    assert checkpoint["id"].startswith("checkpoint_")

    progress = client.post("/marathon/progress", json={"completed": 3, "total": 12}).json()
    assert progress["progress"] == {"completed": 3, "total": 12, "percentage": 25.0}

    payload = client.post("/marathon/transfer").json()
    assert payload["last_checkpoint"]["description"] == "Marathon transferred"
    assert payload["last_checkpoint"]["critical"]
    assert payload["continuation_command"].startswith("--- +++ ... *** Continue")

    restored = client.post("/marathon/restore", json={"checkpoint_id": checkpoint["id"]}).json()
    assert restored["restored_from"] == checkpoint["id"]
    assert restored["status"] == "active_with_checkpoint"

    completed = client.post("/marathon/complete", json={"reason": "done"}).json()
    assert completed["status"] == "completed"


def test_marathon_errors_map_to_http_status(client) -> None:
    assert client.post("/marathon/checkpoints", json={"description": "x"}).status_code == 409
    assert client.post("/marathon/transfer").status_code == 409
    assert client.post("/marathon/complete", json={}).status_code == 409
    assert client.post("/marathon/progress", json={"completed": 1}).status_code == 409

    response = client.post("/marathon/restore", json={"checkpoint_id": "checkpoint_nope"})
    assert response.status_code == 404
