"""HTTP-level tests for agent provisioning and workflow control."""
from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from agentforge.config import Config
from agentforge.main import create_app
from agentforge.runtime import build_runtime


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app(build_runtime(Config(retry_delay_ms=10)))
    with TestClient(app) as test_client:
        yield test_client


def _parked_workflow(workflow_id: str = "parked") -> dict:
    # No agents are registered, so the assignment is addressed to an absent agent and never answered.
    return {"id": workflow_id, "name": "Parked", "steps": [{"id": "wait", "agentId": "nobody", "taskType": "WAIT"}]}


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "agents": 0, "active_workflows": 0}


def test_agent_crud(client: TestClient) -> None:
    created = client.post("/agents", json={"name": "greeter", "role": "echo", "id": "echo-1", "capabilities": ["chat"]})
    assert created.status_code == 201
    body = created.json()
    assert body["agent_id"] == "echo-1"
    assert body["type"] == "echo"
    assert body["status"] == "IDLE"
    assert body["capabilities"] == ["chat"]

    assert [agent["agent_id"] for agent in client.get("/agents").json()] == ["echo-1"]
    assert client.get("/agents/echo-1").json()["name"] == "greeter"
    assert client.get("/health").json()["agents"] == 1

    duplicate = client.post("/agents", json={"name": "again", "id": "echo-1"})
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"]["code"] == "CONFIGURATION_ERROR"

    assert client.delete("/agents/echo-1").status_code == 204
    assert client.get("/agents/echo-1").status_code == 404
    assert client.delete("/agents/echo-1").status_code == 404


def test_unknown_role_is_rejected(client: TestClient) -> None:
    response = client.post("/agents", json={"name": "x", "role": "llm"})

    assert response.status_code == 400
    assert "llm" in response.json()["detail"]["error"]


def test_submit_workflow_and_wait(client: TestClient) -> None:
    client.post("/agents", json={"name": "greeter", "id": "echo-1"})
    definition = {
        "id": "greet",
        "name": "Greet",
        "steps": [
            {"id": "hello", "agentId": "echo-1", "taskType": "ECHO", "input": {"content": "hi"}},
            {"id": "again", "agentId": "echo-1", "taskType": "ECHO", "dependencies": ["hello"]},
        ],
    }

    response = client.post("/workflows", params={"wait": "true", "timeout": 5}, json=definition)

    assert response.status_code == 201
    body = response.json()
    assert body["workflow_id"] == "greet"
    assert body["status"] == "COMPLETED"
    assert body["steps"]["hello"]["data"]["echo"] == "greeter heard hi"
    assert body["steps"]["again"]["status"] == "COMPLETED"

    steps = client.get("/workflows/greet/steps").json()
    assert set(steps) == {"hello", "again"}
    assert steps["hello"]["attempts"] == 1
    assert [workflow["workflow_id"] for workflow in client.get("/workflows").json()] == ["greet"]


@pytest.mark.parametrize(
    "definition",
    [
        {"name": "empty", "steps": []},
        {"name": "cycle", "steps": [{"id": "a", "taskType": "T", "dependencies": ["a"]}]},
    ],
)
def test_invalid_definition_is_rejected(client: TestClient, definition: dict) -> None:
    response = client.post("/workflows", json=definition)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_unknown_workflow_is_404(client: TestClient) -> None:
    assert client.get("/workflows/nope").status_code == 404
    assert client.get("/workflows/nope/steps").status_code == 404
    assert client.post("/workflows/nope/cancel").status_code == 404


def test_steer_running_workflow(client: TestClient) -> None:
    started = client.post("/workflows", json=_parked_workflow())
    assert started.status_code == 201
    assert started.json()["status"] == "IN_PROGRESS"
    assert client.get("/health").json()["active_workflows"] == 1

    assert client.post("/workflows", json=_parked_workflow()).status_code == 409

    assert client.post("/workflows/parked/pause").json()["status"] == "PAUSED"
    assert client.post("/workflows/parked/pause").status_code == 400
    assert client.post("/workflows/parked/resume").json()["status"] == "IN_PROGRESS"

    cancelled = client.post("/workflows/parked/cancel").json()
    assert cancelled["status"] == "CANCELLED"
    assert cancelled["steps"]["wait"]["status"] == "CANCELLED"
    assert client.post("/workflows/parked/cancel").status_code == 400
