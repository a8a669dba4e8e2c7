"""Tests for the HTTP and WebSocket ingress."""

import time

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from flowengine.core.config import Settings
from flowengine.core.container import container
from flowengine.main import create_app
from tests.builders import edge, graph, linear_graph, node


@pytest.fixture
def client():
    container.reset_singletons()
    settings = Settings(_env_file=None, recovery_enabled=False, dlq_enabled=True)
    with container.settings.override(providers.Object(settings)):
        with TestClient(create_app()) as test_client:
            yield test_client
    container.reset_singletons()


def save(client, workflow=None):
    response = client.post("/api/workflows", json=(workflow or linear_graph()).model_dump(mode="json"))
    assert response.status_code == 201
    return response.json()


def run(client, payload):
    response = client.post("/api/workflows/wf-1/executions", json={"payload": payload})
    assert response.status_code == 202
    execution_id = response.json()["execution_id"]
    deadline = time.time() + 5
    while time.time() < deadline:
        snapshot = client.get(f"/api/executions/{execution_id}").json()
        if snapshot["status"] in ("completed", "failed", "cancelled"):
            return snapshot
        time.sleep(0.01)
    pytest.fail(f"execution {execution_id} did not finish")


class TestWorkflows:
    def test_save_and_fetch(self, client):
        assert save(client) == {"id": "wf-1", "version": 1}
        assert save(client)["version"] == 2

        response = client.get("/api/workflows/wf-1", params={"version": 1})
        assert response.status_code == 200
        assert response.json()["version"] == 1

    def test_invalid_graph_is_rejected(self, client):
        bad = graph([node("fetch", "http", {})], [])
        response = client.post("/api/workflows", json=bad.model_dump(mode="json"))

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_FAILED"
        assert {i["code"] for i in detail["issues"]} == {"ENTRY_NOT_TRIGGER", "INVALID_CONFIG"}

    def test_validate_without_saving(self, client):
        bad = graph([node("fetch", "http", {})], [])
        response = client.post("/api/workflows/validate", json=bad.model_dump(mode="json"))

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert client.get("/api/workflows/wf-1").status_code == 404


class TestExecutions:
    def test_trigger_and_inspect(self, client):
        save(client)
        snapshot = run(client, {"value": 21})

        assert snapshot["status"] == "completed"
        assert snapshot["node_results"]["label"]["output"] == "total=42"

        execution_id = snapshot["execution_id"]
        logs = client.get(f"/api/executions/{execution_id}/logs", params={"node_id": "double"}).json()
        assert [e["outcome"] for e in logs["entries"]] == ["success"]

        events = client.get(f"/api/executions/{execution_id}/events", params={"after": 1}).json()["events"]
        assert events[0]["seq"] == 2
        assert events[-1]["type"] == "completed"

    def test_trigger_unknown_workflow(self, client):
        response = client.post("/api/workflows/missing/executions", json={})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "WORKFLOW_NOT_FOUND"

    def test_cancel_finished_execution(self, client):
        save(client)
        snapshot = run(client, {"value": 1})

        response = client.post(f"/api/executions/{snapshot['execution_id']}/cancel")

        assert response.json() == {"execution_id": snapshot["execution_id"], "cancel_requested": False}

    def test_unknown_execution(self, client):
        assert client.get("/api/executions/nope").status_code == 404
        assert client.post("/api/executions/nope/resume").status_code == 404
        assert client.post("/api/executions/nope/cancel").status_code == 404

    def test_failed_node_lands_in_dlq(self, client):
        save(client, graph([
            node("start", "trigger"),
            node("boom", "transform", {"expression": "1 / 0"}),
        ], [edge("start", "boom")]))

        snapshot = run(client, {})

        assert snapshot["status"] == "failed"
        assert snapshot["error"]["node_id"] == "boom"
        entries = client.get("/api/dlq").json()["entries"]
        assert [e["node_id"] for e in entries] == ["boom"]
        assert client.delete(f"/api/dlq/{entries[0]['id']}").status_code == 200
        assert client.delete(f"/api/dlq/{entries[0]['id']}").status_code == 404


class TestLiveEvents:
    def test_websocket_replays_then_closes(self, client):
        save(client)
        snapshot = run(client, {"value": 2})

        received = []
        with client.websocket_connect(f"/ws/executions/{snapshot['execution_id']}") as ws:
            while True:
                event = ws.receive_json()
                received.append(event)
                if event["type"] == "completed":
                    break

        assert received[0]["type"] == "started"
        assert [e["seq"] for e in received] == list(range(1, len(received) + 1))

    def test_websocket_resumes_after_seq(self, client):
        save(client)
        snapshot = run(client, {"value": 2})

        with client.websocket_connect(f"/ws/executions/{snapshot['execution_id']}?after=3") as ws:
            first = ws.receive_json()

        assert first["seq"] == 4


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "OK"
    assert body["execution_engine"]["dlq_enabled"] is True
