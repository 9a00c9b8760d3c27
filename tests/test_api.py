import asyncio
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from flowkernel.app import create_app

TENANT = "org-test"
HEADERS = {"X-Tenant-ID": TENANT, "X-User-ID": "user-test"}

_CONFIG = {
    "nodes": [
        {"id": "in", "type": "INPUT", "name": "信息填写", "config": {"fields": [{"name": "产品名称", "required": True}]}},
        {"id": "ai", "type": "AI", "name": "文案", "config": {"userPrompt": "为{{信息填写.产品名称}}写文案"}},
        {"id": "out", "type": "OUTPUT", "name": "Output", "config": {"format": "text", "template": "{{文案}}"}},
    ],
    "edges": [{"source": "in", "target": "ai"}, {"source": "ai", "target": "out"}],
}


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def _create(client, config=None):
    response = client.post("/v1/workflows", json={"name": "copywriter", "config": config or _CONFIG}, headers=HEADERS)
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _publish(client, workflow_id):
    response = client.post(f"/v1/workflows/{workflow_id}/publish", headers=HEADERS)
    assert response.status_code == 200
    return response.json()["data"]


def _wait_task(client, task_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/v1/tasks/{task_id}", headers=HEADERS).json()["data"]
        if data["status"] in ("completed", "failed"):
            return data
        time.sleep(0.02)
    raise AssertionError(f"task {task_id} did not finish")


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_missing_tenant_header_is_rejected(client):
    response = client.post("/v1/workflows", json={"name": "x", "config": _CONFIG})
    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"


def test_create_publish_and_execute(client, fake_ai):
    workflow_id = _create(client)
    published = _publish(client, workflow_id)
    assert published["version"] == 2
    assert published["publishedConfig"] == _CONFIG

    response = client.post(
        f"/v1/workflows/{workflow_id}/execute",
        json={"input": {"产品名称": "蛋白棒"}},
        headers={**HEADERS, "X-Request-ID": "req-123"},
    )
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    data = response.json()["data"]
    assert data["status"] == "COMPLETED"
    assert data["output"]["result"] == "reply to: 为蛋白棒写文案"
    assert "蛋白棒" in fake_ai.calls[0]["messages"][-1]["content"]

    execution = client.get(f"/v1/executions/{data['executionId']}", headers=HEADERS).json()["data"]
    assert execution["status"] == "COMPLETED"
    assert execution["totalTokens"] == 20
    assert execution["outputFiles"] == []


def test_production_runs_published_config_and_draft_runs_draft(client):
    workflow_id = _create(client)
    _publish(client, workflow_id)
    edited = json.loads(json.dumps(_CONFIG))
    edited["nodes"][2]["config"]["template"] = "draft: {{文案}}"
    response = client.put(f"/v1/workflows/{workflow_id}/draft", json={"config": edited}, headers=HEADERS)
    assert response.status_code == 200

    body = {"input": {"产品名称": "x"}}
    production = client.post(f"/v1/workflows/{workflow_id}/execute", json=body, headers=HEADERS)
    draft = client.post(f"/v1/workflows/{workflow_id}/execute", json={**body, "mode": "draft"}, headers=HEADERS)

    assert production.json()["data"]["output"]["result"] == "reply to: 为x写文案"
    assert draft.json()["data"]["output"]["result"] == "draft: reply to: 为x写文案"


def test_publish_rejects_invalid_draft(client):
    workflow_id = _create(client, {"nodes": [{"id": "a", "type": "AI"}], "edges": [{"source": "a", "target": "ghost"}]})
    response = client.post(f"/v1/workflows/{workflow_id}/publish", headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["details"]["valid"] is False


def test_validate_endpoint(client):
    workflow_id = _create(client)
    report = client.post(f"/v1/workflows/{workflow_id}/validate", headers=HEADERS).json()["data"]
    assert report["valid"] is True
    bad_mode = client.post(f"/v1/workflows/{workflow_id}/validate?mode=staging", headers=HEADERS)
    assert bad_mode.status_code == 400


def test_workflows_are_tenant_scoped(client):
    workflow_id = _create(client)
    response = client.get(f"/v1/workflows/{workflow_id}", headers={"X-Tenant-ID": "other-org"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_execute_unknown_workflow(client):
    response = client.post("/v1/workflows/missing/execute", json={}, headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_execute_rejects_bad_body(client):
    workflow_id = _create(client)
    response = client.post(f"/v1/workflows/{workflow_id}/execute", json={"mode": "fast"}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_enqueue_and_poll(client):
    workflow_id = _create(client)
    _publish(client, workflow_id)

    response = client.post(f"/v1/workflows/{workflow_id}/enqueue", json={"input": {"产品名称": "蛋白棒"}}, headers=HEADERS)
    assert response.status_code == 202
    task_id = response.json()["data"]["taskId"]

    task = _wait_task(client, task_id)
    assert task["status"] == "completed"
    assert task["execution"]["status"] == "COMPLETED"

    status = client.get("/v1/queue/status", headers=HEADERS).json()["data"]
    assert status["completed"] >= 1
    cancel = client.post(f"/v1/tasks/{task_id}/cancel", headers=HEADERS).json()["data"]
    assert cancel == {"taskId": task_id, "cancelled": False}


def test_cancel_unknown_task(client):
    response = client.post("/v1/tasks/task_missing/cancel", headers=HEADERS)
    assert response.status_code == 404


def test_sync_timeout_returns_504_with_execution_id(client, http_handler):
    async def slow(request):
        await asyncio.sleep(0.5)
        return httpx.Response(200, json={})

    http_handler.handler = slow
    config = {
        "nodes": [
            {"id": "in", "type": "INPUT", "name": "Input"},
            {"id": "h", "type": "HTTP", "name": "Slow", "config": {"url": "https://api.test/slow"}},
        ],
        "edges": [{"source": "in", "target": "h"}],
    }
    workflow_id = _create(client, config)
    response = client.post(
        f"/v1/workflows/{workflow_id}/execute",
        json={"mode": "draft", "timeout_seconds": 0.05},
        headers=HEADERS,
    )
    assert response.status_code == 504
    error = response.json()["error"]
    assert error["code"] == "timeout"
    execution_id = error["details"]["execution_id"]
    assert client.get(f"/v1/executions/{execution_id}", headers=HEADERS).status_code == 200


def test_state_and_stream_of_finished_execution(client):
    workflow_id = _create(client)
    run = client.post(
        f"/v1/workflows/{workflow_id}/execute", json={"input": {"产品名称": "x"}, "mode": "draft"}, headers=HEADERS
    ).json()["data"]
    execution_id = run["executionId"]

    state = client.get(f"/v1/executions/{execution_id}/state", headers=HEADERS).json()["data"]
    assert state["status"] == "completed"
    assert state["progress"] == 100

    stream = client.get(f"/v1/executions/{execution_id}/stream", headers=HEADERS)
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert stream.text.startswith("event: state\n")
    assert "node_start" not in stream.text


def test_cleanup_endpoint_fails_stuck_executions(client, runtime):
    workflow_id = _create(client)
    stuck = runtime.store.create_execution(workflow_id, TENANT, "user-test")
    runtime.store.transition_execution(stuck.id, "RUNNING")

    recent = client.post("/v1/executions/cleanup", json={}, headers=HEADERS).json()["data"]
    assert recent["failed"] == []

    forced = client.post("/v1/executions/cleanup", json={"force": True}, headers=HEADERS).json()["data"]
    assert forced["failed"] == [stuck.id]
    execution = client.get(f"/v1/executions/{stuck.id}", headers=HEADERS).json()["data"]
    assert execution["status"] == "FAILED"
    assert execution["error"] == "Execution interrupted by service restart"


def test_router_errors_use_the_envelope(client):
    response = client.get("/v1/nowhere", headers={**HEADERS, "X-Request-ID": "req-route"})
    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert body["request_id"] == "req-route"

    response = client.get("/v1/workflows", headers=HEADERS)
    assert response.status_code == 405
    assert response.json()["error"]["code"] == "validation_error"
