"""HTTP-level tests for the workspace copy and abort endpoints."""

import pytest
from fastapi.testclient import TestClient

from flowsync.app import app
from flowsync.service.abort import PredictionEventsProducer, QueueAbortCoordinator
from flowsync.service.runtime import get_runtime
from flowsync.storage.models import RecordKind


class RecordingCache:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish_event(self, channel, event):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, event))
        return 1


@pytest.fixture
def client():
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def _seed():
    store = get_runtime().store
    tool = store.create_record(RecordKind.TOOL, "ws-a", "search", {"func": "x"})
    flow = store.create_record(RecordKind.CHATFLOW, "ws-a", "bot", {"tool": tool.id})
    return tool, flow


class TestCopyEndpoint:
    def test_copy_returns_summary(self, client):
        tool, _ = _seed()

        resp = client.post(
            "/v1/workspace-data/copy",
            json={"from_workspace_id": "ws-a", "to_workspace_id": "ws-b"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["message"] == "success"
        assert data["created"] == 2
        assert data["updated"] == 0
        assert data["kinds"]["tool"] == {"created": 1, "updated": 0}
        assert resp.headers["X-Request-ID"]

        store = get_runtime().store
        [copied_tool] = store.fetch_by_workspace(RecordKind.TOOL, "ws-b")
        [copied_flow] = store.fetch_by_workspace(RecordKind.CHATFLOW, "ws-b")
        assert copied_flow.payload == {"tool": copied_tool.id}

        again = client.post(
            "/v1/workspace-data/copy",
            json={"from_workspace_id": "ws-a", "to_workspace_id": "ws-b"},
        )
        assert again.json()["data"]["updated"] == 2
        assert again.json()["data"]["created"] == 0

    @pytest.mark.parametrize(
        "payload",
        [
            {"from_workspace_id": "ws-a"},
            {"from_workspace_id": "ws-a", "to_workspace_id": "ws-a"},
            {"from_workspace_id": "  ", "to_workspace_id": "ws-b"},
        ],
    )
    def test_invalid_request_uses_error_envelope(self, client, payload):
        resp = client.post("/v1/workspace-data/copy", json=payload)

        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_write_failure_maps_to_server_error(self, client, monkeypatch):
        _seed()
        store = get_runtime().store

        def failing_bulk_insert(kind, records, tx=None):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(store, "bulk_insert", failing_bulk_insert)

        resp = client.post(
            "/v1/workspace-data/copy",
            json={"from_workspace_id": "ws-a", "to_workspace_id": "ws-b"},
        )

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "server_error"
        assert error["details"]["kind"] == "tool"

    def test_unexpected_error_is_masked(self, client, monkeypatch):
        runtime = get_runtime()

        def explode(*args, **kwargs):
            raise KeyError("secret internals")

        monkeypatch.setattr(runtime.workspace_copy, "copy_workspace", explode)

        resp = client.post(
            "/v1/workspace-data/copy",
            json={"from_workspace_id": "ws-a", "to_workspace_id": "ws-b"},
        )

        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }


class TestFlowsEndpoint:
    def test_lists_flows(self, client):
        _, flow = _seed()
        store = get_runtime().store
        store.create_record(RecordKind.AGENTFLOW, "ws-a", "team", {})

        resp = client.get("/v1/workspace-data/flows", params={"workspace_id": "ws-a"})
        assert resp.status_code == 200
        names = {item["name"] for item in resp.json()["data"]["items"]}
        assert names == {"bot", "team"}

        resp = client.get(
            "/v1/workspace-data/flows", params={"workspace_id": "ws-a", "type": "CHATFLOW"}
        )
        [item] = resp.json()["data"]["items"]
        assert item["id"] == flow.id
        assert item["type"] == "CHATFLOW"

    def test_missing_workspace_is_a_failed_precondition(self, client):
        resp = client.get("/v1/workspace-data/flows")
        assert resp.status_code == 412
        assert resp.json()["error"]["code"] == "precondition_failed"

    def test_unknown_flow_type_is_rejected(self, client):
        resp = client.get(
            "/v1/workspace-data/flows", params={"workspace_id": "ws-a", "type": "WORKFLOW"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["type"] == "WORKFLOW"


class TestAbortEndpoint:
    def test_main_mode_aborts_local_run(self, client):
        runtime = get_runtime()
        handle = runtime.abort_pool.register("cf1_chat1")

        resp = client.put("/v1/chatmessage/abort/cf1/chat1")

        assert resp.status_code == 200
        assert resp.json()["data"] == {"execution_id": "cf1_chat1", "mode": "main"}
        assert handle.aborted
        assert len(runtime.abort_pool) == 0

    def test_unknown_execution_still_succeeds(self, client):
        resp = client.put("/v1/chatmessage/abort/cf1/never-started")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_queue_mode_publishes_event(self, client):
        runtime = get_runtime()
        cache = RecordingCache()
        runtime.abort_coordinator = QueueAbortCoordinator(
            PredictionEventsProducer(cache, "prediction:events")
        )
        handle = runtime.abort_pool.register("cf1_chat1")

        resp = client.put("/v1/chatmessage/abort/cf1/chat1")

        assert resp.status_code == 200
        assert resp.json()["data"]["mode"] == "queue"
        assert cache.published == [
            ("prediction:events", {"event_name": "abort", "id": "cf1_chat1"})
        ]
        assert not handle.aborted

    def test_queue_publish_failure_is_reported(self, client):
        runtime = get_runtime()
        runtime.abort_coordinator = QueueAbortCoordinator(
            PredictionEventsProducer(RecordingCache(fail=True), "prediction:events")
        )

        resp = client.put("/v1/chatmessage/abort/cf1/chat1")

        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["details"]["execution_id"] == "cf1_chat1"


def test_healthz_reports_mode(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["mode"] == "main"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert resp.headers["Cache-Control"] == "no-store"
