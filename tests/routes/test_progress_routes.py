"""
Unit tests for the progress routes.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from taskmonitor.cache.query_cache import QueryCache
from taskmonitor.configs.config import config
from taskmonitor.core.exceptions import MutationError, TransportError
from taskmonitor.core.preferences import PreferenceStore
from taskmonitor.routes import progress_routes
from taskmonitor.routes.progress_routes import RunDefaultsUpdate, TaskRetryRequest
from taskmonitor.services.task_queries import TaskQueries, get_task_queries

FAILED_TASK = {
    "task_id": "task-123",
    "status": "failed",
    "kwargs": {"filename": "deck.pdf"},
    "state": {
        "current_step": "generate_audio",
        "steps": {
            "extract_slides": {"status": "completed"},
            "generate_audio": {"status": "failed"},
            "compose_video": {"status": "pending"},
        },
        "errors": [{"step": "generate_audio", "error": "quota", "timestamp": "t"}],
    },
}


@pytest.fixture(autouse=True)
def english_baseline(monkeypatch):
    monkeypatch.setattr(config, "baseline_language", "english")


@pytest.fixture
def queries():
    client = AsyncMock()
    client.get_task = AsyncMock(return_value=FAILED_TASK)
    client.get_tasks = AsyncMock(
        return_value={"tasks": [{"task_id": "task-123", "status": "failed"}]}
    )
    preferences = PreferenceStore(redis_client=AsyncMock(), key_prefix="tm:prefs")
    return TaskQueries(QueryCache(retry_backoff=0), client, preferences)


@pytest.fixture
def client(queries):
    app = FastAPI()
    app.include_router(progress_routes.router)
    app.dependency_overrides[get_task_queries] = lambda: queries
    return TestClient(app)


def test_snapshot_endpoint(client):
    response = client.get("/api/tasks/task-123/snapshot")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "failed"
    assert data["progress"] == 33
    assert data["steps"]["compose_video"] == {
        "status": "pending",
        "blocked_by_failure": True,
    }
    assert data["filename"] == "deck.pdf"


def test_snapshot_endpoint_compact_view(client):
    response = client.get("/api/tasks/task-123/snapshot", params={"view": "compact"})

    assert response.status_code == 200
    assert response.json()["steps"]["extract_slides"]["status"] == "completed"


def test_snapshot_endpoint_rejects_unknown_view(client):
    response = client.get("/api/tasks/task-123/snapshot", params={"view": "full"})

    assert response.status_code == 422


def test_snapshot_endpoint_not_found(client, queries):
    queries.client.get_task = AsyncMock(return_value=None)

    response = client.get("/api/tasks/other/snapshot")

    assert response.status_code == 404


def test_list_endpoint(client, queries):
    response = client.get("/api/tasks", params={"status": "failed", "page": 2, "limit": 5})

    assert response.status_code == 200
    assert response.json() == {
        "tasks": [{"task_id": "task-123", "status": "failed"}],
        "page": 2,
        "limit": 5,
    }
    queries.client.get_tasks.assert_awaited_once_with(status="failed", limit=5, offset=5)


def test_backend_errors_map_to_http_status(client, queries):
    queries.client.get_tasks = AsyncMock(
        side_effect=TransportError("unauthorized", status_code=401)
    )

    response = client.get("/api/tasks")

    assert response.status_code == 401


def test_run_defaults_round_trip(client):
    response = client.put(
        "/api/preferences/run-defaults", json={"subtitle_language": "french"}
    )
    assert response.status_code == 200

    data = client.get("/api/preferences/run-defaults").json()
    assert data["subtitle_language"] == "french"
    assert data["voice_language"] == "english"


def test_group_toggle_is_persisted(client, queries):
    assert client.get("/api/preferences/groups/failed").json() == {
        "group": "failed",
        "collapsed": False,
    }

    response = client.post("/api/preferences/groups/failed/toggle")

    assert response.status_code == 200
    assert response.json() == {"group": "failed", "collapsed": True}
    assert client.get("/api/preferences/groups/failed").json()["collapsed"] is True
    queries.preferences.redis_client.sadd.assert_awaited_once_with(
        "tm:prefs:collapsed", "failed"
    )

    assert client.post("/api/preferences/groups/failed/toggle").json()["collapsed"] is False


@pytest.mark.asyncio
async def test_retry_endpoint_passes_requested_step(queries):
    queries.client.retry_task = AsyncMock(return_value={"step": "generate_audio"})

    result = await progress_routes.retry_task(
        "task-123", queries, TaskRetryRequest(step="  generate_audio ")
    )

    assert result == {"task_id": "task-123", "step": "generate_audio"}
    queries.client.retry_task.assert_awaited_once_with("task-123", "generate_audio")


@pytest.mark.asyncio
async def test_retry_endpoint_without_body_uses_failed_step(queries):
    queries.client.retry_task = AsyncMock(return_value={"step": "generate_audio"})

    await progress_routes.retry_task("task-123", queries)

    queries.client.retry_task.assert_awaited_once_with("task-123", None)


@pytest.mark.asyncio
async def test_cancel_endpoint_rejection(queries):
    queries.client.cancel_task = AsyncMock(
        side_effect=MutationError("Task is not running", status_code=400)
    )

    with pytest.raises(HTTPException) as excinfo:
        await progress_routes.cancel_task("task-123", queries)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "Task is not running"


@pytest.mark.asyncio
async def test_delete_endpoint(queries):
    queries.client.delete_task = AsyncMock(return_value={})

    result = await progress_routes.delete_task("task-123", queries)

    assert result == {"task_id": "task-123", "deleted": True}
    assert queries.preferences.is_hidden("task-123")


@pytest.mark.asyncio
async def test_delete_endpoint_network_failure_is_bad_gateway(queries):
    queries.client.delete_task = AsyncMock(side_effect=MutationError("connection refused"))

    with pytest.raises(HTTPException) as excinfo:
        await progress_routes.delete_task("task-123", queries)

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_update_run_defaults_rejects_invalid_values(queries):
    with pytest.raises(HTTPException) as excinfo:
        await progress_routes.update_run_defaults(
            RunDefaultsUpdate(voice_language=None), queries
        )

    assert excinfo.value.status_code == 422
