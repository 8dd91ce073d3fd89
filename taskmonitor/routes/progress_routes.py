"""
Progress routes exposing reconciled task snapshots.

Every endpoint goes through the shared ``TaskQueries`` surface, so HTTP clients
see the same cached, reconciled view (and the same optimistic effects) as the
CLI.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError

from taskmonitor.core.exceptions import MutationError, TransportError
from taskmonitor.services.task_queries import TaskQueries, get_task_queries

router = APIRouter(prefix="/api", tags=["progress"])

Queries = Annotated[TaskQueries, Depends(get_task_queries)]


class TaskRetryRequest(BaseModel):
    step: str | None = None


class RunDefaultsUpdate(BaseModel):
    voice_language: str | None = None
    subtitle_language: str | None = None
    transcript_language: str | None = None
    video_resolution: Literal["sd", "hd", "fullhd"] | None = None


def _http_error(e: TransportError | MutationError) -> HTTPException:
    status_code = e.status_code if e.status_code and e.status_code >= 400 else 502
    return HTTPException(status_code=status_code, detail=str(e))


@router.get("/tasks")
async def list_tasks(
    queries: Queries,
    status: str = "all",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict[str, Any]:
    """List task rows (hidden and state-only tasks excluded)."""
    try:
        tasks = await queries.list_tasks(status=status, page=page, limit=limit)
    except TransportError as e:
        raise _http_error(e) from e
    return {"tasks": tasks, "page": page, "limit": limit}


@router.get("/tasks/search")
async def search_tasks(
    queries: Queries,
    query: Annotated[str, Query(min_length=1)],
) -> dict[str, Any]:
    try:
        return {"tasks": await queries.search_tasks(query)}
    except TransportError as e:
        raise _http_error(e) from e


@router.get("/tasks/{task_id}/snapshot")
async def get_task_snapshot(
    task_id: str,
    queries: Queries,
    view: Annotated[str | None, Query(pattern="^(compact)$")] = None,
) -> dict[str, Any]:
    """Reconciled progress snapshot for a task (``view=compact`` for a lean payload)."""
    try:
        snapshot = await queries.get_snapshot(task_id)
    except TransportError as e:
        raise _http_error(e) from e
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return snapshot.to_payload(view)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, queries: Queries) -> dict[str, Any]:
    try:
        result = await queries.cancel(task_id)
    except MutationError as e:
        raise _http_error(e) from e
    return {"task_id": task_id, "status": "cancelling", **result}


@router.post("/tasks/{task_id}/retry")
async def retry_task(
    task_id: str,
    queries: Queries,
    payload: TaskRetryRequest | None = None,
) -> dict[str, Any]:
    """Retry a task from the requested step, or from its failed step."""
    step = (payload.step or "").strip() if payload and payload.step else None
    try:
        result = await queries.retry(task_id, step)
    except MutationError as e:
        raise _http_error(e) from e
    return {"task_id": task_id, **result}


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, queries: Queries) -> dict[str, Any]:
    try:
        await queries.delete(task_id)
    except MutationError as e:
        raise _http_error(e) from e
    return {"task_id": task_id, "deleted": True}


@router.get("/preferences/run-defaults")
async def get_run_defaults(queries: Queries) -> dict[str, Any]:
    return queries.preferences.run_defaults.model_dump()


@router.put("/preferences/run-defaults")
async def update_run_defaults(
    payload: RunDefaultsUpdate, queries: Queries
) -> dict[str, Any]:
    """Merge the provided fields into the stored run defaults."""
    try:
        updated = await queries.preferences.set_run_defaults(
            **payload.model_dump(exclude_unset=True)
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return updated.model_dump()


@router.get("/preferences/groups/{group}")
async def get_group_state(group: str, queries: Queries) -> dict[str, Any]:
    return {"group": group, "collapsed": queries.preferences.is_collapsed(group)}


@router.post("/preferences/groups/{group}/toggle")
async def toggle_group(group: str, queries: Queries) -> dict[str, Any]:
    """Collapse or expand a task-list group; the new state is persisted."""
    collapsed = await queries.preferences.toggle_group(group)
    return {"group": group, "collapsed": collapsed}
