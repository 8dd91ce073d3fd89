"""
Task queries on top of the reactive cache.

Defines the cache keys used for tasks, how each kind of query is fetched and
refreshed, and the task mutations (cancel, retry, delete, run) with their
optimistic local effects:

    ("tasks", "list", filters)   filtered task rows, hidden tasks excluded
    ("tasks", "search", query)   search results
    ("tasks", "detail", task_id) reconciled ProgressSnapshot (None if unknown)
    ("downloads", task_id)       download descriptors

Detail queries poll while the task is active and stop once it is terminal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import lru_cache
from typing import Any, NamedTuple

from loguru import logger

from taskmonitor.api.client import DEFAULT_PAGE_SIZE, TaskApiClient
from taskmonitor.cache.query_cache import (
    PAUSED,
    PollInterval,
    QueryCache,
    QueryKey,
    QueryOptions,
    Subscription,
)
from taskmonitor.configs.config import config
from taskmonitor.core.preferences import PreferenceStore
from taskmonitor.core.snapshot import (
    build_progress_snapshot,
    reset_snapshot_from_step,
    with_status,
)
from taskmonitor.core.step_status import ACTIVE_TASK_STATUSES
from taskmonitor.schemas.progress import ProgressSnapshot

STATE_ONLY_PREFIX = "state_"


class TaskListFilters(NamedTuple):
    status: str = "all"
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


def task_list_key(filters: TaskListFilters) -> QueryKey:
    return ("tasks", "list", filters)


def task_search_key(query: str) -> QueryKey:
    return ("tasks", "search", query)


def task_detail_key(task_id: str) -> QueryKey:
    return ("tasks", "detail", task_id)


def downloads_key(task_id: str) -> QueryKey:
    return ("downloads", task_id)


def is_task_detail_key(key: QueryKey) -> bool:
    return len(key) == 3 and key[0] == "tasks" and key[1] == "detail"


def is_task_list_key(key: QueryKey) -> bool:
    return len(key) == 3 and key[0] == "tasks" and key[1] == "list"


def is_task_collection_key(key: QueryKey) -> bool:
    """List and search keys: every query whose data is a list of task rows."""
    return len(key) == 3 and key[0] == "tasks" and key[1] in ("list", "search")


def is_task_key(key: QueryKey) -> bool:
    return bool(key) and key[0] == "tasks"


def task_poll_interval(snapshot: ProgressSnapshot | None) -> PollInterval:
    """Poll active tasks at the configured pace; terminal or unknown ones pause."""
    if snapshot is None:
        return PAUSED
    if snapshot.status in ACTIVE_TASK_STATUSES:
        return config.active_poll_interval_ms
    return PAUSED


def _is_real_task(row: Any) -> bool:
    task_id = row.get("task_id") if isinstance(row, dict) else None
    return isinstance(task_id, str) and not task_id.startswith(STATE_ONLY_PREFIX)


def _rows(payload: Any) -> list[dict[str, Any]]:
    tasks = payload.get("tasks") if isinstance(payload, dict) else payload
    if not isinstance(tasks, list):
        return []
    return [row for row in tasks if _is_real_task(row)]


def _set_row_status(task_id: str, status: str) -> Callable[[Any], Any]:
    def update(rows: Any) -> Any:
        if not isinstance(rows, list):
            return rows
        return [
            {**row, "status": status} if row.get("task_id") == task_id else row
            for row in rows
        ]

    return update


def _drop_row(task_id: str) -> Callable[[Any], Any]:
    def update(rows: Any) -> Any:
        if not isinstance(rows, list):
            return rows
        return [row for row in rows if row.get("task_id") != task_id]

    return update


class TaskQueries:
    """Task-facing reads and mutations, all going through one ``QueryCache``."""

    def __init__(
        self,
        cache: QueryCache,
        client: TaskApiClient,
        preferences: PreferenceStore,
    ) -> None:
        self.cache = cache
        self.client = client
        self.preferences = preferences
        self._sweeper: asyncio.Task[None] | None = None

    # Options -----------------------------------------------------------------
    @staticmethod
    def detail_options() -> QueryOptions:
        return QueryOptions(
            poll_interval_fn=task_poll_interval,
            stale_time_ms=config.poll_stale_time_ms,
        )

    @staticmethod
    def list_options(filters: TaskListFilters) -> QueryOptions:
        stale = (
            config.completed_list_stale_time_ms
            if filters.status == "completed"
            else config.default_stale_time_ms
        )
        return QueryOptions(stale_time_ms=stale)

    def _detail_fetcher(self, task_id: str) -> Callable[[], Any]:
        async def fetch() -> ProgressSnapshot | None:
            raw = await self.client.get_task(task_id)
            if raw is None:
                return None
            return build_progress_snapshot(raw)

        return fetch

    def _visible(self, rows: Any) -> list[dict[str, Any]]:
        if not isinstance(rows, list):
            return []
        return [row for row in rows if not self.preferences.is_hidden(row["task_id"])]

    # Reads -------------------------------------------------------------------
    async def get_snapshot(self, task_id: str) -> ProgressSnapshot | None:
        return await self.cache.fetch(
            task_detail_key(task_id), self._detail_fetcher(task_id), self.detail_options()
        )

    def watch_task(
        self,
        task_id: str,
        listener: Callable[[ProgressSnapshot | None], None] | None = None,
    ) -> Subscription:
        """Subscribe to a task's snapshot; polling continues while it is active."""
        return self.cache.subscribe(
            task_detail_key(task_id),
            self._detail_fetcher(task_id),
            self.detail_options(),
            listener=(lambda entry: listener(entry.data)) if listener else None,
        )

    async def list_tasks(
        self,
        status: str = "all",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        filters = TaskListFilters(status=status, page=max(1, page), limit=limit)

        async def fetch() -> list[dict[str, Any]]:
            payload = await self.client.get_tasks(
                status=None if filters.status == "all" else filters.status,
                limit=filters.limit,
                offset=(filters.page - 1) * filters.limit,
            )
            return _rows(payload)

        rows = await self.cache.fetch(
            task_list_key(filters), fetch, self.list_options(filters)
        )
        return self._visible(rows)

    async def search_tasks(self, query: str) -> list[dict[str, Any]]:
        query = query.strip()
        if not query:
            return []

        async def fetch() -> list[dict[str, Any]]:
            return _rows(await self.client.search_tasks(query))

        rows = await self.cache.fetch(
            task_search_key(query), fetch, QueryOptions(stale_time_ms=0)
        )
        return self._visible(rows)

    async def get_downloads(self, task_id: str) -> Any:
        # Downloads exist only for completed tasks
        return await self.cache.fetch(
            downloads_key(task_id),
            lambda: self.client.get_downloads(task_id),
            QueryOptions(stale_time_ms=config.completed_stale_time_ms),
        )

    async def prefetch_task(self, task_id: str) -> None:
        """Warm the detail and downloads queries for a task; failures are only logged."""
        results = await asyncio.gather(
            self.get_snapshot(task_id),
            self.get_downloads(task_id),
            return_exceptions=True,
        )
        for name, result in zip(("detail", "downloads"), results, strict=True):
            if isinstance(result, Exception):
                logger.debug(f"Prefetch of {name} for task {task_id} failed: {result}")

    # Mutations ---------------------------------------------------------------
    async def cancel(self, task_id: str) -> dict[str, Any]:
        """Cancel a run; the task reads as ``cancelling`` until the backend answers."""
        detail_key = task_detail_key(task_id)
        try:
            result = await self.cache.optimistic_mutate(
                detail_key,
                lambda: self.client.cancel_task(task_id),
                optimistic_update=lambda snap: (
                    with_status(snap, "cancelling") if snap is not None else snap
                ),
            )
            self.cache.set_queries_data(
                is_task_collection_key, _set_row_status(task_id, "cancelled")
            )
            return result
        finally:
            await self.cache.invalidate(detail_key)

    async def retry(self, task_id: str, step: str | None = None) -> dict[str, Any]:
        """Retry from ``step`` (default: the failed step) with an optimistic reset."""

        def reconcile(snap: ProgressSnapshot | None, result: Any) -> Any:
            server_step = result.get("step") if isinstance(result, dict) else None
            if snap is None or not server_step or server_step == snap.current_step:
                return snap
            return reset_snapshot_from_step(snap, server_step)

        result = await self.cache.optimistic_mutate(
            task_detail_key(task_id),
            lambda: self.client.retry_task(task_id, step),
            optimistic_update=lambda snap: (
                reset_snapshot_from_step(snap, step) if snap is not None else snap
            ),
            reconcile=reconcile,
        )
        await self.cache.invalidate(is_task_key)
        return result

    async def delete(self, task_id: str) -> dict[str, Any]:
        """Delete a task; it vanishes from every list at once, and returns on failure."""
        await self.preferences.hide_task(task_id)
        try:
            result = await self.cache.optimistic_mutate(
                is_task_collection_key,
                lambda: self.client.delete_task(task_id),
                optimistic_update=_drop_row(task_id),
            )
        except Exception:
            await self.preferences.unhide_task(task_id)
            raise
        finally:
            await self.cache.invalidate(is_task_collection_key)

        self.cache.remove(task_detail_key(task_id))
        self.cache.remove(downloads_key(task_id))
        return result

    async def run(self, upload_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Start a new run for an upload, seeded with the stored run defaults."""
        body = {**self.preferences.run_defaults.model_dump(), **(payload or {})}
        try:
            return await self.cache.optimistic_mutate(
                is_task_collection_key,
                lambda: self.client.run_file(upload_id, body),
                rollback=False,
            )
        finally:
            await self.cache.invalidate(is_task_collection_key)

    # Eviction ----------------------------------------------------------------
    def evict_old_task_queries(self, max_age_minutes: float | None = None) -> list[QueryKey]:
        if max_age_minutes is None:
            max_age_minutes = config.task_detail_max_age_minutes
        return self.cache.evict(max_age_minutes, is_task_detail_key)

    def evict_old_list_queries(self, max_age_minutes: float | None = None) -> list[QueryKey]:
        if max_age_minutes is None:
            max_age_minutes = config.task_list_max_age_minutes
        return self.cache.evict(max_age_minutes, is_task_list_key)

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.evict_old_task_queries()
            self.evict_old_list_queries()

    def start_eviction_sweeps(self, interval_seconds: float | None = None) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        interval = interval_seconds or config.eviction_sweep_interval_seconds
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(interval))
        logger.info(f"Cache eviction sweeps started (every {interval:g}s)")

    async def stop_eviction_sweeps(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Cache eviction sweeps stopped")

    async def close(self) -> None:
        """Stop sweeps and poll loops, then release the HTTP client."""
        await self.stop_eviction_sweeps()
        await self.cache.close()
        await self.client.aclose()


@lru_cache(maxsize=1)
def get_task_queries() -> TaskQueries:
    """Return the process-wide task query surface."""
    from taskmonitor.core.preferences import preference_store

    return TaskQueries(QueryCache(), TaskApiClient(), preference_store)
