"""
HTTP client for the task backend.

Thin async wrapper over ``httpx.AsyncClient``. Reads raise ``TransportError``
(with the HTTP status when there was one) so the query cache can decide
whether to retry; mutations raise ``MutationError`` so optimistic updates can
roll back.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from taskmonitor.configs.config import config
from taskmonitor.core.exceptions import MutationError, TransportError

SESSION_COOKIE_NAME = "next-auth.session-token"
DEFAULT_PAGE_SIZE = 20


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


class TaskApiClient:
    """Async client for the ``/api/tasks`` family of endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        session_cookie: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        cookie = session_cookie if session_cookie is not None else config.api_session_cookie
        self._client = httpx.AsyncClient(
            base_url=base_url or config.api_base_url,
            timeout=timeout if timeout is not None else config.api_timeout,
            headers={"Accept": "application/json"},
            cookies={SESSION_COOKIE_NAME: cookie} if cookie else None,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TaskApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise TransportError(
                f"{method} {path} returned {response.status_code}: {_detail(response)}",
                status_code=response.status_code,
            )
        return response

    async def _read(self, path: str, **kwargs: Any) -> Any:
        response = await self._request("GET", path, **kwargs)
        return response.json()

    async def _mutate(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._request(method, path, **kwargs)
        except TransportError as e:
            raise MutationError(str(e), status_code=e.status_code) from e
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    # Reads -------------------------------------------------------------------
    async def get_tasks(
        self,
        *,
        status: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        return await self._read("/api/tasks", params=params)

    async def search_tasks(self, query: str, limit: int = DEFAULT_PAGE_SIZE) -> dict[str, Any]:
        return await self._read(
            "/api/tasks/search", params={"query": query, "limit": limit}
        )

    async def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch one raw task record; ``None`` when the backend does not know it."""
        try:
            return await self._read(f"/api/tasks/{quote(task_id, safe='')}")
        except TransportError as e:
            if e.status_code == 404:
                return None
            raise

    async def get_downloads(self, task_id: str) -> dict[str, Any]:
        return await self._read(f"/api/tasks/{quote(task_id, safe='')}/downloads")

    # Mutations ---------------------------------------------------------------
    async def cancel_task(self, task_id: str) -> dict[str, Any]:
        logger.info(f"Cancelling task {task_id}")
        return await self._mutate("POST", f"/api/tasks/{quote(task_id, safe='')}/cancel")

    async def retry_task(self, task_id: str, step: str | None = None) -> dict[str, Any]:
        logger.info(f"Retrying task {task_id} from step {step or '<failed step>'}")
        payload = {"step": step} if step else {}
        return await self._mutate(
            "POST", f"/api/tasks/{quote(task_id, safe='')}/retry", json=payload
        )

    async def delete_task(self, task_id: str) -> dict[str, Any]:
        logger.info(f"Deleting task {task_id}")
        return await self._mutate("DELETE", f"/api/tasks/{quote(task_id, safe='')}/delete")

    async def run_file(self, upload_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info(f"Starting a new run for upload {upload_id}")
        return await self._mutate(
            "POST", f"/api/files/{quote(upload_id, safe='')}/run", json=payload
        )
