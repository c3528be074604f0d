"""Remote task gateway: the engine's only view of the server.

``RemoteTaskGateway`` is the protocol the coordinator talks to;
``HttpTaskGateway`` implements it over the task REST API with httpx.
Every failure leaves this module as a ``TransportError`` or a
``ConflictError``.
"""

import logging
from typing import Any, Mapping, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from taskboard.config import Settings
from taskboard.errors import ConflictError, TransportError
from taskboard.models import Task, TaskId

logger = logging.getLogger(__name__)

TASKS_PATH = "/api/tasks"


class RemoteTaskGateway(Protocol):
    async def create_task(self, fields: Mapping[str, Any]) -> Task: ...

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> Task: ...

    async def delete_task(self, task_id: TaskId) -> None: ...

    async def toggle_completion(self, task_id: TaskId, completed: bool) -> Task: ...

    async def list_tasks(self) -> list[Task]: ...


def _server_message(response: httpx.Response) -> Optional[str]:
    """Pull the server's own error text out of a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or None
    if not isinstance(body, dict):
        return None
    detail = body.get("detail", body.get("message"))
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        # FastAPI request-validation errors: [{"loc": [...], "msg": "..."}]
        messages = [d.get("msg") for d in detail if isinstance(d, dict) and d.get("msg")]
        return "; ".join(messages) or None
    return None


def _parse_task(data: Any) -> Task:
    try:
        return Task.model_validate(data)
    except PydanticValidationError as exc:
        logger.error("Server returned a malformed task: %s", exc)
        raise TransportError("malformed task in server response") from exc


class HttpTaskGateway:
    """RemoteTaskGateway backed by an ``httpx.AsyncClient``.

    Args:
        settings: Supplies the base URL and timeout when no client is given.
        client: Pre-built client (tests pass one with a mock or ASGI
            transport). A client passed in is not closed by :meth:`aclose`.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if client is None:
            settings = settings or Settings()
            client = httpx.AsyncClient(
                base_url=settings.api_url, timeout=settings.http_timeout
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    async def __aenter__(self) -> "HttpTaskGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- protocol ------------------------------------------------------------

    async def list_tasks(self) -> list[Task]:
        response = await self._request("GET", TASKS_PATH)
        body = response.json()
        if not isinstance(body, list):
            raise TransportError("expected a list of tasks")
        return [_parse_task(item) for item in body]

    async def create_task(self, fields: Mapping[str, Any]) -> Task:
        response = await self._request("POST", TASKS_PATH, json=dict(fields))
        return _parse_task(response.json())

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> Task:
        response = await self._request(
            "PATCH", f"{TASKS_PATH}/{task_id}", json=dict(fields)
        )
        return _parse_task(response.json())

    async def toggle_completion(self, task_id: TaskId, completed: bool) -> Task:
        return await self.update_task(task_id, {"completed": completed})

    async def delete_task(self, task_id: TaskId) -> None:
        """Delete a task. A task that is already gone counts as deleted."""
        response = await self._request(
            "DELETE", f"{TASKS_PATH}/{task_id}", missing_ok=True
        )
        if response.status_code == 404:
            logger.debug("Task %s was already deleted", task_id)

    # -- private helpers -----------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        missing_ok: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise TransportError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if missing_ok and status == 404:
            return response
        if status >= 500:
            raise TransportError(
                f"{method} {path} returned {status}", status_code=status
            )
        if status >= 400:
            raise ConflictError(
                f"{method} {path} returned {status}",
                user_message=_server_message(response),
                status_code=status,
            )
        return response
