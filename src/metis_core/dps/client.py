"""
eCloud DPS client.

The engine treats the DPS as an opaque RPC with three calls: submit a task,
read its progress, kill it. :class:`DpsClient` is that contract;
:class:`HttpDpsClient` implements it over the DPS REST API with an
``httpx.AsyncClient`` shared by every worker of the process.

Error mapping:
    ::

        transport error / timeout   → ExternalTaskTransientError
        HTTP 5xx                    → ExternalTaskTransientError (http_status)
        HTTP 4xx                    → ExternalTaskHardError (http_status)
        unparseable response        → ExternalTaskHardError

Tags:
    dps, ecloud, http, httpx, async, client, metis-core
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from metis_core.core.errors import ExternalTaskHardError, ExternalTaskTransientError
from metis_core.core.logging import get_logger
from metis_core.dps.models import DpsTask, TaskProgress

logger = get_logger(__name__)


@runtime_checkable
class DpsClient(Protocol):
    """Contract the plugin driver depends on."""

    async def submit_task(self, topology: str, task: DpsTask) -> str: ...

    async def get_task_progress(self, topology: str, external_task_id: str) -> TaskProgress: ...

    async def kill_task(self, topology: str, external_task_id: str, reason: str) -> None: ...


class HttpDpsClient:
    """DPS client over HTTP.

    Example:
        >>> async with HttpDpsClient("https://dps.example.org/services", "user", "pw") as dps:
        ...     task_id = await dps.submit_task("validation", task)
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        *,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(username, password) if username else None,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
        )

    @classmethod
    def from_settings(cls, settings: Any) -> HttpDpsClient:
        return cls(
            settings.dps_base_url,
            settings.dps_username,
            settings.dps_password,
            connect_timeout=settings.dps_connect_timeout_seconds,
            read_timeout=settings.dps_read_timeout_seconds,
        )

    async def __aenter__(self) -> HttpDpsClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ExternalTaskTransientError(
                f"DPS {method} {url} failed: {exc!r}", cause=exc
            ) from exc
        if response.status_code >= 500:
            raise ExternalTaskTransientError(
                f"DPS {method} {url} returned {response.status_code}",
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise ExternalTaskHardError(
                f"DPS {method} {url} returned {response.status_code}: {response.text[:500]}",
                http_status=response.status_code,
            )
        return response

    async def submit_task(self, topology: str, task: DpsTask) -> str:
        response = await self._request("POST", f"/{topology}/tasks", json=task.to_dict())
        location = response.headers.get("Location", "")
        external_task_id = location.rstrip("/").rsplit("/", 1)[-1] if location else ""
        if not external_task_id:
            try:
                external_task_id = str(response.json().get("taskId") or "")
            except (ValueError, AttributeError):
                external_task_id = ""
        if not external_task_id:
            raise ExternalTaskHardError(f"DPS accepted a {topology} task without returning its id")
        logger.info("dps.task_submitted", topology=topology, external_task_id=external_task_id)
        return external_task_id

    async def get_task_progress(self, topology: str, external_task_id: str) -> TaskProgress:
        response = await self._request("GET", f"/{topology}/tasks/{external_task_id}/progress")
        try:
            return TaskProgress.from_dict(response.json())
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            raise ExternalTaskHardError(
                f"Unreadable progress for DPS task {external_task_id}", cause=exc
            ) from exc

    async def kill_task(self, topology: str, external_task_id: str, reason: str) -> None:
        await self._request(
            "POST", f"/{topology}/tasks/{external_task_id}/kill", params={"info": reason}
        )
        logger.info("dps.task_killed", topology=topology, external_task_id=external_task_id, reason=reason)


__all__ = ["DpsClient", "HttpDpsClient"]
