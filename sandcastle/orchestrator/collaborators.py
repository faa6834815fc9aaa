"""Interfaces to the services the orchestrator depends on but does not own.

- ``ContextSink``: the per-project error/context store that receives build
  and dev-server errors for the agent loop to pick up.
- ``ProjectDirectory``: read access to project records, used when a
  workspace has to be provisioned with project defaults.

Both have httpx-backed implementations; tests substitute in-memory fakes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sandcastle.orchestrator.models.workspace import ProjectInfo
from sandcastle.orchestrator.resilience import DetachedTasks

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context sink
# ---------------------------------------------------------------------------


@runtime_checkable
class ContextSink(Protocol):
    async def upsert_context_item(
        self,
        project_id: str,
        kind: str,
        key: str,
        payload: str,
        metadata: dict[str, Any],
    ) -> None: ...


class NullContextSink:
    """Drops every item.  Used when no context service is configured."""

    async def upsert_context_item(
        self,
        project_id: str,
        kind: str,
        key: str,
        payload: str,
        metadata: dict[str, Any],
    ) -> None:
        logger.debug("Context sink disabled, dropping %s item %s", kind, key)


class HttpContextSink:
    """Posts context items to ``{base_url}/projects/{project_id}/context``."""

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def upsert_context_item(
        self,
        project_id: str,
        kind: str,
        key: str,
        payload: str,
        metadata: dict[str, Any],
    ) -> None:
        response = await self._client.post(
            f"{self._base_url}/projects/{project_id}/context",
            json={"type": kind, "key": key, "value": payload, "metadata": metadata},
        )
        response.raise_for_status()


class ContextForwarder:
    """Fire-and-forget front for a ``ContextSink``.

    ``forward`` returns immediately; delivery failures are logged by the
    background task and never reach the caller.
    """

    def __init__(self, sink: ContextSink) -> None:
        self._sink = sink
        self._tasks = DetachedTasks("context-forwarder")

    def forward(self, project_id: str, kind: str, key: str, payload: str, metadata: dict[str, Any]) -> None:
        self._tasks.spawn(self._deliver(project_id, kind, key, payload, metadata), name=f"context:{key}")

    async def _deliver(self, project_id: str, kind: str, key: str, payload: str, metadata: dict[str, Any]) -> None:
        try:
            await self._sink.upsert_context_item(project_id, kind, key, payload, metadata)
        except Exception as exc:
            logger.warning("Failed to forward %s item %s for project %s: %s", kind, key, project_id, exc)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries.  Returns ``False`` on timeout."""
        return await self._tasks.wait(timeout)

    async def close(self) -> None:
        await self._tasks.cancel_all()


# ---------------------------------------------------------------------------
# Project directory
# ---------------------------------------------------------------------------


@runtime_checkable
class ProjectDirectory(Protocol):
    async def get_project(self, project_id: str) -> ProjectInfo | None:
        """Return the project, or ``None`` if it does not exist."""
        ...


class HttpProjectDirectory:
    """Reads ``{base_url}/projects/{project_id}``; a 404 means no such project."""

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def get_project(self, project_id: str) -> ProjectInfo | None:
        response = await self._client.get(f"{self._base_url}/projects/{project_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return ProjectInfo(
            project_id=str(data.get("id", project_id)),
            name=data["name"],
            template=data.get("template"),
        )


class UnconfiguredProjectDirectory:
    """Knows no projects.  Used when no project service is configured."""

    async def get_project(self, project_id: str) -> ProjectInfo | None:
        logger.warning("Project directory not configured, cannot resolve project %s", project_id)
        return None
