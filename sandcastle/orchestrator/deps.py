"""FastAPI dependency injection for the orchestrator services.

Usage in route handlers::

    @router.post("/{workspace_id}/stop")
    async def stop(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
        ...

Dependencies raise HTTP 503 if the backing service was not configured
(SANDCASTLE_DATABASE_URL unset).  A missing provider credential is not a
503 here: the managers report it per call as a configuration error.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status

from sandcastle.orchestrator.broadcaster import BuildBroadcaster, StreamingBuilds
from sandcastle.orchestrator.execution.commands import ExecutionService
from sandcastle.orchestrator.execution.devserver import DevServerLauncher
from sandcastle.orchestrator.execution.preview import PreviewResolver
from sandcastle.orchestrator.managers.builds import BuildManager
from sandcastle.orchestrator.managers.workspaces import WorkspaceManager


def _require(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured (SANDCASTLE_DATABASE_URL is unset).",
        )
    return service


def get_workspace_manager(request: Request) -> WorkspaceManager:
    return _require(request, "workspace_manager")


def get_execution(request: Request) -> ExecutionService:
    return _require(request, "execution")


def get_dev_servers(request: Request) -> DevServerLauncher:
    return _require(request, "dev_servers")


def get_previews(request: Request) -> PreviewResolver:
    return _require(request, "previews")


def get_build_manager(request: Request) -> BuildManager:
    return _require(request, "build_manager")


def get_broadcaster(request: Request) -> BuildBroadcaster:
    return _require(request, "broadcaster")


def get_streaming_builds(request: Request) -> StreamingBuilds:
    return _require(request, "streaming_builds")


# -- Annotated type aliases for concise route signatures ---------------------

WorkspaceMgr = Annotated[WorkspaceManager, Depends(get_workspace_manager)]
"""Annotated dependency: workspace lifecycle manager."""

Execution = Annotated[ExecutionService, Depends(get_execution)]
"""Annotated dependency: command/PTY/session execution service."""

DevServers = Annotated[DevServerLauncher, Depends(get_dev_servers)]

Previews = Annotated[PreviewResolver, Depends(get_previews)]

BuildMgr = Annotated[BuildManager, Depends(get_build_manager)]
"""Annotated dependency: build pipeline manager."""

Broadcaster = Annotated[BuildBroadcaster, Depends(get_broadcaster)]

Builds = Annotated[StreamingBuilds, Depends(get_streaming_builds)]
"""Annotated dependency: create-and-observe build entry point."""
