"""Workspace lifecycle endpoints (RPC-style).

All write operations use POST; reads use GET.  Thin HTTP adapter --
delegates to the workspace manager.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, status

from sandcastle.orchestrator.deps import WorkspaceMgr
from sandcastle.orchestrator.models.api import ProjectWorkspaceRequest, WorkspaceCreate
from sandcastle.orchestrator.models.workspace import Workspace, WorkspaceLogEntry, WorkspaceOptions
from sandcastle.orchestrator.routers.errors import http_errors

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.post("/create", response_model=Workspace, status_code=status.HTTP_201_CREATED)
async def create_workspace(body: WorkspaceCreate, manager: WorkspaceMgr) -> Workspace:
    """Create a workspace and provision its sandbox."""
    options = WorkspaceOptions.model_validate(body.model_dump(exclude={"project_id", "name"}))
    with http_errors():
        return await manager.create_workspace(body.project_id, body.name, options)


@router.post("/for-project", response_model=Workspace)
async def get_or_create_workspace(body: ProjectWorkspaceRequest, manager: WorkspaceMgr) -> Workspace:
    """Return the project's running workspace, restarting or provisioning as needed."""
    with http_errors():
        return await manager.get_or_create_workspace(body.project_id)


@router.post("/rebuild", response_model=Workspace)
async def rebuild_workspace(body: ProjectWorkspaceRequest, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.rebuild_workspace(body.project_id)


@router.get("/by-project/{project_id}", response_model=Workspace | None)
async def get_project_workspace(project_id: str, manager: WorkspaceMgr) -> Workspace | None:
    """Latest non-deleted workspace of a project, reconciled with the provider."""
    with http_errors():
        return await manager.get_project_workspace(project_id)


@router.get("/{workspace_id}/get", response_model=Workspace)
async def get_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.get_workspace(workspace_id)


@router.post("/{workspace_id}/start", response_model=Workspace)
async def start_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.start_workspace(workspace_id)


@router.post("/{workspace_id}/stop", response_model=Workspace)
async def stop_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.stop_workspace(workspace_id)


@router.post("/{workspace_id}/restart", response_model=Workspace)
async def restart_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.restart_workspace(workspace_id)


@router.post("/{workspace_id}/sync", response_model=Workspace)
async def sync_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    """Reconcile the stored status with the provider's view of the sandbox."""
    with http_errors():
        return await manager.sync_workspace_status(workspace_id)


@router.post("/{workspace_id}/delete", response_model=Workspace)
async def delete_workspace(workspace_id: str, manager: WorkspaceMgr) -> Workspace:
    with http_errors():
        return await manager.delete_workspace(workspace_id)


@router.get("/{workspace_id}/logs", response_model=list[WorkspaceLogEntry])
async def get_workspace_logs(
    workspace_id: str,
    manager: WorkspaceMgr,
    limit: int = Query(100, ge=1, le=1000),
) -> list[WorkspaceLogEntry]:
    """Activity log, newest first."""
    with http_errors():
        return await manager.get_logs(workspace_id, limit=limit)
