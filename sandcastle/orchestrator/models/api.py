"""API request / response schemas for the HTTP surface.

Domain models (``Workspace``, ``Build``, ``BuildEvent``, execution results)
are returned as-is; the schemas here cover request bodies and the few
responses that wrap a domain value.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from sandcastle.orchestrator.models.execution import DEFAULT_COLS, DEFAULT_ROWS
from sandcastle.orchestrator.models.workspace import WorkspaceOptions

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceCreate(WorkspaceOptions):
    """Input for provisioning a new workspace; options default as documented."""

    project_id: str
    name: str


class ProjectWorkspaceRequest(BaseModel):
    project_id: str


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class CommandRequest(BaseModel):
    command: str
    cwd: str | None = None
    timeout: float | None = Field(default=None, description="Seconds; provider default when omitted.")


class CodeRunRequest(BaseModel):
    code: str
    argv: list[str] | None = None
    env: dict[str, str] | None = None
    timeout: float | None = None


class PtyCreateRequest(BaseModel):
    command: str | None = Field(default=None, description="Optional command typed into the terminal after connect.")
    cols: int = Field(default=DEFAULT_COLS, ge=1)
    rows: int = Field(default=DEFAULT_ROWS, ge=1)
    capture_output: bool = False


class PtyInputRequest(BaseModel):
    data: str


class PtyOutputResponse(BaseModel):
    session_id: str
    output: str


class SessionCreateRequest(BaseModel):
    session_id: str | None = Field(default=None, description="Optional; generated when omitted.")


class SessionCreateResponse(BaseModel):
    session_id: str


class SessionExecRequest(BaseModel):
    command: str


class SessionExecResponse(BaseModel):
    command_id: str | None = None


class DevServerRequest(BaseModel):
    command: str


class DevServerRestartRequest(BaseModel):
    command: str | None = None


class PreviewPortRequest(BaseModel):
    port: int = Field(ge=1, le=65535)


class PreviewResponse(BaseModel):
    """Preview link, ``url`` is ``None`` when nothing is reachable yet."""

    url: str | None = None
    token: str | None = None
    port: int | None = None


class HealthCheckRequest(BaseModel):
    url: str
    max_attempts: int = Field(default=5, ge=1, le=30)


class HealthCheckResponse(BaseModel):
    url: str
    healthy: bool


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class BuildCreate(BaseModel):
    project_id: str
    workspace_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
