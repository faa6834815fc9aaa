"""Execution endpoints: commands, code runs, PTYs, sessions, dev servers, previews.

Thin HTTP adapter -- delegates to the execution layer.  One-shot command
failures come back as a normal result with a non-zero ``exit_code``.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from sandcastle.orchestrator.deps import DevServers, Execution, Previews
from sandcastle.orchestrator.models.api import (
    CodeRunRequest,
    CommandRequest,
    DevServerRequest,
    DevServerRestartRequest,
    HealthCheckRequest,
    HealthCheckResponse,
    PreviewPortRequest,
    PreviewResponse,
    PtyCreateRequest,
    PtyInputRequest,
    PtyOutputResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionExecRequest,
    SessionExecResponse,
)
from sandcastle.orchestrator.models.build import TechStack
from sandcastle.orchestrator.models.execution import (
    CodeRunParams,
    CodeRunResult,
    CommandResult,
    DevServerResult,
    PreviewLink,
    PtySessionResult,
    PtyStatus,
    SessionInfo,
)
from sandcastle.orchestrator.routers.errors import http_errors

router = APIRouter(prefix="/execution", tags=["execution"])


def _preview(link: PreviewLink | None, port: int | None = None) -> PreviewResponse:
    if link is None:
        return PreviewResponse(port=port)
    return PreviewResponse(url=link.url, token=link.token, port=port)


# -- One-shot ----------------------------------------------------------------


@router.post("/{workspace_id}/command", response_model=CommandResult)
async def execute_command(workspace_id: str, body: CommandRequest, execution: Execution) -> CommandResult:
    with http_errors():
        return await execution.execute_command(workspace_id, body.command, cwd=body.cwd, timeout=body.timeout)


@router.post("/{workspace_id}/code", response_model=CodeRunResult)
async def code_run(workspace_id: str, body: CodeRunRequest, execution: Execution) -> CodeRunResult:
    params = CodeRunParams(argv=body.argv, env=body.env)
    with http_errors():
        return await execution.code_run(workspace_id, body.code, params=params, timeout=body.timeout)


@router.get("/{workspace_id}/tech-stack", response_model=TechStack)
async def detect_tech_stack(workspace_id: str, execution: Execution) -> TechStack:
    with http_errors():
        return await execution.detect_tech_stack(workspace_id)


# -- PTY ---------------------------------------------------------------------


@router.post("/{workspace_id}/pty/create", response_model=PtySessionResult, status_code=status.HTTP_201_CREATED)
async def create_pty_session(workspace_id: str, body: PtyCreateRequest, execution: Execution) -> PtySessionResult:
    with http_errors():
        return await execution.create_pty_session(
            workspace_id,
            body.command,
            cols=body.cols,
            rows=body.rows,
            capture_output=body.capture_output,
        )


@router.get("/{workspace_id}/pty/list", response_model=list[str])
async def list_pty_sessions(workspace_id: str, execution: Execution) -> list[str]:
    return execution.list_pty_sessions(workspace_id)


@router.post("/pty/{session_id}/input", status_code=status.HTTP_204_NO_CONTENT)
async def send_pty_input(session_id: str, body: PtyInputRequest, execution: Execution) -> None:
    with http_errors():
        await execution.send_pty_input(session_id, body.data)


@router.get("/pty/{session_id}/status", response_model=PtyStatus)
async def get_pty_status(session_id: str, execution: Execution) -> PtyStatus:
    return execution.get_pty_status(session_id)


@router.get("/pty/{session_id}/output", response_model=PtyOutputResponse)
async def get_pty_output(session_id: str, execution: Execution) -> PtyOutputResponse:
    with http_errors():
        return PtyOutputResponse(session_id=session_id, output=execution.get_pty_output(session_id))


@router.post("/pty/{session_id}/kill")
async def kill_pty_session(session_id: str, execution: Execution) -> dict[str, bool]:
    return {"killed": await execution.kill_pty_session(session_id)}


# -- Sessions ----------------------------------------------------------------


@router.post(
    "/{workspace_id}/sessions/create",
    response_model=SessionCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(workspace_id: str, body: SessionCreateRequest, execution: Execution) -> SessionCreateResponse:
    with http_errors():
        session_id = await execution.create_session(workspace_id, body.session_id)
    return SessionCreateResponse(session_id=session_id)


@router.get("/{workspace_id}/sessions/list", response_model=list[SessionInfo])
async def list_sessions(workspace_id: str, execution: Execution) -> list[SessionInfo]:
    with http_errors():
        return await execution.list_sessions(workspace_id)


@router.get("/{workspace_id}/sessions/{session_id}/get", response_model=SessionInfo)
async def get_session(workspace_id: str, session_id: str, execution: Execution) -> SessionInfo:
    with http_errors():
        info = await execution.get_session(workspace_id, session_id)
    if info is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_id}' not found.")
    return info


@router.post("/{workspace_id}/sessions/{session_id}/exec", response_model=SessionExecResponse)
async def session_exec(
    workspace_id: str,
    session_id: str,
    body: SessionExecRequest,
    execution: Execution,
) -> SessionExecResponse:
    with http_errors():
        command_id = await execution.session_exec(workspace_id, session_id, body.command)
    return SessionExecResponse(command_id=command_id)


@router.post("/{workspace_id}/sessions/{session_id}/delete", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(workspace_id: str, session_id: str, execution: Execution) -> None:
    await execution.delete_session(workspace_id, session_id)


# -- Dev server --------------------------------------------------------------


@router.post("/{workspace_id}/dev-server/start", response_model=DevServerResult)
async def start_dev_server(workspace_id: str, body: DevServerRequest, launcher: DevServers) -> DevServerResult:
    with http_errors():
        return await launcher.start_dev_server(workspace_id, body.command)


@router.post("/{workspace_id}/dev-server/restart", response_model=DevServerResult | None)
async def restart_dev_server(
    workspace_id: str,
    body: DevServerRestartRequest,
    launcher: DevServers,
) -> DevServerResult | None:
    """Kill running dev servers; start ``command`` afterwards when given."""
    with http_errors():
        return await launcher.restart_dev_server(workspace_id, body.command)


# -- Preview -----------------------------------------------------------------


@router.get("/{workspace_id}/preview", response_model=PreviewResponse)
async def get_preview_url(
    workspace_id: str,
    previews: Previews,
    port: int | None = Query(None, ge=1, le=65535, description="Preferred port; discovered when omitted."),
) -> PreviewResponse:
    """Preview link for the workspace; ``url`` is null while nothing is listening."""
    with http_errors():
        link = await previews.get_preview_url(workspace_id, port)
    return _preview(link, port)


@router.post("/{workspace_id}/preview/port", status_code=status.HTTP_204_NO_CONTENT)
async def set_preview_port(workspace_id: str, body: PreviewPortRequest, previews: Previews) -> None:
    with http_errors():
        await previews.set_preview_port(workspace_id, body.port)


@router.get("/{workspace_id}/terminal-url", response_model=PreviewResponse)
async def get_terminal_url(workspace_id: str, previews: Previews) -> PreviewResponse:
    with http_errors():
        link = await previews.get_terminal_url(workspace_id)
    return _preview(link)


@router.post("/preview/health", response_model=HealthCheckResponse)
async def health_check_preview_url(body: HealthCheckRequest, previews: Previews) -> HealthCheckResponse:
    healthy = await previews.health_check_preview_url(body.url, max_attempts=body.max_attempts)
    return HealthCheckResponse(url=body.url, healthy=healthy)
