"""Command, code, PTY and session execution against a running workspace.

Every operation looks up the workspace first and refuses to touch the
provider unless it is ``running`` with a sandbox handle.  One-shot
commands report failure through ``exit_code``; only infrastructure
problems raise.

Two kinds of long-lived channels are tracked in the injected
``SessionRegistry``:

- PTY entries: live terminals this process opened and can write to.
- Provider session entries: detachable sessions created on the sandbox.

``session_exec`` dispatches on which of those it finds (see there).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from sandcastle.orchestrator.errors import ConfigurationError, NotFoundError, ValidationError
from sandcastle.orchestrator.execution.techstack import (
    MANIFEST_FILES,
    PACKAGE_JSON,
    REQUIREMENTS_TXT,
    UNKNOWN_STACK,
    detect_from_manifests,
)
from sandcastle.orchestrator.models.enums import LogLevel, SessionKind, WorkspaceStatus
from sandcastle.orchestrator.models.execution import (
    DEFAULT_COLS,
    DEFAULT_ROWS,
    CodeRunParams,
    CodeRunResult,
    CommandResult,
    PtySessionResult,
    PtyStatus,
    SessionInfo,
)
from sandcastle.orchestrator.registry import ProviderSessionEntry, PtyEntry
from sandcastle.orchestrator.resilience import DetachedTasks, best_effort, with_timeout
from sandcastle.orchestrator.settings import get_settings

if TYPE_CHECKING:
    from sandcastle.orchestrator.models.build import TechStack
    from sandcastle.orchestrator.models.workspace import Workspace
    from sandcastle.orchestrator.provider.base import OutputCallback, SandboxProvider
    from sandcastle.orchestrator.registry import SessionRegistry
    from sandcastle.orchestrator.settings import SandcastleSettings
    from sandcastle.orchestrator.store.base import Repository

logger = logging.getLogger(__name__)

DISPOSABLE_PTY_GRACE = 1.0
"""Seconds a disposable exec PTY lives after its command was sent."""


def _millis() -> int:
    return int(time.time() * 1000)


def _decode(data: bytes | str) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


class ExecutionService:
    """Runs work inside workspace sandboxes on behalf of callers and the build pipeline."""

    def __init__(
        self,
        repository: Repository,
        provider: SandboxProvider | None,
        registry: SessionRegistry,
        settings: SandcastleSettings | None = None,
    ) -> None:
        self._repo = repository
        self._provider = provider
        self._registry = registry
        self._settings = settings or get_settings()
        self._tasks = DetachedTasks("execution")

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def provider_configured(self) -> bool:
        return self._provider is not None

    # -- Guards ----------------------------------------------------------------

    async def require_running(self, workspace_id: str) -> Workspace:
        """Return the workspace if it can accept work, else raise."""
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None or workspace.status == WorkspaceStatus.DELETED:
            raise NotFoundError(workspace_id)
        if not workspace.is_running:
            msg = "Workspace is not running"
            raise ValidationError(msg)
        return workspace

    def require_provider(self) -> SandboxProvider:
        if self._provider is None:
            msg = "Sandbox provider API key not configured."
            raise ConfigurationError(msg)
        return self._provider

    async def log(self, workspace_id: str, level: LogLevel, message: str) -> None:
        async with best_effort("workspace log write"):
            await self._repo.add_workspace_log(workspace_id, level, message)

    # -- One-shot --------------------------------------------------------------

    async def execute_command(
        self,
        workspace_id: str,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *command* to completion.  Non-zero exit is returned, not raised."""
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        logger.debug("Executing in workspace %s: %s", workspace_id, command)
        result = await provider.execute_command(workspace.sandbox_id, command, cwd=cwd, timeout=timeout)
        if not result.ok:
            logger.debug("Command exited %s in workspace %s: %s", result.exit_code, workspace_id, command)
        return result

    async def code_run(
        self,
        workspace_id: str,
        code: str,
        params: CodeRunParams | None = None,
        timeout: float | None = None,
    ) -> CodeRunResult:
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        return await provider.code_run(workspace.sandbox_id, code, params=params, timeout=timeout)

    # -- PTY -------------------------------------------------------------------

    async def open_pty(
        self,
        workspace: Workspace,
        session_id: str,
        *,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        capture_output: bool = False,
        on_text: Callable[[str], None] | None = None,
    ) -> PtyEntry:
        """Open a PTY, wait for the handshake and register it.

        *on_text* receives every decoded output chunk; it runs on whatever
        thread the provider delivers data on and must not block.  A PTY that
        fails its handshake is killed (best-effort) and never registered.
        """
        provider = self.require_provider()
        registry = self._registry

        def on_data(data: bytes) -> None:
            text = _decode(data)
            registry.append_output(session_id, text)
            if on_text is not None:
                on_text(text)

        connect_timeout = self._settings.pty_connect_timeout
        handle = await with_timeout(
            provider.create_pty(workspace.sandbox_id, session_id, on_data, cols=cols, rows=rows),
            connect_timeout,
            "PTY creation",
        )
        entry = PtyEntry(
            session_id=session_id,
            workspace_id=workspace.workspace_id,
            handle=handle,
            capture_output=capture_output,
        )
        registry.register(entry)
        try:
            await with_timeout(handle.wait_for_connection(connect_timeout), connect_timeout, "PTY handshake")
        except Exception:
            registry.unregister(session_id)
            async with best_effort(f"kill of unconnected PTY {session_id}"):
                await handle.kill()
            raise
        return entry

    async def send_to_pty(self, entry: PtyEntry, data: str) -> None:
        await with_timeout(entry.handle.send_input(data), self._settings.pty_input_timeout, "PTY input")

    async def create_pty_session(
        self,
        workspace_id: str,
        command: str | None = None,
        *,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        capture_output: bool = False,
    ) -> PtySessionResult:
        """Open a terminal, optionally feeding it an initial *command*."""
        workspace = await self.require_running(workspace_id)
        session_id = f"pty-{workspace_id}-{_millis()}"
        entry = await self.open_pty(workspace, session_id, cols=cols, rows=rows, capture_output=capture_output)
        if command:
            await self.send_to_pty(entry, f"{command}\n")

        logger.info("PTY session %s opened for workspace %s", session_id, workspace_id)
        await self.log(workspace_id, LogLevel.INFO, f"Created PTY session: {session_id}")
        return PtySessionResult(session_id=session_id, output=entry.captured if capture_output else None)

    async def send_pty_input(self, session_id: str, data: str) -> None:
        entry = self._registry.get_pty(session_id)
        if entry is None:
            msg = f"PTY session {session_id} not found"
            raise NotFoundError(msg)
        if not entry.handle.is_connected():
            self._registry.unregister(session_id)
            msg = f"PTY session {session_id} is not connected"
            raise ValidationError(msg)
        await self.send_to_pty(entry, data)

    def get_pty_status(self, session_id: str) -> PtyStatus:
        """Report a PTY's state.  A PTY found disconnected is forgotten after this report."""
        entry = self._registry.get_pty(session_id)
        if entry is None:
            return PtyStatus(exists=False)
        connected = entry.handle.is_connected()
        if not connected:
            self._registry.unregister(session_id)
            logger.info("PTY session %s disconnected (exit code %s)", session_id, entry.handle.exit_code)
        return PtyStatus(
            exists=connected,
            connected=connected,
            exit_code=entry.handle.exit_code,
            error=entry.handle.error,
        )

    def get_pty_output(self, session_id: str) -> str:
        entry = self._registry.get_pty(session_id)
        if entry is None:
            msg = f"PTY session {session_id} not found"
            raise NotFoundError(msg)
        return entry.captured

    async def kill_pty_session(self, session_id: str) -> bool:
        """Kill and forget a PTY.  The entry is removed even if the kill fails.

        Returns ``False`` if no such PTY was registered.
        """
        entry = self._registry.unregister(session_id)
        if not isinstance(entry, PtyEntry):
            return False
        async with best_effort(f"kill of PTY {session_id}"):
            await entry.handle.kill()
        logger.info("PTY session %s killed", session_id)
        return True

    def list_pty_sessions(self, workspace_id: str) -> list[str]:
        self._registry.prune_disconnected(workspace_id)
        return [entry.session_id for entry in self._registry.ptys_for_workspace(workspace_id)]

    async def _kill_later(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.kill_pty_session(session_id)

    # -- Detachable sessions ---------------------------------------------------

    async def create_session(self, workspace_id: str, session_id: str | None = None) -> str:
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        session_id = session_id or f"session-{workspace_id}-{_millis()}"
        await provider.create_session(workspace.sandbox_id, session_id)
        self._registry.register(
            ProviderSessionEntry(session_id=session_id, workspace_id=workspace_id, sandbox_id=workspace.sandbox_id),
        )
        await self.log(workspace_id, LogLevel.INFO, f"Created session: {session_id}")
        return session_id

    async def session_exec(self, workspace_id: str, session_id: str, command: str) -> str | None:
        """Run *command* in an existing session.

        Dispatch:

        - a PTY registered under *session_id*: the command is typed into it;
        - a provider command session: run asynchronously, returns the command id;
        - a provider PTY-only session: the command runs in a disposable PTY
          that is killed after a short grace period.

        Returns the provider command id when there is one.
        """
        pty = self._registry.get_pty(session_id)
        if pty is not None:
            await self.send_to_pty(pty, f"{command}\n")
            await self.log(workspace_id, LogLevel.INFO, f"Sent command to PTY session {session_id}: {command}")
            return None

        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        info = await provider.get_session(workspace.sandbox_id, session_id)
        if info is None:
            msg = f"Session {session_id} not found"
            raise NotFoundError(msg)

        if info.kind == SessionKind.COMMAND:
            command_id = await provider.execute_session_command(workspace.sandbox_id, session_id, command, run_async=True)
            await self.log(workspace_id, LogLevel.INFO, f"Executed in session {session_id}: {command}")
            return command_id

        exec_id = f"exec-{session_id}-{_millis()}"
        logger.warning("Session %s accepts no commands, running via disposable PTY %s", session_id, exec_id)
        entry = await self.open_pty(workspace, exec_id)
        try:
            await self.send_to_pty(entry, f"{command}\n")
        finally:
            self._tasks.spawn(self._kill_later(exec_id, DISPOSABLE_PTY_GRACE), name=f"kill:{exec_id}")
        return None

    async def run_session_command(
        self,
        workspace_id: str,
        session_id: str,
        command: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
    ) -> CommandResult:
        """Run *command* in a session, streaming output to the callbacks until it exits.

        The callbacks are invoked synchronously per chunk and must not block.
        A missing exit code is reported as 1.
        """
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        sandbox_id = workspace.sandbox_id

        stdout: list[str] = []
        stderr: list[str] = []

        def _stdout(chunk: str) -> None:
            stdout.append(chunk)
            on_stdout(chunk)

        def _stderr(chunk: str) -> None:
            stderr.append(chunk)
            on_stderr(chunk)

        command_id = await provider.execute_session_command(sandbox_id, session_id, command, run_async=True)
        await provider.stream_session_command_logs(sandbox_id, session_id, command_id, _stdout, _stderr)
        exit_code = await provider.get_session_command_exit_code(sandbox_id, session_id, command_id)
        return CommandResult(
            stdout="".join(stdout),
            stderr="".join(stderr),
            exit_code=exit_code if exit_code is not None else 1,
        )

    async def get_session(self, workspace_id: str, session_id: str) -> SessionInfo | None:
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        return await provider.get_session(workspace.sandbox_id, session_id)

    async def delete_session(self, workspace_id: str, session_id: str) -> None:
        """Forget the session locally and delete it on the provider (best-effort)."""
        self._registry.unregister(session_id)
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None or workspace.sandbox_id is None or self._provider is None:
            return
        provider = self._provider
        async with best_effort(f"delete of session {session_id}"):
            await provider.delete_session(workspace.sandbox_id, session_id)

    async def list_sessions(self, workspace_id: str) -> list[SessionInfo]:
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        try:
            return await provider.list_sessions(workspace.sandbox_id)
        except Exception as exc:
            logger.warning("Listing sessions failed for workspace %s: %s", workspace_id, exc)
            return []

    # -- Files -----------------------------------------------------------------

    async def read_file(self, workspace_id: str, path: str) -> str | None:
        """Return the file as text, or ``None`` if it cannot be read."""
        workspace = await self.require_running(workspace_id)
        provider = self.require_provider()
        try:
            content = await provider.read_file(workspace.sandbox_id, path)
        except Exception as exc:
            logger.debug("Could not read %s in workspace %s: %s", path, workspace_id, exc)
            return None
        return _decode(content)

    async def detect_tech_stack(self, workspace_id: str) -> TechStack:
        """Detect the project's stack from manifest files in the sandbox working directory."""
        listing = await self.execute_command(workspace_id, "ls -1A")
        if not listing.ok:
            logger.warning("Could not list files in workspace %s, stack unknown", workspace_id)
            return UNKNOWN_STACK.model_copy()

        names = {line.strip() for line in listing.stdout.splitlines()}
        present = names.intersection(MANIFEST_FILES)
        contents: dict[str, str] = {}
        for name in (PACKAGE_JSON, REQUIREMENTS_TXT):
            if name in present:
                text = await self.read_file(workspace_id, name)
                if text is not None:
                    contents[name] = text

        stack = detect_from_manifests(present, contents)
        logger.info(
            "Detected stack for workspace %s: %s / %s / %s",
            workspace_id,
            stack.language,
            stack.framework,
            stack.package_manager,
        )
        return stack

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        await self._tasks.cancel_all()
        closed = await self._registry.close_all()
        if closed:
            logger.info("Closed %d PTY sessions", closed)
