"""Daytona sandbox provider.

Wraps the async Daytona Python SDK behind ``SandboxProvider``.  Sandbox
objects are cached by id so repeated calls against the same workspace do
not re-fetch it; the cache entry is dropped on delete or when the SDK
reports the sandbox missing.

Install: pip install daytona
Docs:    https://www.daytona.io/docs/en/python-sdk/
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sandcastle.orchestrator.errors import ProviderError, SandboxNotFoundError
from sandcastle.orchestrator.models.enums import SessionKind
from sandcastle.orchestrator.models.execution import (
    CodeRunParams,
    CodeRunResult,
    CommandResult,
    PreviewLink,
    SessionInfo,
)

if TYPE_CHECKING:
    from sandcastle.orchestrator.provider.base import DataCallback, OutputCallback, PtyHandle, SandboxSpec
    from sandcastle.orchestrator.settings import SandcastleSettings

logger = logging.getLogger(__name__)

_INSTALL_HINT = (
    "Daytona SDK not found. Install it with:\n"
    "\n"
    "    pip install daytona\n"
    "\n"
    "Then set SANDCASTLE_DAYTONA_API_KEY and (optionally) SANDCASTLE_DAYTONA_API_URL."
)

DEFAULT_LANGUAGE = "typescript"

# Template / language names -> languages the provider has snapshots for.
# Toolchains without a snapshot run on the typescript image and are
# installed from the terminal.
_LANGUAGE_MAP = {
    "typescript": "typescript",
    "ts": "typescript",
    "nextjs": "typescript",
    "next": "typescript",
    "react": "typescript",
    "solid": "typescript",
    "solidjs": "typescript",
    "vue": "typescript",
    "angular": "typescript",
    "svelte": "typescript",
    "node": "typescript",
    "nodejs": "typescript",
    "javascript": "javascript",
    "js": "javascript",
    "python": "python",
    "py": "python",
    "python3": "python",
    "django": "python",
    "flask": "python",
    "fastapi": "python",
}


def normalize_language(language: str | None) -> str:
    """Map a template or language name onto a supported snapshot language."""
    if not language:
        return DEFAULT_LANGUAGE
    return _LANGUAGE_MAP.get(language.strip().lower(), DEFAULT_LANGUAGE)


def _is_not_found(exc: Exception) -> bool:
    if getattr(exc, "status_code", None) == 404:
        return True
    return "not found" in str(exc).lower()


def _state_value(state: Any) -> str:
    value = getattr(state, "value", state)
    return str(value or "").lower()


class DaytonaPtyHandle:
    """Adapts the SDK's async PTY handle to ``PtyHandle``."""

    def __init__(self, handle: Any) -> None:
        self._handle = handle

    async def wait_for_connection(self, timeout: float | None = None) -> None:
        if timeout is None:
            await self._handle.wait_for_connection()
        else:
            await self._handle.wait_for_connection(timeout=timeout)

    async def send_input(self, data: str) -> None:
        await self._handle.send_input(data)

    async def kill(self) -> None:
        await self._handle.kill()

    async def disconnect(self) -> None:
        await self._handle.disconnect()

    def is_connected(self) -> bool:
        return bool(self._handle.is_connected())

    @property
    def exit_code(self) -> int | None:
        return getattr(self._handle, "exit_code", None)

    @property
    def error(self) -> str | None:
        return getattr(self._handle, "error", None)


class DaytonaProvider:
    """``SandboxProvider`` backed by ``daytona.AsyncDaytona``."""

    def __init__(self, client: Any) -> None:
        self._client = client
        self._sandboxes: dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: SandcastleSettings) -> DaytonaProvider | None:
        """Build a provider from settings, or return ``None`` without a credential."""
        api_key = settings.resolve_api_key()
        if api_key is None:
            return None
        try:
            from daytona import AsyncDaytona, DaytonaConfig
        except ImportError:
            raise ImportError(_INSTALL_HINT) from None

        config = DaytonaConfig(api_key=api_key, api_url=settings.daytona_api_url, target=settings.daytona_target)
        return cls(AsyncDaytona(config))

    # -- Internal --------------------------------------------------------------

    async def _get_sandbox(self, sandbox_id: str) -> Any:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is not None:
            return sandbox
        try:
            sandbox = await self._client.get(sandbox_id)
        except Exception as exc:
            if _is_not_found(exc):
                raise SandboxNotFoundError(sandbox_id) from exc
            msg = f"Failed to load sandbox {sandbox_id}: {exc}"
            raise ProviderError(msg) from exc
        self._sandboxes[sandbox_id] = sandbox
        return sandbox

    # -- Lifecycle -------------------------------------------------------------

    async def create(self, spec: SandboxSpec, timeout: float | None = None) -> str:
        from daytona import CreateSandboxFromImageParams, CreateSandboxFromSnapshotParams, Resources

        common: dict[str, Any] = {
            "public": True,
            "labels": spec.labels,
            "auto_stop_interval": spec.auto_stop_interval,
            "auto_archive_interval": spec.auto_archive_interval,
            "ephemeral": spec.ephemeral,
            "env_vars": spec.env_vars or None,
        }
        if spec.image:
            resources = None
            if spec.resources is not None:
                resources = Resources(**spec.resources.model_dump(exclude_none=True))
            params = CreateSandboxFromImageParams(image=spec.image, resources=resources, **common)
        else:
            params = CreateSandboxFromSnapshotParams(language=normalize_language(spec.language), **common)

        try:
            sandbox = await self._client.create(params, timeout=timeout or 0)
        except Exception as exc:
            msg = f"Sandbox creation failed: {exc}"
            raise ProviderError(msg) from exc

        self._sandboxes[sandbox.id] = sandbox
        logger.info("Daytona sandbox created: %s", sandbox.id)
        return sandbox.id

    async def get_state(self, sandbox_id: str) -> str:
        # Always re-fetch: the cached object's state is a snapshot.
        self._sandboxes.pop(sandbox_id, None)
        sandbox = await self._get_sandbox(sandbox_id)
        return _state_value(getattr(sandbox, "state", None))

    async def start(self, sandbox_id: str, timeout: float | None = None) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await self._client.start(sandbox, timeout=timeout or 60)

    async def stop(self, sandbox_id: str, timeout: float | None = None) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await self._client.stop(sandbox, timeout=timeout or 60)

    async def delete(self, sandbox_id: str) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await self._client.delete(sandbox)
        self._sandboxes.pop(sandbox_id, None)

    # -- One-shot execution ----------------------------------------------------

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        sandbox = await self._get_sandbox(sandbox_id)
        response = await sandbox.process.exec(command, cwd=cwd, timeout=int(timeout) if timeout else None)
        artifacts = getattr(response, "artifacts", None)
        stdout = getattr(response, "result", "") or getattr(artifacts, "stdout", "") or ""
        exit_code = getattr(response, "exit_code", None)
        return CommandResult(stdout=stdout, stderr="", exit_code=exit_code if exit_code is not None else -1)

    async def code_run(
        self,
        sandbox_id: str,
        code: str,
        params: CodeRunParams | None = None,
        timeout: float | None = None,
    ) -> CodeRunResult:
        from daytona import CodeRunParams as DaytonaCodeRunParams

        sandbox = await self._get_sandbox(sandbox_id)
        sdk_params = DaytonaCodeRunParams(argv=params.argv, env=params.env) if params is not None else None
        response = await sandbox.process.code_run(code, params=sdk_params, timeout=int(timeout) if timeout else None)

        artifacts = getattr(response, "artifacts", None)
        if artifacts is not None and hasattr(artifacts, "model_dump"):
            artifacts = artifacts.model_dump()
        exit_code = getattr(response, "exit_code", None)
        return CodeRunResult(
            stdout=getattr(response, "result", "") or "",
            exit_code=exit_code if exit_code is not None else -1,
            artifacts=artifacts if isinstance(artifacts, dict) else None,
        )

    # -- Sessions --------------------------------------------------------------

    async def create_session(self, sandbox_id: str, session_id: str) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await sandbox.process.create_session(session_id)

    async def get_session(self, sandbox_id: str, session_id: str) -> SessionInfo | None:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            session = await sandbox.process.get_session(session_id)
        except Exception as exc:
            if not _is_not_found(exc):
                raise
        else:
            commands = [_dump(command) for command in getattr(session, "commands", None) or []]
            return SessionInfo(session_id=session_id, kind=SessionKind.COMMAND, commands=commands)

        # Not a command session; it may still exist as an interactive terminal.
        try:
            await sandbox.process.get_pty_session_info(session_id)
        except Exception as exc:
            if _is_not_found(exc):
                return None
            raise
        return SessionInfo(session_id=session_id, kind=SessionKind.PTY_ONLY)

    async def list_sessions(self, sandbox_id: str) -> list[SessionInfo]:
        sandbox = await self._get_sandbox(sandbox_id)
        sessions = await sandbox.process.list_sessions()
        return [
            SessionInfo(
                session_id=session.session_id,
                commands=[_dump(command) for command in getattr(session, "commands", None) or []],
            )
            for session in sessions
        ]

    async def delete_session(self, sandbox_id: str, session_id: str) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await sandbox.process.delete_session(session_id)

    async def execute_session_command(
        self,
        sandbox_id: str,
        session_id: str,
        command: str,
        run_async: bool = True,
    ) -> str:
        from daytona import SessionExecuteRequest

        sandbox = await self._get_sandbox(sandbox_id)
        response = await sandbox.process.execute_session_command(
            session_id,
            SessionExecuteRequest(command=command, run_async=run_async),
        )
        return response.cmd_id

    async def stream_session_command_logs(
        self,
        sandbox_id: str,
        session_id: str,
        command_id: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
    ) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await sandbox.process.get_session_command_logs_async(session_id, command_id, on_stdout, on_stderr)

    async def get_session_command_exit_code(self, sandbox_id: str, session_id: str, command_id: str) -> int | None:
        sandbox = await self._get_sandbox(sandbox_id)
        command = await sandbox.process.get_session_command(session_id, command_id)
        return getattr(command, "exit_code", None)

    # -- PTY -------------------------------------------------------------------

    async def create_pty(
        self,
        sandbox_id: str,
        session_id: str,
        on_data: DataCallback,
        cols: int = 120,
        rows: int = 30,
    ) -> PtyHandle:
        from daytona import PtySize

        sandbox = await self._get_sandbox(sandbox_id)
        handle = await sandbox.process.create_pty_session(
            id=session_id,
            on_data=on_data,
            pty_size=PtySize(rows=rows, cols=cols),
        )
        return DaytonaPtyHandle(handle)

    # -- Preview / files -------------------------------------------------------

    async def get_preview_link(self, sandbox_id: str, port: int) -> PreviewLink:
        sandbox = await self._get_sandbox(sandbox_id)
        link = await sandbox.get_preview_link(port)
        return PreviewLink(url=link.url, token=getattr(link, "token", None))

    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        sandbox = await self._get_sandbox(sandbox_id)
        return await sandbox.fs.download_file(path)

    async def upload_file(self, sandbox_id: str, path: str, content: bytes) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        await sandbox.fs.upload_file(content, path)

    async def close(self) -> None:
        self._sandboxes.clear()
        await self._client.close()


def _dump(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return {"value": str(obj)}
