"""Sandbox provider interface.

The orchestrator never talks to a vendor SDK directly; it calls this
protocol with the opaque ``sandbox_id`` recorded on the workspace.  All
methods are async and may raise ``ProviderError`` (or
``SandboxNotFoundError`` when the handle no longer exists).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from sandcastle.orchestrator.models.execution import (
    CodeRunParams,
    CodeRunResult,
    CommandResult,
    PreviewLink,
    SessionInfo,
)
from sandcastle.orchestrator.models.workspace import ResourceSpec

OutputCallback = Callable[[str], None]
"""Synchronous sink for streamed output.  Must not block the event loop."""

DataCallback = Callable[[bytes], None]


class SandboxSpec(BaseModel):
    """Everything the provider needs to create a sandbox."""

    language: str
    image: str | None = None
    """When set, create from this image; otherwise from the language snapshot."""

    resources: ResourceSpec | None = None
    env_vars: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    auto_stop_interval: int | None = None
    auto_archive_interval: int | None = None
    ephemeral: bool = False


@runtime_checkable
class PtyHandle(Protocol):
    """A live interactive terminal inside a sandbox."""

    async def wait_for_connection(self, timeout: float | None = None) -> None: ...

    async def send_input(self, data: str) -> None: ...

    async def kill(self) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    @property
    def exit_code(self) -> int | None: ...

    @property
    def error(self) -> str | None: ...


@runtime_checkable
class SandboxProvider(Protocol):
    """Async protocol over a remote sandbox vendor."""

    # -- Lifecycle -------------------------------------------------------------

    async def create(self, spec: SandboxSpec, timeout: float | None = None) -> str:
        """Create a sandbox and return its opaque handle."""
        ...

    async def get_state(self, sandbox_id: str) -> str:
        """Return the provider's raw state string, lowercased.

        Raises ``SandboxNotFoundError`` if the handle is unknown.
        """
        ...

    async def start(self, sandbox_id: str, timeout: float | None = None) -> None: ...

    async def stop(self, sandbox_id: str, timeout: float | None = None) -> None: ...

    async def delete(self, sandbox_id: str) -> None: ...

    # -- One-shot execution ----------------------------------------------------

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...

    async def code_run(
        self,
        sandbox_id: str,
        code: str,
        params: CodeRunParams | None = None,
        timeout: float | None = None,
    ) -> CodeRunResult: ...

    # -- Sessions --------------------------------------------------------------

    async def create_session(self, sandbox_id: str, session_id: str) -> None: ...

    async def get_session(self, sandbox_id: str, session_id: str) -> SessionInfo | None:
        """Return the session, or ``None`` if the sandbox has no such session."""
        ...

    async def list_sessions(self, sandbox_id: str) -> list[SessionInfo]: ...

    async def delete_session(self, sandbox_id: str, session_id: str) -> None: ...

    async def execute_session_command(
        self,
        sandbox_id: str,
        session_id: str,
        command: str,
        run_async: bool = True,
    ) -> str:
        """Start *command* inside a session and return its command id."""
        ...

    async def stream_session_command_logs(
        self,
        sandbox_id: str,
        session_id: str,
        command_id: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
    ) -> None:
        """Deliver output chunks to the callbacks until the command finishes."""
        ...

    async def get_session_command_exit_code(self, sandbox_id: str, session_id: str, command_id: str) -> int | None: ...

    # -- PTY -------------------------------------------------------------------

    async def create_pty(
        self,
        sandbox_id: str,
        session_id: str,
        on_data: DataCallback,
        cols: int = 120,
        rows: int = 30,
    ) -> PtyHandle: ...

    # -- Preview / files -------------------------------------------------------

    async def get_preview_link(self, sandbox_id: str, port: int) -> PreviewLink: ...

    async def read_file(self, sandbox_id: str, path: str) -> bytes: ...

    async def upload_file(self, sandbox_id: str, path: str, content: bytes) -> None: ...

    async def close(self) -> None: ...
