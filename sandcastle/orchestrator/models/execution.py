"""Result types returned by the execution layer."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from sandcastle.orchestrator.models.enums import SessionKind

DEFAULT_COLS = 120
DEFAULT_ROWS = 30


class CommandResult(BaseModel):
    """Outcome of a one-shot or session command.  Non-zero exit is not an error."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CodeRunParams(BaseModel):
    argv: list[str] | None = None
    env: dict[str, str] | None = None


class CodeRunResult(BaseModel):
    stdout: str = ""
    exit_code: int = 0
    artifacts: dict[str, Any] | None = None
    """Provider-specific artifacts (charts, stdout split), passed through opaquely."""


class PreviewLink(BaseModel):
    url: str
    token: str | None = None


class PtySessionResult(BaseModel):
    session_id: str
    output: str | None = None
    """Output captured during the handshake when ``capture_output`` was requested."""


class PtyStatus(BaseModel):
    exists: bool
    connected: bool = False
    exit_code: int | None = None
    error: str | None = None


class SessionInfo(BaseModel):
    """A provider-side session as reported by the sandbox."""

    session_id: str
    kind: SessionKind = SessionKind.COMMAND
    commands: list[dict[str, Any]] = Field(default_factory=list)


class DevServerResult(BaseModel):
    process_started: bool
    detected_port: int
    session_id: str | None = None
    fallback: bool = False
    """True when the PTY path failed and the server was started with ``nohup``."""
