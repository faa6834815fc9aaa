"""Dev-server startup with port heuristics.

The launcher prefers an interactive PTY so that output can be inspected
for the bound port and for errors.  If the PTY path fails for any reason
the server is started detached with ``nohup`` and the port guessed from
the command is reported instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING

from sandcastle.orchestrator.errors import ValidationError
from sandcastle.orchestrator.execution.classify import detect_error_severity, is_error_output
from sandcastle.orchestrator.models.enums import LogLevel
from sandcastle.orchestrator.models.execution import DevServerResult
from sandcastle.orchestrator.resilience import best_effort

if TYPE_CHECKING:
    from sandcastle.orchestrator.collaborators import ContextForwarder
    from sandcastle.orchestrator.execution.commands import ExecutionService
    from sandcastle.orchestrator.registry import PtyEntry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
STARTUP_WAIT = 2.0
FALLBACK_LOG = "/tmp/dev-server.log"  # noqa: S108

_EXPLICIT_PORT = re.compile(r"--port[=\s]+(\d+)|port[=\s]+(\d+)|-p\s+(\d+)")

# Substring in the command -> the tool's default port.
_TOOL_PORTS = (
    ("vite", 5173),
    ("vue-cli-service", 8080),
    ("ng serve", 4200),
)

_OUTPUT_PORT_PATTERNS = (
    re.compile(r"port\s*[:\s]+(\d+)", re.IGNORECASE),
    re.compile(r"localhost:(\d+)", re.IGNORECASE),
    re.compile(r"0\.0\.0\.0:(\d+)", re.IGNORECASE),
    re.compile(r"127\.0\.0\.1:(\d+)", re.IGNORECASE),
    re.compile(r"http://[^:]+:(\d+)", re.IGNORECASE),
)


def _valid_port(port: int) -> bool:
    return 0 < port < 65536


def validate_command(command: str) -> None:
    """Reject command shapes we refuse to type into a shell.

    Raises ``ValidationError`` for a lone backslash (an escaped ``\\\\`` is
    fine), a leading ``cd``, or an odd number of double quotes.
    """
    if "\\" in command and "\\\\" not in command:
        msg = "Invalid command syntax: Invalid path separators"
        raise ValidationError(msg)
    if re.match(r"cd\s+", command):
        msg = "Invalid command syntax: cd not supported"
        raise ValidationError(msg)
    if command.count('"') % 2 != 0:
        msg = "Invalid command syntax: Unmatched quotes"
        raise ValidationError(msg)


def detect_port_from_command(command: str) -> int:
    """Guess the port a dev-server command will bind from flags or tool defaults."""
    cmd = command.lower()
    match = _EXPLICIT_PORT.search(cmd)
    if match:
        port = int(next(group for group in match.groups() if group))
        if _valid_port(port):
            return port
    for tool, port in _TOOL_PORTS:
        if tool in cmd:
            return port
    return DEFAULT_PORT


def parse_port_from_output(output: str) -> int | None:
    """Find the bound port in server output, or ``None``."""
    for pattern in _OUTPUT_PORT_PATTERNS:
        match = pattern.search(output)
        if match:
            port = int(match.group(1))
            if _valid_port(port):
                return port
    return None


class DevServerLauncher:
    """Starts and restarts development servers inside a workspace."""

    def __init__(
        self,
        execution: ExecutionService,
        forwarder: ContextForwarder,
        startup_wait: float = STARTUP_WAIT,
    ) -> None:
        self._execution = execution
        self._forwarder = forwarder
        self._startup_wait = startup_wait

    async def _port_available(self, workspace_id: str, port: int) -> bool:
        try:
            result = await self._execution.execute_command(workspace_id, f'lsof -i :{port} 2>&1 || echo "FREE"')
        except Exception as exc:
            logger.debug("Port check failed for workspace %s: %s", workspace_id, exc)
            return True
        return "FREE" in result.stdout

    def _forward_error(self, workspace_id: str, project_id: str, text: str) -> None:
        self._forwarder.forward(
            project_id,
            "error",
            f"devserver_{workspace_id}_{int(time.time() * 1000)}",
            text,
            {
                "workspaceId": workspace_id,
                "source": "dev_server",
                "autoForwarded": True,
                "severity": detect_error_severity(text),
            },
        )

    async def start_dev_server(self, workspace_id: str, command: str) -> DevServerResult:
        workspace = await self._execution.require_running(workspace_id)
        validate_command(command)
        expected_port = detect_port_from_command(command)

        if not await self._port_available(workspace_id, expected_port):
            await self._execution.log(workspace_id, LogLevel.WARN, f"Port {expected_port} is already in use.")

        def on_text(text: str) -> None:
            if is_error_output(text):
                self._forward_error(workspace_id, workspace.project_id, text)

        session_id = f"dev-server-{workspace_id}-{int(time.time() * 1000)}"
        entry: PtyEntry | None = None
        try:
            entry = await self._execution.open_pty(workspace, session_id, capture_output=True, on_text=on_text)
            await self._execution.send_to_pty(entry, f"{command}\n")
            await asyncio.sleep(self._startup_wait)
        except Exception as exc:
            logger.warning("PTY start of dev server failed in workspace %s, using nohup: %s", workspace_id, exc)
            if entry is not None:
                await self._execution.kill_pty_session(entry.session_id)
            return await self._start_detached(workspace_id, command, expected_port)

        detected = parse_port_from_output(entry.captured) or expected_port
        # Only the startup output is needed; the server may run for hours.
        self._execution.registry.stop_capture(session_id)
        logger.info("Dev server started in workspace %s on port %d", workspace_id, detected)
        await self._execution.log(workspace_id, LogLevel.INFO, f"Dev server started: {command}")
        return DevServerResult(process_started=True, detected_port=detected, session_id=session_id)

    async def _start_detached(self, workspace_id: str, command: str, expected_port: int) -> DevServerResult:
        try:
            await self._execution.execute_command(workspace_id, f"nohup {command} > {FALLBACK_LOG} 2>&1 &")
        except Exception as exc:
            await self._execution.log(workspace_id, LogLevel.ERROR, f"Dev server start failed: {exc}")
            raise
        await self._execution.log(workspace_id, LogLevel.INFO, f"Dev server started (fallback): {command}")
        return DevServerResult(process_started=True, detected_port=expected_port, fallback=True)

    async def restart_dev_server(self, workspace_id: str, command: str | None = None) -> DevServerResult | None:
        """Kill running dev servers (and their PTYs), then start *command* if given."""
        for session_id in self._execution.list_pty_sessions(workspace_id):
            if session_id.startswith(f"dev-server-{workspace_id}-"):
                await self._execution.kill_pty_session(session_id)
        async with best_effort(f"dev server kill in workspace {workspace_id}"):
            await self._execution.execute_command(workspace_id, 'pkill -f "node" || true')
        if command is None:
            return None
        return await self.start_dev_server(workspace_id, command)
