"""Preview URL discovery and health checking.

Resolution order when no port is requested explicitly:

1. the preview port recorded on the workspace (column, then metadata);
2. every port listening in the preview range, lowest first;
3. nothing -- ``None``.

A recorded port whose link cannot be produced falls through to the scan,
so a stale value never hides a server that is actually up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from sandcastle.orchestrator.models.enums import LogLevel

if TYPE_CHECKING:
    from sandcastle.orchestrator.execution.commands import ExecutionService
    from sandcastle.orchestrator.models.execution import PreviewLink
    from sandcastle.orchestrator.models.workspace import Workspace
    from sandcastle.orchestrator.store.base import Repository

logger = logging.getLogger(__name__)

PREVIEW_PORT_MIN = 3000
PREVIEW_PORT_MAX = 9999
TERMINAL_PORT = 22222

_LISTENING_PORTS_COMMAND = r"ss -tuln | grep LISTEN | grep -oP ':\K[0-9]+' | sort -n | uniq"


def parse_listening_ports(output: str) -> list[int]:
    """Parse one port per line, keeping those in the preview range."""
    ports: list[int] = []
    for line in output.splitlines():
        line = line.strip()
        if not line.isdigit():
            continue
        port = int(line)
        if PREVIEW_PORT_MIN <= port <= PREVIEW_PORT_MAX and port not in ports:
            ports.append(port)
    return ports


def recorded_preview_port(workspace: Workspace) -> int | None:
    if workspace.preview_port:
        return workspace.preview_port
    port = (workspace.metadata or {}).get("preview_port")
    try:
        return int(port) if port else None
    except (TypeError, ValueError):
        return None


class PreviewResolver:
    """Finds the externally reachable URL of a server running in a workspace."""

    def __init__(self, execution: ExecutionService, repository: Repository, http_client: httpx.AsyncClient) -> None:
        self._execution = execution
        self._repo = repository
        self._http = http_client

    async def set_preview_port(self, workspace_id: str, port: int) -> None:
        """Record the port an agent or user says the app is served on."""
        workspace = await self._execution.require_running(workspace_id)
        metadata = dict(workspace.metadata or {})
        metadata["preview_port"] = port
        await self._repo.update_workspace(workspace_id, preview_port=port, metadata=metadata)
        logger.info("Preview port for workspace %s set to %d", workspace_id, port)
        await self._execution.log(workspace_id, LogLevel.INFO, f"Preview port set to {port}")

    async def _link(self, workspace: Workspace, port: int) -> PreviewLink | None:
        provider = self._execution.require_provider()
        try:
            link = await provider.get_preview_link(workspace.sandbox_id, port)
        except Exception as exc:
            logger.debug("No preview link for port %d in workspace %s: %s", port, workspace.workspace_id, exc)
            return None
        return link if link.url else None

    async def _listening_ports(self, workspace_id: str) -> list[int]:
        try:
            result = await self._execution.execute_command(workspace_id, _LISTENING_PORTS_COMMAND)
        except Exception as exc:
            logger.warning("Port scan failed for workspace %s: %s", workspace_id, exc)
            return []
        if not result.ok:
            return []
        return parse_listening_ports(result.stdout)

    async def get_preview_url(self, workspace_id: str, port: int | None = None) -> PreviewLink | None:
        """Return the preview link, or ``None`` if nothing is reachable."""
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None or not workspace.is_running or not self._execution.provider_configured:
            return None

        if port is not None:
            link = await self._link(workspace, port)
            if link is not None:
                return link
            logger.info("Requested port %d not previewable in workspace %s, scanning", port, workspace_id)

        recorded = recorded_preview_port(workspace)
        if recorded is not None and recorded != port:
            link = await self._link(workspace, recorded)
            if link is not None:
                return link
            logger.info("Recorded preview port %d not previewable in workspace %s", recorded, workspace_id)

        listening = await self._listening_ports(workspace_id)
        for candidate in listening:
            if candidate in (port, recorded):
                continue
            link = await self._link(workspace, candidate)
            if link is not None:
                return link

        logger.warning("No preview URL for workspace %s (listening: %s)", workspace_id, listening or "none")
        return None

    async def get_sandbox_url(self, workspace_id: str) -> PreviewLink | None:
        return await self.get_preview_url(workspace_id)

    async def get_terminal_url(self, workspace_id: str) -> PreviewLink | None:
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None or not workspace.is_running or not self._execution.provider_configured:
            return None
        return await self._link(workspace, TERMINAL_PORT)

    async def health_check_preview_url(self, url: str, max_attempts: int = 5, delay: float = 1.0) -> bool:
        """Poll *url* until it answers with a status below 400."""
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._http.get(url)
            except httpx.HTTPError as exc:
                logger.debug("Health check attempt %d/%d failed for %s: %s", attempt, max_attempts, url, exc)
            else:
                if response.status_code < 400:
                    return True
            if attempt < max_attempts:
                await asyncio.sleep(delay)
        logger.warning("Health check failed after %d attempts for %s", max_attempts, url)
        return False
