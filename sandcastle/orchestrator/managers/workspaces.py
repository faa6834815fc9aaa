"""Workspace lifecycle manager -- owns the sandbox state machine.

    pending -> starting -> running <-> stopped
    any -> error
    any -> deleted (terminal)

The manager is the only writer of workspace status.  Provider calls are
wrapped in retry + timeout; on failure the workspace is marked ``error``
with the message and the exception is re-raised.  Reconciliation
(``sync_workspace_status``) persists only when the mapped status actually
changes, so calling it repeatedly is free.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from loguru import logger

from sandcastle.orchestrator.errors import ConfigurationError, NotFoundError, SandboxNotFoundError
from sandcastle.orchestrator.models.enums import LogLevel, WorkspaceStatus
from sandcastle.orchestrator.models.workspace import DEFAULT_LANGUAGE, Workspace, WorkspaceLogEntry, WorkspaceOptions
from sandcastle.orchestrator.provider.base import SandboxSpec
from sandcastle.orchestrator.resilience import best_effort, with_retry, with_timeout
from sandcastle.orchestrator.settings import get_settings

if TYPE_CHECKING:
    from sandcastle.orchestrator.collaborators import ProjectDirectory
    from sandcastle.orchestrator.provider.base import SandboxProvider
    from sandcastle.orchestrator.settings import SandcastleSettings
    from sandcastle.orchestrator.store.base import Repository

T = TypeVar("T")

MISSING_CREDENTIAL_MESSAGE = "Sandbox provider API key not configured."
SANDBOX_NOT_FOUND_MESSAGE = "sandbox not found"

# Defaults for workspaces provisioned on demand for a project.
PROJECT_AUTO_STOP_INTERVAL = 60
PROJECT_AUTO_ARCHIVE_INTERVAL = 24 * 60

_PROVIDER_STATES: dict[str, WorkspaceStatus] = {
    "pending": WorkspaceStatus.STARTING,
    "starting": WorkspaceStatus.STARTING,
    "creating": WorkspaceStatus.STARTING,
    "restoring": WorkspaceStatus.STARTING,
    "running": WorkspaceStatus.RUNNING,
    "active": WorkspaceStatus.RUNNING,
    "started": WorkspaceStatus.RUNNING,
    "stopped": WorkspaceStatus.STOPPED,
    "paused": WorkspaceStatus.STOPPED,
    "stopping": WorkspaceStatus.STOPPED,
    "error": WorkspaceStatus.ERROR,
    "failed": WorkspaceStatus.ERROR,
    "build_failed": WorkspaceStatus.ERROR,
    "archived": WorkspaceStatus.DELETED,
    "archiving": WorkspaceStatus.DELETED,
    "deleted": WorkspaceStatus.DELETED,
    "destroyed": WorkspaceStatus.DELETED,
    "destroying": WorkspaceStatus.DELETED,
}


def map_provider_state(state: str | None) -> WorkspaceStatus | None:
    """Translate a provider state string; ``None`` for vocabulary we do not know."""
    if not state:
        return None
    return _PROVIDER_STATES.get(state.strip().lower())


def _now() -> datetime:
    return datetime.now(UTC)


class WorkspaceManager:
    """Creates, reconciles and tears down project workspaces.

    Instantiated once during app lifespan.  ``provider`` is ``None`` when no
    credential is configured; every provisioning call then fails fast with
    ``ConfigurationError`` and leaves the workspace in ``error``.
    """

    def __init__(
        self,
        repository: Repository,
        provider: SandboxProvider | None,
        projects: ProjectDirectory,
        settings: SandcastleSettings | None = None,
    ) -> None:
        self._repo = repository
        self._provider = provider
        self._projects = projects
        self._settings = settings or get_settings()

    # -- Helpers ---------------------------------------------------------------

    async def _log(self, workspace_id: str, level: LogLevel, message: str) -> None:
        async with best_effort("workspace log write"):
            await self._repo.add_workspace_log(workspace_id, level, message)

    async def _fail(self, workspace_id: str, message: str) -> Workspace:
        logger.error("Workspace {} failed: {}", workspace_id, message)
        workspace = await self._repo.update_workspace(
            workspace_id,
            status=WorkspaceStatus.ERROR,
            error_message=message,
        )
        await self._log(workspace_id, LogLevel.ERROR, message)
        return workspace

    async def _require_provider(self, workspace_id: str) -> SandboxProvider:
        if self._provider is None:
            await self._fail(workspace_id, MISSING_CREDENTIAL_MESSAGE)
            raise ConfigurationError(MISSING_CREDENTIAL_MESSAGE)
        return self._provider

    async def _provider_call(self, factory: Callable[[], Awaitable[T]], timeout: float, label: str) -> T:
        """Run a provider call under timeout, retried with linear backoff."""
        return await with_retry(
            lambda: with_timeout(factory(), timeout, label),
            attempts=self._settings.provider_retry_attempts,
            delay=self._settings.provider_retry_delay,
            label=label,
        )

    # -- Create / start --------------------------------------------------------

    async def create_workspace(
        self,
        project_id: str,
        name: str,
        options: WorkspaceOptions | None = None,
    ) -> Workspace:
        """Insert a ``pending`` workspace and provision its sandbox.

        The provisioning error propagates; the record is left in ``error``.
        """
        options = options or WorkspaceOptions()
        workspace = await self._repo.insert_workspace(
            Workspace(
                workspace_id=uuid.uuid4().hex,
                project_id=project_id,
                name=name,
                status=WorkspaceStatus.PENDING,
                language=options.language,
                image=options.image,
                resources=options.resources,
                environment=options.environment,
                auto_stop_interval=options.auto_stop_interval,
                auto_archive_interval=options.auto_archive_interval,
                ephemeral=options.ephemeral,
            ),
        )
        logger.info("Workspace created: {} (project={}, name={!r})", workspace.workspace_id, project_id, name)
        await self._log(workspace.workspace_id, LogLevel.INFO, f"Workspace created: {name}")
        return await self.start_workspace(workspace.workspace_id, options)

    async def start_workspace(self, workspace_id: str, options: WorkspaceOptions | None = None) -> Workspace:
        """Provision a sandbox for the workspace and mark it ``running``."""
        workspace = await self.get_workspace(workspace_id)
        options = options or workspace.to_options()
        provider = await self._require_provider(workspace_id)

        await self._repo.update_workspace(workspace_id, status=WorkspaceStatus.STARTING, error_message=None)
        await self._log(workspace_id, LogLevel.INFO, "Provisioning sandbox")

        spec = SandboxSpec(
            language=options.language,
            image=options.image,
            resources=options.resources,
            env_vars=options.environment,
            labels={
                "sandcastle_project_id": workspace.project_id,
                "sandcastle_workspace_id": workspace_id,
                "project_name": workspace.name,
            },
            auto_stop_interval=options.auto_stop_interval,
            auto_archive_interval=options.auto_archive_interval,
            ephemeral=options.ephemeral,
        )
        # The timeout bounds all attempts together.  A create that timed out may
        # still finish on the provider side, so it is not retried.
        timeout = self._settings.provider_create_timeout
        create = with_retry(
            lambda: provider.create(spec, timeout),
            attempts=self._settings.provider_retry_attempts,
            delay=self._settings.provider_retry_delay,
            label="Sandbox creation",
            permanent=(TimeoutError,),
        )
        try:
            sandbox_id = await with_timeout(create, timeout, "Sandbox creation")
        except Exception as exc:
            await self._fail(workspace_id, f"Failed to start workspace: {exc}")
            raise

        workspace = await self._repo.update_workspace(
            workspace_id,
            sandbox_id=sandbox_id,
            status=WorkspaceStatus.RUNNING,
            started_at=_now(),
            error_message=None,
        )
        logger.info("Workspace {} running on sandbox {}", workspace_id, sandbox_id)
        await self._log(workspace_id, LogLevel.INFO, f"Sandbox {sandbox_id} running")
        return workspace

    # -- Read / reconcile ------------------------------------------------------

    async def get_workspace(self, workspace_id: str) -> Workspace:
        """Return a non-deleted workspace.  Raises ``NotFoundError`` otherwise."""
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None or workspace.status == WorkspaceStatus.DELETED:
            raise NotFoundError(workspace_id)
        return workspace

    async def get_project_workspace(self, project_id: str) -> Workspace | None:
        """Return the project's current workspace, reconciled with the provider."""
        workspace = await self._repo.latest_project_workspace(project_id)
        if workspace is None:
            return None
        try:
            return await self.sync_workspace_status(workspace.workspace_id)
        except Exception as exc:
            logger.warning("Status sync failed for workspace {}: {}", workspace.workspace_id, exc)
            return workspace

    async def sync_workspace_status(self, workspace_id: str) -> Workspace:
        """Reconcile the persisted status with the provider's view of the sandbox."""
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError(workspace_id)
        if workspace.status == WorkspaceStatus.DELETED or not workspace.sandbox_id or self._provider is None:
            return workspace

        error_message: str | None = None
        try:
            state = await with_timeout(
                self._provider.get_state(workspace.sandbox_id),
                self._settings.provider_call_timeout,
                "Sandbox status check",
            )
        except SandboxNotFoundError:
            target = WorkspaceStatus.ERROR
            error_message = SANDBOX_NOT_FOUND_MESSAGE
        except Exception as exc:
            logger.warning("Could not read sandbox state for workspace {}: {}", workspace_id, exc)
            return workspace
        else:
            mapped = map_provider_state(state)
            if mapped is None:
                logger.debug("Unknown sandbox state {!r} for workspace {}", state, workspace_id)
                return workspace
            target = mapped

        if target == workspace.status and (error_message is None or error_message == workspace.error_message):
            return workspace

        values: dict[str, object] = {"status": target}
        if error_message is not None:
            values["error_message"] = error_message
        elif target == WorkspaceStatus.RUNNING:
            values["error_message"] = None
        if target == WorkspaceStatus.STOPPED:
            values["stopped_at"] = _now()
        elif target == WorkspaceStatus.DELETED:
            values["deleted_at"] = _now()

        logger.info("Workspace {} status {} -> {}", workspace_id, workspace.status, target)
        workspace = await self._repo.update_workspace(workspace_id, **values)
        await self._log(
            workspace_id,
            LogLevel.ERROR if target == WorkspaceStatus.ERROR else LogLevel.INFO,
            f"Status synced to {target}" + (f": {error_message}" if error_message else ""),
        )
        return workspace

    # -- Get or create ---------------------------------------------------------

    async def get_or_create_workspace(self, project_id: str) -> Workspace:
        """Return the project's workspace, provisioning one with project defaults if needed."""
        workspace = await self.get_project_workspace(project_id)
        if workspace is not None:
            if workspace.sandbox_id is None:
                try:
                    return await self.start_workspace(workspace.workspace_id)
                except Exception as exc:
                    logger.warning("Re-provisioning workspace {} failed: {}", workspace.workspace_id, exc)
                    return await self.get_workspace(workspace.workspace_id)
            return workspace
        return await self._create_for_project(project_id)

    async def _create_for_project(self, project_id: str) -> Workspace:
        project = await self._projects.get_project(project_id)
        if project is None:
            msg = f"Project {project_id} not found"
            raise NotFoundError(msg)

        options = WorkspaceOptions(
            language=project.template or DEFAULT_LANGUAGE,
            environment={"PROJECT_ID": project_id, "PROJECT_NAME": project.name},
            auto_stop_interval=PROJECT_AUTO_STOP_INTERVAL,
            auto_archive_interval=PROJECT_AUTO_ARCHIVE_INTERVAL,
        )
        return await self.create_workspace(project_id, f"{project.name} Workspace", options)

    # -- Stop / restart --------------------------------------------------------

    async def stop_workspace(self, workspace_id: str) -> Workspace:
        workspace = await self.get_workspace(workspace_id)
        if workspace.status == WorkspaceStatus.STOPPED:
            return workspace
        if workspace.sandbox_id is None:
            return await self._repo.update_workspace(workspace_id, status=WorkspaceStatus.STOPPED, stopped_at=_now())

        provider = await self._require_provider(workspace_id)
        sandbox_id = workspace.sandbox_id
        timeout = self._settings.provider_call_timeout
        try:
            await self._provider_call(lambda: provider.stop(sandbox_id, timeout), timeout, "Sandbox stop")
        except Exception as exc:
            await self._fail(workspace_id, f"Failed to stop workspace: {exc}")
            raise

        workspace = await self._repo.update_workspace(workspace_id, status=WorkspaceStatus.STOPPED, stopped_at=_now())
        logger.info("Workspace {} stopped", workspace_id)
        await self._log(workspace_id, LogLevel.INFO, "Workspace stopped")
        return workspace

    async def restart_workspace(self, workspace_id: str) -> Workspace:
        workspace = await self.get_workspace(workspace_id)
        if workspace.status == WorkspaceStatus.RUNNING:
            return workspace
        if workspace.sandbox_id is None:
            return await self.start_workspace(workspace_id)

        provider = await self._require_provider(workspace_id)
        sandbox_id = workspace.sandbox_id
        timeout = self._settings.provider_call_timeout
        try:
            await self._provider_call(lambda: provider.start(sandbox_id, timeout), timeout, "Sandbox start")
        except Exception as exc:
            await self._fail(workspace_id, f"Failed to restart workspace: {exc}")
            raise

        workspace = await self._repo.update_workspace(
            workspace_id,
            status=WorkspaceStatus.RUNNING,
            started_at=_now(),
            error_message=None,
        )
        logger.info("Workspace {} restarted", workspace_id)
        await self._log(workspace_id, LogLevel.INFO, "Workspace restarted")
        return workspace

    # -- Delete / rebuild ------------------------------------------------------

    async def delete_workspace(self, workspace_id: str) -> Workspace:
        """Tear down the sandbox (best-effort) and mark the workspace ``deleted``."""
        workspace = await self._repo.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError(workspace_id)
        if workspace.status == WorkspaceStatus.DELETED:
            return workspace

        if workspace.status == WorkspaceStatus.RUNNING:
            try:
                await self.stop_workspace(workspace_id)
            except Exception as exc:
                logger.warning("Stop before delete failed for workspace {}: {}", workspace_id, exc)

        if workspace.sandbox_id is not None and self._provider is not None:
            provider = self._provider
            async with best_effort(f"sandbox delete for workspace {workspace_id}"):
                await with_timeout(
                    provider.delete(workspace.sandbox_id),
                    self._settings.provider_call_timeout,
                    "Sandbox delete",
                )

        workspace = await self._repo.update_workspace(workspace_id, status=WorkspaceStatus.DELETED, deleted_at=_now())
        logger.info("Workspace {} deleted", workspace_id)
        await self._log(workspace_id, LogLevel.INFO, "Workspace deleted")
        return workspace

    async def rebuild_workspace(self, project_id: str) -> Workspace:
        """Discard the project's current workspace and provision a fresh one."""
        existing = await self._repo.latest_project_workspace(project_id)
        if existing is not None:
            try:
                await self.delete_workspace(existing.workspace_id)
            except Exception as exc:
                logger.warning("Deleting workspace {} before rebuild failed: {}", existing.workspace_id, exc)
        return await self._create_for_project(project_id)

    # -- Logs ------------------------------------------------------------------

    async def get_logs(self, workspace_id: str, limit: int = 100) -> list[WorkspaceLogEntry]:
        return await self._repo.list_workspace_logs(workspace_id, limit)

    async def log(self, workspace_id: str, level: LogLevel, message: str) -> None:
        """Append a line to the workspace activity log (failures are swallowed)."""
        await self._log(workspace_id, level, message)
