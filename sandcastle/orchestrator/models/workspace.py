"""Workspace data model.

A workspace is the durable record of one remote sandbox provisioned on
behalf of a project.  The live sandbox is referenced by ``sandbox_id``;
everything else is bookkeeping owned by the lifecycle manager.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from sandcastle.orchestrator.models.enums import LogLevel, WorkspaceStatus

DEFAULT_LANGUAGE = "typescript"
DEFAULT_AUTO_STOP_INTERVAL = 15
DEFAULT_AUTO_ARCHIVE_INTERVAL = 7 * 24 * 60

# Statuses in which a workspace may hold a live sandbox handle.
HANDLE_STATUSES = frozenset(
    {WorkspaceStatus.STARTING, WorkspaceStatus.RUNNING, WorkspaceStatus.STOPPED, WorkspaceStatus.ERROR},
)


class ResourceSpec(BaseModel):
    """Sandbox resources.  Memory and disk are in GiB."""

    cpu: int | None = None
    memory: int | None = None
    disk: int | None = None


class WorkspaceOptions(BaseModel):
    """Provisioning options supplied when a workspace is created."""

    language: str = DEFAULT_LANGUAGE
    image: str | None = None
    """Container image; when set it takes precedence over the language snapshot."""

    resources: ResourceSpec | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    auto_stop_interval: int = DEFAULT_AUTO_STOP_INTERVAL
    """Minutes of inactivity before the provider stops the sandbox."""

    auto_archive_interval: int = DEFAULT_AUTO_ARCHIVE_INTERVAL
    ephemeral: bool = False


class Workspace(BaseModel):
    """Workspace row (PG)."""

    model_config = ConfigDict(from_attributes=True)

    workspace_id: str
    project_id: str
    name: str
    status: WorkspaceStatus = WorkspaceStatus.PENDING
    sandbox_id: str | None = None
    language: str = DEFAULT_LANGUAGE
    image: str | None = None
    resources: ResourceSpec | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    auto_stop_interval: int = DEFAULT_AUTO_STOP_INTERVAL
    auto_archive_interval: int = DEFAULT_AUTO_ARCHIVE_INTERVAL
    ephemeral: bool = False
    preview_port: int | None = None
    metadata: dict = Field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == WorkspaceStatus.RUNNING and self.sandbox_id is not None

    def to_options(self) -> WorkspaceOptions:
        """Provisioning options recorded on this workspace."""
        return WorkspaceOptions(
            language=self.language,
            image=self.image,
            resources=self.resources,
            environment=self.environment,
            auto_stop_interval=self.auto_stop_interval,
            auto_archive_interval=self.auto_archive_interval,
            ephemeral=self.ephemeral,
        )


class WorkspaceLogEntry(BaseModel):
    """One line of the per-workspace activity log."""

    model_config = ConfigDict(from_attributes=True)

    log_id: int | None = None
    workspace_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    timestamp: datetime | None = None


class ProjectInfo(BaseModel):
    """The slice of a project record needed to provision its workspace."""

    project_id: str
    name: str
    template: str | None = None
