"""Repository interface for workspace and build persistence.

The lifecycle manager, execution layer, build pipeline and broadcaster all
read and write durable state through this protocol.  It deals in domain
models (``Workspace``, ``Build``, ...) rather than ORM rows so that callers
never hold a database session across a provider call.

Two guarantees callers rely on:

- ``append_build_output`` concatenates in the database in a single
  statement; concurrent appends never overwrite each other.
- ``add_build_event`` assigns a timestamp strictly greater than every
  earlier event of the same build.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from sandcastle.orchestrator.models.build import Build, BuildEvent
from sandcastle.orchestrator.models.enums import BuildLogType, LogLevel
from sandcastle.orchestrator.models.workspace import Workspace, WorkspaceLogEntry


@runtime_checkable
class Repository(Protocol):
    """Async protocol over the workspaces, workspace_logs, builds and build_events tables."""

    # -- Workspaces ------------------------------------------------------------

    async def insert_workspace(self, workspace: Workspace) -> Workspace:
        """Insert a new workspace and return it with server-side fields populated."""
        ...

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        """Return the workspace (including deleted ones) or ``None``."""
        ...

    async def latest_project_workspace(self, project_id: str) -> Workspace | None:
        """Return the most recently created non-deleted workspace of a project."""
        ...

    async def update_workspace(self, workspace_id: str, **values: Any) -> Workspace:
        """Apply *values* (domain field names) and return the updated workspace.

        Raises ``NotFoundError`` if the workspace does not exist.
        """
        ...

    async def add_workspace_log(self, workspace_id: str, level: LogLevel, message: str) -> None: ...

    async def list_workspace_logs(self, workspace_id: str, limit: int = 100) -> list[WorkspaceLogEntry]:
        """Return the newest *limit* log lines, newest first."""
        ...

    # -- Builds ----------------------------------------------------------------

    async def insert_build(self, build: Build) -> Build: ...

    async def get_build(self, build_id: str) -> Build | None: ...

    async def list_builds(self, project_id: str, limit: int = 20) -> list[Build]:
        """Return a project's builds, newest first."""
        ...

    async def update_build(self, build_id: str, **values: Any) -> Build:
        """Apply *values* and return the updated build.  Raises ``NotFoundError`` if missing."""
        ...

    async def append_build_output(self, build_id: str, chunk: str, log_type: BuildLogType | None = None) -> None:
        """Append *chunk* to ``live_output`` and, if given, to the *log_type* column."""
        ...

    # -- Build events ----------------------------------------------------------

    async def add_build_event(self, event: BuildEvent) -> BuildEvent:
        """Persist *event*, assigning its id and a strictly increasing timestamp."""
        ...

    async def list_build_events(self, build_id: str, limit: int = 100) -> list[BuildEvent]:
        """Return the first *limit* events in ascending timestamp order."""
        ...

    async def recent_build_events(self, build_id: str, limit: int = 5) -> list[BuildEvent]:
        """Return the last *limit* events, still in ascending timestamp order."""
        ...
