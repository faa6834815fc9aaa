"""PostgreSQL repository backed by SQLAlchemy async sessions.

Each method opens its own short-lived session from the factory so that a
build running in the background never pins a connection while it waits
on the sandbox.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from sandcastle.orchestrator.db.tables import Build as BuildRow
from sandcastle.orchestrator.db.tables import BuildEvent as BuildEventRow
from sandcastle.orchestrator.db.tables import Workspace as WorkspaceRow
from sandcastle.orchestrator.db.tables import WorkspaceLog as WorkspaceLogRow
from sandcastle.orchestrator.errors import NotFoundError
from sandcastle.orchestrator.models.build import Build, BuildEvent
from sandcastle.orchestrator.models.enums import BuildLogType, LogLevel, WorkspaceStatus
from sandcastle.orchestrator.models.workspace import Workspace, WorkspaceLogEntry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from sandcastle.orchestrator.db.tables import Base

_LOG_COLUMNS = {
    BuildLogType.INSTALL: BuildRow.install_logs,
    BuildLogType.BUILD: BuildRow.build_logs,
}

_EVENT_TICK = timedelta(microseconds=1)


def _now() -> datetime:
    return datetime.now(UTC)


def _row_to_dict(row: Base) -> dict[str, Any]:
    """Column values keyed by domain field name (``metadata_`` -> ``metadata``)."""
    data = {attr.key: getattr(row, attr.key) for attr in row.__mapper__.column_attrs}
    if "metadata_" in data:
        data["metadata"] = data.pop("metadata_")
    return data


def _to_columns(values: dict[str, Any]) -> dict[str, Any]:
    """Inverse of ``_row_to_dict`` for update payloads."""
    values = dict(values)
    if "metadata" in values:
        values["metadata_"] = values.pop("metadata")
    if "resources" in values and hasattr(values["resources"], "model_dump"):
        values["resources"] = values["resources"].model_dump()
    return values


class SqlRepository:
    """``Repository`` implementation on top of an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # -- Workspaces ------------------------------------------------------------

    async def insert_workspace(self, workspace: Workspace) -> Workspace:
        values = _to_columns(workspace.model_dump(exclude={"created_at", "updated_at"}))
        now = _now()
        row = WorkspaceRow(**values, created_at=workspace.created_at or now, updated_at=now)
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return Workspace.model_validate(_row_to_dict(row))

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        async with self._session_factory() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            return Workspace.model_validate(_row_to_dict(row)) if row is not None else None

    async def latest_project_workspace(self, project_id: str) -> Workspace | None:
        stmt = (
            select(WorkspaceRow)
            .where(WorkspaceRow.project_id == project_id, WorkspaceRow.status != WorkspaceStatus.DELETED)
            .order_by(WorkspaceRow.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return Workspace.model_validate(_row_to_dict(row)) if row is not None else None

    async def update_workspace(self, workspace_id: str, **values: Any) -> Workspace:
        async with self._session_factory() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            if row is None:
                raise NotFoundError(workspace_id)
            for key, value in _to_columns(values).items():
                setattr(row, key, value)
            await db.commit()
            await db.refresh(row)
            return Workspace.model_validate(_row_to_dict(row))

    async def add_workspace_log(self, workspace_id: str, level: LogLevel, message: str) -> None:
        async with self._session_factory() as db:
            db.add(WorkspaceLogRow(workspace_id=workspace_id, level=level, message=message, timestamp=_now()))
            await db.commit()

    async def list_workspace_logs(self, workspace_id: str, limit: int = 100) -> list[WorkspaceLogEntry]:
        stmt = (
            select(WorkspaceLogRow)
            .where(WorkspaceLogRow.workspace_id == workspace_id)
            .order_by(WorkspaceLogRow.timestamp.desc(), WorkspaceLogRow.log_id.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [WorkspaceLogEntry.model_validate(_row_to_dict(row)) for row in rows]

    # -- Builds ----------------------------------------------------------------

    async def insert_build(self, build: Build) -> Build:
        values = _to_columns(build.model_dump(exclude={"created_at", "updated_at"}))
        now = _now()
        row = BuildRow(**values, created_at=build.created_at or now, updated_at=now)
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return Build.model_validate(_row_to_dict(row))

    async def get_build(self, build_id: str) -> Build | None:
        async with self._session_factory() as db:
            row = await db.get(BuildRow, build_id)
            return Build.model_validate(_row_to_dict(row)) if row is not None else None

    async def list_builds(self, project_id: str, limit: int = 20) -> list[Build]:
        stmt = (
            select(BuildRow)
            .where(BuildRow.project_id == project_id)
            .order_by(BuildRow.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [Build.model_validate(_row_to_dict(row)) for row in rows]

    async def update_build(self, build_id: str, **values: Any) -> Build:
        async with self._session_factory() as db:
            row = await db.get(BuildRow, build_id)
            if row is None:
                raise NotFoundError(build_id)
            for key, value in _to_columns(values).items():
                setattr(row, key, value)
            await db.commit()
            await db.refresh(row)
            return Build.model_validate(_row_to_dict(row))

    async def append_build_output(self, build_id: str, chunk: str, log_type: BuildLogType | None = None) -> None:
        if not chunk:
            return
        # Concatenate server-side so interleaved appends never clobber each other.
        values: dict[str, Any] = {"live_output": BuildRow.live_output + chunk}
        if log_type is not None:
            column = _LOG_COLUMNS[log_type]
            values[column.key] = column + chunk
        stmt = update(BuildRow).where(BuildRow.build_id == build_id).values(**values)
        async with self._session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    # -- Build events ----------------------------------------------------------

    async def add_build_event(self, event: BuildEvent) -> BuildEvent:
        async with self._session_factory() as db:
            # Lock the parent build row so concurrent inserts for one build serialise.
            await db.execute(select(BuildRow.build_id).where(BuildRow.build_id == event.build_id).with_for_update())
            last = (
                await db.execute(
                    select(func.max(BuildEventRow.timestamp)).where(BuildEventRow.build_id == event.build_id),
                )
            ).scalar_one_or_none()
            timestamp = _now()
            if last is not None and timestamp <= last:
                timestamp = last + _EVENT_TICK

            row = BuildEventRow(
                build_id=event.build_id,
                event_type=event.event_type,
                phase=event.phase,
                message=event.message,
                metadata_=event.metadata,
                timestamp=timestamp,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return BuildEvent.model_validate(_row_to_dict(row))

    async def list_build_events(self, build_id: str, limit: int = 100) -> list[BuildEvent]:
        stmt = (
            select(BuildEventRow)
            .where(BuildEventRow.build_id == build_id)
            .order_by(BuildEventRow.timestamp.asc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [BuildEvent.model_validate(_row_to_dict(row)) for row in rows]

    async def recent_build_events(self, build_id: str, limit: int = 5) -> list[BuildEvent]:
        stmt = (
            select(BuildEventRow)
            .where(BuildEventRow.build_id == build_id)
            .order_by(BuildEventRow.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [BuildEvent.model_validate(_row_to_dict(row)) for row in reversed(rows)]
