"""SQLAlchemy ORM models for PostgreSQL.

These are the single source of truth for the database schema.  Alembic reads
``Base.metadata`` to autogenerate migration scripts.

Uses SQLAlchemy 2.0 declarative style with ``Mapped`` type annotations.
JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Timezone-aware timestamp type for all datetime columns.
TimestampTZ = DateTime(timezone=True)

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base with naming convention for constraints."""

    pass


Base.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Workspace(Base):
    __tablename__ = "workspaces"
    __table_args__ = (
        Index("ix_workspaces_project_id_created_at", "project_id", "created_at"),
        Index("ix_workspaces_status", "status"),
    )

    workspace_id: Mapped[str] = mapped_column(primary_key=True)
    project_id: Mapped[str]
    name: Mapped[str]
    status: Mapped[str] = mapped_column(server_default="pending")
    sandbox_id: Mapped[str | None]
    language: Mapped[str] = mapped_column(server_default="typescript")
    image: Mapped[str | None]
    resources: Mapped[dict | None] = mapped_column(JsonDoc)
    environment: Mapped[dict] = mapped_column(JsonDoc, nullable=False, default=dict)
    auto_stop_interval: Mapped[int] = mapped_column(server_default="15")
    auto_archive_interval: Mapped[int] = mapped_column(server_default="10080")
    ephemeral: Mapped[bool] = mapped_column(default=False, server_default="false")
    preview_port: Mapped[int | None]
    metadata_: Mapped[dict] = mapped_column("metadata", JsonDoc, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    stopped_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    deleted_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now(), onupdate=func.now())


class WorkspaceLog(Base):
    __tablename__ = "workspace_logs"
    __table_args__ = (Index("ix_workspace_logs_workspace_id_timestamp", "workspace_id", "timestamp"),)

    log_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.workspace_id", name="fk_workspace_logs_workspace_id", ondelete="CASCADE"),
    )
    level: Mapped[str] = mapped_column(server_default="info")
    message: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())


class Build(Base):
    __tablename__ = "builds"
    __table_args__ = (
        Index("ix_builds_project_id_created_at", "project_id", "created_at"),
        Index("ix_builds_workspace_id", "workspace_id"),
    )

    build_id: Mapped[str] = mapped_column(primary_key=True)
    project_id: Mapped[str]
    workspace_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.workspace_id", name="fk_builds_workspace_id"),
    )
    status: Mapped[str] = mapped_column(server_default="pending")
    phase: Mapped[str] = mapped_column(server_default="pending")
    session_id: Mapped[str | None]
    current_step: Mapped[int] = mapped_column(server_default="0")
    total_steps: Mapped[int] = mapped_column(server_default="5")
    live_output: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    install_logs: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    build_logs: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    error_message: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int | None]
    metadata_: Mapped[dict] = mapped_column("metadata", JsonDoc, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    completed_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now(), onupdate=func.now())


class BuildEvent(Base):
    __tablename__ = "build_events"
    __table_args__ = (Index("ix_build_events_build_id_timestamp", "build_id", "timestamp"),)

    event_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(
        ForeignKey("builds.build_id", name="fk_build_events_build_id"),
    )
    event_type: Mapped[str]
    phase: Mapped[str | None]
    message: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JsonDoc)
    timestamp: Mapped[datetime] = mapped_column(TimestampTZ)
