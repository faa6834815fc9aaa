"""initial schema: workspaces, workspace logs, builds, build events

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("sandbox_id", sa.String(), nullable=True),
        sa.Column("language", sa.String(), server_default="typescript", nullable=False),
        sa.Column("image", sa.String(), nullable=True),
        sa.Column("resources", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("environment", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("auto_stop_interval", sa.Integer(), server_default="15", nullable=False),
        sa.Column("auto_archive_interval", sa.Integer(), server_default="10080", nullable=False),
        sa.Column("ephemeral", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("preview_port", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("workspace_id", name=op.f("pk_workspaces")),
    )
    op.create_index("ix_workspaces_project_id_created_at", "workspaces", ["project_id", "created_at"], unique=False)
    op.create_index("ix_workspaces_status", "workspaces", ["status"], unique=False)

    op.create_table(
        "workspace_logs",
        sa.Column("log_id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), server_default="info", nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(
            ["workspace_id"],
            ["workspaces.workspace_id"],
            name="fk_workspace_logs_workspace_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("log_id", name=op.f("pk_workspace_logs")),
    )
    op.create_index(
        "ix_workspace_logs_workspace_id_timestamp", "workspace_logs", ["workspace_id", "timestamp"], unique=False
    )

    op.create_table(
        "builds",
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("phase", sa.String(), server_default="pending", nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("current_step", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_steps", sa.Integer(), server_default="5", nullable=False),
        sa.Column("live_output", sa.Text(), server_default="", nullable=False),
        sa.Column("install_logs", sa.Text(), server_default="", nullable=False),
        sa.Column("build_logs", sa.Text(), server_default="", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.workspace_id"], name="fk_builds_workspace_id"),
        sa.PrimaryKeyConstraint("build_id", name=op.f("pk_builds")),
    )
    op.create_index("ix_builds_project_id_created_at", "builds", ["project_id", "created_at"], unique=False)
    op.create_index("ix_builds_workspace_id", "builds", ["workspace_id"], unique=False)

    op.create_table(
        "build_events",
        sa.Column("event_id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("build_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("phase", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["build_id"], ["builds.build_id"], name="fk_build_events_build_id"),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_build_events")),
    )
    op.create_index("ix_build_events_build_id_timestamp", "build_events", ["build_id", "timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_build_events_build_id_timestamp", table_name="build_events")
    op.drop_table("build_events")
    op.drop_index("ix_builds_workspace_id", table_name="builds")
    op.drop_index("ix_builds_project_id_created_at", table_name="builds")
    op.drop_table("builds")
    op.drop_index("ix_workspace_logs_workspace_id_timestamp", table_name="workspace_logs")
    op.drop_table("workspace_logs")
    op.drop_index("ix_workspaces_status", table_name="workspaces")
    op.drop_index("ix_workspaces_project_id_created_at", table_name="workspaces")
    op.drop_table("workspaces")
