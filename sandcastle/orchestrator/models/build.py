"""Build pipeline data models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from sandcastle.orchestrator.models.enums import BuildEventType, BuildPhase, BuildStatus

DEFAULT_TOTAL_STEPS = 5


class Build(BaseModel):
    """Build row (PG).

    ``live_output``, ``install_logs`` and ``build_logs`` only ever grow; the
    repository appends to them atomically.
    """

    model_config = ConfigDict(from_attributes=True)

    build_id: str
    project_id: str
    workspace_id: str
    status: BuildStatus = BuildStatus.PENDING
    phase: BuildPhase = BuildPhase.PENDING
    session_id: str | None = None
    current_step: int = 0
    total_steps: int = DEFAULT_TOTAL_STEPS
    live_output: str = ""
    install_logs: str = ""
    build_logs: str = ""
    error_message: str | None = None
    duration_ms: int | None = None
    metadata: dict = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BuildEvent(BaseModel):
    """Append-only pipeline event.  Timestamps strictly increase per build."""

    model_config = ConfigDict(from_attributes=True)

    event_id: int | None = None
    build_id: str
    event_type: BuildEventType
    phase: BuildPhase | None = None
    message: str | None = None
    metadata: dict | None = None
    timestamp: datetime | None = None


class TechStack(BaseModel):
    """What a project is built with, as detected from its manifest files."""

    language: str = "unknown"
    framework: str = "generic"
    package_manager: str = "none"


class BuildStatusReport(BaseModel):
    """A build with its recent event window and live-stream state."""

    build: Build
    events: list[BuildEvent] = Field(default_factory=list)
    subscribers: int = 0
    monitoring: bool = False
