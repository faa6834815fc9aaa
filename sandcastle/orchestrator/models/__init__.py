"""Data models for the orchestrator."""

from sandcastle.orchestrator.models.api import (
    BuildCreate,
    CommandRequest,
    WorkspaceCreate,
)
from sandcastle.orchestrator.models.build import Build, BuildEvent, BuildStatusReport, TechStack
from sandcastle.orchestrator.models.enums import (
    BuildEventType,
    BuildLogType,
    BuildPhase,
    BuildStatus,
    ErrorSeverity,
    LogLevel,
    SessionKind,
    StreamEventType,
    WorkspaceStatus,
)
from sandcastle.orchestrator.models.events import BuildStreamEvent
from sandcastle.orchestrator.models.execution import (
    CodeRunParams,
    CodeRunResult,
    CommandResult,
    DevServerResult,
    PreviewLink,
    PtySessionResult,
    PtyStatus,
    SessionInfo,
)
from sandcastle.orchestrator.models.workspace import (
    ProjectInfo,
    ResourceSpec,
    Workspace,
    WorkspaceLogEntry,
    WorkspaceOptions,
)

__all__ = [
    # Build
    "Build",
    # API schemas
    "BuildCreate",
    "BuildEvent",
    # Enums
    "BuildEventType",
    "BuildLogType",
    "BuildPhase",
    "BuildStatus",
    "BuildStatusReport",
    # Events
    "BuildStreamEvent",
    # Execution
    "CodeRunParams",
    "CodeRunResult",
    "CommandRequest",
    "CommandResult",
    "DevServerResult",
    "ErrorSeverity",
    "LogLevel",
    "PreviewLink",
    # Workspace
    "ProjectInfo",
    "PtySessionResult",
    "PtyStatus",
    "ResourceSpec",
    "SessionInfo",
    "SessionKind",
    "StreamEventType",
    "TechStack",
    "Workspace",
    "WorkspaceCreate",
    "WorkspaceLogEntry",
    "WorkspaceOptions",
    "WorkspaceStatus",
]
