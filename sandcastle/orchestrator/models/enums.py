"""Shared enumerations used across the orchestrator."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    """Durable workspace status persisted in PG."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DELETED = "deleted"


class LogLevel(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


# -- Build -------------------------------------------------------------------


class BuildStatus(StrEnum):
    PENDING = "pending"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.SUCCESS, BuildStatus.FAILED)


class BuildPhase(StrEnum):
    """Pipeline phases in execution order; ``FAILED`` is reachable from any."""

    PENDING = "pending"
    SETUP = "setup"
    INSTALL = "install"
    BUILD = "build"
    TEST = "test"
    DEPLOY = "deploy"
    COMPLETE = "complete"
    FAILED = "failed"


class BuildEventType(StrEnum):
    PHASE_CHANGE = "phase_change"
    LOG = "log"
    ERROR = "error"
    WARNING = "warning"
    PROGRESS = "progress"


class BuildLogType(StrEnum):
    """Which accumulated log column a command's output is appended to."""

    INSTALL = "install"
    BUILD = "build"


class ErrorSeverity(StrEnum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# -- Streaming ---------------------------------------------------------------


class StreamEventType(StrEnum):
    STATUS = "status"
    EVENT = "event"
    LOG = "log"
    ERROR = "error"
    COMPLETE = "complete"


# -- Sessions ----------------------------------------------------------------


class SessionKind(StrEnum):
    """How a provider session accepts commands."""

    COMMAND = "command"
    """Detachable session that runs commands asynchronously."""

    PTY_ONLY = "pty_only"
    """Session reachable only through an interactive terminal."""
