"""Build stream event models.

``BuildStreamEvent`` is the envelope pushed to broadcaster subscribers and
serialised onto SSE connections.  The ``data`` payload shape depends on
``type``:

- ``status``: status, phase, current_step, total_steps, duration_ms, error_message
- ``event``: event_type, phase, message, metadata
- ``log``: output (tail of the live output)
- ``complete``: the ``status`` fields plus install_logs and build_logs
- ``error``: message
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from sandcastle.orchestrator.models.build import Build, BuildEvent
from sandcastle.orchestrator.models.enums import StreamEventType

LOG_TAIL_CHARS = 1000


def _now() -> datetime:
    return datetime.now(UTC)


class BuildStreamEvent(BaseModel):
    """Wire-format event envelope sent to build observers."""

    type: StreamEventType
    build_id: str
    timestamp: datetime = Field(default_factory=_now)
    data: dict[str, Any] = Field(default_factory=dict)

    # -- Constructors ----------------------------------------------------------

    @classmethod
    def status(cls, build: Build) -> BuildStreamEvent:
        return cls(type=StreamEventType.STATUS, build_id=build.build_id, data=_status_data(build))

    @classmethod
    def event(cls, build_id: str, event: BuildEvent) -> BuildStreamEvent:
        return cls(
            type=StreamEventType.EVENT,
            build_id=build_id,
            timestamp=event.timestamp or _now(),
            data={
                "event_type": event.event_type,
                "phase": event.phase,
                "message": event.message,
                "metadata": event.metadata,
            },
        )

    @classmethod
    def log(cls, build: Build) -> BuildStreamEvent:
        return cls(
            type=StreamEventType.LOG,
            build_id=build.build_id,
            data={"output": build.live_output[-LOG_TAIL_CHARS:]},
        )

    @classmethod
    def complete(cls, build: Build) -> BuildStreamEvent:
        data = _status_data(build)
        data["install_logs"] = build.install_logs
        data["build_logs"] = build.build_logs
        return cls(type=StreamEventType.COMPLETE, build_id=build.build_id, data=data)

    @classmethod
    def error(cls, build_id: str, message: str) -> BuildStreamEvent:
        return cls(type=StreamEventType.ERROR, build_id=build_id, data={"message": message})


def _status_data(build: Build) -> dict[str, Any]:
    return {
        "status": build.status,
        "phase": build.phase,
        "current_step": build.current_step,
        "total_steps": build.total_steps,
        "duration_ms": build.duration_ms,
        "error_message": build.error_message,
    }
