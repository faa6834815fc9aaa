"""Build endpoints (RPC-style) and the live build stream.

``/create`` returns as soon as the build record exists; the pipeline runs
in the background.  Progress is read back with ``/status`` and
``/events``, or followed live over SSE on ``/stream``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, Query, status
from sse_starlette.sse import EventSourceResponse, ServerSentEvent

from sandcastle.orchestrator.deps import Broadcaster, BuildMgr, Builds
from sandcastle.orchestrator.models.api import BuildCreate
from sandcastle.orchestrator.models.build import Build, BuildEvent, BuildStatusReport
from sandcastle.orchestrator.models.enums import StreamEventType
from sandcastle.orchestrator.models.events import BuildStreamEvent
from sandcastle.orchestrator.routers.errors import http_errors

router = APIRouter(prefix="/builds", tags=["builds"])

_FINAL_STREAM_EVENTS = frozenset({StreamEventType.COMPLETE, StreamEventType.ERROR})


def _sse(event: BuildStreamEvent) -> ServerSentEvent:
    return ServerSentEvent(data=event.model_dump_json(), event=event.type)


@router.post("/create", response_model=Build, status_code=status.HTTP_202_ACCEPTED)
async def create_build(body: BuildCreate, builds: Builds) -> Build:
    """Create a build and start its pipeline and monitor in the background."""
    with http_errors():
        return await builds.create_and_start_build(body.project_id, body.workspace_id, body.metadata)


@router.get("/list", response_model=list[Build])
async def list_builds(
    manager: BuildMgr,
    project_id: str = Query(..., description="Project whose builds to list."),
    limit: int = Query(20, ge=1, le=200),
) -> list[Build]:
    """List a project's builds, newest first."""
    return await manager.list_builds(project_id, limit=limit)


@router.get("/{build_id}/get", response_model=Build)
async def get_build(build_id: str, manager: BuildMgr) -> Build:
    with http_errors():
        return await manager.get_build(build_id)


@router.get("/{build_id}/events", response_model=list[BuildEvent])
async def get_build_events(
    build_id: str,
    manager: BuildMgr,
    limit: int = Query(100, ge=1, le=1000),
) -> list[BuildEvent]:
    """Build events in the order they happened."""
    with http_errors():
        return await manager.get_build_events(build_id, limit=limit)


@router.get("/{build_id}/status", response_model=BuildStatusReport)
async def get_build_status(build_id: str, builds: Builds) -> BuildStatusReport:
    with http_errors():
        return await builds.get_build_status(build_id)


@router.get("/{build_id}/stream")
async def stream_build(build_id: str, manager: BuildMgr, broadcaster: Broadcaster) -> EventSourceResponse:
    """Follow a build over SSE until its ``complete`` (or ``error``) event.

    The current status is sent immediately on connect; a build that has
    already finished gets its ``complete`` event and the stream closes.
    """
    with http_errors():
        build = await manager.get_build(build_id)

    async def events() -> AsyncIterator[ServerSentEvent]:
        yield _sse(BuildStreamEvent.status(build))
        if build.status.is_terminal:
            yield _sse(BuildStreamEvent.complete(build))
            return

        queue: asyncio.Queue[BuildStreamEvent] = asyncio.Queue()
        unsubscribe = broadcaster.subscribe(build_id, queue.put_nowait)
        broadcaster.start_monitoring(build_id)
        try:
            while True:
                event = await queue.get()
                yield _sse(event)
                if event.type in _FINAL_STREAM_EVENTS:
                    return
        finally:
            unsubscribe()

    return EventSourceResponse(events())
