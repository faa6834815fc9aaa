from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from sandcastle.orchestrator.broadcaster import BuildBroadcaster, StreamingBuilds
from sandcastle.orchestrator.collaborators import ContextForwarder
from sandcastle.orchestrator.execution.commands import ExecutionService
from sandcastle.orchestrator.managers.builds import BuildManager
from sandcastle.orchestrator.models.build import Build, BuildEvent
from sandcastle.orchestrator.models.enums import BuildEventType, BuildStatus, StreamEventType
from sandcastle.orchestrator.models.events import BuildStreamEvent
from sandcastle.orchestrator.models.execution import CommandResult
from sandcastle.orchestrator.models.workspace import Workspace
from sandcastle.orchestrator.settings import SandcastleSettings
from tests.orchestrator.fakes import FakeProvider, InMemoryRepository


@pytest.fixture
async def broadcaster(repo: InMemoryRepository, settings: SandcastleSettings) -> AsyncIterator[BuildBroadcaster]:
    b = BuildBroadcaster(repo, settings)
    yield b
    await b.shutdown()


@pytest.fixture
async def build(repo: InMemoryRepository) -> Build:
    return await repo.insert_build(Build(build_id="b-1", project_id="proj-1", workspace_id="ws-1"))


async def _until(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def _types(events: list[BuildStreamEvent]) -> list[StreamEventType]:
    return [e.type for e in events]


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


def test_subscribe_and_unsubscribe(broadcaster: BuildBroadcaster) -> None:
    received: list[BuildStreamEvent] = []
    unsubscribe = broadcaster.subscribe("b-1", received.append)
    other = broadcaster.subscribe("b-1", lambda event: None)

    broadcaster.broadcast("b-1", BuildStreamEvent.error("b-1", "boom"))
    assert broadcaster.subscriber_count("b-1") == 2
    assert _types(received) == [StreamEventType.ERROR]

    unsubscribe()
    unsubscribe()
    other()
    assert broadcaster.subscriber_count("b-1") == 0

    broadcaster.broadcast("b-1", BuildStreamEvent.error("b-1", "ignored"))
    assert len(received) == 1


def test_failing_callback_does_not_block_others(broadcaster: BuildBroadcaster) -> None:
    received: list[BuildStreamEvent] = []

    def explode(event: BuildStreamEvent) -> None:
        raise RuntimeError("subscriber bug")

    broadcaster.subscribe("b-1", explode)
    broadcaster.subscribe("b-1", received.append)

    broadcaster.broadcast("b-1", BuildStreamEvent.error("b-1", "boom"))

    assert len(received) == 1


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


async def test_monitor_pushes_status_events_and_log(
    broadcaster: BuildBroadcaster,
    repo: InMemoryRepository,
    build: Build,
) -> None:
    await repo.update_build(build.build_id, status=BuildStatus.BUILDING)
    await repo.add_build_event(BuildEvent(build_id=build.build_id, event_type=BuildEventType.LOG, message="hello"))
    await repo.append_build_output(build.build_id, "compiling...\n")
    received: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, received.append)

    broadcaster.start_monitoring(build.build_id)
    broadcaster.start_monitoring(build.build_id)
    await _until(lambda: StreamEventType.LOG in _types(received))

    assert broadcaster.monitor_count == 1
    assert received[0].type == StreamEventType.STATUS
    assert received[0].data["status"] == BuildStatus.BUILDING
    assert received[1].type == StreamEventType.EVENT
    assert received[1].data["message"] == "hello"
    log = next(e for e in received if e.type == StreamEventType.LOG)
    assert log.data["output"] == "compiling...\n"


async def test_monitor_survives_failed_poll(
    broadcaster: BuildBroadcaster,
    repo: InMemoryRepository,
    build: Build,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    get_build = repo.get_build
    failures = [ConnectionError("database restarting")]

    async def flaky_get_build(build_id: str) -> Build | None:
        if failures:
            raise failures.pop()
        return await get_build(build_id)

    monkeypatch.setattr(repo, "get_build", flaky_get_build)
    await repo.update_build(build.build_id, status=BuildStatus.SUCCESS)
    received: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, received.append)

    broadcaster.start_monitoring(build.build_id)
    await _until(lambda: StreamEventType.COMPLETE in _types(received))

    assert not failures
    assert _types(received)[0] == StreamEventType.STATUS


async def test_monitor_completes_and_serves_late_subscribers(
    repo: InMemoryRepository,
    settings: SandcastleSettings,
    build: Build,
) -> None:
    broadcaster = BuildBroadcaster(repo, settings.model_copy(update={"build_monitor_grace_period": 0.3}))
    received: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, received.append)
    broadcaster.start_monitoring(build.build_id)
    await repo.update_build(build.build_id, status=BuildStatus.SUCCESS, install_logs="ok\n")

    await _until(lambda: StreamEventType.COMPLETE in _types(received))
    late: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, late.append)

    assert _types(received).count(StreamEventType.COMPLETE) == 1
    assert _types(late) == [StreamEventType.COMPLETE]
    assert late[0].data["install_logs"] == "ok\n"

    # The monitor exits after the grace period and forgets the cached event.
    await _until(lambda: not broadcaster.is_monitoring(build.build_id))
    after: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, after.append)
    assert after == []


async def test_monitor_stops_when_last_subscriber_leaves(
    repo: InMemoryRepository,
    settings: SandcastleSettings,
    build: Build,
) -> None:
    broadcaster = BuildBroadcaster(repo, settings.model_copy(update={"build_poll_interval": 30.0}))
    unsubscribe = broadcaster.subscribe(build.build_id, lambda event: None)
    broadcaster.start_monitoring(build.build_id)
    assert broadcaster.is_monitoring(build.build_id)

    unsubscribe()

    await _until(lambda: not broadcaster.is_monitoring(build.build_id), timeout=1.0)
    assert broadcaster.monitor_count == 0


async def test_monitor_without_subscribers_exits(broadcaster: BuildBroadcaster, build: Build) -> None:
    broadcaster.start_monitoring(build.build_id)

    await _until(lambda: not broadcaster.is_monitoring(build.build_id))


async def test_missing_build_broadcasts_error(broadcaster: BuildBroadcaster) -> None:
    received: list[BuildStreamEvent] = []
    broadcaster.subscribe("ghost", received.append)

    broadcaster.start_monitoring("ghost")
    await _until(lambda: bool(received))

    assert _types(received) == [StreamEventType.ERROR]
    assert received[0].data["message"] == "Build ghost not found"


async def test_shutdown_cancels_monitors(
    repo: InMemoryRepository,
    settings: SandcastleSettings,
    build: Build,
) -> None:
    broadcaster = BuildBroadcaster(repo, settings.model_copy(update={"build_poll_interval": 30.0}))
    broadcaster.subscribe(build.build_id, lambda event: None)
    broadcaster.start_monitoring(build.build_id)

    await broadcaster.shutdown()

    assert broadcaster.monitor_count == 0
    assert broadcaster.subscriber_count(build.build_id) == 0


# ---------------------------------------------------------------------------
# Streaming builds
# ---------------------------------------------------------------------------


async def test_streaming_build_end_to_end(
    repo: InMemoryRepository,
    execution: ExecutionService,
    forwarder: ContextForwarder,
    provider: FakeProvider,
    settings: SandcastleSettings,
    broadcaster: BuildBroadcaster,
    running: Workspace,
) -> None:
    provider.command_results["ls -1A"] = CommandResult(stdout="go.mod\n")
    manager = BuildManager(repo, execution, forwarder, settings)
    streaming = StreamingBuilds(manager, broadcaster)

    build = await streaming.create_and_start_build("proj-1", running.workspace_id, {"trigger": "push"})
    received: list[BuildStreamEvent] = []
    broadcaster.subscribe(build.build_id, received.append)
    broadcaster.start_monitoring(build.build_id)

    await _until(lambda: StreamEventType.COMPLETE in _types(received))
    report = await streaming.get_build_status(build.build_id)

    complete = next(e for e in received if e.type == StreamEventType.COMPLETE)
    assert complete.data["status"] == BuildStatus.SUCCESS
    assert report.build.status == BuildStatus.SUCCESS
    assert report.subscribers == 1
    assert report.build.metadata["trigger"] == "push"
    await manager.close()
