"""Tests for the build pipeline: phase sequence, output streaming and failure handling."""

from __future__ import annotations

import asyncio
import json

import pytest

from sandcastle.orchestrator.collaborators import ContextForwarder
from sandcastle.orchestrator.errors import BuildCommandError, NotFoundError, ProviderError, ValidationError
from sandcastle.orchestrator.execution.commands import ExecutionService
from sandcastle.orchestrator.managers.builds import BuildManager
from sandcastle.orchestrator.managers.workspaces import WorkspaceManager
from sandcastle.orchestrator.models.build import Build
from sandcastle.orchestrator.models.enums import BuildEventType, BuildLogType, BuildPhase, BuildStatus
from sandcastle.orchestrator.models.execution import CommandResult
from sandcastle.orchestrator.models.workspace import Workspace
from sandcastle.orchestrator.settings import SandcastleSettings
from tests.orchestrator.fakes import FakeProvider, InMemoryRepository, RecordingContextSink


@pytest.fixture
async def builds(
    repo: InMemoryRepository,
    execution: ExecutionService,
    forwarder: ContextForwarder,
    settings: SandcastleSettings,
):
    manager = BuildManager(repo, execution, forwarder, settings)
    yield manager
    await manager.close()


def _node_project(provider: FakeProvider, **deps: str) -> None:
    provider.command_results["ls -1A"] = CommandResult(stdout="package.json\nsrc\nnode_modules\n")
    provider.files["package.json"] = json.dumps({"dependencies": deps}).encode()


def _phases(repo: InMemoryRepository, build_id: str) -> list[BuildPhase]:
    return [e.phase for e in repo.events[build_id] if e.event_type == BuildEventType.PHASE_CHANGE]


def _events(repo: InMemoryRepository, build_id: str, event_type: BuildEventType) -> list[str]:
    return [e.message for e in repo.events[build_id] if e.event_type == event_type]


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


async def test_create_build_is_pending(builds: BuildManager, repo: InMemoryRepository, running: Workspace) -> None:
    build = await builds.create_build("proj-1", running.workspace_id, {"trigger": "manual"})

    assert build.status == BuildStatus.PENDING
    assert build.phase == BuildPhase.PENDING
    assert build.total_steps == 5
    assert build.started_at is not None
    assert build.metadata == {"trigger": "manual"}
    (event,) = repo.events[build.build_id]
    assert event.event_type == BuildEventType.PHASE_CHANGE
    assert event.message == "Build created"


async def test_unknown_build(builds: BuildManager) -> None:
    with pytest.raises(NotFoundError, match="Build nope not found"):
        await builds.get_build("nope")
    with pytest.raises(NotFoundError):
        await builds.get_build_events("nope")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def test_successful_build_walks_every_phase(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    _node_project(provider, next="14.0.0", react="18.2.0")
    provider.session_outputs["npm install"] = (["added 312 packages\n"], [], 0)
    provider.session_outputs["npm run build"] = (["Compiled successfully\n"], [], 0)
    build = await builds.create_build("proj-1", running.workspace_id)

    task = await builds.start_build(build.build_id)
    result = await task

    assert result.status == BuildStatus.SUCCESS
    assert result.phase == BuildPhase.COMPLETE
    assert result.current_step == 5
    assert result.duration_ms is not None
    assert result.completed_at is not None
    assert result.metadata["techStack"] == {"language": "nodejs", "framework": "nextjs", "packageManager": "npm"}
    assert _phases(repo, build.build_id) == [
        BuildPhase.PENDING,
        BuildPhase.SETUP,
        BuildPhase.INSTALL,
        BuildPhase.BUILD,
        BuildPhase.COMPLETE,
    ]
    assert _events(repo, build.build_id, BuildEventType.PROGRESS) == [
        "[1/5] Creating process session",
        "[2/5] Detecting project technology stack",
        "[3/5] Installing dependencies with npm",
        "[4/5] Running build command: npm run build",
        "[5/5] Finalizing build",
    ]

    stored = repo.builds[build.build_id]
    assert stored.install_logs == "added 312 packages\n"
    assert stored.build_logs == "Compiled successfully\n"
    assert stored.live_output == "added 312 packages\nCompiled successfully\n"
    assert [cmd for _, cmd in provider.session_commands] == ["npm install", "npm run build"]
    assert ("delete_session", stored.session_id) in provider.calls


async def test_event_timestamps_strictly_increase(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    _node_project(provider, express="4")
    build = await builds.create_build("proj-1", running.workspace_id)

    await builds.run_build_with_session(build)

    stamps = [e.timestamp for e in await builds.get_build_events(build.build_id)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


async def test_failing_build_command_only_warns(
    builds: BuildManager,
    forwarder: ContextForwarder,
    provider: FakeProvider,
    repo: InMemoryRepository,
    sink: RecordingContextSink,
    running: Workspace,
) -> None:
    _node_project(provider, react="18.2.0")
    provider.session_outputs["npm install"] = (["added 1 package\n"], [], 0)
    provider.session_outputs["npm run build"] = (
        ["> vite build\n"],
        ["Error: Cannot find module 'vite'\n"],
        1,
    )
    build = await builds.create_build("proj-1", running.workspace_id)

    result = await builds.run_build_with_session(build)
    await forwarder.drain(1.0)

    assert result.status == BuildStatus.SUCCESS
    assert _events(repo, build.build_id, BuildEventType.WARNING) == [
        "Build command failed: Error: Cannot find module 'vite'\n",
    ]
    errors = [e for e in repo.events[build.build_id] if e.event_type == BuildEventType.ERROR]
    assert [(e.phase, e.message) for e in errors] == [(BuildPhase.BUILD, "Error: Cannot find module 'vite'\n")]

    (item,) = sink.items
    assert item["project_id"] == "proj-1"
    assert item["kind"] == "error"
    assert item["key"].startswith(f"build_{build.build_id}_build_")
    assert item["metadata"]["buildId"] == build.build_id
    assert item["metadata"]["source"] == "build"
    assert item["metadata"]["phase"] == "build"
    assert item["metadata"]["severity"] == "high"
    assert item["metadata"]["autoForwarded"] is True


async def test_install_failure_fails_build(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    _node_project(provider, next="14.0.0")
    provider.session_outputs["npm install"] = ([], ["npm ERR! code E404\n"], 1)
    build = await builds.create_build("proj-1", running.workspace_id)

    with pytest.raises(BuildCommandError):
        await builds.run_build_with_session(build)

    stored = repo.builds[build.build_id]
    assert stored.status == BuildStatus.FAILED
    assert stored.phase == BuildPhase.FAILED
    assert stored.error_message == "Dependency installation failed: npm ERR! code E404\n"
    assert stored.completed_at is not None
    assert _events(repo, build.build_id, BuildEventType.ERROR) == [f"Build failed: {stored.error_message}"]
    assert BuildPhase.BUILD not in _phases(repo, build.build_id)
    assert [cmd for _, cmd in provider.session_commands] == ["npm install"]
    assert ("delete_session", stored.session_id) in provider.calls


async def test_install_failure_without_stderr_reports_exit_code(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    provider.command_results["ls -1A"] = CommandResult(stdout="requirements.txt\n")
    provider.files["requirements.txt"] = b"flask\n"
    provider.session_outputs["pip install"] = ([], [], 2)
    build = await builds.create_build("proj-1", running.workspace_id)

    with pytest.raises(BuildCommandError, match="Command failed with exit code 2"):
        await builds.run_build_with_session(build)


async def test_no_build_step(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    _node_project(provider, express="4")

    result = await builds.run_build_with_session(await builds.create_build("proj-1", running.workspace_id))

    assert result.status == BuildStatus.SUCCESS
    assert "No build step required" in _events(repo, result.build_id, BuildEventType.LOG)
    assert BuildPhase.BUILD not in _phases(repo, result.build_id)


async def test_session_creation_failure(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    provider.session_error = ProviderError("session quota reached")
    build = await builds.create_build("proj-1", running.workspace_id)

    with pytest.raises(ProviderError):
        await builds.run_build_with_session(build)

    stored = repo.builds[build.build_id]
    assert stored.status == BuildStatus.FAILED
    assert stored.error_message == "session quota reached"
    assert not any(call[0] == "delete_session" for call in provider.calls)


async def test_stopped_workspace_fails_build(
    builds: BuildManager,
    workspaces: WorkspaceManager,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    await workspaces.stop_workspace(running.workspace_id)
    build = await builds.create_build("proj-1", running.workspace_id)

    task = await builds.start_build(build.build_id)
    with pytest.raises(ValidationError):
        await task

    assert repo.builds[build.build_id].status == BuildStatus.FAILED
    assert repo.builds[build.build_id].error_message == "Workspace is not running"


async def test_cancelled_build_is_marked_failed(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _node_project(provider, express="4")
    streaming = asyncio.Event()

    async def stream_forever(*args, **kwargs) -> None:
        streaming.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(provider, "stream_session_command_logs", stream_forever)
    build = await builds.create_build("proj-1", running.workspace_id)
    task = await builds.start_build(build.build_id)
    await asyncio.wait_for(streaming.wait(), 2.0)

    await builds.close()

    assert task.cancelled()
    stored = repo.builds[build.build_id]
    assert stored.status == BuildStatus.FAILED
    assert stored.phase == BuildPhase.FAILED
    assert stored.error_message == "Build cancelled"
    assert stored.completed_at is not None
    assert "Build failed: Build cancelled" in _events(repo, build.build_id, BuildEventType.ERROR)


async def test_one_shot_without_session(
    builds: BuildManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    provider.command_results["npm install"] = CommandResult(stdout="added 3\n", stderr="warn deprecated\n")
    build = await builds.create_build("proj-1", running.workspace_id)

    result = await builds.run_build_command(build, None, "npm install", BuildLogType.INSTALL)

    assert result.ok
    stored = repo.builds[build.build_id]
    assert stored.install_logs == "added 3\nwarn deprecated\n"
    assert stored.live_output == stored.install_logs
    assert stored.build_logs == ""


async def test_one_shot_infrastructure_error_is_failed_result(
    builds: BuildManager,
    provider: FakeProvider,
    running: Workspace,
) -> None:
    provider.command_error = ProviderError("connection reset")
    build = await builds.create_build("proj-1", running.workspace_id)

    result = await builds.run_build_command(build, None, "npm install", BuildLogType.INSTALL)

    assert result.exit_code == 1
    assert result.stderr == "connection reset"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def test_status_report_and_listing(
    builds: BuildManager,
    provider: FakeProvider,
    running: Workspace,
) -> None:
    _node_project(provider, express="4")
    first = await builds.create_build("proj-1", running.workspace_id)
    await builds.run_build_with_session(first)
    second = await builds.create_build("proj-1", running.workspace_id)

    report = await builds.get_build_status(first.build_id)
    listed = await builds.list_builds("proj-1")

    assert report.build.status == BuildStatus.SUCCESS
    assert report.events[-1].phase == BuildPhase.COMPLETE
    assert [b.build_id for b in listed] == [second.build_id, first.build_id]
    assert await builds.list_builds("proj-1", limit=1) == listed[:1]


async def test_wait_until_idle(builds: BuildManager, provider: FakeProvider, running: Workspace) -> None:
    _node_project(provider, express="4")
    build: Build = await builds.create_build("proj-1", running.workspace_id)
    await builds.start_build(build.build_id)

    assert await builds.wait_until_idle(5.0) is True
    assert builds.running_count == 0
