"""Shared fixtures for orchestrator unit tests (in-memory fakes, no Docker)."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from sandcastle.orchestrator.collaborators import ContextForwarder
from sandcastle.orchestrator.execution.commands import ExecutionService
from sandcastle.orchestrator.managers.workspaces import WorkspaceManager
from sandcastle.orchestrator.models.workspace import ProjectInfo, Workspace
from sandcastle.orchestrator.registry import SessionRegistry
from sandcastle.orchestrator.settings import SandcastleSettings
from tests.orchestrator.fakes import FakeProvider, InMemoryRepository, RecordingContextSink, StaticProjectDirectory


@pytest.fixture
def settings() -> SandcastleSettings:
    """Settings with every wait shrunk so retries and polls are instant."""
    return SandcastleSettings(
        database_url=None,
        provider_retry_delay=0.0,
        provider_create_timeout=5.0,
        provider_call_timeout=5.0,
        pty_connect_timeout=1.0,
        pty_input_timeout=1.0,
        build_poll_interval=0.01,
        build_monitor_grace_period=0.05,
    )


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def sink() -> RecordingContextSink:
    return RecordingContextSink()


@pytest.fixture
async def forwarder(sink: RecordingContextSink) -> AsyncIterator[ContextForwarder]:
    fwd = ContextForwarder(sink)
    yield fwd
    await fwd.close()


@pytest.fixture
def projects() -> StaticProjectDirectory:
    return StaticProjectDirectory(ProjectInfo(project_id="proj-1", name="Demo", template="python"))


@pytest.fixture
def workspaces(
    repo: InMemoryRepository,
    provider: FakeProvider,
    projects: StaticProjectDirectory,
    settings: SandcastleSettings,
) -> WorkspaceManager:
    return WorkspaceManager(repo, provider, projects, settings)


@pytest.fixture
async def execution(
    repo: InMemoryRepository,
    provider: FakeProvider,
    registry: SessionRegistry,
    settings: SandcastleSettings,
) -> AsyncIterator[ExecutionService]:
    service = ExecutionService(repo, provider, registry, settings)
    yield service
    await service.close()


@pytest.fixture
async def running(workspaces: WorkspaceManager) -> Workspace:
    """A workspace in ``running`` state on sandbox ``sbx-1``."""
    return await workspaces.create_workspace("proj-1", "Demo Workspace")
