"""Tests for WorkspaceManager against the in-memory repository and fake provider."""

from __future__ import annotations

import pytest

from sandcastle.orchestrator.errors import ConfigurationError, NotFoundError, ProviderError
from sandcastle.orchestrator.managers.workspaces import (
    MISSING_CREDENTIAL_MESSAGE,
    SANDBOX_NOT_FOUND_MESSAGE,
    WorkspaceManager,
    map_provider_state,
)
from sandcastle.orchestrator.models.enums import WorkspaceStatus
from sandcastle.orchestrator.models.workspace import Workspace, WorkspaceOptions
from sandcastle.orchestrator.settings import SandcastleSettings
from tests.orchestrator.fakes import FakeProvider, InMemoryRepository, StaticProjectDirectory

# ---------------------------------------------------------------------------
# Create / start
# ---------------------------------------------------------------------------


async def test_create_workspace_walks_pending_starting_running(
    workspaces: WorkspaceManager,
    repo: InMemoryRepository,
) -> None:
    workspace = await workspaces.create_workspace("proj-1", "Demo Workspace")

    assert workspace.status == WorkspaceStatus.RUNNING
    assert workspace.sandbox_id == "sbx-1"
    assert workspace.started_at is not None
    assert repo.status_history(workspace.workspace_id) == [
        WorkspaceStatus.PENDING,
        WorkspaceStatus.STARTING,
        WorkspaceStatus.RUNNING,
    ]
    assert len(repo.workspace_writes) == 3


async def test_create_workspace_passes_options_and_labels(workspaces: WorkspaceManager, provider: FakeProvider) -> None:
    options = WorkspaceOptions(language="python", environment={"FOO": "bar"}, auto_stop_interval=30, ephemeral=True)
    workspace = await workspaces.create_workspace("proj-1", "Demo Workspace", options)

    spec = provider.specs[0]
    assert spec.language == "python"
    assert spec.env_vars == {"FOO": "bar"}
    assert spec.auto_stop_interval == 30
    assert spec.ephemeral is True
    assert spec.labels["sandcastle_project_id"] == "proj-1"
    assert spec.labels["sandcastle_workspace_id"] == workspace.workspace_id


async def test_create_without_credential_fails_fast(
    repo: InMemoryRepository,
    projects: StaticProjectDirectory,
    settings: SandcastleSettings,
) -> None:
    manager = WorkspaceManager(repo, None, projects, settings)

    with pytest.raises(ConfigurationError):
        await manager.create_workspace("proj-1", "Demo Workspace")

    (stored,) = repo.workspaces.values()
    assert stored.status == WorkspaceStatus.ERROR
    assert stored.error_message == MISSING_CREDENTIAL_MESSAGE
    assert stored.sandbox_id is None


async def test_create_failure_marks_error_and_reraises(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
) -> None:
    provider.create_errors = [ProviderError("quota exceeded")] * 3

    with pytest.raises(ProviderError, match="quota exceeded"):
        await workspaces.create_workspace("proj-1", "Demo Workspace")

    (stored,) = repo.workspaces.values()
    assert stored.status == WorkspaceStatus.ERROR
    assert stored.error_message == "Failed to start workspace: quota exceeded"
    assert provider.calls.count(("create",)) == 3


async def test_create_timeout_covers_all_attempts(
    repo: InMemoryRepository,
    provider: FakeProvider,
    projects: StaticProjectDirectory,
    settings: SandcastleSettings,
) -> None:
    provider.create_delay = 1.0
    manager = WorkspaceManager(repo, provider, projects, settings.model_copy(update={"provider_create_timeout": 0.1}))

    with pytest.raises(TimeoutError, match="Sandbox creation timed out after 0.1s"):
        await manager.create_workspace("proj-1", "Demo Workspace")

    (stored,) = repo.workspaces.values()
    assert stored.status == WorkspaceStatus.ERROR
    assert provider.calls.count(("create",)) == 1


async def test_create_retries_transient_failure(workspaces: WorkspaceManager, provider: FakeProvider) -> None:
    provider.create_errors = [ProviderError("temporarily unavailable")]

    workspace = await workspaces.create_workspace("proj-1", "Demo Workspace")

    assert workspace.status == WorkspaceStatus.RUNNING
    assert provider.calls.count(("create",)) == 2


# ---------------------------------------------------------------------------
# Read / reconcile
# ---------------------------------------------------------------------------


def test_map_provider_state() -> None:
    assert map_provider_state("STARTED") == WorkspaceStatus.RUNNING
    assert map_provider_state("creating") == WorkspaceStatus.STARTING
    assert map_provider_state("archived") == WorkspaceStatus.DELETED
    assert map_provider_state("build_failed") == WorkspaceStatus.ERROR
    assert map_provider_state("hibernating") is None
    assert map_provider_state(None) is None


async def test_sync_is_idempotent(workspaces: WorkspaceManager, repo: InMemoryRepository, running: Workspace) -> None:
    writes_before = len(repo.workspace_writes)

    first = await workspaces.sync_workspace_status(running.workspace_id)
    second = await workspaces.sync_workspace_status(running.workspace_id)

    assert first.status == second.status == WorkspaceStatus.RUNNING
    assert len(repo.workspace_writes) == writes_before


async def test_sync_picks_up_provider_stop(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    running: Workspace,
) -> None:
    provider.states[running.sandbox_id] = "stopped"

    workspace = await workspaces.sync_workspace_status(running.workspace_id)

    assert workspace.status == WorkspaceStatus.STOPPED
    assert workspace.stopped_at is not None


async def test_sync_missing_sandbox_marks_error(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    del provider.states[running.sandbox_id]

    workspace = await workspaces.sync_workspace_status(running.workspace_id)
    writes = len(repo.workspace_writes)
    again = await workspaces.sync_workspace_status(running.workspace_id)

    assert workspace.status == WorkspaceStatus.ERROR
    assert workspace.error_message == SANDBOX_NOT_FOUND_MESSAGE
    assert again.status == WorkspaceStatus.ERROR
    assert len(repo.workspace_writes) == writes


async def test_sync_ignores_unknown_state(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    provider.states[running.sandbox_id] = "resizing"
    writes = len(repo.workspace_writes)

    workspace = await workspaces.sync_workspace_status(running.workspace_id)

    assert workspace.status == WorkspaceStatus.RUNNING
    assert len(repo.workspace_writes) == writes


async def test_get_workspace_unknown_raises(workspaces: WorkspaceManager) -> None:
    with pytest.raises(NotFoundError):
        await workspaces.get_workspace("nope")


async def test_get_project_workspace_none(workspaces: WorkspaceManager) -> None:
    assert await workspaces.get_project_workspace("proj-unknown") is None


# ---------------------------------------------------------------------------
# Stop / restart / delete
# ---------------------------------------------------------------------------


async def test_stop_then_restart(workspaces: WorkspaceManager, provider: FakeProvider, running: Workspace) -> None:
    stopped = await workspaces.stop_workspace(running.workspace_id)
    assert stopped.status == WorkspaceStatus.STOPPED
    assert ("stop", "sbx-1") in provider.calls

    # Stopping twice is a no-op.
    assert (await workspaces.stop_workspace(running.workspace_id)).status == WorkspaceStatus.STOPPED
    assert provider.calls.count(("stop", "sbx-1")) == 1

    restarted = await workspaces.restart_workspace(running.workspace_id)
    assert restarted.status == WorkspaceStatus.RUNNING
    assert restarted.sandbox_id == "sbx-1"
    assert ("start", "sbx-1") in provider.calls


async def test_stop_failure_marks_error(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    repo: InMemoryRepository,
    running: Workspace,
) -> None:
    provider.stop_error = ProviderError("stop rejected")

    with pytest.raises(ProviderError):
        await workspaces.stop_workspace(running.workspace_id)

    stored = repo.workspaces[running.workspace_id]
    assert stored.status == WorkspaceStatus.ERROR
    assert stored.error_message == "Failed to stop workspace: stop rejected"


async def test_delete_stops_and_deletes(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    running: Workspace,
) -> None:
    deleted = await workspaces.delete_workspace(running.workspace_id)

    assert deleted.status == WorkspaceStatus.DELETED
    assert deleted.deleted_at is not None
    assert provider.calls[-2:] == [("stop", "sbx-1"), ("delete", "sbx-1")]

    with pytest.raises(NotFoundError):
        await workspaces.get_workspace(running.workspace_id)

    # Deleting again is a no-op.
    again = await workspaces.delete_workspace(running.workspace_id)
    assert again.status == WorkspaceStatus.DELETED
    assert provider.calls.count(("delete", "sbx-1")) == 1


async def test_delete_survives_provider_failure(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
    running: Workspace,
) -> None:
    provider.delete_error = ProviderError("already gone")

    deleted = await workspaces.delete_workspace(running.workspace_id)

    assert deleted.status == WorkspaceStatus.DELETED


# ---------------------------------------------------------------------------
# Project workspaces
# ---------------------------------------------------------------------------


async def test_get_or_create_provisions_with_project_defaults(
    workspaces: WorkspaceManager,
    provider: FakeProvider,
) -> None:
    workspace = await workspaces.get_or_create_workspace("proj-1")

    assert workspace.name == "Demo Workspace"
    assert workspace.status == WorkspaceStatus.RUNNING
    spec = provider.specs[0]
    assert spec.language == "python"
    assert spec.env_vars == {"PROJECT_ID": "proj-1", "PROJECT_NAME": "Demo"}
    assert spec.auto_stop_interval == 60
    assert spec.auto_archive_interval == 24 * 60


async def test_get_or_create_reuses_existing(workspaces: WorkspaceManager, provider: FakeProvider) -> None:
    first = await workspaces.get_or_create_workspace("proj-1")
    second = await workspaces.get_or_create_workspace("proj-1")

    assert second.workspace_id == first.workspace_id
    assert provider.calls.count(("create",)) == 1


async def test_get_or_create_unknown_project(workspaces: WorkspaceManager) -> None:
    with pytest.raises(NotFoundError, match="Project proj-x not found"):
        await workspaces.get_or_create_workspace("proj-x")


async def test_rebuild_replaces_workspace(workspaces: WorkspaceManager, repo: InMemoryRepository) -> None:
    first = await workspaces.get_or_create_workspace("proj-1")

    rebuilt = await workspaces.rebuild_workspace("proj-1")

    assert rebuilt.workspace_id != first.workspace_id
    assert rebuilt.sandbox_id == "sbx-2"
    assert repo.workspaces[first.workspace_id].status == WorkspaceStatus.DELETED


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


async def test_logs_newest_first(workspaces: WorkspaceManager, running: Workspace) -> None:
    await workspaces.stop_workspace(running.workspace_id)

    logs = await workspaces.get_logs(running.workspace_id)

    assert logs[0].message == "Workspace stopped"
    assert logs[-1].message == "Workspace created: Demo Workspace"
    assert len(await workspaces.get_logs(running.workspace_id, limit=2)) == 2
