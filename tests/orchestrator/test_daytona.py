"""Unit tests for the Daytona provider adapter (SDK client mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from sandcastle.orchestrator.errors import ProviderError, SandboxNotFoundError
from sandcastle.orchestrator.models.enums import SessionKind
from sandcastle.orchestrator.provider.base import SandboxProvider
from sandcastle.orchestrator.provider.daytona import DaytonaProvider, DaytonaPtyHandle, normalize_language
from sandcastle.orchestrator.settings import SandcastleSettings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class NotFound(Exception):
    status_code = 404


def _mock_sandbox(sandbox_id: str = "sbx-1", state: str = "started") -> MagicMock:
    sandbox = MagicMock()
    sandbox.id = sandbox_id
    sandbox.state = MagicMock(value=state)
    sandbox.process = MagicMock()
    sandbox.process.exec = AsyncMock()
    sandbox.process.get_session = AsyncMock()
    sandbox.process.get_pty_session_info = AsyncMock()
    sandbox.process.delete_session = AsyncMock()
    sandbox.fs = MagicMock()
    sandbox.fs.download_file = AsyncMock(return_value=b"{}")
    return sandbox


def _mock_client(sandbox: MagicMock | None = None) -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=sandbox or _mock_sandbox())
    client.delete = AsyncMock()
    client.stop = AsyncMock()
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_satisfies_protocol() -> None:
    assert isinstance(DaytonaProvider(_mock_client()), SandboxProvider)


def test_from_settings_without_key_is_none() -> None:
    settings = SandcastleSettings(database_url=None, daytona_api_key=None)

    assert DaytonaProvider.from_settings(settings) is None


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        (None, "typescript"),
        ("", "typescript"),
        ("NextJS", "typescript"),
        ("django", "python"),
        ("js", "javascript"),
        ("rust", "typescript"),
    ],
)
def test_normalize_language(name: str | None, expected: str) -> None:
    assert normalize_language(name) == expected


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_sandbox_is_cached_between_calls() -> None:
    client = _mock_client()
    provider = DaytonaProvider(client)

    await provider.stop("sbx-1")
    await provider.stop("sbx-1")

    client.get.assert_awaited_once_with("sbx-1")
    assert client.stop.await_count == 2


async def test_get_state_refetches() -> None:
    client = _mock_client(_mock_sandbox(state="STOPPED"))
    provider = DaytonaProvider(client)

    assert await provider.get_state("sbx-1") == "stopped"
    assert await provider.get_state("sbx-1") == "stopped"
    assert client.get.await_count == 2


async def test_missing_sandbox_raises_not_found() -> None:
    client = _mock_client()
    client.get.side_effect = NotFound("gone")
    provider = DaytonaProvider(client)

    with pytest.raises(SandboxNotFoundError):
        await provider.get_state("sbx-1")


async def test_other_lookup_failure_is_provider_error() -> None:
    client = _mock_client()
    client.get.side_effect = RuntimeError("connection reset")
    provider = DaytonaProvider(client)

    with pytest.raises(ProviderError, match="Failed to load sandbox sbx-1: connection reset"):
        await provider.stop("sbx-1")


async def test_delete_drops_cache() -> None:
    client = _mock_client()
    provider = DaytonaProvider(client)

    await provider.delete("sbx-1")
    await provider.stop("sbx-1")

    assert client.get.await_count == 2


async def test_close_closes_client() -> None:
    client = _mock_client()
    provider = DaytonaProvider(client)

    await provider.close()

    client.close.assert_awaited_once()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def test_execute_command_maps_response() -> None:
    sandbox = _mock_sandbox()
    sandbox.process.exec.return_value = MagicMock(result="hello\n", exit_code=0, artifacts=None)
    provider = DaytonaProvider(_mock_client(sandbox))

    result = await provider.execute_command("sbx-1", "echo hello", cwd="/workspace", timeout=30)

    sandbox.process.exec.assert_awaited_once_with("echo hello", cwd="/workspace", timeout=30)
    assert result.stdout == "hello\n"
    assert result.exit_code == 0


async def test_execute_command_without_exit_code() -> None:
    sandbox = _mock_sandbox()
    sandbox.process.exec.return_value = MagicMock(result="", exit_code=None, artifacts=None)
    provider = DaytonaProvider(_mock_client(sandbox))

    result = await provider.execute_command("sbx-1", "true")

    assert result.exit_code == -1


async def test_get_session_falls_back_to_pty() -> None:
    sandbox = _mock_sandbox()
    sandbox.process.get_session.side_effect = NotFound("no such session")
    provider = DaytonaProvider(_mock_client(sandbox))

    info = await provider.get_session("sbx-1", "pty-1")

    assert info is not None
    assert info.kind == SessionKind.PTY_ONLY


async def test_get_session_missing_everywhere() -> None:
    sandbox = _mock_sandbox()
    sandbox.process.get_session.side_effect = NotFound("no such session")
    sandbox.process.get_pty_session_info.side_effect = NotFound("no such pty")
    provider = DaytonaProvider(_mock_client(sandbox))

    assert await provider.get_session("sbx-1", "ghost") is None


async def test_get_session_propagates_other_errors() -> None:
    sandbox = _mock_sandbox()
    sandbox.process.get_session.side_effect = RuntimeError("boom")
    provider = DaytonaProvider(_mock_client(sandbox))

    with pytest.raises(RuntimeError, match="boom"):
        await provider.get_session("sbx-1", "s-1")


async def test_read_file() -> None:
    sandbox = _mock_sandbox()
    provider = DaytonaProvider(_mock_client(sandbox))

    assert await provider.read_file("sbx-1", "/workspace/package.json") == b"{}"
    sandbox.fs.download_file.assert_awaited_once_with("/workspace/package.json")


# ---------------------------------------------------------------------------
# PTY handle
# ---------------------------------------------------------------------------


async def test_pty_handle_delegates() -> None:
    raw = MagicMock()
    raw.wait_for_connection = AsyncMock()
    raw.send_input = AsyncMock()
    raw.kill = AsyncMock()
    raw.is_connected.return_value = True
    raw.exit_code = None
    handle = DaytonaPtyHandle(raw)

    await handle.wait_for_connection(timeout=5)
    await handle.send_input("ls\n")
    await handle.kill()

    raw.wait_for_connection.assert_awaited_once_with(timeout=5)
    raw.send_input.assert_awaited_once_with("ls\n")
    raw.kill.assert_awaited_once()
    assert handle.is_connected() is True
    assert handle.exit_code is None
