"""Build pipeline manager -- drives a build through its fixed phase sequence.

    pending -> setup -> install -> build -> complete
    any -> failed

Each phase transition appends a ``phase_change`` event and each unit of
work a ``progress`` event labelled ``[n/total]``.  Install failures abort
the build; a failing build command only produces a ``warning``.

Builds run detached from the request that started them; progress is
observed through the repository (events, live output) or the broadcaster.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from loguru import logger

from sandcastle.orchestrator.errors import BuildCommandError, NotFoundError
from sandcastle.orchestrator.execution.classify import detect_error_severity, is_error_output
from sandcastle.orchestrator.execution.techstack import get_build_command, get_install_command
from sandcastle.orchestrator.models.build import DEFAULT_TOTAL_STEPS, Build, BuildEvent, BuildStatusReport
from sandcastle.orchestrator.models.enums import BuildEventType, BuildLogType, BuildPhase, BuildStatus
from sandcastle.orchestrator.models.execution import CommandResult
from sandcastle.orchestrator.resilience import DetachedTasks, best_effort
from sandcastle.orchestrator.settings import get_settings

if TYPE_CHECKING:
    from sandcastle.orchestrator.collaborators import ContextForwarder
    from sandcastle.orchestrator.execution.commands import ExecutionService
    from sandcastle.orchestrator.settings import SandcastleSettings
    from sandcastle.orchestrator.store.base import Repository

STATUS_EVENT_WINDOW = 50

_LOG_PHASES = {
    BuildLogType.INSTALL: BuildPhase.INSTALL,
    BuildLogType.BUILD: BuildPhase.BUILD,
}

_STOP = object()


def _now() -> datetime:
    return datetime.now(UTC)


def _millis() -> int:
    return int(time.time() * 1000)


def _elapsed_ms(build: Build) -> int:
    started = build.started_at or build.created_at or _now()
    return max(0, int((_now() - started).total_seconds() * 1000))


class BuildManager:
    """Creates builds and runs their pipelines inside workspace sessions.

    Instantiated once during app lifespan.  Running pipelines are owned by
    a ``DetachedTasks`` group and cancelled by ``close``.
    """

    def __init__(
        self,
        repository: Repository,
        execution: ExecutionService,
        forwarder: ContextForwarder,
        settings: SandcastleSettings | None = None,
    ) -> None:
        self._repo = repository
        self._execution = execution
        self._forwarder = forwarder
        self._settings = settings or get_settings()
        self._tasks = DetachedTasks("build-manager")

    @property
    def running_count(self) -> int:
        return self._tasks.active_count

    # -- Event helpers ---------------------------------------------------------

    async def _event(
        self,
        build_id: str,
        event_type: BuildEventType,
        message: str | None = None,
        *,
        phase: BuildPhase | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BuildEvent:
        return await self._repo.add_build_event(
            BuildEvent(
                build_id=build_id,
                event_type=event_type,
                phase=phase,
                message=message,
                metadata=metadata,
            )
        )

    async def _set_phase(self, build_id: str, phase: BuildPhase, message: str | None = None) -> None:
        await self._repo.update_build(build_id, phase=phase)
        await self._event(build_id, BuildEventType.PHASE_CHANGE, message or f"Phase: {phase}", phase=phase)
        logger.info("Build {} phase: {}{}", build_id, phase, f" - {message}" if message else "")

    async def _step(self, build_id: str, label: str, current: int, total: int = DEFAULT_TOTAL_STEPS) -> None:
        await self._repo.update_build(build_id, current_step=current, total_steps=total)
        await self._event(
            build_id,
            BuildEventType.PROGRESS,
            f"[{current}/{total}] {label}",
            metadata={"currentStep": current, "totalSteps": total},
        )
        logger.info("Build {} [{}/{}] {}", build_id, current, total, label)

    # -- Create / start --------------------------------------------------------

    async def create_build(
        self,
        project_id: str,
        workspace_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> Build:
        build = await self._repo.insert_build(
            Build(
                build_id=str(uuid.uuid4()),
                project_id=project_id,
                workspace_id=workspace_id,
                status=BuildStatus.PENDING,
                phase=BuildPhase.PENDING,
                total_steps=DEFAULT_TOTAL_STEPS,
                metadata=metadata or {},
                started_at=_now(),
            )
        )
        await self._event(
            build.build_id,
            BuildEventType.PHASE_CHANGE,
            "Build created",
            phase=BuildPhase.PENDING,
            metadata=metadata,
        )
        logger.info("Created build {} for project {} in workspace {}", build.build_id, project_id, workspace_id)
        return build

    async def start_build(self, build_id: str) -> asyncio.Task[Build]:
        """Run the pipeline for *build_id* in the background and return its task.

        Failures are recorded on the build itself; the task's exception is
        only logged.
        """
        build = await self.get_build(build_id)
        return self._tasks.spawn(self.run_build_with_session(build), name=f"build:{build_id}")

    # -- Pipeline --------------------------------------------------------------

    async def run_build_with_session(self, build: Build) -> Build:
        build_id = build.build_id
        workspace_id = build.workspace_id
        session_id: str | None = None

        try:
            await self._repo.update_build(build_id, status=BuildStatus.BUILDING)

            # 1. setup
            await self._set_phase(build_id, BuildPhase.SETUP, "Initializing build environment")
            await self._step(build_id, "Creating process session", 1)
            session_id = await self._execution.create_session(workspace_id, f"build-{build_id}-{_millis()}")
            build = await self._repo.update_build(build_id, session_id=session_id)
            await self._event(build_id, BuildEventType.LOG, f"Process session created: {session_id}")

            await self._step(build_id, "Detecting project technology stack", 2)
            stack = await self._execution.detect_tech_stack(workspace_id)
            tech = {
                "language": stack.language,
                "framework": stack.framework,
                "packageManager": stack.package_manager,
            }
            await self._event(
                build_id,
                BuildEventType.LOG,
                f"Tech stack: {stack.language}/{stack.framework}",
                metadata={"techStack": tech},
            )
            metadata = dict(build.metadata or {})
            metadata["techStack"] = tech
            build = await self._repo.update_build(build_id, metadata=metadata)

            # 2. install
            await self._set_phase(build_id, BuildPhase.INSTALL, "Installing dependencies")
            await self._step(build_id, f"Installing dependencies with {stack.package_manager}", 3)
            install = await self.run_build_command(
                build, session_id, get_install_command(stack), BuildLogType.INSTALL
            )
            if not install.ok:
                msg = f"Dependency installation failed: {install.stderr or _exit_message(install)}"
                raise BuildCommandError(msg)

            # 3. build
            build_command = get_build_command(stack)
            if build_command:
                await self._set_phase(build_id, BuildPhase.BUILD, "Building project")
                await self._step(build_id, f"Running build command: {build_command}", 4)
                result = await self.run_build_command(build, session_id, build_command, BuildLogType.BUILD)
                if not result.ok:
                    await self._event(
                        build_id,
                        BuildEventType.WARNING,
                        f"Build command failed: {result.stderr or _exit_message(result)}",
                        phase=BuildPhase.BUILD,
                    )
            else:
                await self._event(build_id, BuildEventType.LOG, "No build step required")

            # 4. complete
            await self._step(build_id, "Finalizing build", 5)
            duration = _elapsed_ms(build)
            build = await self._repo.update_build(
                build_id,
                status=BuildStatus.SUCCESS,
                phase=BuildPhase.COMPLETE,
                duration_ms=duration,
                completed_at=_now(),
            )
            await self._event(
                build_id,
                BuildEventType.PHASE_CHANGE,
                f"Build completed in {duration}ms",
                phase=BuildPhase.COMPLETE,
                metadata={"duration": duration},
            )
            logger.info("Build {} completed in {}ms", build_id, duration)
        except asyncio.CancelledError:
            await self._record_failure(build, "Build cancelled")
            raise
        except Exception as exc:
            await self._record_failure(build, str(exc) or type(exc).__name__)
            raise
        finally:
            if session_id is not None:
                async with best_effort(f"cleanup of build session {session_id}"):
                    await self._execution.delete_session(workspace_id, session_id)

        return build

    async def _record_failure(self, build: Build, message: str) -> None:
        duration = _elapsed_ms(build)
        logger.error("Build {} failed after {}ms: {}", build.build_id, duration, message)
        async with best_effort(f"failure record of build {build.build_id}"):
            await self._repo.update_build(
                build.build_id,
                status=BuildStatus.FAILED,
                phase=BuildPhase.FAILED,
                error_message=message,
                duration_ms=duration,
                completed_at=_now(),
            )
            await self._event(
                build.build_id,
                BuildEventType.ERROR,
                f"Build failed: {message}",
                phase=BuildPhase.FAILED,
                metadata={"error": message},
            )

    # -- Command streaming -----------------------------------------------------

    async def run_build_command(
        self,
        build: Build,
        session_id: str | None,
        command: str,
        log_type: BuildLogType,
    ) -> CommandResult:
        """Run one pipeline command, persisting its output as it arrives.

        With a session the output is streamed chunk by chunk into
        ``live_output`` and the phase's log column; without one the command
        runs one-shot and its output is appended once.  Infrastructure errors
        are reported as a failed result so the phase decides the outcome.
        """
        build_id = build.build_id
        logger.info("Build {} running {} command: {}", build_id, log_type, command)

        if session_id is None or not self._execution.provider_configured:
            return await self._run_one_shot(build, command, log_type)

        queue: asyncio.Queue[object] = asyncio.Queue()
        writer = asyncio.create_task(self._drain_output(build, queue, log_type), name=f"build-output:{build_id}")

        try:
            result = await self._execution.run_session_command(
                build.workspace_id,
                session_id,
                command,
                on_stdout=lambda chunk: queue.put_nowait((chunk, False)),
                on_stderr=lambda chunk: queue.put_nowait((chunk, True)),
            )
        except Exception as exc:
            logger.error("Build {} command failed to run: {}", build_id, exc)
            result = CommandResult(stdout="", stderr=str(exc), exit_code=1)
        finally:
            queue.put_nowait(_STOP)
            await writer

        logger.info("Build {} command exited with {}", build_id, result.exit_code)
        return result

    async def _drain_output(self, build: Build, queue: asyncio.Queue[object], log_type: BuildLogType) -> None:
        """Single writer: persists queued chunks in arrival order."""
        while True:
            item = await queue.get()
            if item is _STOP:
                return
            chunk, from_stderr = item  # type: ignore[misc]
            async with best_effort(f"output write for build {build.build_id}"):
                await self._repo.append_build_output(build.build_id, chunk, log_type)
            if is_error_output(chunk):
                await self._report_error_chunk(build, chunk, log_type)
            elif from_stderr:
                logger.debug("Build {} stderr: {}", build.build_id, chunk.rstrip())

    async def _report_error_chunk(self, build: Build, chunk: str, log_type: BuildLogType) -> None:
        phase = _LOG_PHASES[log_type]
        async with best_effort(f"error event for build {build.build_id}"):
            await self._event(build.build_id, BuildEventType.ERROR, chunk, phase=phase)
        self._forwarder.forward(
            build.project_id,
            "error",
            f"build_{build.build_id}_{phase}_{_millis()}",
            chunk,
            {
                "buildId": build.build_id,
                "source": "build",
                "phase": str(phase),
                "timestamp": _now().isoformat(),
                "autoForwarded": True,
                "severity": str(detect_error_severity(chunk)),
            },
        )

    async def _run_one_shot(self, build: Build, command: str, log_type: BuildLogType) -> CommandResult:
        try:
            result = await self._execution.execute_command(build.workspace_id, command)
        except Exception as exc:
            logger.error("Build {} command failed to run: {}", build.build_id, exc)
            return CommandResult(stdout="", stderr=str(exc), exit_code=1)
        output = result.stdout + result.stderr
        if output:
            await self._repo.append_build_output(build.build_id, output, log_type)
        return result

    # -- Reads -----------------------------------------------------------------

    async def get_build(self, build_id: str) -> Build:
        build = await self._repo.get_build(build_id)
        if build is None:
            msg = f"Build {build_id} not found"
            raise NotFoundError(msg)
        return build

    async def list_builds(self, project_id: str, limit: int = 20) -> list[Build]:
        return await self._repo.list_builds(project_id, limit=limit)

    async def get_build_events(self, build_id: str, limit: int = 100) -> list[BuildEvent]:
        await self.get_build(build_id)
        return await self._repo.list_build_events(build_id, limit=limit)

    async def get_build_status(self, build_id: str) -> BuildStatusReport:
        """Build record plus its most recent events, oldest first."""
        build = await self.get_build(build_id)
        events = await self._repo.recent_build_events(build_id, limit=STATUS_EVENT_WINDOW)
        return BuildStatusReport(build=build, events=events)

    # -- Lifecycle -------------------------------------------------------------

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Wait for running pipelines.  Returns ``False`` if *timeout* expired first."""
        return await self._tasks.wait(timeout)

    async def close(self) -> None:
        await self._tasks.cancel_all()


def _exit_message(result: CommandResult) -> str:
    return f"Command failed with exit code {result.exit_code}"
