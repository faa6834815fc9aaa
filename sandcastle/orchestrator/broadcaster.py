"""Build event broadcaster -- in-process fan-out of build progress.

Observers ``subscribe`` to a build id with a synchronous callback.  A
monitor task per build samples the repository every poll interval and
pushes typed ``BuildStreamEvent`` objects to every current subscriber:

- ``status`` on every tick,
- one ``event`` per recent build event (5 most recent),
- ``log`` with the tail of the live output,
- ``complete`` once, when the build reaches a terminal status.

The monitor stops as soon as the last subscriber leaves (the unsubscribe
wakes it), or after a grace period following ``complete``.  During the
grace period late subscribers receive the cached ``complete`` event
immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from sandcastle.orchestrator.models.events import BuildStreamEvent
from sandcastle.orchestrator.resilience import DetachedTasks
from sandcastle.orchestrator.settings import get_settings

if TYPE_CHECKING:
    from sandcastle.orchestrator.managers.builds import BuildManager
    from sandcastle.orchestrator.models.build import Build, BuildStatusReport
    from sandcastle.orchestrator.settings import SandcastleSettings
    from sandcastle.orchestrator.store.base import Repository

BuildCallback = Callable[[BuildStreamEvent], None]
"""Subscriber callback.  Must not block; runs on the event loop."""

RECENT_EVENTS = 5


class BuildBroadcaster:
    """Per-build subscriber sets fed by cancellable polling monitors."""

    def __init__(self, repository: Repository, settings: SandcastleSettings | None = None) -> None:
        settings = settings or get_settings()
        self._repo = repository
        self._interval = settings.build_poll_interval
        self._grace = settings.build_monitor_grace_period
        self._subscribers: dict[str, set[BuildCallback]] = {}
        self._monitors: dict[str, asyncio.Task[Any]] = {}
        self._wake: dict[str, asyncio.Event] = {}
        self._final: dict[str, BuildStreamEvent] = {}
        self._tasks = DetachedTasks("build-broadcaster")

    # -- Subscription ----------------------------------------------------------

    def subscribe(self, build_id: str, callback: BuildCallback) -> Callable[[], None]:
        """Register *callback* for *build_id*; returns the unsubscribe function."""
        self._subscribers.setdefault(build_id, set()).add(callback)
        logger.debug("Broadcaster: subscriber added to build {} ({} total)", build_id, self.subscriber_count(build_id))

        final = self._final.get(build_id)
        if final is not None:
            self._deliver(callback, final)

        def unsubscribe() -> None:
            subscribers = self._subscribers.get(build_id)
            if subscribers is None:
                return
            subscribers.discard(callback)
            if not subscribers:
                del self._subscribers[build_id]
                logger.debug("Broadcaster: last subscriber left build {}", build_id)
                wake = self._wake.get(build_id)
                if wake is not None:
                    wake.set()

        return unsubscribe

    def subscriber_count(self, build_id: str) -> int:
        return len(self._subscribers.get(build_id, ()))

    def is_monitoring(self, build_id: str) -> bool:
        task = self._monitors.get(build_id)
        return task is not None and not task.done()

    # -- Broadcast -------------------------------------------------------------

    @staticmethod
    def _deliver(callback: BuildCallback, event: BuildStreamEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("Broadcaster: subscriber callback failed for build {}", event.build_id)

    def broadcast(self, build_id: str, event: BuildStreamEvent) -> None:
        for callback in list(self._subscribers.get(build_id, ())):
            self._deliver(callback, event)

    # -- Monitoring ------------------------------------------------------------

    def start_monitoring(self, build_id: str) -> None:
        """Start the polling monitor for *build_id* unless one is already running."""
        if self.is_monitoring(build_id):
            return
        self._wake[build_id] = asyncio.Event()
        self._monitors[build_id] = self._tasks.spawn(self._monitor(build_id), name=f"monitor:{build_id}")
        logger.info("Broadcaster: monitoring build {}", build_id)

    async def _sleep(self, build_id: str) -> None:
        # Cleared after waking so an unsubscribe that lands before the first
        # sleep is not lost.
        wake = self._wake[build_id]
        try:
            await asyncio.wait_for(wake.wait(), timeout=self._interval)
        except TimeoutError:
            pass
        wake.clear()

    async def _tick(self, build_id: str) -> bool:
        """Sample the build once and broadcast.  Returns ``True`` when monitoring should end."""
        build = await self._repo.get_build(build_id)
        if build is None:
            self.broadcast(build_id, BuildStreamEvent.error(build_id, f"Build {build_id} not found"))
            return True

        self.broadcast(build_id, BuildStreamEvent.status(build))
        for event in await self._repo.recent_build_events(build_id, limit=RECENT_EVENTS):
            self.broadcast(build_id, BuildStreamEvent.event(build_id, event))
        if build.live_output:
            self.broadcast(build_id, BuildStreamEvent.log(build))

        if not build.status.is_terminal:
            return False
        final = BuildStreamEvent.complete(build)
        self._final[build_id] = final
        self.broadcast(build_id, final)
        logger.info("Broadcaster: build {} finished ({}), closing in {:g}s", build_id, build.status, self._grace)
        await asyncio.sleep(self._grace)
        return True

    async def _monitor(self, build_id: str) -> None:
        try:
            while True:
                await self._sleep(build_id)
                if not self._subscribers.get(build_id):
                    logger.info("Broadcaster: no subscribers for build {}, stopping monitor", build_id)
                    return
                try:
                    if await self._tick(build_id):
                        return
                except Exception:
                    # A failed sample is retried on the next tick.
                    logger.exception("Broadcaster: poll of build {} failed", build_id)
        finally:
            self._monitors.pop(build_id, None)
            self._wake.pop(build_id, None)
            self._final.pop(build_id, None)

    # -- Lifecycle -------------------------------------------------------------

    @property
    def monitor_count(self) -> int:
        return sum(1 for task in self._monitors.values() if not task.done())

    async def shutdown(self) -> None:
        """Cancel every monitor and drop all subscribers."""
        await self._tasks.cancel_all()
        self._subscribers.clear()
        logger.info("Broadcaster: shut down")


class StreamingBuilds:
    """Build entry point for observed builds: create, monitor and run in one call."""

    def __init__(self, builds: BuildManager, broadcaster: BuildBroadcaster) -> None:
        self.builds = builds
        self.broadcaster = broadcaster

    async def create_and_start_build(
        self,
        project_id: str,
        workspace_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> Build:
        """Create a build and start both its pipeline and its monitor.

        Returns as soon as the build record exists; progress is observed by
        subscribing to the broadcaster.
        """
        build = await self.builds.create_build(project_id, workspace_id, metadata)
        self.broadcaster.start_monitoring(build.build_id)
        await self.builds.start_build(build.build_id)
        return build

    async def get_build_status(self, build_id: str) -> BuildStatusReport:
        report = await self.builds.get_build_status(build_id)
        report.subscribers = self.broadcaster.subscriber_count(build_id)
        report.monitoring = self.broadcaster.is_monitoring(build_id)
        return report
