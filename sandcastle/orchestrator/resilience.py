"""Retry, timeout and best-effort helpers for provider calls.

Every outbound call to the sandbox provider goes through one of these so
that failure handling is explicit at the call site instead of scattered
``try`` blocks.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from loguru import logger

from sandcastle.orchestrator.errors import ConfigurationError, SandboxNotFoundError, ValidationError

T = TypeVar("T")

# Errors that will not go away by asking again.
_PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    ConfigurationError,
    SandboxNotFoundError,
    ValidationError,
)


async def with_timeout(awaitable: Awaitable[T], seconds: float | None, label: str) -> T:
    """Await *awaitable*, raising ``TimeoutError`` with a readable message on expiry."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError:
        msg = f"{label} timed out after {seconds:g}s"
        raise TimeoutError(msg) from None


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 2.0,
    label: str = "operation",
    permanent: tuple[type[BaseException], ...] = (),
) -> T:
    """Invoke *call* up to *attempts* times with linear backoff.

    Attempt ``n`` (1-based) that fails waits ``n * delay`` seconds before the
    next try.  Permanent errors (configuration, validation, missing sandbox)
    and anything listed in *permanent* are raised immediately.  The last
    error is re-raised when all attempts fail.
    """
    if attempts < 1:
        msg = f"attempts must be >= 1, got {attempts}"
        raise ValueError(msg)

    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except (*_PERMANENT_ERRORS, *permanent):
            raise
        except Exception as exc:
            if attempt == attempts:
                logger.warning("{} failed after {} attempts: {}", label, attempts, exc)
                raise
            wait = delay * attempt
            logger.info("{} failed (attempt {}/{}), retrying in {:g}s: {}", label, attempt, attempts, wait, exc)
            await asyncio.sleep(wait)

    raise AssertionError("unreachable")  # pragma: no cover


@asynccontextmanager
async def best_effort(label: str) -> AsyncIterator[None]:
    """Run the enclosed block, logging and swallowing any ``Exception``.

    Used for cleanup paths (session teardown, sandbox delete, PTY kill)
    whose failure must never mask the primary outcome.
    """
    try:
        yield
    except Exception as exc:
        logger.warning("Best-effort {} failed: {}", label, exc)


class DetachedTasks:
    """Owns fire-and-forget tasks so they are not garbage collected mid-flight.

    Failures are logged at the top level; ``cancel_all`` is called on
    shutdown.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("{}: background task {} failed", self._name, task.get_name())

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> None:
        """Cancel every pending task and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("{}: cancelled {} background tasks", self._name, len(tasks))

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for all pending tasks.  Returns ``False`` if *timeout* expired first."""
        tasks = list(self._tasks)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending
