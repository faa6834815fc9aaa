"""In-process session registry.

Tracks live PTY handles and provider sessions opened through the execution
layer, keyed by session id.  Ephemeral -- empty on process restart.  The
provider owns the real sessions; this only remembers which ones this
process can drive directly.

PTY output callbacks can fire from SDK threads, so every mutation happens
under a lock.  Captured output keeps only the most recent
``MAX_CAPTURED_CHARS`` characters.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from sandcastle.orchestrator.provider.base import PtyHandle

MAX_CAPTURED_CHARS = 64 * 1024


@dataclass
class PtyEntry:
    """A live interactive terminal owned by this process."""

    session_id: str
    workspace_id: str
    handle: PtyHandle
    capture_output: bool = False
    output: list[str] = field(default_factory=list)
    output_size: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def captured(self) -> str:
        return "".join(self.output)

    def capture(self, chunk: str) -> None:
        self.output.append(chunk)
        self.output_size += len(chunk)
        if self.output_size > MAX_CAPTURED_CHARS:
            tail = self.captured[-MAX_CAPTURED_CHARS:]
            self.output = [tail]
            self.output_size = len(tail)


@dataclass
class ProviderSessionEntry:
    """A detachable command session created on the provider."""

    session_id: str
    workspace_id: str
    sandbox_id: str
    created_at: float = field(default_factory=time.time)


SessionEntry = PtyEntry | ProviderSessionEntry


class SessionRegistry:
    """Thread-safe map of session id -> ``SessionEntry``."""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    # -- Mutation --------------------------------------------------------------

    def register(self, entry: SessionEntry) -> None:
        with self._lock:
            self._entries[entry.session_id] = entry
        logger.debug("Registry: register {} {} (workspace={})", type(entry).__name__, entry.session_id, entry.workspace_id)

    def unregister(self, session_id: str) -> SessionEntry | None:
        with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is not None:
            logger.debug("Registry: unregister {}", session_id)
        return entry

    def append_output(self, session_id: str, chunk: str) -> None:
        """Record PTY output if the entry asked for capture.  Unknown ids are ignored."""
        with self._lock:
            entry = self._entries.get(session_id)
            if isinstance(entry, PtyEntry) and entry.capture_output:
                entry.capture(chunk)

    def stop_capture(self, session_id: str) -> None:
        """Stop recording output for a PTY and free what was captured."""
        with self._lock:
            entry = self._entries.get(session_id)
            if isinstance(entry, PtyEntry):
                entry.capture_output = False
                entry.output = []
                entry.output_size = 0

    def prune_disconnected(self, workspace_id: str | None = None) -> list[PtyEntry]:
        """Forget PTYs whose handle reports it is no longer connected."""
        with self._lock:
            dead = [
                e
                for e in self._entries.values()
                if isinstance(e, PtyEntry)
                and (workspace_id is None or e.workspace_id == workspace_id)
                and not e.handle.is_connected()
            ]
            for entry in dead:
                del self._entries[entry.session_id]
        for entry in dead:
            logger.debug("Registry: pruned disconnected PTY {}", entry.session_id)
        return dead

    # -- Query -----------------------------------------------------------------

    def get(self, session_id: str) -> SessionEntry | None:
        with self._lock:
            return self._entries.get(session_id)

    def get_pty(self, session_id: str) -> PtyEntry | None:
        entry = self.get(session_id)
        return entry if isinstance(entry, PtyEntry) else None

    def ptys_for_workspace(self, workspace_id: str) -> list[PtyEntry]:
        with self._lock:
            return [e for e in self._entries.values() if isinstance(e, PtyEntry) and e.workspace_id == workspace_id]

    def all_entries(self) -> list[SessionEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- Lifecycle -------------------------------------------------------------

    async def close_all(self) -> int:
        """Disconnect every PTY and forget all entries.  Returns the number of PTYs closed."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        closed = 0
        for entry in entries:
            if isinstance(entry, PtyEntry):
                try:
                    await entry.handle.disconnect()
                except Exception as exc:
                    logger.warning("Registry: failed to disconnect PTY {}: {}", entry.session_id, exc)
                closed += 1
        return closed
