"""Log aggregator — bounded per-session event buffers with a viewed-session fan-out."""

from __future__ import annotations

from collections import deque
from typing import Callable

from replyfleet.db.models import SEVERITIES, LogEntry
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.sessions.log_store")

GLOBAL_SESSION_ID = "global"
DEFAULT_CAPACITY = 100

RenderListener = Callable[[LogEntry], None]


class LogStore:
    """Per-session ring buffers of log entries.

    Appending to a full buffer evicts the oldest entry. Only entries for the
    currently viewed session reach the render listeners; switching the view
    replays the new session's buffer without touching any buffer.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._buffers: dict[str, deque[LogEntry]] = {}
        self._listeners: list[RenderListener] = []
        self.viewed_session_id: str | None = None

    def add(
        self,
        session_id: str,
        message: str,
        severity: str = "info",
        mirror: bool = True,
    ) -> LogEntry:
        """Record one entry for a session.

        Args:
            session_id: Owning session id, or ``GLOBAL_SESSION_ID``.
            message: Human-readable text.
            severity: One of ``info``, ``success``, ``error``, ``highlight``.
            mirror: Also write the entry to the Python logger.

        Returns:
            The stored LogEntry.
        """
        if severity not in SEVERITIES:
            severity = "info"
        entry = LogEntry(message=message, severity=severity, session_id=session_id)
        self.append(entry, mirror=mirror)
        return entry

    def append(self, entry: LogEntry, mirror: bool = True) -> None:
        """Store an already-built entry (e.g. one forwarded from another host)."""
        session_id = entry.session_id or GLOBAL_SESSION_ID
        buf = self._buffers.get(session_id)
        if buf is None:
            buf = deque(maxlen=self.capacity)
            self._buffers[session_id] = buf
        buf.append(entry)

        if mirror:
            if entry.severity == "error":
                logger.error(f"[{session_id[:8]}] {entry.message}")
            else:
                logger.info(f"[{session_id[:8]}] {entry.message}")

        if session_id == self.viewed_session_id:
            self._emit(entry)

    def entries(self, session_id: str) -> list[LogEntry]:
        """Snapshot of a session's buffer, oldest first."""
        return list(self._buffers.get(session_id, ()))

    def switch_view(self, session_id: str | None) -> list[LogEntry]:
        """Change the viewed session and replay its buffer to listeners.

        Returns:
            The replayed entries.
        """
        self.viewed_session_id = session_id
        replay = self.entries(session_id) if session_id else []
        for entry in replay:
            self._emit(entry)
        return replay

    def subscribe(self, listener: RenderListener) -> Callable[[], None]:
        """Register a render listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def drop(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)
        if self.viewed_session_id == session_id:
            self.viewed_session_id = None

    def session_ids(self) -> list[str]:
        return list(self._buffers)

    def _emit(self, entry: LogEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.warning(f"Log listener failed: {e}")
