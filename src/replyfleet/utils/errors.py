"""Domain exceptions and the global error handler."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from replyfleet.utils.logger import get_logger

if TYPE_CHECKING:
    from replyfleet.sessions.log_store import LogStore

logger = get_logger("replyfleet.utils.errors")

ESCALATION_THRESHOLD = 5
RESET_INTERVAL_S = 300


class SurfaceError(Exception):
    """Raised when a browsing surface cannot be created or attached."""


class AIError(Exception):
    """Raised by chat clients. ``kind`` is one of timeout, transport, status, empty."""

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or kind)
        self.kind = kind


class ErrorHandler:
    """Count errors per type, record them and escalate repeats.

    Every handled error lands in the log store under the owning session.
    Once one error type reaches ``ESCALATION_THRESHOLD`` occurrences within a
    reset window, a highlight entry is written to the global session.
    """

    def __init__(self, log_store: LogStore | None = None) -> None:
        self.log_store = log_store
        self.error_counts: dict[str, int] = {}
        self._reset_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start periodic error count reset."""
        self._reset_task = asyncio.create_task(self._periodic_reset())

    async def stop(self) -> None:
        if self._reset_task:
            self._reset_task.cancel()

    def handle(
        self, error: BaseException, context: str, session_id: str | None = None
    ) -> None:
        """Log, count and maybe escalate one error.

        Args:
            error: The caught exception.
            context: Short label of where it happened (e.g. ``'agent.poll'``).
            session_id: Session to attribute the log entry to, if any.
        """
        error_type = type(error).__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(f"[{context}] {error_type}: {error}")
        if self.log_store and session_id:
            self.log_store.add(session_id, f"{context}: {error}", "error", mirror=False)

        if self.error_counts[error_type] == ESCALATION_THRESHOLD:
            self._escalate(error_type, context)

    def _escalate(self, error_type: str, context: str) -> None:
        message = (
            f"Repeated error in {context}: {error_type} "
            f"({self.error_counts[error_type]} times)"
        )
        logger.critical(message)
        if self.log_store:
            from replyfleet.sessions.log_store import GLOBAL_SESSION_ID

            self.log_store.add(GLOBAL_SESSION_ID, message, "highlight", mirror=False)

    async def _periodic_reset(self) -> None:
        """Reset error counts every 5 minutes."""
        while True:
            await asyncio.sleep(RESET_INTERVAL_S)
            self.error_counts.clear()
