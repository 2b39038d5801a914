"""Per-session conversation memory stored inside the session's partition."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any

from replyfleet.db.models import MemoryEntry
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.auto.memory")

MEMORY_FILE = "memory.json"
MAX_ENTRIES_PER_COUNTERPART = 100


class AgentMemory:
    """Append-only, per-counterpart message history for one session.

    Keeps at most ``max_entries`` per counterpart (oldest dropped) and writes
    the whole file atomically after every append. Writes run in a worker
    thread, one at a time and in append order.
    """

    def __init__(
        self, directory: Path | str, max_entries: int = MAX_ENTRIES_PER_COUNTERPART
    ) -> None:
        self.path = Path(directory) / MEMORY_FILE
        self.max_entries = max_entries
        self._data: dict[str, list[MemoryEntry]] = {}
        self._write_lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw: dict[str, Any] = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable memory file {self.path}: {e}")
            return
        for counterpart, items in raw.items():
            self._data[counterpart] = [
                MemoryEntry(
                    direction=i.get("direction", "theirs"),
                    text=i.get("text", ""),
                    timestamp=i.get("timestamp", 0.0),
                )
                for i in items
                if isinstance(i, dict)
            ][-self.max_entries :]

    def _write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def _save(self) -> None:
        payload = {
            c: [asdict(e) for e in entries] for c, entries in self._data.items()
        }
        async with self._write_lock:
            await asyncio.to_thread(self._write, payload)

    async def append(self, counterpart: str, direction: str, text: str) -> MemoryEntry:
        """Record one message.

        Args:
            counterpart: Handle of the other participant.
            direction: ``'theirs'`` for incoming, ``'mine'`` for sent.
            text: Message text.

        Returns:
            The stored MemoryEntry.
        """
        entry = MemoryEntry(direction=direction, text=text)
        entries = self._data.setdefault(counterpart, [])
        entries.append(entry)
        if len(entries) > self.max_entries:
            del entries[: len(entries) - self.max_entries]
        await self._save()
        return entry

    def history(self, counterpart: str) -> list[MemoryEntry]:
        return list(self._data.get(counterpart, []))

    def recent(self, counterpart: str, n: int) -> list[MemoryEntry]:
        if n <= 0:
            return []
        return self.history(counterpart)[-n:]

    def last(self, counterpart: str, direction: str) -> MemoryEntry | None:
        """Newest entry for ``counterpart`` in the given direction."""
        for entry in reversed(self._data.get(counterpart, [])):
            if entry.direction == direction:
                return entry
        return None

    def counterparts(self) -> list[str]:
        return list(self._data)

    def summary(self) -> dict[str, int]:
        """Totals across all counterparts."""
        theirs = mine = 0
        for entries in self._data.values():
            for e in entries:
                if e.direction == "mine":
                    mine += 1
                else:
                    theirs += 1
        return {"counterparts": len(self._data), "theirs": theirs, "mine": mine}
