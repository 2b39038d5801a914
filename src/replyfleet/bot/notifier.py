"""Push notification sender — batches viewed-session log entries into the chat."""

from __future__ import annotations

import asyncio
from typing import Any

from aiogram import Bot

from replyfleet.bot.formatter import format_log_entry
from replyfleet.config import get_config
from replyfleet.db.models import LogEntry
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.bot.notifier")

# Telegram rejects messages above 4096 characters.
MAX_MESSAGE_LEN = 4000
MIN_BATCH_WINDOW_S = 0.5


def chunk_lines(lines: list[str], limit: int = MAX_MESSAGE_LEN) -> list[str]:
    """Join lines into as few messages as fit under ``limit`` characters."""
    chunks: list[str] = []
    current = ""
    for line in lines:
        line = line[:limit]
        if current and len(current) + 1 + len(line) > limit:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


class Notifier:
    """Notification sender with batching and offline resilience.

    ``push`` is a LogStore render listener: it is called synchronously for
    every entry of the viewed session and only buffers. The batch loop
    flushes the buffer to the operator chat.
    """

    def __init__(self, bot: Bot, chat_id: int) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        self._max_retries = 5
        self._batch_buffer: list[str] = []
        self._batch_task: asyncio.Task | None = None
        self._running = False
        self.is_online = True

        self._batch_window = get_config().batch_window_s

    async def start(self) -> None:
        """Start the background batch flusher loop."""
        self._running = True
        self._batch_task = asyncio.create_task(self._batch_loop())

    async def stop(self) -> None:
        """Stop the batch flusher and flush any remaining buffered entries."""
        self._running = False
        if self._batch_task:
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
        await self._flush_batch()

    def push(self, entry: LogEntry) -> None:
        """Buffer a log entry for the next flush."""
        self._batch_buffer.append(format_log_entry(entry))

    async def send_immediate(self, text: str, disable_notification: bool = False) -> int | None:
        """Send a notification now, bypassing the batch buffer.

        Args:
            text: Message text (HTML).
            disable_notification: If True, send silently.

        Returns:
            Message ID on success, or None if offline (message queued).
        """
        return await self._send_direct(text, disable_notification)

    async def _send_direct(self, text: str, silent: bool = False) -> int | None:
        """Attempt direct send to Telegram with 429 backoff; queue if offline."""
        kwargs: dict[str, Any] = {"parse_mode": "HTML"}
        if silent:
            kwargs["disable_notification"] = True
        backoff = 1.0
        max_backoff = 30.0
        for attempt in range(4):
            try:
                msg = await self.bot.send_message(self.chat_id, text, **kwargs)
                self.is_online = True
                await self._flush_offline_queue()
                return msg.message_id
            except Exception as e:
                err_str = str(e)
                if "429" in err_str or "Too Many Requests" in err_str:
                    logger.warning(f"Telegram 429 — backoff {backoff}s (attempt {attempt + 1})")
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, max_backoff)
                    continue
                self.is_online = False
                await self._queue.put((text, 1))
                logger.warning(f"Queued notification (offline): {e}. Queue: {self._queue.qsize()}")
                return None
        await self._queue.put((text, 1))
        return None

    async def _batch_loop(self) -> None:
        while self._running:
            await asyncio.sleep(max(self._batch_window, MIN_BATCH_WINDOW_S))
            await self._flush_batch()

    async def _flush_batch(self) -> None:
        """Send buffered entries, combined into as few messages as fit."""
        if not self._batch_buffer:
            return
        lines = self._batch_buffer[:]
        self._batch_buffer.clear()
        for text in chunk_lines(lines):
            await self._send_direct(text, silent=True)

    async def _flush_offline_queue(self) -> None:
        """Send all messages queued while offline.

        Processes the queue sequentially with a 100ms delay between sends
        to respect Telegram rate limits. Stops on first failure.
        """
        while not self._queue.empty():
            text, retries = await self._queue.get()
            try:
                await self.bot.send_message(self.chat_id, text, parse_mode="HTML")
                await asyncio.sleep(0.1)
            except Exception:
                if retries < self._max_retries:
                    await self._queue.put((text, retries + 1))
                else:
                    logger.warning(f"Discarding message after {retries} retries")
                break

    async def connectivity_check(self) -> None:
        """Every 30 seconds while offline, probe Telegram and flush the queue on success."""
        while self._running:
            if not self.is_online:
                try:
                    await self.bot.get_me()
                    self.is_online = True
                    await self._flush_offline_queue()
                except Exception as e:
                    logger.debug(f"Still offline: {e}")
            await asyncio.sleep(30)
