"""Telegram user ID authentication middleware."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware
from aiogram.types import Message

from replyfleet.config import get_config
from replyfleet.sessions.log_store import GLOBAL_SESSION_ID, LogStore
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.security.auth")


class AuthMiddleware(BaseMiddleware):
    """Only the configured operator may control the fleet.

    Each refused user id is recorded once in the global session log so the
    operator sees who tried.
    """

    def __init__(self, log_store: LogStore | None = None) -> None:
        self.log_store = log_store
        self.refused: set[int | None] = set()

    async def __call__(
        self,
        handler: Callable[[Message, dict[str, Any]], Awaitable[Any]],
        event: Message,
        data: dict[str, Any],
    ) -> Any:
        user_id = event.from_user.id if event.from_user else None

        if user_id != get_config().telegram_user_id:
            self._refuse(user_id)
            await event.answer("⛔ Unauthorized. This fleet is private.")
            return None

        return await handler(event, data)

    def _refuse(self, user_id: int | None) -> None:
        if user_id in self.refused:
            logger.debug(f"Repeated unauthorized access from user_id={user_id}")
            return
        self.refused.add(user_id)
        logger.warning(f"Unauthorized access attempt from user_id={user_id}")
        if self.log_store is not None:
            self.log_store.add(
                GLOBAL_SESSION_ID,
                f"Refused control request from Telegram user {user_id}",
                "highlight",
                mirror=False,
            )
