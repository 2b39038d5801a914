"""Telegram bot initialization — Bot + Dispatcher + handler registration."""

from __future__ import annotations

from typing import Any

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties

from replyfleet.config import get_config
from replyfleet.security.auth import AuthMiddleware
from replyfleet.bot.handlers import commands
from replyfleet.sessions.log_store import LogStore
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.bot")

# App-wide shared data (session manager, log store, proxy pool, etc.)
_app_data: dict[str, Any] = {}


def get_app_data() -> dict[str, Any]:
    """Get the shared application data dictionary.

    Returns:
        Dict of app-wide shared state (log store, proxy pool, bot, etc.).
    """
    return _app_data


def set_app_data(key: str, value: Any) -> None:
    """Set a value in the shared application data dictionary.

    Args:
        key: State key name.
        value: Value to store.
    """
    _app_data[key] = value


async def create_bot(log_store: LogStore | None = None) -> tuple[Bot, Dispatcher]:
    """Create and configure the Telegram bot and dispatcher.

    Registers the auth middleware and the command router.

    Args:
        log_store: Where refused access attempts are recorded.

    Returns:
        Tuple of ``(Bot, Dispatcher)`` ready for polling.
    """
    cfg = get_config()

    bot = Bot(
        token=cfg.telegram_bot_token,
        default=DefaultBotProperties(parse_mode="HTML"),
    )
    dp = Dispatcher()

    dp.message.middleware(AuthMiddleware(log_store))

    dp.include_router(commands.router)

    logger.info("Bot created and handlers registered")
    return bot, dp
