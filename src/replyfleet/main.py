"""Async startup — init config, DB, sessions, bot; run event loop; clean shutdown."""

from __future__ import annotations

import asyncio
import signal
import sys

from aiogram.types import BotCommand

from replyfleet.bot.bot import create_bot, set_app_data
from replyfleet.bot.formatter import format_event
from replyfleet.bot.handlers.commands import set_session_manager
from replyfleet.bot.notifier import Notifier
from replyfleet.config import REPLYFLEET_HOME, get_config
from replyfleet.db.database import close_database, init_database
from replyfleet.sessions.hosts import LocalHost
from replyfleet.sessions.log_store import LogStore
from replyfleet.sessions.manager import SessionManager
from replyfleet.sessions.proxies import ProxyPool
from replyfleet.utils.errors import ErrorHandler
from replyfleet.utils.logger import get_logger, setup_logging

BOT_COMMANDS = [
    ("sessions", "List sessions"),
    ("new", "Create and open a session"),
    ("bot_on", "Start replying"),
    ("bot_off", "Stop replying"),
    ("view", "Stream a session's log"),
    ("logs", "Recent log entries"),
    ("config", "Session settings and rules"),
    ("set", "Change a setting"),
    ("rule", "Manage reply rules"),
    ("hibernate", "Close a session's browser"),
    ("restore", "Reopen a hibernated session"),
    ("detach", "Move a session to its own process"),
    ("reattach", "Bring a detached session back"),
    ("proxies", "Proxy pool"),
    ("help", "Command reference"),
]


async def _setup_bot_profile(bot) -> None:
    """Register the command menu with Telegram.

    Non-fatal — logs a warning on failure so startup isn't blocked.
    """
    try:
        await bot.set_my_commands(
            [BotCommand(command=c, description=d) for c, d in BOT_COMMANDS]
        )
    except Exception as e:
        get_logger("replyfleet.main").warning(f"Failed to set bot commands: {e}")


async def run() -> None:
    """Main async entry point -- initialize all subsystems and start polling.

    Loads proxies and sessions, opens every non-hibernated session's surface,
    starts the Telegram bot and waits for SIGINT/SIGTERM to shut down.
    """
    REPLYFLEET_HOME.mkdir(parents=True, exist_ok=True)

    cfg = get_config()
    missing = cfg.validate()
    if missing:
        print(f"❌ Missing required config: {', '.join(missing)}")
        print(f"   Set them in {REPLYFLEET_HOME / '.env'}")
        sys.exit(1)

    log_cfg = cfg.logging_config
    logger = setup_logging(
        level=cfg.log_level,
        log_file=log_cfg.get("file", "~/.replyfleet/replyfleet.log"),
        max_bytes=log_cfg.get("max_size_mb", 10) * 1024 * 1024,
        backup_count=log_cfg.get("backup_count", 5),
        console=log_cfg.get("console_output", True),
    )
    logger.info("🤖 ReplyFleet starting up...")

    await init_database()
    logger.info("Database initialized")

    log_store = LogStore(capacity=log_cfg.get("buffer_size", 100))
    error_handler = ErrorHandler(log_store)
    await error_handler.start()

    proxy_pool = ProxyPool()
    await proxy_pool.load()

    local_host = LocalHost(log_store, error_handler=error_handler)
    session_manager = SessionManager(local_host, log_store, proxy_pool=proxy_pool)
    await session_manager.load_from_db()
    set_session_manager(session_manager)
    set_app_data("session_manager", session_manager)
    set_app_data("log_store", log_store)
    set_app_data("error_handler", error_handler)

    bot, dp = await create_bot(log_store)
    set_app_data("bot", bot)
    await _setup_bot_profile(bot)

    notifier = Notifier(bot, cfg.telegram_user_id)
    await notifier.start()
    set_app_data("notifier", notifier)
    log_store.subscribe(notifier.push)

    async def on_bot_status(session_id: str, status: str) -> None:
        session = session_manager.get_session(session_id)
        emoji = "▶️" if status == "active" else "⏸"
        await notifier.send_immediate(
            format_event(emoji, session, f"Bot {status}"), disable_notification=True
        )

    session_manager.subscribe(on_bot_status)

    await session_manager.activate_all()
    logger.info(f"Session manager ready ({len(session_manager.list_sessions())} sessions)")

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("🚀 ReplyFleet is online! Polling for Telegram messages...")

    try:
        polling_task = asyncio.create_task(
            dp.start_polling(bot, allowed_updates=["message"], handle_signals=False)
        )
        connectivity_task = asyncio.create_task(notifier.connectivity_check())

        await shutdown_event.wait()

        logger.info("Shutting down...")
        await dp.stop_polling()
        polling_task.cancel()
        connectivity_task.cancel()
        await session_manager.shutdown()
        await error_handler.stop()
        await notifier.stop()

        try:
            await polling_task
        except asyncio.CancelledError:
            pass

    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        await bot.session.close()
        await close_database()
        logger.info("🤖 ReplyFleet stopped.")
