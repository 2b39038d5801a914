"""Structured logging — rich console + rotating file handler."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

ROOT_LOGGER = "replyfleet"

# Third-party loggers that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "aiogram.event", "asyncio")

_configured = False


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
    host_tag: str | None = None,
) -> logging.Logger:
    """Configure the replyfleet logger with a Rich console and a rotating file.

    Args:
        level: Log level string (``'DEBUG'``, ``'INFO'``, ``'WARNING'``, ``'ERROR'``).
        log_file: Path to the rotating log file. None to disable file logging.
        max_bytes: Max file size before rotation (default 10 MB).
        backup_count: Number of rotated files to keep (default 5).
        console: Whether to enable Rich console output (default True).
        host_tag: Execution host label prefixed to every record. Detached
            hosts pass their host id so their lines can be told apart.

    Returns:
        The configured ``'replyfleet'`` root logger.
    """
    global _configured
    logger = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    prefix = f"[{host_tag}] " if host_tag else ""
    fmt = f"%(asctime)s | {prefix}%(name)s | %(levelname)-8s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    if console:
        rich_handler = RichHandler(
            rich_tracebacks=True,
            show_time=False,
            show_path=False,
            markup=False,
        )
        rich_handler.setFormatter(logging.Formatter(f"{prefix}%(message)s"))
        logger.addHandler(rich_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    return logger


def reset_logging() -> None:
    """Drop all handlers so ``setup_logging`` can run again."""
    global _configured
    logging.getLogger(ROOT_LOGGER).handlers.clear()
    _configured = False


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a child logger under the ``'replyfleet'`` namespace.

    Args:
        name: Logger name (e.g. ``'replyfleet.sessions.manager'``).

    Returns:
        A ``logging.Logger`` instance.
    """
    return logging.getLogger(name)
