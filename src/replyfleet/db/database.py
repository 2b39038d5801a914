"""SQLite database — async init, WAL mode, schema creation."""

from __future__ import annotations

import asyncio

import aiosqlite

from replyfleet.config import DB_PATH
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    partition TEXT NOT NULL UNIQUE,
    fingerprint TEXT NOT NULL,
    proxy TEXT,
    config TEXT,
    state TEXT NOT NULL DEFAULT 'inactive'
        CHECK(state IN ('active', 'inactive', 'hibernated', 'detached')),
    bot_status TEXT NOT NULL DEFAULT 'inactive'
        CHECK(bot_status IN ('active', 'inactive')),
    host_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    last_active_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS proxies (
    id TEXT PRIMARY KEY,
    host TEXT NOT NULL,
    port INTEGER NOT NULL,
    protocol TEXT NOT NULL DEFAULT 'http',
    username TEXT,
    password TEXT,
    status TEXT NOT NULL DEFAULT 'unknown'
        CHECK(status IN ('unknown', 'connected', 'failed')),
    last_error TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state);
"""

_db: aiosqlite.Connection | None = None
_db_lock = asyncio.Lock()


async def init_database(db_path: str | None = None) -> aiosqlite.Connection:
    """Initialize SQLite with WAL mode and create tables.

    Args:
        db_path: Override path for the database file. Defaults to
            ``~/.replyfleet/replyfleet.db``.

    Returns:
        The opened ``aiosqlite.Connection`` with WAL mode enabled.
    """
    global _db
    path = db_path or str(DB_PATH)
    logger.info(f"Initializing database at {path}")

    db = await aiosqlite.connect(path)
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA synchronous=NORMAL")
    await db.executescript(SCHEMA)
    await db.commit()

    _db = db
    logger.info("Database initialized successfully")
    return db


async def get_db() -> aiosqlite.Connection:
    """Get the database connection, initializing if needed.

    Returns:
        The shared ``aiosqlite.Connection`` singleton.
    """
    global _db
    if _db is not None:
        return _db
    async with _db_lock:
        if _db is None:
            _db = await init_database()
        return _db


async def close_database() -> None:
    """Close the database connection and reset the singleton."""
    global _db
    if _db:
        await _db.close()
        _db = None
        logger.info("Database closed")
