"""Async CRUD functions for sessions and the proxy pool."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any

from replyfleet.db.database import get_db
from replyfleet.db.models import (
    Fingerprint,
    ProxyConfig,
    Session,
    SessionConfig,
    config_from_dict,
    config_to_dict,
)

# ── Sessions ──


async def create_session(session: Session) -> None:
    """Persist a new session to the database.

    Args:
        session: Session dataclass with all fields populated.
    """
    db = await get_db()
    await db.execute(
        """INSERT INTO sessions (id, name, partition, fingerprint, proxy, config,
           state, bot_status, host_id, created_at, last_active_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session.id,
            session.name,
            session.partition,
            json.dumps(asdict(session.fingerprint)),
            json.dumps(asdict(session.proxy)) if session.proxy else None,
            json.dumps(config_to_dict(session.config)) if session.config else None,
            session.state,
            session.bot_status,
            session.host_id,
            session.created_at,
            session.last_active_at,
        ),
    )
    await db.commit()


async def get_session(session_id: str) -> Session | None:
    """Fetch a session by its id.

    Args:
        session_id: Hex session id.

    Returns:
        Session dataclass, or None if not found.
    """
    db = await get_db()
    async with db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cur:
        row = await cur.fetchone()
        if row:
            return _row_to_session(row)
    return None


async def get_all_sessions() -> list[Session]:
    """Fetch all sessions ordered by creation time.

    Returns:
        List of Session dataclasses.
    """
    db = await get_db()
    async with db.execute("SELECT * FROM sessions ORDER BY created_at, id") as cur:
        rows = await cur.fetchall()
        return [_row_to_session(r) for r in rows]


ALLOWED_SESSION_COLUMNS = {
    "name",
    "state",
    "bot_status",
    "host_id",
    "proxy",
    "last_active_at",
}


async def update_session(session_id: str, **kwargs: Any) -> None:
    """Update allowed columns on a session record.

    Args:
        session_id: Id of the session to update.
        **kwargs: Column-value pairs. Allowed columns: name, state, bot_status,
            host_id, proxy, last_active_at. ``proxy`` takes a ProxyConfig or None.

    Raises:
        ValueError: If any column name is not in the allowed set.
    """
    invalid = set(kwargs.keys()) - ALLOWED_SESSION_COLUMNS
    if invalid:
        raise ValueError(f"Invalid column(s): {invalid}")
    if "proxy" in kwargs:
        proxy = kwargs["proxy"]
        kwargs["proxy"] = json.dumps(asdict(proxy)) if proxy else None
    db = await get_db()
    kwargs["last_active_at"] = datetime.now().isoformat()
    sets = ", ".join(f"{k} = ?" for k in kwargs)
    vals = list(kwargs.values()) + [session_id]
    await db.execute(f"UPDATE sessions SET {sets} WHERE id = ?", vals)
    await db.commit()


async def update_session_config(session_id: str, config: SessionConfig) -> None:
    """Replace the stored config of a session.

    Args:
        session_id: Id of the session.
        config: The full new configuration.
    """
    db = await get_db()
    await db.execute(
        "UPDATE sessions SET config = ?, last_active_at = ? WHERE id = ?",
        (
            json.dumps(config_to_dict(config)),
            datetime.now().isoformat(),
            session_id,
        ),
    )
    await db.commit()


async def delete_session(session_id: str) -> None:
    """Delete a session record from the database.

    Args:
        session_id: Id of the session to delete.
    """
    db = await get_db()
    await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    await db.commit()


def _row_to_session(row: tuple) -> Session:
    """Convert a raw SQLite row tuple to a Session dataclass.

    Args:
        row: Tuple of column values in schema order.

    Returns:
        Populated Session dataclass.
    """
    fp = json.loads(row[3])
    fp["viewport"] = tuple(fp.get("viewport") or (1366, 768))
    return Session(
        id=row[0],
        name=row[1],
        partition=row[2],
        fingerprint=Fingerprint(**fp),
        proxy=ProxyConfig(**json.loads(row[4])) if row[4] else None,
        config=config_from_dict(json.loads(row[5])) if row[5] else None,
        state=row[6],
        bot_status=row[7],
        host_id=row[8],
        created_at=row[9],
        last_active_at=row[10],
    )


# ── Proxies ──


async def add_proxy(proxy: ProxyConfig) -> None:
    """Insert a proxy into the pool table.

    Args:
        proxy: ProxyConfig with a pre-generated id.
    """
    db = await get_db()
    await db.execute(
        """INSERT INTO proxies (id, host, port, protocol, username, password, status, last_error)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            proxy.id,
            proxy.host,
            proxy.port,
            proxy.protocol,
            proxy.username,
            proxy.password,
            proxy.status,
            proxy.last_error,
        ),
    )
    await db.commit()


async def get_all_proxies() -> list[ProxyConfig]:
    """Fetch the whole proxy pool in insertion order."""
    db = await get_db()
    async with db.execute(
        "SELECT id, host, port, protocol, username, password, status, last_error "
        "FROM proxies ORDER BY created_at, id"
    ) as cur:
        rows = await cur.fetchall()
        return [
            ProxyConfig(
                id=r[0],
                host=r[1],
                port=r[2],
                protocol=r[3],
                username=r[4],
                password=r[5],
                status=r[6],
                last_error=r[7],
            )
            for r in rows
        ]


async def delete_proxy(proxy_id: str) -> bool:
    """Delete a proxy by id.

    Returns:
        True if a proxy was deleted, False if not found.
    """
    db = await get_db()
    cur = await db.execute("DELETE FROM proxies WHERE id = ?", (proxy_id,))
    await db.commit()
    return cur.rowcount > 0


async def update_proxy_status(
    proxy_id: str, status: str, last_error: str | None = None
) -> None:
    """Record the outcome of a connectivity check."""
    db = await get_db()
    await db.execute(
        "UPDATE proxies SET status = ?, last_error = ? WHERE id = ?",
        (status, last_error, proxy_id),
    )
    await db.commit()
