"""Execution hosts — where a session's surface and agent actually run.

``LocalHost`` runs surfaces and agents on the current event loop.
``ProcessHost`` runs a ``LocalHost`` inside a spawned child process and
proxies the same operations over a ``multiprocessing`` pipe; the child sends
log entries and bot-status changes back.
"""

from __future__ import annotations

import asyncio
import itertools
import multiprocessing
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from replyfleet.ai.bridge import AIMailbox, BridgeClient, BridgePoller
from replyfleet.auto.agent import AutomationAgent
from replyfleet.auto.memory import AgentMemory
from replyfleet.auto.responder import ReplyResponder
from replyfleet.auto.strategies import strategy_for_url
from replyfleet.config import get_config
from replyfleet.db.models import LogEntry, Session, SessionConfig
from replyfleet.sessions.log_store import LogStore
from replyfleet.sessions.surface import Surface, SurfaceManager
from replyfleet.utils.errors import ErrorHandler, SurfaceError
from replyfleet.utils.logger import get_logger, setup_logging

logger = get_logger("replyfleet.sessions.hosts")

LOCAL_HOST_ID = "local"
CALL_TIMEOUT_S = 90.0
JOIN_TIMEOUT_S = 10.0

BotStatusCallback = Callable[[str, str], Any]
AgentFactory = Callable[[Session, SessionConfig, Surface, AIMailbox], AutomationAgent]


@dataclass
class HandoffToken:
    """Proof that a session was handed to a detached host."""

    session_id: str
    host_id: str
    token: str = field(default_factory=lambda: secrets.token_hex(16))
    issued_at: str = field(default_factory=lambda: datetime.now().isoformat())


class LocalHost:
    """Holds surfaces, agents, configs and AI mailboxes for its sessions."""

    def __init__(
        self,
        log_store: LogStore,
        host_id: str = LOCAL_HOST_ID,
        error_handler: ErrorHandler | None = None,
        surfaces: SurfaceManager | None = None,
        poller: BridgePoller | None = None,
        agent_factory: AgentFactory | None = None,
        on_bot_status: BotStatusCallback | None = None,
    ) -> None:
        cfg = get_config()
        self.host_id = host_id
        self.log_store = log_store
        self.error_handler = error_handler or ErrorHandler(log_store)
        self.surfaces = surfaces or SurfaceManager(
            cfg.data_dir, headless=cfg.headless, on_log=self._surface_log
        )
        self.poller = poller or BridgePoller(
            interval=cfg.bridge_poll_interval_ms / 1000,
            request_timeout=cfg.ai_wait_s,
            on_error=lambda sid, msg: self.log_store.add(sid, msg, "error"),
        )
        self._agent_factory = agent_factory or self._build_agent
        self.on_bot_status = on_bot_status
        self._sessions: dict[str, Session] = {}
        self._configs: dict[str, SessionConfig] = {}
        self._mailboxes: dict[str, AIMailbox] = {}
        self._agents: dict[str, AutomationAgent] = {}
        self.peer_status: dict[str, str] = {}

    def _surface_log(self, session_id: str, message: str, severity: str) -> None:
        self.log_store.add(session_id, message, severity)

    async def adopt(self, session: Session, config: SessionConfig) -> None:
        """Attach the session's surface on this host.

        Raises:
            SurfaceError: If the surface cannot be attached.
        """
        await self.surfaces.attach_surface(session, config.entry_url)
        mailbox = AIMailbox()
        self._sessions[session.id] = session
        self._configs[session.id] = config
        self._mailboxes[session.id] = mailbox
        self.poller.register(session.id, mailbox)
        await self.poller.start()

    async def release(self, session_id: str) -> bool:
        """Quiesce the agent, then close the surface.

        Returns:
            True if a surface was held and closed.
        """
        self._stop_agent(session_id)
        self.poller.unregister(session_id)
        self._mailboxes.pop(session_id, None)
        self._configs.pop(session_id, None)
        self._sessions.pop(session_id, None)
        return await self.surfaces.detach_surface(session_id)

    async def start_bot(self, session_id: str) -> bool:
        """Start the session's agent. False if the session has no live surface."""
        surface = self.surfaces.get(session_id)
        if surface is None or session_id not in self._sessions:
            return False
        agent = self._agents.get(session_id)
        if agent is None:
            agent = self._agent_factory(
                self._sessions[session_id],
                self._configs[session_id],
                surface,
                self._mailboxes[session_id],
            )
            self._agents[session_id] = agent
        agent.start()
        await self._notify(session_id, "active")
        return True

    async def stop_bot(self, session_id: str) -> bool:
        if not self._stop_agent(session_id):
            return False
        await self._notify(session_id, "inactive")
        return True

    def _stop_agent(self, session_id: str) -> bool:
        agent = self._agents.pop(session_id, None)
        if agent is None:
            return False
        agent.stop()
        mailbox = self._mailboxes.get(session_id)
        if mailbox:
            mailbox.clear()
        return True

    async def update_config(self, session_id: str, config: SessionConfig) -> bool:
        if session_id not in self._sessions:
            return False
        self._configs[session_id] = config
        agent = self._agents.get(session_id)
        if agent:
            agent.update_config(config)
        return True

    async def notify_bot_status(self, session_id: str, status: str) -> None:
        """Record a bot-status change broadcast by another host."""
        self.peer_status[session_id] = status

    def active_ids(self) -> list[str]:
        return self.surfaces.live_ids()

    def agent(self, session_id: str) -> AutomationAgent | None:
        return self._agents.get(session_id)

    def is_alive(self) -> bool:
        return True

    async def shutdown(self) -> None:
        for sid in list(self._agents):
            self._agents.pop(sid).stop()
        await self.poller.stop()
        await self.surfaces.close_all()
        logger.info(f"Host '{self.host_id}' shut down")

    async def _notify(self, session_id: str, status: str) -> None:
        if self.on_bot_status:
            result = self.on_bot_status(session_id, status)
            if asyncio.iscoroutine(result):
                await result

    def _build_agent(
        self,
        session: Session,
        config: SessionConfig,
        surface: Surface,
        mailbox: AIMailbox,
    ) -> AutomationAgent:
        cfg = get_config()
        return AutomationAgent(
            session_id=session.id,
            page=surface.page,
            config=config,
            strategy=strategy_for_url(config.entry_url),
            memory=AgentMemory(surface.partition_dir),
            responder=ReplyResponder(BridgeClient(mailbox), ai_wait_s=cfg.ai_wait_s),
            log_store=self.log_store,
            error_handler=self.error_handler,
            poll_base_ms=cfg.poll_interval_ms,
            poll_jitter_ms=cfg.poll_jitter_ms,
            monitor_interval_ms=cfg.monitor_interval_ms,
        )


# ── Detached process host ──

HOST_OPS = (
    "adopt",
    "release",
    "start_bot",
    "stop_bot",
    "update_config",
    "notify_bot_status",
    "active_ids",
)


class _ForwardingLogStore(LogStore):
    """Log store of a child host: every entry goes to the parent."""

    def __init__(self, send: Callable[[Any], None]) -> None:
        super().__init__()
        self._send = send

    def append(self, entry: LogEntry, mirror: bool = True) -> None:
        self._send(("log", entry))


def run_child_host(conn: Any, host_id: str, log_level: str) -> None:
    """Entry point of a detached host process."""
    setup_logging(level=log_level, host_tag=host_id)
    asyncio.run(_serve_child(conn, host_id))


async def _serve_child(conn: Any, host_id: str) -> None:
    loop = asyncio.get_running_loop()
    send = conn.send
    log_store = _ForwardingLogStore(send)
    host = LocalHost(
        log_store=log_store,
        host_id=host_id,
        on_bot_status=lambda sid, status: send(("bot_status", sid, status)),
    )
    await host.error_handler.start()
    logger.info(f"Detached host '{host_id}' ready")

    try:
        while True:
            try:
                req_id, op, args = await loop.run_in_executor(None, conn.recv)
            except (EOFError, OSError):
                break
            if op == "shutdown":
                await host.shutdown()
                send(("reply", req_id, True, None))
                break
            if op not in HOST_OPS:
                send(("reply", req_id, False, ("ValueError", f"Unknown op {op}")))
                continue
            try:
                result = getattr(host, op)(*args)
                if asyncio.iscoroutine(result):
                    result = await result
                send(("reply", req_id, True, result))
            except Exception as e:
                logger.error(f"Host op {op} failed: {e}")
                send(("reply", req_id, False, (type(e).__name__, str(e))))
    finally:
        await host.error_handler.stop()
        conn.close()


def _rebuild_error(payload: tuple[str, str]) -> Exception:
    name, message = payload
    if name == "SurfaceError":
        return SurfaceError(message)
    if name == "ValueError":
        return ValueError(message)
    return RuntimeError(f"{name}: {message}")


class ProcessHost:
    """Runs a LocalHost in a separate OS process and proxies calls to it."""

    def __init__(
        self,
        host_id: str,
        log_store: LogStore,
        on_bot_status: BotStatusCallback | None = None,
        log_level: str = "INFO",
    ) -> None:
        self.host_id = host_id
        self.log_store = log_store
        self.on_bot_status = on_bot_status
        self.log_level = log_level
        self._process: multiprocessing.Process | None = None
        self._conn: Any = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._held: set[str] = set()

    async def start(self) -> None:
        """Spawn the child process and start reading its messages."""
        ctx = multiprocessing.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe()
        self._process = ctx.Process(
            target=run_child_host,
            args=(child_conn, self.host_id, self.log_level),
            name=f"replyfleet-{self.host_id}",
            daemon=True,
        )
        self._process.start()
        child_conn.close()
        self._conn = parent_conn
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Spawned detached host '{self.host_id}' (pid {self._process.pid})")

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    async def _call(self, op: str, *args: Any, timeout: float = CALL_TIMEOUT_S) -> Any:
        if not self.is_alive() or self._conn is None:
            raise RuntimeError(f"Host '{self.host_id}' is not running")
        req_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            self._conn.send((req_id, op, args))
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(req_id, None)

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                msg = await loop.run_in_executor(None, self._conn.recv)
            except (EOFError, OSError):
                break
            kind = msg[0]
            if kind == "reply":
                _, req_id, ok, payload = msg
                future = self._pending.get(req_id)
                if future and not future.done():
                    if ok:
                        future.set_result(payload)
                    else:
                        future.set_exception(_rebuild_error(payload))
            elif kind == "log":
                self.log_store.append(msg[1])
            elif kind == "bot_status" and self.on_bot_status:
                try:
                    result = self.on_bot_status(msg[1], msg[2])
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"Bot status handler failed: {e}")

        for future in self._pending.values():
            if not future.done():
                future.set_exception(RuntimeError(f"Host '{self.host_id}' exited"))
        logger.info(f"Detached host '{self.host_id}' disconnected")

    async def adopt(self, session: Session, config: SessionConfig) -> None:
        await self._call("adopt", session, config)
        self._held.add(session.id)

    async def release(self, session_id: str) -> bool:
        result = await self._call("release", session_id)
        self._held.discard(session_id)
        return result

    async def start_bot(self, session_id: str) -> bool:
        return await self._call("start_bot", session_id)

    async def stop_bot(self, session_id: str) -> bool:
        return await self._call("stop_bot", session_id)

    async def update_config(self, session_id: str, config: SessionConfig) -> bool:
        return await self._call("update_config", session_id, config)

    async def notify_bot_status(self, session_id: str, status: str) -> None:
        await self._call("notify_bot_status", session_id, status)

    def active_ids(self) -> list[str]:
        return sorted(self._held)

    async def shutdown(self) -> None:
        if self.is_alive():
            try:
                await self._call("shutdown", timeout=JOIN_TIMEOUT_S * 3)
            except Exception as e:
                logger.warning(f"Host '{self.host_id}' did not shut down cleanly: {e}")
        if self._process is not None:
            await asyncio.get_running_loop().run_in_executor(
                None, self._process.join, JOIN_TIMEOUT_S
            )
            if self._process.is_alive():
                self._process.terminate()
        if self._conn is not None:
            self._conn.close()
        if self._reader:
            self._reader.cancel()
        self._held.clear()
        logger.info(f"Detached host '{self.host_id}' stopped")
