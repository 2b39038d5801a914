"""Session Manager — create/duplicate/hibernate/detach sessions and their bots."""

from __future__ import annotations

import asyncio
import shutil
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable

from replyfleet.config import get_config
from replyfleet.db import queries
from replyfleet.db.models import BOT_STATUSES, Session, SessionConfig, clone_config
from replyfleet.sessions.fingerprint import FingerprintGenerator
from replyfleet.sessions.hosts import HandoffToken, LocalHost, ProcessHost
from replyfleet.sessions.log_store import GLOBAL_SESSION_ID, LogStore
from replyfleet.sessions.proxies import ProxyPool
from replyfleet.utils.errors import SurfaceError
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.sessions.manager")

MAX_NAME_LENGTH = 50

StatusObserver = Callable[[str, str], Any]
HostFactory = Callable[[str], Awaitable[Any]]


def partition_for(session_id: str) -> str:
    return f"session_{session_id}"


def partition_path(session: Session) -> Path:
    """Directory holding the browser profile and agent memory of ``session``."""
    return Path(get_config().data_dir) / "partitions" / session.partition


def validate_name(name: str) -> str:
    """Strip and check a session name.

    Raises:
        ValueError: If the name is empty or longer than 50 characters.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Session name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"Session name must be {MAX_NAME_LENGTH} characters or less")
    return name


class SessionManager:
    """Single writer of session metadata.

    Holds the authoritative ``Session`` records, decides which execution host
    runs each session and broadcasts bot-status changes to observers and to
    every other host. Operations on an unknown id return None/False.
    """

    def __init__(
        self,
        local_host: LocalHost,
        log_store: LogStore,
        proxy_pool: ProxyPool | None = None,
        fingerprints: FingerprintGenerator | None = None,
        host_factory: HostFactory | None = None,
    ) -> None:
        self.local = local_host
        self.log_store = log_store
        self.proxies = proxy_pool or ProxyPool()
        self.fingerprints = fingerprints or FingerprintGenerator()
        self._host_factory = host_factory or self._spawn_process_host
        self._hosts: dict[str, Any] = {local_host.host_id: local_host}
        self._sessions: dict[str, Session] = {}
        self._observers: list[StatusObserver] = []
        local_host.on_bot_status = self._status_handler(local_host.host_id)

    # ── Loading ──

    async def load_from_db(self) -> None:
        """Load sessions from the database, creating a default one on first run.

        Sessions left ``detached`` by a previous run come back as ``active``;
        their detached hosts did not survive the restart.
        """
        for s in await queries.get_all_sessions():
            if s.state == "detached":
                s.state, s.host_id = "active", None
                await queries.update_session(s.id, state="active", host_id=None)
            self._sessions[s.id] = s
            self.fingerprints.mark_used(s.fingerprint)
            if s.proxy and self.proxies.get(s.proxy.id):
                self.proxies.assign(s.proxy.id, s.id)

        if not self._sessions:
            session = await self.create_session(get_config().default_session_name)
            logger.info(f"First run: created default session '{session.name}'")
        logger.info(f"Loaded {len(self._sessions)} sessions")

    async def activate_all(self) -> None:
        """Attach surfaces for every non-hibernated session and start requested bots."""
        for session in self.list_sessions():
            if session.state == "hibernated":
                continue
            await self.activate_session(session.id)
            if session.bot_status != "active" and self.config_for(session).auto_start:
                await self.start_bot(session.id)

    # ── Lookup ──

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: (s.created_at, s.id))

    def resolve_session(self, ref: str) -> Session | None:
        """Find a session by id, unique id prefix, 1-based list index or name.

        Args:
            ref: User-supplied reference.

        Returns:
            The matching Session, or None.
        """
        ref = (ref or "").strip()
        if not ref:
            return None
        if ref in self._sessions:
            return self._sessions[ref]
        ordered = self.list_sessions()
        if ref.isdigit() and 1 <= int(ref) <= len(ordered):
            return ordered[int(ref) - 1]
        by_prefix = [s for s in ordered if s.id.startswith(ref.lower())]
        if len(by_prefix) == 1:
            return by_prefix[0]
        lowered = ref.lower()
        for s in ordered:
            if s.name.lower() == lowered:
                return s
        return None

    def config_for(self, session: Session) -> SessionConfig:
        return session.config or get_config().default_session_config()

    def host_for(self, session_id: str) -> Any | None:
        """The execution host currently holding the session's surface."""
        for host in self._hosts.values():
            if session_id in host.active_ids():
                return host
        return None

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register a ``(session_id, bot_status)`` observer. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # ── Lifecycle ──

    async def create_session(
        self,
        name: str | None = None,
        proxy_id: str | None = None,
        config_seed: SessionConfig | None = None,
    ) -> Session:
        """Create and persist a new inactive session.

        Args:
            name: Display name. Defaults to ``Session N``.
            proxy_id: Proxy from the pool to bind, if any.
            config_seed: Config to deep-copy into the session. None uses the
                process-wide default.

        Returns:
            The new ``Session``.

        Raises:
            RuntimeError: If ``max_concurrent_sessions`` is reached.
            ValueError: On an invalid name or an unusable proxy.
        """
        cfg = get_config()
        if len(self._sessions) >= cfg.max_concurrent_sessions:
            raise RuntimeError(
                f"Max {cfg.max_concurrent_sessions} concurrent sessions reached"
            )
        name = validate_name(name or f"Session {len(self._sessions) + 1}")

        session_id = uuid.uuid4().hex
        proxy = self.proxies.assign(proxy_id, session_id) if proxy_id else None
        session = Session(
            id=session_id,
            name=name,
            partition=partition_for(session_id),
            fingerprint=self.fingerprints.generate(),
            proxy=proxy,
            config=clone_config(config_seed) if config_seed else None,
        )
        try:
            await queries.create_session(session)
        except Exception:
            self.proxies.unassign(session_id)
            self.fingerprints.release(session.fingerprint)
            raise
        self._sessions[session_id] = session
        self.log_store.add(session_id, f"Session '{name}' created", "success")
        return session

    async def activate_session(self, session_id: str) -> Session | None:
        """Attach the session's surface on the local host.

        A surface failure is logged as an error entry and leaves the session
        in its prior state.
        """
        session = self._sessions.get(session_id)
        if not session:
            return None
        if self.host_for(session_id) is not None:
            return session

        config = self.config_for(session)
        try:
            await self.local.adopt(session, config)
        except SurfaceError as e:
            self.log_store.add(session_id, f"Could not open surface: {e}", "error")
            return None

        await self._set_state(session, "active", host_id=None)
        if session.bot_status == "active":
            await self.local.start_bot(session_id)
        return session

    async def duplicate_session(self, session_id: str) -> Session | None:
        """Copy a session's config into a new session with its own partition and identity."""
        source = self._sessions.get(session_id)
        if not source:
            return None
        copy = await self.create_session(
            f"{source.name} (Copy)"[:MAX_NAME_LENGTH],
            config_seed=clone_config(self.config_for(source)),
        )
        logger.info(f"Duplicated session '{source.name}' as {copy.id[:8]}")
        return copy

    async def rename_session(self, session_id: str, name: str) -> Session | None:
        """Rename a session.

        Raises:
            ValueError: On an empty or too long name.
        """
        session = self._sessions.get(session_id)
        if not session:
            return None
        name = validate_name(name)
        old = session.name
        session.name = name
        await queries.update_session(session_id, name=name)
        self.log_store.add(session_id, f"Renamed '{old}' to '{name}'")
        return session

    async def hibernate_session(self, session_id: str) -> Session | None:
        """Tear down the surface, keeping config, identity and bot request."""
        session = self._sessions.get(session_id)
        if not session:
            return None
        if session.state == "hibernated":
            return session
        await self._release_anywhere(session_id)
        await self._set_state(session, "hibernated", host_id=None)
        self.log_store.add(session_id, "Session hibernated")
        return session

    async def restore_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if not session:
            return None
        if session.state != "hibernated":
            return session
        restored = await self.activate_session(session_id)
        if restored:
            self.log_store.add(session_id, "Session restored", "success")
        return restored

    async def delete_session(self, session_id: str) -> bool:
        """Irreversibly delete a session, its surface, its browser profile and its config."""
        session = self._sessions.get(session_id)
        if not session:
            return False
        await self._release_anywhere(session_id)
        self.proxies.unassign(session_id)
        self.fingerprints.release(session.fingerprint)
        await asyncio.to_thread(shutil.rmtree, partition_path(session), ignore_errors=True)
        await queries.delete_session(session_id)
        self._sessions.pop(session_id, None)
        self.log_store.drop(session_id)
        self.log_store.add(GLOBAL_SESSION_ID, f"Deleted session '{session.name}'")
        logger.info(f"Deleted session {session_id[:8]} '{session.name}'")
        return True

    async def detach_session(self, session_id: str) -> HandoffToken | None:
        """Move a locally held session to a new detached execution host.

        The local agent is quiesced and the surface closed before the new
        host adopts it; the new host starts the agent only after its surface
        is live. On failure the session is re-adopted locally.

        Returns:
            A HandoffToken naming the new host, or None.
        """
        session = self._sessions.get(session_id)
        if not session or session.state != "active":
            return None
        if session_id not in self.local.active_ids():
            return None

        config = self.config_for(session)
        host_id = f"host-{session_id[:8]}"
        await self.local.release(session_id)

        host = None
        try:
            host = await self._host_factory(host_id)
            host.on_bot_status = self._status_handler(host_id)
            await host.adopt(session, config)
            if session.bot_status == "active":
                await host.start_bot(session_id)
        except Exception as e:
            self.log_store.add(session_id, f"Detach failed: {e}", "error")
            if host is not None:
                try:
                    await host.shutdown()
                except Exception as shutdown_err:
                    logger.warning(f"Failed to stop host {host_id}: {shutdown_err}")
            await self.activate_session(session_id)
            return None

        self._hosts[host_id] = host
        await self._set_state(session, "detached", host_id=host_id)
        token = HandoffToken(session_id=session_id, host_id=host_id)
        self.log_store.add(session_id, f"Detached to {host_id}", "highlight")
        return token

    async def reattach_session(self, session_id: str) -> Session | None:
        """Bring a detached session back to the local host."""
        session = self._sessions.get(session_id)
        if not session or session.state != "detached":
            return None
        host_id = session.host_id
        host = self._hosts.get(host_id) if host_id else None
        if host is not None:
            try:
                await host.release(session_id)
            except Exception as e:
                logger.warning(f"Release on {host_id} failed: {e}")
            if not host.active_ids():
                self._hosts.pop(host_id, None)
                await host.shutdown()

        config = self.config_for(session)
        try:
            await self.local.adopt(session, config)
        except SurfaceError as e:
            await self._set_state(session, "inactive", host_id=None)
            self.log_store.add(session_id, f"Could not reattach surface: {e}", "error")
            return None

        await self._set_state(session, "active", host_id=None)
        if session.bot_status == "active":
            await self.local.start_bot(session_id)
        self.log_store.add(session_id, "Reattached", "success")
        return session

    async def update_config(self, session_id: str, config: SessionConfig) -> Session | None:
        """Store a new config and push it to the holding host."""
        session = self._sessions.get(session_id)
        if not session:
            return None
        session.config = clone_config(config)
        await queries.update_session_config(session_id, session.config)
        host = self.host_for(session_id)
        if host is not None:
            await host.update_config(session_id, clone_config(config))
        return session

    async def assign_proxy(self, session_id: str, proxy_id: str | None) -> Session | None:
        """Bind (or clear) a session's proxy. Takes effect on the next activation.

        Raises:
            ValueError: If the proxy is unknown or held by another session.
        """
        session = self._sessions.get(session_id)
        if not session:
            return None
        self.proxies.unassign(session_id)
        session.proxy = self.proxies.assign(proxy_id, session_id) if proxy_id else None
        await queries.update_session(session_id, proxy=session.proxy)
        return session

    # ── Bot status ──

    async def start_bot(self, session_id: str) -> bool:
        host = self.host_for(session_id)
        if host is None:
            if session_id in self._sessions:
                self.log_store.add(session_id, "Session is not active; restore it first", "error")
            return False
        if not await host.start_bot(session_id):
            return False
        await self.update_bot_status(session_id, "active", origin_host_id=host.host_id)
        return True

    async def stop_bot(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if not session:
            return False
        host = self.host_for(session_id)
        if host is not None:
            await host.stop_bot(session_id)
        await self.update_bot_status(
            session_id, "inactive", origin_host_id=host.host_id if host else None
        )
        return True

    async def update_bot_status(
        self, session_id: str, status: str, origin_host_id: str | None = None
    ) -> Session | None:
        """Record a bot-status change and broadcast it.

        Observers always hear about a change; every host except the one the
        change came from gets ``notify_bot_status``.

        Raises:
            ValueError: If ``status`` is not a known bot status.
        """
        if status not in BOT_STATUSES:
            raise ValueError(f"Invalid bot status: {status}")
        session = self._sessions.get(session_id)
        if not session:
            return None
        if session.bot_status == status:
            return session
        session.bot_status = status
        await queries.update_session(session_id, bot_status=status)

        for observer in list(self._observers):
            try:
                result = observer(session_id, status)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Status observer failed: {e}")
        for host_id, host in list(self._hosts.items()):
            if host_id == origin_host_id:
                continue
            try:
                await host.notify_bot_status(session_id, status)
            except Exception as e:
                logger.warning(f"Could not notify host {host_id}: {e}")
        return session

    # ── Shutdown ──

    async def shutdown(self) -> None:
        """Stop every host. Session records keep their requested bot status."""
        for host_id, host in list(self._hosts.items()):
            try:
                await host.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down host {host_id}: {e}")
        self._hosts = {self.local.host_id: self.local}

    # ── Internals ──

    def _status_handler(self, host_id: str) -> StatusObserver:
        async def handler(session_id: str, status: str) -> None:
            await self.update_bot_status(session_id, status, origin_host_id=host_id)

        return handler

    async def _release_anywhere(self, session_id: str) -> None:
        host = self.host_for(session_id)
        if host is None:
            return
        await host.release(session_id)
        if host is not self.local and not host.active_ids():
            self._hosts.pop(host.host_id, None)
            await host.shutdown()

    async def _set_state(self, session: Session, state: str, host_id: str | None) -> None:
        session.state = state
        session.host_id = host_id
        await queries.update_session(session.id, state=state, host_id=host_id)

    async def _spawn_process_host(self, host_id: str) -> ProcessHost:
        host = ProcessHost(host_id, self.log_store, log_level=get_config().log_level)
        await host.start()
        return host
