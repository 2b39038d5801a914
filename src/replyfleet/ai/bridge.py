"""AI bridge — a per-session mailbox between agents and the privileged poller.

Agents never talk to the AI endpoint. They drop a request into their
session's mailbox and wait for a response carrying the same id. The poller
runs in the host's privileged context, owns the chat clients and writes
exactly one response per request id.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable

from replyfleet.ai.client import ChatBackend, make_chat_client
from replyfleet.db.models import AIConfig
from replyfleet.utils.errors import AIError
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.ai.bridge")

DEFAULT_WAIT_S = 30.0
AGENT_POLL_S = 0.1
POLLER_INTERVAL_S = 0.2


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass
class BridgeRequest:
    id: str
    counterpart: str
    messages: list[dict[str, str]]
    config: AIConfig = field(default_factory=AIConfig)


@dataclass
class BridgeResponse:
    id: str
    reply: str | None
    error_kind: str | None = None


class AIMailbox:
    """One pending-request slot and one response slot for a session."""

    def __init__(self) -> None:
        self.request: BridgeRequest | None = None
        self.response: BridgeResponse | None = None

    def post(self, request: BridgeRequest) -> None:
        self.request = request

    def take_request(self) -> BridgeRequest | None:
        request, self.request = self.request, None
        return request

    def put_response(self, response: BridgeResponse) -> None:
        self.response = response

    def clear(self) -> None:
        self.request = None
        self.response = None


class BridgeClient:
    """Agent side of the bridge."""

    def __init__(self, mailbox: AIMailbox) -> None:
        self.mailbox = mailbox

    async def ask(
        self,
        request: BridgeRequest,
        timeout: float = DEFAULT_WAIT_S,
        poll_interval: float = AGENT_POLL_S,
        is_alive: Callable[[], bool] | None = None,
    ) -> str | None:
        """Post a request and wait for its matching response.

        Args:
            request: The request to send; its id correlates the response.
            timeout: Seconds to wait before giving up.
            poll_interval: Seconds between checks of the response slot.
            is_alive: Returns False once the owning agent stopped.

        Returns:
            The reply text, or None on timeout, AI failure or agent stop.
        """
        mailbox = self.mailbox
        mailbox.post(request)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            response = mailbox.response
            if response is not None:
                mailbox.response = None
                if response.id == request.id:
                    return response.reply
                logger.debug(f"Discarding stale bridge response {response.id}")
            if is_alive is not None and not is_alive():
                self._withdraw(request)
                return None
            if loop.time() >= deadline:
                logger.warning(f"AI bridge request {request.id[:8]} timed out")
                self._withdraw(request)
                return None
            await asyncio.sleep(poll_interval)

    def _withdraw(self, request: BridgeRequest) -> None:
        if self.mailbox.request is not None and self.mailbox.request.id == request.id:
            self.mailbox.request = None


class BridgePoller:
    """Privileged side of the bridge: serves pending requests of every mailbox.

    At most one request per session is in flight. A request is removed from
    its mailbox the moment it is taken, so it is never served twice.
    """

    def __init__(
        self,
        interval: float = POLLER_INTERVAL_S,
        request_timeout: float = DEFAULT_WAIT_S,
        backend_factory: Callable[[AIConfig], ChatBackend] = make_chat_client,
        on_error: Callable[[str, str], None] | None = None,
    ) -> None:
        self.interval = interval
        self.request_timeout = request_timeout
        self._backend_factory = backend_factory
        self._on_error = on_error
        self._mailboxes: dict[str, AIMailbox] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._backends: dict[str, ChatBackend] = {}
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def register(self, session_id: str, mailbox: AIMailbox) -> None:
        self._mailboxes[session_id] = mailbox

    def unregister(self, session_id: str) -> None:
        self._mailboxes.pop(session_id, None)
        task = self._in_flight.pop(session_id, None)
        if task:
            task.cancel()

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("AI bridge poller started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        for backend in self._backends.values():
            try:
                await backend.aclose()
            except Exception as e:
                logger.warning(f"Failed to close chat backend: {e}")
        self._backends.clear()
        logger.info("AI bridge poller stopped")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def poll_once(self) -> list[asyncio.Task]:
        """Take pending requests from idle mailboxes and start serving them.

        Returns:
            The tasks started in this pass.
        """
        started = []
        for session_id, mailbox in list(self._mailboxes.items()):
            if session_id in self._in_flight or mailbox.request is None:
                continue
            request = mailbox.take_request()
            task = asyncio.create_task(self._serve(session_id, mailbox, request))
            self._in_flight[session_id] = task
            started.append(task)
        return started

    async def _serve(
        self, session_id: str, mailbox: AIMailbox, request: BridgeRequest
    ) -> None:
        reply: str | None = None
        error_kind: str | None = None
        try:
            backend = self._backend(request.config)
            reply = await asyncio.wait_for(
                backend.complete(request.messages, request.config),
                timeout=self.request_timeout,
            )
        except AIError as e:
            error_kind = e.kind
            logger.warning(f"AI request for {session_id[:8]} failed ({e.kind}): {e}")
        except asyncio.TimeoutError:
            error_kind = "timeout"
            logger.warning(f"AI request for {session_id[:8]} timed out")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error_kind = "transport"
            logger.error(f"Unexpected AI bridge error for {session_id[:8]}: {e}")
        finally:
            self._in_flight.pop(session_id, None)

        if error_kind and self._on_error:
            self._on_error(session_id, f"AI request failed ({error_kind})")
        if self._mailboxes.get(session_id) is mailbox:
            mailbox.put_response(
                BridgeResponse(id=request.id, reply=reply, error_kind=error_kind)
            )

    def _backend(self, ai: AIConfig) -> ChatBackend:
        backend = self._backends.get(ai.provider)
        if backend is None:
            backend = self._backend_factory(ai)
            self._backends[ai.provider] = backend
        return backend
