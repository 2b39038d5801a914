"""Automation agent — per-session poll, extract, decide and reply loop."""

from __future__ import annotations

import asyncio
import random
from collections import OrderedDict
from collections.abc import Hashable
from typing import Any, Awaitable, Callable

from replyfleet.auto import governor
from replyfleet.auto.governor import RandomSource, RateLimiter
from replyfleet.auto.memory import AgentMemory
from replyfleet.auto.responder import ReplyResponder
from replyfleet.auto.strategies import Conversation, PlatformStrategy
from replyfleet.db.models import (
    ConversationalEvent,
    EventId,
    SessionConfig,
    derive_event_id,
    normalize_text,
)
from replyfleet.sessions.log_store import LogStore
from replyfleet.utils.errors import ErrorHandler
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.auto.agent")

Sleep = Callable[[float], Awaitable[Any]]

MAX_SEEN_EVENTS = 1000
MAX_SENT_TEXTS = 200
MAX_SETTLED_CONVERSATIONS = 500
# Conversations opened per poll cycle before giving up until the next one.
MAX_OPENS_PER_CYCLE = 3

# Outcomes of processing one conversation.
REPLIED = "replied"
SETTLED = "settled"  # nothing (more) to do for its latest message
PENDING = "pending"  # nothing readable yet, worth a retry later
BLOCKED = "blocked"  # a gate or the page stopped the reply, try again next cycle
STOPPED = "stopped"


class BoundedSet:
    """Insertion-ordered set that forgets its oldest members past ``capacity``."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._items: OrderedDict[Hashable, None] = OrderedDict()

    def add(self, item: Hashable) -> None:
        self._items[item] = None
        self._items.move_to_end(item)
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)


class AutomationAgent:
    """Drive one session's surface: find new incoming messages and answer them.

    One poll cycle runs at a time (``is_processing``). A cycle scans the
    priority channel, then unread conversations, and opens them in scan order
    until one is answered or a gate blocks replying. Priority items already
    answered or found to hold nothing new are skipped on later cycles. Once a
    conversation is left open, a faster monitor re-reads just that
    conversation between full scans.

    Reply state is seeded from ``memory`` so a rebuilt agent (restore,
    reattach, restart) does not answer the same message twice.

    Any exception inside a cycle is logged and the cycle ends; the agent
    keeps running until ``stop()``.
    """

    def __init__(
        self,
        session_id: str,
        page: Any,
        config: SessionConfig,
        strategy: PlatformStrategy,
        memory: AgentMemory,
        responder: ReplyResponder,
        log_store: LogStore,
        error_handler: ErrorHandler | None = None,
        poll_base_ms: int = 8000,
        poll_jitter_ms: int = 4000,
        monitor_interval_ms: int = 2500,
        rng: RandomSource | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self.page = page
        self.config = config
        self.strategy = strategy
        self.memory = memory
        self.responder = responder
        self.log_store = log_store
        self.error_handler = error_handler
        self.poll_base_ms = poll_base_ms
        self.poll_jitter_ms = poll_jitter_ms
        self.monitor_interval_ms = monitor_interval_ms
        self.rng = rng or random.Random()
        self._sleep = sleep

        self.seen_event_ids = BoundedSet(MAX_SEEN_EVENTS)
        self.last_replied: dict[str, EventId] = {}
        self.sent_texts = BoundedSet(MAX_SENT_TEXTS)
        self.settled_conversations = BoundedSet(MAX_SETTLED_CONVERSATIONS)
        self.monitored_counterpart: str | None = None
        self.is_processing = False
        self.running = False
        self.rate_limiter = RateLimiter(
            config.max_replies_per_minute, config.max_replies_per_hour
        )

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None
        self._restore_from_memory()

    def _restore_from_memory(self) -> None:
        """Rebuild duplicate and echo suppression from persisted memory."""
        for counterpart in self.memory.counterparts():
            for entry in self.memory.history(counterpart):
                if entry.direction == "mine":
                    self.sent_texts.add(normalize_text(entry.text))
            answered = self.memory.last(counterpart, "theirs")
            if answered is not None:
                event_id = derive_event_id(counterpart, answered.text)
                self.last_replied[counterpart] = event_id
                self.seen_event_ids.add(event_id)

    # ── Lifecycle ──

    def start(self) -> None:
        """Start the poll loop. No-op if already running."""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self._log("Bot started", "success")

    def stop(self) -> None:
        """Stop immediately: cancel the poll loop and the conversation monitor."""
        if not self.running:
            return
        self.running = False
        self._stop_event.set()
        self._cancel_monitor()
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self.is_processing = False
        self._log("Bot stopped")

    def update_config(self, config: SessionConfig) -> None:
        """Swap in a new config; the next cycle reads it."""
        self.config = config
        self.rate_limiter.configure(
            config.max_replies_per_minute, config.max_replies_per_hour
        )

    def is_alive(self) -> bool:
        return self.running

    async def _run(self) -> None:
        logger.info(f"Agent loop started for {self.session_id[:8]}")
        while self.running:
            await self.poll_once()
            delay = governor.poll_interval(
                self.poll_base_ms, self.poll_jitter_ms, self.rng
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    # ── Polling ──

    async def poll_once(self) -> None:
        """Run one full scan cycle unless another cycle is in progress."""
        if self.is_processing or not self.running:
            return
        self.is_processing = True
        try:
            await self._poll()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail("agent.poll", e)
        finally:
            self.is_processing = False

    async def _poll(self) -> None:
        page = self.page
        if not self.strategy.is_conversational_view(page):
            self._log("Not on a conversation view, navigating")
            await self.strategy.navigate_to_conversations(page)
            return
        if not self._may_reply():
            return

        candidates = [
            c
            for c in await self.strategy.find_priority_conversations(page)
            if c.key not in self.settled_conversations
        ]
        if not candidates:
            candidates = await self.strategy.find_unread_conversations(page)

        for conversation in candidates[:MAX_OPENS_PER_CYCLE]:
            if not self.running:
                return
            outcome = await self._service(conversation)
            if outcome not in (SETTLED, PENDING):
                return

    async def _service(self, conversation: Conversation) -> str:
        """Open one conversation, process it and return to the listing."""
        page = self.page
        if (
            self.monitored_counterpart
            and conversation.counterpart != self.monitored_counterpart
        ):
            self._cancel_monitor()

        self._log(f"Unread conversation from {conversation.counterpart}", "highlight")
        if not await self.strategy.open_conversation(page, conversation):
            self._log(f"Could not open conversation with {conversation.counterpart}", "error")
            return PENDING

        outcome = await self._process(conversation, conversation.counterpart)
        if conversation.priority and outcome in (REPLIED, SETTLED):
            self.settled_conversations.add(conversation.key)
        if outcome == STOPPED or not self.running:
            return STOPPED

        if await self.strategy.return_to_listing(page):
            self._cancel_monitor()
        else:
            self._start_monitor(conversation.counterpart)
        return outcome

    # ── Processing ──

    async def process_conversation(
        self, conversation: Conversation | None, expected_counterpart: str | None
    ) -> bool:
        """Process the latest incoming message of the open conversation.

        Args:
            conversation: The conversation picked by the scan, or None when
                re-reading the monitored conversation.
            expected_counterpart: Counterpart the caller believes is open.

        Returns:
            True if a reply was submitted.
        """
        return await self._process(conversation, expected_counterpart) == REPLIED

    async def _process(
        self, conversation: Conversation | None, expected_counterpart: str | None
    ) -> str:
        config = self.config
        event = await self.strategy.extract_latest_incoming(
            self.page, conversation, expected_counterpart
        )
        if event is None:
            return PENDING
        if expected_counterpart and not _same(event.counterpart, expected_counterpart):
            logger.debug(
                f"Stale extraction ({event.counterpart} != {expected_counterpart}), retrying later"
            )
            return PENDING
        if self._is_own(event, config):
            self.seen_event_ids.add(event.id)
            return SETTLED
        if self._is_duplicate(event):
            return SETTLED

        if not governor.within_active_hours(config.active_hours):
            logger.debug(f"Outside active hours, leaving {event.counterpart} for later")
            return BLOCKED
        if not self.rate_limiter.can_reply():
            self._log("Reply rate limit reached, waiting", "highlight")
            return BLOCKED

        self._log(f"New message from {event.counterpart}: {event.text[:80]}")
        decision = await self.responder.decide(
            event, config, self.memory, is_alive=self.is_alive
        )
        if not self.running:
            return STOPPED
        if not decision.should_respond:
            self.seen_event_ids.add(event.id)
            self._log(f"No reply for {event.counterpart}")
            return SETTLED
        if governor.should_skip(config.skip_probability, self.rng):
            self.seen_event_ids.add(event.id)
            self._log(f"Skipped reply to {event.counterpart}")
            return SETTLED

        await self._sleep(governor.pre_reply_delay(config.pre_reply_delay_ms, self.rng))
        if not self.running:
            return STOPPED
        current = await self.strategy.current_counterpart(self.page)
        if current and not _same(current, event.counterpart):
            self._log(f"Conversation changed before replying to {event.counterpart}")
            return BLOCKED

        submitted = await self._type_and_submit(decision.response, config)
        if submitted == STOPPED:
            logger.debug(f"Stopped while typing to {event.counterpart}")
            return STOPPED
        if submitted != REPLIED:
            self._log(f"Could not find the input for {event.counterpart}", "error")
            return BLOCKED

        self.last_replied[event.counterpart] = event.id
        self.seen_event_ids.add(event.id)
        self.sent_texts.add(normalize_text(decision.response))
        self.rate_limiter.record()
        await self.memory.append(event.counterpart, "theirs", event.text)
        await self.memory.append(event.counterpart, "mine", decision.response)
        self._log(
            f"Replied to {event.counterpart} ({decision.source}): {decision.response[:80]}",
            "success",
        )
        if self.rate_limiter.is_approaching_limit():
            self._log("Approaching reply rate limit", "highlight")
        return REPLIED

    def _may_reply(self) -> bool:
        if not governor.within_active_hours(self.config.active_hours):
            return False
        return self.rate_limiter.can_reply()

    def _is_own(self, event: ConversationalEvent, config: SessionConfig) -> bool:
        if event.outgoing:
            return True
        if config.own_handle and _same(event.author, config.own_handle):
            return True
        return normalize_text(event.text) in self.sent_texts

    def _is_duplicate(self, event: ConversationalEvent) -> bool:
        return (
            event.id in self.seen_event_ids
            or self.last_replied.get(event.counterpart) == event.id
        )

    async def _type_and_submit(self, text: str, config: SessionConfig) -> str | None:
        """Type ``text`` into the input and submit it.

        Returns:
            ``REPLIED`` when submitted, ``STOPPED`` if the agent stopped while
            typing, None when no input control was found.
        """
        page = self.page
        control = await self.strategy.locate_input_control(page)
        if control is None:
            return None
        await control.click()
        for ch in text:
            if not self.running:
                return STOPPED
            await control.press_sequentially(ch)
            await control.dispatch_event("input")
            await self._sleep(governor.typing_delay(config.typing_delay_ms, self.rng))
        if not self.running:
            return STOPPED

        submit = await self.strategy.locate_submit_control(page)
        if submit is not None:
            await submit.click()
        else:
            await control.press("Enter")
        return REPLIED

    # ── Conversation monitor ──

    def _start_monitor(self, counterpart: str) -> None:
        if (
            self.monitored_counterpart == counterpart
            and self._monitor_task
            and not self._monitor_task.done()
        ):
            return
        self._cancel_monitor()
        self.monitored_counterpart = counterpart
        self._monitor_task = asyncio.create_task(self._monitor(counterpart))

    def _cancel_monitor(self) -> None:
        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = None
        self.monitored_counterpart = None

    async def _monitor(self, counterpart: str) -> None:
        interval = self.monitor_interval_ms / 1000.0
        while self.running and self.monitored_counterpart == counterpart:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            if self.is_processing:
                continue
            self.is_processing = True
            try:
                await self.process_conversation(None, counterpart)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._fail("agent.monitor", e)
            finally:
                self.is_processing = False

    # ── Helpers ──

    def _log(self, message: str, severity: str = "info") -> None:
        self.log_store.add(self.session_id, message, severity)

    def _fail(self, context: str, error: Exception) -> None:
        if self.error_handler:
            self.error_handler.handle(error, context, self.session_id)
        else:
            self._log(f"{context}: {error}", "error")


def _same(a: str | None, b: str | None) -> bool:
    return (a or "").strip().lstrip("@").lower() == (b or "").strip().lstrip("@").lower()
