"""Reply decision — rules first, then the AI bridge, then heuristic fallback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from replyfleet.ai.bridge import DEFAULT_WAIT_S, BridgeClient, BridgeRequest, new_request_id
from replyfleet.ai.fallback import get_heuristic_reply
from replyfleet.auto.memory import AgentMemory
from replyfleet.auto.rules import find_matching_rule
from replyfleet.db.models import ConversationalEvent, SessionConfig
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.auto.responder")


@dataclass
class AutoResponse:
    should_respond: bool
    response: str = ""
    source: str = ""  # 'rule', 'ai' or 'fallback'
    rule_index: int | None = None


def build_messages(
    event: ConversationalEvent, config: SessionConfig, memory: AgentMemory | None
) -> list[dict[str, str]]:
    """Assemble the chat messages for an AI request.

    Args:
        event: The incoming event being answered.
        config: Session config; its ``ai`` sub-config must be set.
        memory: Session memory used for history context, if enabled.

    Returns:
        System prompt, then recent history (theirs as user, mine as
        assistant), then the current message.
    """
    ai = config.ai
    messages = [{"role": "system", "content": ai.system_prompt}]
    if memory is not None and ai.include_history:
        for entry in memory.recent(event.counterpart, ai.history_depth):
            role = "assistant" if entry.direction == "mine" else "user"
            messages.append({"role": role, "content": entry.text})
    messages.append({"role": "user", "content": event.text})
    return messages


class ReplyResponder:
    """Decide the reply for one incoming event."""

    def __init__(self, bridge: BridgeClient | None = None, ai_wait_s: float = DEFAULT_WAIT_S) -> None:
        self.bridge = bridge
        self.ai_wait_s = ai_wait_s

    async def decide(
        self,
        event: ConversationalEvent,
        config: SessionConfig,
        memory: AgentMemory | None = None,
        is_alive: Callable[[], bool] | None = None,
    ) -> AutoResponse:
        """Pick a reply for ``event``.

        Args:
            event: Incoming event.
            config: Session config snapshot for this cycle.
            memory: Session memory for AI context.
            is_alive: Returns False once the agent stopped; aborts the AI wait.

        Returns:
            ``AutoResponse`` with the truncated reply text and where it came
            from, or ``should_respond=False`` when nothing applies.
        """
        text = event.text
        match = find_matching_rule(text, config.reply_rules)
        if match is not None:
            index, rule = match
            logger.info(f"Rule #{index} matched '{rule.pattern}' for {event.counterpart}")
            return self._respond(rule.reply, "rule", config, rule_index=index)

        if config.ai and config.ai.enabled and self.bridge is not None:
            request = BridgeRequest(
                id=new_request_id(),
                counterpart=event.counterpart,
                messages=build_messages(event, config, memory),
                config=config.ai,
            )
            reply = await self.bridge.ask(
                request, timeout=self.ai_wait_s, is_alive=is_alive
            )
            if is_alive is not None and not is_alive():
                return AutoResponse(should_respond=False)
            if reply:
                return self._respond(reply, "ai", config)
            logger.info(f"No AI reply for {event.counterpart}, using fallback")

        fallback = get_heuristic_reply(text)
        if fallback:
            return self._respond(fallback, "fallback", config)
        return AutoResponse(should_respond=False)

    @staticmethod
    def _respond(
        text: str, source: str, config: SessionConfig, rule_index: int | None = None
    ) -> AutoResponse:
        text = text.strip()
        if config.max_reply_length > 0:
            text = text[: config.max_reply_length]
        if not text:
            return AutoResponse(should_respond=False)
        return AutoResponse(
            should_respond=True, response=text, source=source, rule_index=rule_index
        )
