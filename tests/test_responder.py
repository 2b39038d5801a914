"""Tests for the reply decision — rules, AI bridge and heuristic fallback."""

from unittest.mock import AsyncMock, MagicMock

from replyfleet.ai.prompts import GREETING_REPLY, QUESTION_REPLY
from replyfleet.auto.memory import AgentMemory
from replyfleet.auto.responder import ReplyResponder, build_messages
from replyfleet.db.models import AIConfig, ReplyRule, SessionConfig, make_event


def _make_bridge(reply):
    bridge = MagicMock()
    bridge.ask = AsyncMock(return_value=reply)
    return bridge


def _ai_config(**overrides) -> SessionConfig:
    return SessionConfig(ai=AIConfig(enabled=True, **overrides))


class TestRulesFirst:
    async def test_rule_match(self):
        config = SessionConfig(reply_rules=[ReplyRule(pattern="price", reply="$20")])
        bridge = _make_bridge("from ai")
        result = await ReplyResponder(bridge).decide(make_event("alice", "price?"), config)
        assert result.should_respond is True
        assert result.response == "$20"
        assert result.source == "rule"
        assert result.rule_index == 0
        bridge.ask.assert_not_called()

    async def test_reply_is_truncated(self):
        config = SessionConfig(
            reply_rules=[ReplyRule(pattern="a", reply="abcdefgh")], max_reply_length=3
        )
        result = await ReplyResponder().decide(make_event("alice", "a"), config)
        assert result.response == "abc"

    async def test_zero_length_limit_means_unlimited(self):
        config = SessionConfig(
            reply_rules=[ReplyRule(pattern="a", reply="abcdefgh")], max_reply_length=0
        )
        result = await ReplyResponder().decide(make_event("alice", "a"), config)
        assert result.response == "abcdefgh"

    async def test_blank_reply_is_not_sent(self):
        config = SessionConfig(reply_rules=[ReplyRule(pattern="a", reply="   ")])
        result = await ReplyResponder().decide(make_event("alice", "a"), config)
        assert result.should_respond is False


class TestAIPath:
    async def test_ai_reply(self):
        bridge = _make_bridge("  sounds good  ")
        result = await ReplyResponder(bridge, ai_wait_s=5).decide(
            make_event("alice", "see you at 8"), _ai_config()
        )
        assert result.source == "ai"
        assert result.response == "sounds good"
        request = bridge.ask.call_args.args[0]
        assert request.counterpart == "alice"
        assert request.messages[-1] == {"role": "user", "content": "see you at 8"}
        assert bridge.ask.call_args.kwargs["timeout"] == 5

    async def test_ai_failure_uses_fallback(self):
        result = await ReplyResponder(_make_bridge(None)).decide(
            make_event("alice", "you there?"), _ai_config()
        )
        assert result.source == "fallback"
        assert result.response == QUESTION_REPLY

    async def test_ai_disabled_skips_bridge(self):
        bridge = _make_bridge("ai")
        config = SessionConfig(ai=AIConfig(enabled=False))
        result = await ReplyResponder(bridge).decide(make_event("alice", "hey"), config)
        bridge.ask.assert_not_called()
        assert result.response == GREETING_REPLY

    async def test_stopped_agent_gets_no_reply(self):
        result = await ReplyResponder(_make_bridge("late")).decide(
            make_event("alice", "hi?"), _ai_config(), is_alive=lambda: False
        )
        assert result.should_respond is False

    async def test_nothing_applies(self):
        result = await ReplyResponder().decide(make_event("alice", "nice pic"), SessionConfig())
        assert result.should_respond is False
        assert result.response == ""


class TestBuildMessages:
    async def test_system_then_history_then_current(self, tmp_path):
        memory = AgentMemory(tmp_path)
        await memory.append("alice", "theirs", "hi")
        await memory.append("alice", "mine", "hey!")
        await memory.append("bob", "theirs", "unrelated")
        config = _ai_config(system_prompt="Be brief.", history_depth=5)
        messages = build_messages(make_event("alice", "what's up"), config, memory)
        assert messages == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hey!"},
            {"role": "user", "content": "what's up"},
        ]

    async def test_history_depth(self, tmp_path):
        memory = AgentMemory(tmp_path)
        for i in range(5):
            await memory.append("alice", "theirs", f"m{i}")
        config = _ai_config(history_depth=2)
        messages = build_messages(make_event("alice", "now"), config, memory)
        assert [m["content"] for m in messages[1:]] == ["m3", "m4", "now"]

    async def test_history_disabled(self, tmp_path):
        memory = AgentMemory(tmp_path)
        await memory.append("alice", "theirs", "hi")
        config = _ai_config(include_history=False)
        assert len(build_messages(make_event("alice", "x"), config, memory)) == 2

    def test_without_memory(self):
        assert len(build_messages(make_event("alice", "x"), _ai_config(), None)) == 2
