"""Tests for command handlers — covers the /slash commands in commands.py."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from replyfleet.bot.handlers import commands as commands_mod
from replyfleet.bot.handlers.commands import (
    _mgr,
    apply_setting,
    cmd_ai_test,
    cmd_bot_off,
    cmd_bot_on,
    cmd_config,
    cmd_delete,
    cmd_detach,
    cmd_dup,
    cmd_help,
    cmd_hibernate,
    cmd_logs,
    cmd_new,
    cmd_proxies,
    cmd_proxy_add,
    cmd_proxy_check,
    cmd_proxy_rm,
    cmd_proxy_use,
    cmd_reattach,
    cmd_rename,
    cmd_restore,
    cmd_rule,
    cmd_sessions,
    cmd_set,
    cmd_start,
    cmd_view,
    set_session_manager,
)
from replyfleet.db.models import (
    AIConfig,
    Fingerprint,
    ProxyConfig,
    ReplyRule,
    Session,
    SessionConfig,
)
from replyfleet.sessions.log_store import GLOBAL_SESSION_ID, LogStore

# ── Helpers ──


def _make_session(
    id: str = "abcdef1234",
    name: str = "Main",
    state: str = "active",
    bot_status: str = "inactive",
    config: SessionConfig | None = None,
) -> Session:
    return Session(
        id=id,
        name=name,
        partition=f"session_{id}",
        fingerprint=Fingerprint(user_agent="UA"),
        state=state,
        bot_status=bot_status,
        config=config,
    )


def _make_message(text: str = "", user_id: int = 12345) -> MagicMock:
    """Build a mock aiogram Message with AsyncMock answer methods."""
    msg = MagicMock()
    msg.text = text
    msg.answer = AsyncMock()
    msg.answer_document = AsyncMock()
    msg.from_user = MagicMock()
    msg.from_user.id = user_id
    return msg


def _make_manager(*sessions: Session, **overrides) -> MagicMock:
    """Build a mock SessionManager around a fixed session list."""
    by_ref = {}
    for i, s in enumerate(sessions, 1):
        by_ref[s.id] = s
        by_ref[str(i)] = s
        by_ref[s.name.lower()] = s

    mgr = MagicMock()
    mgr.log_store = LogStore()
    mgr.list_sessions = MagicMock(return_value=list(sessions))
    mgr.resolve_session = MagicMock(side_effect=lambda ref: by_ref.get(ref.lower()))
    mgr.get_session = MagicMock(side_effect=lambda sid: by_ref.get(sid))
    mgr.config_for = MagicMock(side_effect=lambda s: s.config or SessionConfig())
    mgr.create_session = AsyncMock(return_value=sessions[0] if sessions else _make_session())
    mgr.activate_session = AsyncMock(side_effect=lambda sid: by_ref.get(sid))
    mgr.duplicate_session = AsyncMock(return_value=_make_session(id="copy0001", name="Main (Copy)"))
    mgr.rename_session = AsyncMock()
    mgr.hibernate_session = AsyncMock()
    mgr.restore_session = AsyncMock(side_effect=lambda sid: by_ref.get(sid))
    mgr.delete_session = AsyncMock(return_value=True)
    mgr.detach_session = AsyncMock(return_value=MagicMock(host_id="host-abcdef12"))
    mgr.reattach_session = AsyncMock(side_effect=lambda sid: by_ref.get(sid))
    mgr.start_bot = AsyncMock(return_value=True)
    mgr.stop_bot = AsyncMock(return_value=True)
    mgr.update_config = AsyncMock()
    mgr.assign_proxy = AsyncMock()
    mgr.proxies = MagicMock()
    mgr.proxies.all = MagicMock(return_value=[])
    mgr.proxies.assigned_to = MagicMock(return_value=None)
    mgr.proxies.import_text = AsyncMock(return_value=([], []))
    mgr.proxies.remove = AsyncMock(return_value=True)
    mgr.proxies.get = MagicMock(return_value=None)
    mgr.proxies.check = AsyncMock(return_value=True)
    for k, v in overrides.items():
        setattr(mgr, k, v)
    set_session_manager(mgr)
    return mgr


def _answer(msg: MagicMock) -> str:
    return msg.answer.call_args[0][0]


@pytest.fixture(autouse=True)
def _reset_session_manager():
    """Ensure module-level _session_manager is reset after every test."""
    yield
    set_session_manager(None)


# ── _mgr guard and static commands ──


class TestMgrGuard:
    def test_mgr_raises_when_not_initialized(self):
        set_session_manager(None)
        with pytest.raises(RuntimeError, match="Session manager not initialized"):
            _mgr()

    def test_mgr_returns_manager_when_set(self):
        mgr = _make_manager()
        assert _mgr() is mgr


class TestStartHelp:
    async def test_cmd_start_sends_welcome(self):
        msg = _make_message("/start")
        await cmd_start(msg)
        text = _answer(msg)
        assert "ReplyFleet" in text
        assert "/sessions" in text

    async def test_cmd_help_lists_commands(self):
        msg = _make_message("/help")
        await cmd_help(msg)
        text = _answer(msg)
        assert "Command Reference" in text
        for command in ("/new", "/detach", "/rule", "/view", "/proxy_use", "/proxy_check"):
            assert command in text


# ── Sessions ──


class TestSessionCommands:
    async def test_sessions_list(self):
        _make_manager(_make_session(), _make_session(id="ffff0000", name="Shop"))
        msg = _make_message("/sessions")
        await cmd_sessions(msg)
        text = _answer(msg)
        assert "2 total" in text
        assert "Shop" in text

    async def test_new_creates_and_opens(self):
        session = _make_session()
        mgr = _make_manager(session)
        msg = _make_message("/new Main account")
        await cmd_new(msg)
        mgr.create_session.assert_awaited_once_with("Main account")
        mgr.activate_session.assert_awaited_once_with(session.id)
        text = _answer(msg)
        assert "Created" in text
        assert "session_abcdef1234" in text
        assert "could not be opened" not in text

    async def test_new_without_name(self):
        mgr = _make_manager(_make_session())
        await cmd_new(_make_message("/new"))
        mgr.create_session.assert_awaited_once_with(None)

    async def test_new_surface_failure_is_reported(self):
        mgr = _make_manager(_make_session())
        mgr.activate_session = AsyncMock(return_value=None)
        msg = _make_message("/new")
        await cmd_new(msg)
        assert "could not be opened" in _answer(msg)

    async def test_new_limit_reached(self):
        mgr = _make_manager()
        mgr.create_session = AsyncMock(side_effect=RuntimeError("Max 10 concurrent sessions reached"))
        msg = _make_message("/new x")
        await cmd_new(msg)
        assert "Failed to create session" in _answer(msg)
        mgr.activate_session.assert_not_called()

    async def test_ref_defaults_to_only_session(self):
        mgr = _make_manager(_make_session())
        await cmd_hibernate(_make_message("/hibernate"))
        mgr.hibernate_session.assert_awaited_once_with("abcdef1234")

    async def test_ref_required_with_many_sessions(self):
        mgr = _make_manager(_make_session(), _make_session(id="ffff0000", name="Shop"))
        msg = _make_message("/hibernate")
        await cmd_hibernate(msg)
        assert "Usage" in _answer(msg)
        mgr.hibernate_session.assert_not_called()

    async def test_unknown_ref(self):
        _make_manager(_make_session())
        msg = _make_message("/dup nope")
        await cmd_dup(msg)
        assert "Session not found: nope" in _answer(msg)

    async def test_dup(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/dup 1")
        await cmd_dup(msg)
        mgr.duplicate_session.assert_awaited_once_with("abcdef1234")
        assert "Main (Copy)" in _answer(msg)

    async def test_rename(self):
        mgr = _make_manager(_make_session())
        await cmd_rename(_make_message("/rename 1 Shop front"))
        mgr.rename_session.assert_awaited_once_with("abcdef1234", "Shop front")

    async def test_rename_invalid(self):
        mgr = _make_manager(_make_session())
        mgr.rename_session = AsyncMock(side_effect=ValueError("Session name cannot be empty"))
        msg = _make_message("/rename 1 x")
        await cmd_rename(msg)
        assert "cannot be empty" in _answer(msg)

    async def test_rename_usage(self):
        _make_manager(_make_session())
        msg = _make_message("/rename 1")
        await cmd_rename(msg)
        assert "Usage" in _answer(msg)

    async def test_restore_only_hibernated(self):
        mgr = _make_manager(_make_session(state="active"))
        msg = _make_message("/restore 1")
        await cmd_restore(msg)
        mgr.restore_session.assert_not_called()
        assert "Active" in _answer(msg)

    async def test_restore(self):
        mgr = _make_manager(_make_session(state="hibernated"))
        msg = _make_message("/restore 1")
        await cmd_restore(msg)
        mgr.restore_session.assert_awaited_once_with("abcdef1234")
        assert "Restored" in _answer(msg)

    async def test_delete_requires_confirmation(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/delete 1")
        await cmd_delete(msg)
        mgr.delete_session.assert_not_called()
        assert "/delete 1 yes" in _answer(msg)

    async def test_delete_confirmed(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/delete 1 yes")
        await cmd_delete(msg)
        mgr.delete_session.assert_awaited_once_with("abcdef1234")
        assert "Deleted" in _answer(msg)

    async def test_detach_requires_active(self):
        mgr = _make_manager(_make_session(state="hibernated"))
        msg = _make_message("/detach 1")
        await cmd_detach(msg)
        mgr.detach_session.assert_not_called()
        assert "Only active sessions" in _answer(msg)

    async def test_detach(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/detach 1")
        await cmd_detach(msg)
        mgr.detach_session.assert_awaited_once_with("abcdef1234")
        assert "host-abcdef12" in _answer(msg)

    async def test_detach_failure(self):
        mgr = _make_manager(_make_session())
        mgr.detach_session = AsyncMock(return_value=None)
        msg = _make_message("/detach 1")
        await cmd_detach(msg)
        assert "Detach failed" in _answer(msg)

    async def test_reattach_requires_detached(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/reattach 1")
        await cmd_reattach(msg)
        mgr.reattach_session.assert_not_called()
        assert "not detached" in _answer(msg)

    async def test_reattach(self):
        mgr = _make_manager(_make_session(state="detached"))
        msg = _make_message("/reattach 1")
        await cmd_reattach(msg)
        assert "Reattached" in _answer(msg)


# ── Bot on/off ──


class TestBotCommands:
    async def test_bot_on(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/bot_on 1")
        await cmd_bot_on(msg)
        mgr.start_bot.assert_awaited_once_with("abcdef1234")
        assert "Bot started" in _answer(msg)

    async def test_bot_on_inactive_session(self):
        mgr = _make_manager(_make_session(state="hibernated"))
        mgr.start_bot = AsyncMock(return_value=False)
        msg = _make_message("/bot_on 1")
        await cmd_bot_on(msg)
        assert "Could not start bot" in _answer(msg)
        assert "Hibernated" in _answer(msg)

    async def test_bot_off(self):
        mgr = _make_manager(_make_session(bot_status="active"))
        msg = _make_message("/bot_off main")
        await cmd_bot_off(msg)
        mgr.stop_bot.assert_awaited_once_with("abcdef1234")


# ── Logs and view ──


class TestLogCommands:
    async def test_logs_for_session(self):
        mgr = _make_manager(_make_session())
        mgr.log_store.add("abcdef1234", "Replied to alice", "success")
        msg = _make_message("/logs 1")
        await cmd_logs(msg)
        assert "Replied to alice" in _answer(msg)

    async def test_logs_count(self):
        mgr = _make_manager(_make_session())
        for i in range(5):
            mgr.log_store.add("abcdef1234", f"entry-{i}")
        msg = _make_message("/logs 1 2")
        await cmd_logs(msg)
        text = _answer(msg)
        assert "entry-4" in text and "entry-3" in text
        assert "entry-2" not in text

    async def test_logs_global(self):
        mgr = _make_manager(_make_session())
        mgr.log_store.add(GLOBAL_SESSION_ID, "Deleted session 'Old'")
        msg = _make_message("/logs global")
        await cmd_logs(msg)
        assert "Deleted session" in _answer(msg)

    async def test_logs_bad_count(self):
        _make_manager(_make_session())
        msg = _make_message("/logs 1 lots")
        await cmd_logs(msg)
        assert "Count must be a number" in _answer(msg)

    async def test_logs_file(self):
        mgr = _make_manager(_make_session())
        mgr.log_store.add("abcdef1234", "line one")
        msg = _make_message("/logs 1 file")
        await cmd_logs(msg)
        msg.answer_document.assert_awaited_once()
        doc = msg.answer_document.call_args.args[0]
        assert doc.filename.startswith("abcdef12-")
        assert b"[info] line one" in doc.data

    async def test_logs_file_empty(self):
        _make_manager(_make_session())
        msg = _make_message("/logs 1 file")
        await cmd_logs(msg)
        msg.answer_document.assert_not_called()
        assert "No log entries" in _answer(msg)

    async def test_view_switches_and_replays(self):
        mgr = _make_manager(_make_session())
        mgr.log_store.add("abcdef1234", "earlier")
        msg = _make_message("/view 1")
        await cmd_view(msg)
        assert mgr.log_store.viewed_session_id == "abcdef1234"
        assert "1 earlier entries" in _answer(msg)

    async def test_view_global_and_off(self):
        mgr = _make_manager(_make_session())
        await cmd_view(_make_message("/view global"))
        assert mgr.log_store.viewed_session_id == GLOBAL_SESSION_ID
        msg = _make_message("/view off")
        await cmd_view(msg)
        assert mgr.log_store.viewed_session_id is None
        assert "off" in _answer(msg)


# ── Config, set and rules ──


class TestApplySetting:
    @pytest.mark.parametrize(
        "key,value,attr,expected",
        [
            ("auto_start", "on", "auto_start", True),
            ("typing_delay", "30-90", "typing_delay_ms", (30, 90)),
            ("per_minute", "3", "max_replies_per_minute", 3),
            ("skip", "0.5", "skip_probability", 0.5),
            ("hours", "22:00-06:00", "active_hours", ("22:00", "06:00")),
            ("hours", "off", "active_hours", None),
            ("own_handle", "none", "own_handle", None),
            ("entry_url", "https://www.threads.net/", "entry_url", "https://www.threads.net/"),
        ],
    )
    def test_valid(self, key, value, attr, expected):
        config = SessionConfig()
        apply_setting(config, key, value)
        assert getattr(config, attr) == expected

    def test_ai_keys_create_ai_config(self):
        config = SessionConfig()
        apply_setting(config, "ai_model", "qwen2.5")
        assert isinstance(config.ai, AIConfig)
        assert config.ai.model == "qwen2.5"
        assert config.ai.enabled is False
        apply_setting(config, "ai", "on")
        assert config.ai.enabled is True

    @pytest.mark.parametrize(
        "key,value",
        [
            ("nope", "1"),
            ("auto_start", "maybe"),
            ("typing_delay", "90-30"),
            ("per_hour", "0"),
            ("skip", "1.5"),
            ("hours", "25:00-01:00"),
            ("ai_provider", "gemini"),
            ("ai_temperature", "3"),
            ("max_length", "abc"),
        ],
    )
    def test_invalid(self, key, value):
        with pytest.raises(ValueError):
            apply_setting(SessionConfig(), key, value)


class TestConfigCommands:
    async def test_config(self):
        _make_manager(_make_session())
        msg = _make_message("/config 1")
        await cmd_config(msg)
        assert "Config" in _answer(msg)

    async def test_set_updates_copy(self):
        original = SessionConfig()
        mgr = _make_manager(_make_session(config=original))
        msg = _make_message("/set 1 per_hour 12")
        await cmd_set(msg)
        session_id, new_config = mgr.update_config.call_args.args
        assert session_id == "abcdef1234"
        assert new_config.max_replies_per_hour == 12
        assert original.max_replies_per_hour == 30

    async def test_set_invalid_value(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/set 1 skip 2")
        await cmd_set(msg)
        mgr.update_config.assert_not_called()
        assert "❌" in _answer(msg)

    async def test_set_usage_lists_keys(self):
        _make_manager(_make_session())
        msg = _make_message("/set 1")
        await cmd_set(msg)
        assert "ai_endpoint" in _answer(msg)

    async def test_rule_add(self):
        mgr = _make_manager(_make_session())
        msg = _make_message('/rule 1 add "how much" "Check your DMs" exact 2')
        await cmd_rule(msg)
        config = mgr.update_config.call_args.args[1]
        rule = config.reply_rules[0]
        assert (rule.pattern, rule.reply, rule.match_type, rule.priority) == (
            "how much",
            "Check your DMs",
            "exact",
            2,
        )
        assert "Added rule #1" in _answer(msg)

    async def test_rule_add_defaults_to_contains(self):
        mgr = _make_manager(_make_session())
        await cmd_rule(_make_message('/rule 1 add "hi" "hey"'))
        rule = mgr.update_config.call_args.args[1].reply_rules[0]
        assert rule.match_type == "contains"
        assert rule.case_sensitive is False

    async def test_rule_add_case_sensitive(self):
        mgr = _make_manager(_make_session())
        await cmd_rule(_make_message('/rule 1 add "Hi" "hey" exact cs'))
        rule = mgr.update_config.call_args.args[1].reply_rules[0]
        assert (rule.match_type, rule.case_sensitive, rule.priority) == ("exact", True, 0)

    async def test_rule_add_case_sensitive_token_anywhere_in_tail(self):
        mgr = _make_manager(_make_session())
        await cmd_rule(_make_message('/rule 1 add "Hi" "hey" cs regex 3'))
        rule = mgr.update_config.call_args.args[1].reply_rules[0]
        assert (rule.match_type, rule.case_sensitive, rule.priority) == ("regex", True, 3)

    async def test_rule_add_bad_regex(self):
        mgr = _make_manager(_make_session())
        msg = _make_message('/rule 1 add "([" "x" regex')
        await cmd_rule(msg)
        mgr.update_config.assert_not_called()
        assert "Invalid regex" in _answer(msg)

    async def test_rule_add_missing_quotes(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/rule 1 add hi hey")
        await cmd_rule(msg)
        mgr.update_config.assert_not_called()
        assert "Usage" in _answer(msg)

    async def test_rule_remove(self):
        config = SessionConfig(reply_rules=[ReplyRule("a", "1"), ReplyRule("b", "2")])
        mgr = _make_manager(_make_session(config=config))
        await cmd_rule(_make_message("/rule 1 remove 1"))
        new_config = mgr.update_config.call_args.args[1]
        assert [r.pattern for r in new_config.reply_rules] == ["b"]
        assert len(config.reply_rules) == 2

    async def test_rule_remove_out_of_range(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/rule 1 remove 4")
        await cmd_rule(msg)
        mgr.update_config.assert_not_called()
        assert "not found" in _answer(msg)

    async def test_ai_test(self):
        _make_manager(_make_session(config=SessionConfig(ai=AIConfig(endpoint="http://llm:8080/v1"))))
        msg = _make_message("/ai_test 1")
        with patch.object(commands_mod, "probe_endpoint", AsyncMock(return_value=(True, "2 model(s)"))):
            await cmd_ai_test(msg)
        text = _answer(msg)
        assert text.startswith("✅")
        assert "http://llm:8080/v1" in text


# ── Proxies ──


class TestProxyCommands:
    async def test_proxies_shows_holder(self):
        session = _make_session()
        mgr = _make_manager(session)
        mgr.proxies.all = MagicMock(return_value=[ProxyConfig(id="p1", host="h", port=80)])
        mgr.proxies.assigned_to = MagicMock(return_value=session.id)
        msg = _make_message("/proxies")
        await cmd_proxies(msg)
        assert "→ Main" in _answer(msg)

    async def test_proxy_add(self):
        mgr = _make_manager()
        mgr.proxies.import_text = AsyncMock(
            return_value=([ProxyConfig(id="p1", host="h", port=80)], ["bad"])
        )
        msg = _make_message("/proxy_add h:80\nbad")
        await cmd_proxy_add(msg)
        mgr.proxies.import_text.assert_awaited_once_with("h:80\nbad")
        text = _answer(msg)
        assert "Added 1" in text
        assert "Rejected 1" in text

    async def test_proxy_rm_clears_holder(self):
        mgr = _make_manager(_make_session())
        mgr.proxies.assigned_to = MagicMock(return_value="abcdef1234")
        await cmd_proxy_rm(_make_message("/proxy_rm p1"))
        mgr.assign_proxy.assert_awaited_once_with("abcdef1234", None)
        mgr.proxies.remove.assert_awaited_once_with("p1")

    async def test_proxy_rm_unknown(self):
        mgr = _make_manager()
        mgr.proxies.remove = AsyncMock(return_value=False)
        msg = _make_message("/proxy_rm p9")
        await cmd_proxy_rm(msg)
        assert "not found" in _answer(msg)

    async def test_proxy_use(self):
        mgr = _make_manager(_make_session())
        msg = _make_message("/proxy_use 1 p1")
        await cmd_proxy_use(msg)
        mgr.assign_proxy.assert_awaited_once_with("abcdef1234", "p1")
        assert "next time" in _answer(msg)

    async def test_proxy_use_none(self):
        mgr = _make_manager(_make_session())
        await cmd_proxy_use(_make_message("/proxy_use 1 none"))
        mgr.assign_proxy.assert_awaited_once_with("abcdef1234", None)

    async def test_proxy_use_taken(self):
        mgr = _make_manager(_make_session())
        mgr.assign_proxy = AsyncMock(side_effect=ValueError("Proxy p1 is assigned to another session"))
        msg = _make_message("/proxy_use 1 p1")
        await cmd_proxy_use(msg)
        assert "another session" in _answer(msg)

    async def test_proxy_check_all(self):
        mgr = _make_manager()
        proxies = [ProxyConfig(id="p1", host="h", port=80), ProxyConfig(id="p2", host="h", port=81)]
        mgr.proxies.all = MagicMock(return_value=proxies)
        mgr.proxies.check = AsyncMock(side_effect=[True, False])
        msg = _make_message("/proxy_check all")
        await cmd_proxy_check(msg)
        assert "1/2" in _answer(msg)

    async def test_proxy_check_unknown(self):
        _make_manager()
        msg = _make_message("/proxy_check p9")
        await cmd_proxy_check(msg)
        assert "not found" in _answer(msg)
