"""Tests for configuration loader."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from replyfleet.config import DATA_DIR, Config, _load_yaml, get_config
from replyfleet.db.models import SessionConfig


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Reset the Config singleton between tests."""
    Config._instance = None
    yield
    Config._instance = None


def _bare_config(yaml_data: dict | None = None) -> Config:
    cfg = Config()
    cfg._loaded = True  # Skip real load
    cfg._yaml = yaml_data or {}
    cfg.telegram_bot_token = ""
    cfg.telegram_user_id = 0
    cfg.ai_api_key = ""
    cfg.anthropic_api_key = ""
    cfg.log_level = "INFO"
    return cfg


class TestLoadYaml:
    def test_load_existing_yaml(self, tmp_path):
        f = tmp_path / "test.yaml"
        f.write_text("key: value\nnested:\n  a: 1\n")
        result = _load_yaml(f)
        assert result["key"] == "value"
        assert result["nested"]["a"] == 1

    def test_load_nonexistent_yaml(self, tmp_path):
        assert _load_yaml(tmp_path / "nope.yaml") == {}

    def test_load_empty_yaml(self, tmp_path):
        f = tmp_path / "empty.yaml"
        f.write_text("")
        assert _load_yaml(f) == {}


class TestConfig:
    def test_singleton(self):
        assert Config() is Config()

    def test_load_reads_secrets(self):
        cfg = Config()
        with patch.dict(
            os.environ,
            {
                "TELEGRAM_BOT_TOKEN": "test-token",
                "TELEGRAM_USER_ID": "12345",
                "AI_API_KEY": "sk-local",
                "LOG_LEVEL": "DEBUG",
            },
        ):
            cfg.load()
        assert cfg.telegram_bot_token == "test-token"
        assert cfg.telegram_user_id == 12345
        assert cfg.ai_api_key == "sk-local"
        assert cfg.log_level == "DEBUG"

    def test_load_idempotent(self):
        cfg = Config()
        with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "first", "TELEGRAM_USER_ID": "1"}):
            cfg.load()
        with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "second"}):
            cfg.load()
        assert cfg.telegram_bot_token == "first"

    def test_validate_missing_values(self):
        cfg = _bare_config()
        missing = cfg.validate()
        assert "TELEGRAM_BOT_TOKEN" in missing
        assert "TELEGRAM_USER_ID" in missing

    def test_ai_keys_are_optional(self):
        cfg = _bare_config()
        cfg.telegram_bot_token = "tok"
        cfg.telegram_user_id = 1
        assert cfg.validate() == []

    def test_yaml_properties_with_defaults(self):
        cfg = _bare_config()
        assert cfg.max_concurrent_sessions == 10
        assert cfg.default_session_name == "Session 1"
        assert cfg.headless is False
        assert cfg.data_dir == DATA_DIR
        assert cfg.poll_interval_ms == 8000
        assert cfg.poll_jitter_ms == 4000
        assert cfg.monitor_interval_ms == 2500
        assert cfg.ai_wait_s == 30.0
        assert cfg.bridge_poll_interval_ms == 200
        assert cfg.batch_window_s == 2.0
        assert cfg.logging_config == {}

    def test_yaml_properties_with_values(self):
        cfg = _bare_config(
            {
                "sessions": {"max_concurrent": 3, "default_name": "Main"},
                "browser": {"headless": True, "data_dir": "~/fleet-data"},
                "agent": {"poll_interval_ms": 1000, "ai_wait_s": 12},
                "bridge": {"poll_interval_ms": 50},
                "notifications": {"batch_window_s": 0},
            }
        )
        assert cfg.max_concurrent_sessions == 3
        assert cfg.default_session_name == "Main"
        assert cfg.headless is True
        assert cfg.data_dir == Path("~/fleet-data").expanduser()
        assert cfg.poll_interval_ms == 1000
        assert cfg.ai_wait_s == 12.0
        assert cfg.bridge_poll_interval_ms == 50
        assert cfg.batch_window_s == 0.0

    def test_get_config_loads(self):
        with patch.dict(os.environ, {"TELEGRAM_BOT_TOKEN": "tok", "TELEGRAM_USER_ID": "1"}):
            cfg = get_config()
        assert cfg.telegram_bot_token == "tok"


class TestDefaultSessionConfig:
    def test_builtin_defaults(self):
        config = _bare_config().default_session_config()
        assert isinstance(config, SessionConfig)
        assert config == SessionConfig()

    def test_yaml_defaults_overlay(self):
        cfg = _bare_config(
            {
                "defaults": {
                    "entry_url": "https://www.threads.net/activity",
                    "skip_probability": 0,
                    "typing_delay_ms": [10, 20],
                    "reply_rules": [{"pattern": "price", "reply": "DM sent"}],
                }
            }
        )
        config = cfg.default_session_config()
        assert config.entry_url == "https://www.threads.net/activity"
        assert config.skip_probability == 0
        assert config.typing_delay_ms == (10, 20)
        assert config.reply_rules[0].pattern == "price"
        assert config.ai is None

    def test_ai_section_seeds_ai_config(self):
        cfg = _bare_config(
            {
                "ai": {"enabled": True, "model": "llama-3"},
                "defaults": {"ai": {"model": "qwen"}},
            }
        )
        config = cfg.default_session_config()
        assert config.ai.enabled is True
        assert config.ai.model == "qwen"

    def test_each_call_returns_fresh_copy(self):
        cfg = _bare_config()
        a = cfg.default_session_config()
        a.reply_rules.append(None)
        assert cfg.default_session_config().reply_rules == []
