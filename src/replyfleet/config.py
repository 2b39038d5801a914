"""Configuration loader — .env secrets + config.yaml preferences."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from replyfleet.db.models import SessionConfig, config_from_dict

# Paths
REPLYFLEET_HOME = Path.home() / ".replyfleet"
ENV_PATH = REPLYFLEET_HOME / ".env"
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_YAML_PATH = PROJECT_ROOT / "config.yaml"
DB_PATH = REPLYFLEET_HOME / "replyfleet.db"
DATA_DIR = REPLYFLEET_HOME / "data"


def _load_yaml(path: Path) -> dict[str, Any]:
    if path.exists():
        with open(path) as f:
            return yaml.safe_load(f) or {}
    return {}


class Config:
    """Singleton configuration loaded from .env + config.yaml."""

    _instance: Config | None = None

    def __new__(cls) -> Config:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._loaded = False
        return cls._instance

    def load(self) -> None:
        if self._loaded:
            return
        load_dotenv(ENV_PATH)

        # Secrets
        self.telegram_bot_token: str = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        self.telegram_user_id: int = int(os.environ.get("TELEGRAM_USER_ID", "0"))
        self.ai_api_key: str = os.environ.get("AI_API_KEY", "")
        self.anthropic_api_key: str = os.environ.get("ANTHROPIC_API_KEY", "")
        self.log_level: str = os.environ.get("LOG_LEVEL", "INFO")

        # YAML preferences
        self._yaml = _load_yaml(CONFIG_YAML_PATH)

        self._loaded = True

    def validate(self) -> list[str]:
        """Return list of missing required config values."""
        missing = []
        if not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.telegram_user_id:
            missing.append("TELEGRAM_USER_ID")
        return missing

    # ── Typed accessors ──

    @property
    def sessions(self) -> dict[str, Any]:
        return self._yaml.get("sessions", {})

    @property
    def max_concurrent_sessions(self) -> int:
        return self.sessions.get("max_concurrent", 10)

    @property
    def default_session_name(self) -> str:
        return self.sessions.get("default_name", "Session 1")

    @property
    def browser_config(self) -> dict[str, Any]:
        return self._yaml.get("browser", {})

    @property
    def headless(self) -> bool:
        return bool(self.browser_config.get("headless", False))

    @property
    def data_dir(self) -> Path:
        raw = self.browser_config.get("data_dir")
        return Path(raw).expanduser() if raw else DATA_DIR

    @property
    def agent_config(self) -> dict[str, Any]:
        return self._yaml.get("agent", {})

    @property
    def poll_interval_ms(self) -> int:
        return self.agent_config.get("poll_interval_ms", 8000)

    @property
    def poll_jitter_ms(self) -> int:
        return self.agent_config.get("poll_jitter_ms", 4000)

    @property
    def monitor_interval_ms(self) -> int:
        return self.agent_config.get("monitor_interval_ms", 2500)

    @property
    def ai_wait_s(self) -> float:
        return float(self.agent_config.get("ai_wait_s", 30))

    @property
    def bridge_config(self) -> dict[str, Any]:
        return self._yaml.get("bridge", {})

    @property
    def bridge_poll_interval_ms(self) -> int:
        return self.bridge_config.get("poll_interval_ms", 200)

    @property
    def ai_config(self) -> dict[str, Any]:
        return self._yaml.get("ai", {})

    @property
    def defaults(self) -> dict[str, Any]:
        return self._yaml.get("defaults", {})

    @property
    def notifications_config(self) -> dict[str, Any]:
        return self._yaml.get("notifications", {})

    @property
    def batch_window_s(self) -> float:
        return float(self.notifications_config.get("batch_window_s", 2))

    @property
    def logging_config(self) -> dict[str, Any]:
        return self._yaml.get("logging", {})

    def default_session_config(self) -> SessionConfig:
        """Process-wide default session config: built-ins overlaid with YAML.

        The ``ai`` YAML section seeds the AI sub-config; ``defaults.ai`` wins
        over it when both are present.
        """
        seed = dict(self.defaults)
        ai_seed = {**self.ai_config, **(seed.get("ai") or {})}
        if ai_seed:
            seed["ai"] = ai_seed
        return config_from_dict(seed)


def get_config() -> Config:
    """Get the singleton config, loading it if needed."""
    cfg = Config()
    cfg.load()
    return cfg
