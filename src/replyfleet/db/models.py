"""Data models — dataclasses for sessions, configs, events and log entries."""

from __future__ import annotations

import copy
import hashlib
import re
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from replyfleet.ai.prompts import DEFAULT_SYSTEM_PROMPT

SESSION_STATES = ("active", "inactive", "hibernated", "detached")
BOT_STATUSES = ("active", "inactive")
SEVERITIES = ("info", "success", "error", "highlight")
DIRECTIONS = ("theirs", "mine")

MAX_EVENT_TEXT = 1000

_WS_RE = re.compile(r"\s+")


@dataclass
class ReplyRule:
    """A keyword rule mapping incoming text to a canned reply.

    Attributes:
        pattern: Text (or regex) to look for in the incoming message.
        reply: Text to send when the rule matches.
        priority: Informational rank shown in the UI; list order decides matching.
        case_sensitive: Whether ``contains``/``exact`` matching honors case.
        match_type: ``'contains'`` (default), ``'exact'`` or ``'regex'``.
    """

    pattern: str = ""
    reply: str = ""
    priority: int = 0
    case_sensitive: bool = False
    match_type: str = "contains"


@dataclass
class AIConfig:
    """Per-session AI generation settings.

    Attributes:
        enabled: Whether unmatched messages are sent to the AI endpoint.
        provider: ``'openai'`` for any OpenAI-compatible endpoint, or ``'anthropic'``.
        endpoint: Base URL of the chat-completions API (``.../v1``).
        model: Model name sent with every request.
        system_prompt: System message prepended to every request.
        temperature: Sampling temperature.
        max_tokens: Completion token ceiling.
        include_history: Whether AgentMemory history is sent as context.
        history_depth: Number of most recent memory entries sent.
        request_timeout_s: Transport timeout for one HTTP attempt.
        max_retries: Extra attempts on transport errors and 5xx responses.
        retry_backoff_s: Base backoff between attempts (doubles each retry).
    """

    enabled: bool = False
    provider: str = "openai"
    endpoint: str = "http://localhost:8080/v1"
    model: str = "local-model"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.7
    max_tokens: int = 150
    include_history: bool = True
    history_depth: int = 10
    request_timeout_s: float = 25.0
    max_retries: int = 2
    retry_backoff_s: float = 1.0


@dataclass
class SessionConfig:
    """Per-session bot configuration. Read-only while an agent poll runs."""

    entry_url: str = "https://www.instagram.com/direct/inbox/"
    auto_start: bool = False
    reply_rules: list[ReplyRule] = field(default_factory=list)
    typing_delay_ms: tuple[int, int] = (50, 150)
    pre_reply_delay_ms: tuple[int, int] = (2000, 6000)
    max_replies_per_minute: int = 5
    max_replies_per_hour: int = 30
    max_reply_length: int = 500
    skip_probability: float = 0.15
    active_hours: tuple[str, str] | None = None
    own_handle: str | None = None
    ai: AIConfig | None = None


@dataclass
class Fingerprint:
    """Outbound client signature applied to a session's browser context."""

    user_agent: str
    platform: str = "Win32"
    viewport: tuple[int, int] = (1366, 768)
    locale: str = "en-US"
    timezone: str = "America/New_York"
    hardware_concurrency: int = 8
    device_memory: int = 8


@dataclass
class ProxyConfig:
    """A network egress binding from the proxy pool."""

    id: str
    host: str
    port: int
    protocol: str = "http"
    username: str | None = None
    password: str | None = None
    status: str = "unknown"  # 'unknown', 'connected', 'failed'
    last_error: str | None = None

    @property
    def server(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class Session:
    """One isolated automated identity.

    Attributes:
        id: Opaque hex id.
        name: Display name.
        partition: Isolation partition key (``session_<id>``); immutable.
        fingerprint: Client signature used by the browsing surface.
        proxy: Egress binding, or None for direct connections.
        config: Per-session configuration; None falls back to the default.
        state: One of ``'active'``, ``'inactive'``, ``'hibernated'``, ``'detached'``.
        bot_status: ``'active'`` when the agent is requested to run.
        host_id: Execution host holding the surface while detached.
        created_at: ISO timestamp of creation.
        last_active_at: ISO timestamp of the last lifecycle change.
    """

    id: str
    name: str
    partition: str
    fingerprint: Fingerprint
    proxy: ProxyConfig | None = None
    config: SessionConfig | None = None
    state: str = "inactive"
    bot_status: str = "inactive"
    host_id: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_active_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass(frozen=True)
class EventId:
    """Derived identity of a conversational event (counterpart + content digest)."""

    counterpart: str
    fingerprint: str


def normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip().lower()


def derive_event_id(counterpart: str, text: str) -> EventId:
    """Build the dedup key for a message from its counterpart and content.

    Args:
        counterpart: Handle of the other participant.
        text: Message text; whitespace and case are normalized first.

    Returns:
        A hashable ``EventId``.
    """
    digest = hashlib.sha1(normalize_text(text).encode("utf-8")).hexdigest()[:20]
    return EventId(counterpart=counterpart.strip().lower(), fingerprint=digest)


@dataclass
class ConversationalEvent:
    """A detected unit of incoming activity."""

    id: EventId
    counterpart: str
    author: str
    text: str
    outgoing: bool = False
    element: Any = None


def make_event(
    counterpart: str,
    text: str,
    author: str | None = None,
    outgoing: bool = False,
    element: Any = None,
) -> ConversationalEvent:
    text = (text or "").strip()[:MAX_EVENT_TEXT]
    return ConversationalEvent(
        id=derive_event_id(counterpart, text),
        counterpart=counterpart,
        author=author or counterpart,
        text=text,
        outgoing=outgoing,
        element=element,
    )


@dataclass
class MemoryEntry:
    direction: str  # 'theirs' or 'mine'
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class LogEntry:
    message: str
    severity: str = "info"
    timestamp: float = field(default_factory=time.time)
    session_id: str | None = None


# ── Serialization ──


def _known(cls, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _pair(value: Any, default: tuple) -> tuple:
    if value is None:
        return default
    lo, hi = value
    return (lo, hi)


def config_from_dict(data: dict[str, Any] | None) -> SessionConfig:
    """Build a SessionConfig from a plain dict, ignoring unknown keys."""
    data = dict(data or {})
    rules = [
        r if isinstance(r, ReplyRule) else ReplyRule(**_known(ReplyRule, r))
        for r in data.pop("reply_rules", None) or []
    ]
    ai = data.pop("ai", None)
    if isinstance(ai, dict):
        ai = AIConfig(**_known(AIConfig, ai))
    defaults = SessionConfig()
    kwargs = _known(SessionConfig, data)
    kwargs["typing_delay_ms"] = _pair(
        kwargs.get("typing_delay_ms"), defaults.typing_delay_ms
    )
    kwargs["pre_reply_delay_ms"] = _pair(
        kwargs.get("pre_reply_delay_ms"), defaults.pre_reply_delay_ms
    )
    if kwargs.get("active_hours"):
        kwargs["active_hours"] = _pair(kwargs["active_hours"], None)
    return SessionConfig(reply_rules=rules, ai=ai, **kwargs)


def config_to_dict(config: SessionConfig) -> dict[str, Any]:
    return asdict(config)


def clone_config(config: SessionConfig) -> SessionConfig:
    return copy.deepcopy(config)


def session_to_dict(session: Session) -> dict[str, Any]:
    return asdict(session)


def session_from_dict(data: dict[str, Any]) -> Session:
    data = dict(data)
    fp = data.pop("fingerprint")
    if isinstance(fp, dict):
        fp = Fingerprint(**_known(Fingerprint, fp))
        fp.viewport = tuple(fp.viewport)
    proxy = data.pop("proxy", None)
    if isinstance(proxy, dict):
        proxy = ProxyConfig(**_known(ProxyConfig, proxy))
    config = data.pop("config", None)
    if isinstance(config, dict):
        config = config_from_dict(config)
    return Session(
        fingerprint=fp, proxy=proxy, config=config, **_known(Session, data)
    )
