"""Message formatting — emoji labels, monospace blocks, HTML mode."""

from __future__ import annotations

import html
from datetime import datetime

from replyfleet.db.models import LogEntry, ProxyConfig, Session, SessionConfig

STATE_MAP = {
    "active": "🟢 Active",
    "inactive": "⚪ Inactive",
    "hibernated": "💤 Hibernated",
    "detached": "🛰 Detached",
}

SEVERITY_EMOJI = {
    "info": "•",
    "success": "✅",
    "error": "🔴",
    "highlight": "⭐",
}

PROXY_STATUS_EMOJI = {"unknown": "❔", "connected": "🟢", "failed": "🔴"}


def session_label(session: Session) -> str:
    """Format a session label as bot emoji + name.

    Args:
        session: Session dataclass.

    Returns:
        String like ``'🤖 Main account'``.
    """
    emoji = "🤖" if session.bot_status == "active" else "👤"
    return f"{emoji} {html.escape(session.name)}"


def state_line(session: Session) -> str:
    """Format a session's lifecycle state, naming the host when detached."""
    text = STATE_MAP.get(session.state, session.state)
    if session.state == "detached" and session.host_id:
        text += f" ({html.escape(session.host_id)})"
    return text


def bot_line(session: Session) -> str:
    return "▶️ Running" if session.bot_status == "active" else "⏸ Stopped"


def uptime_str(timestamp: str) -> str:
    """Calculate human-readable elapsed time from an ISO timestamp.

    Args:
        timestamp: ISO 8601 timestamp string.

    Returns:
        String like ``'2h 15m'``, or ``'unknown'`` on parse failure.
    """
    try:
        start = datetime.fromisoformat(timestamp)
        delta = datetime.now() - start
        hours = int(delta.total_seconds() // 3600)
        minutes = int((delta.total_seconds() % 3600) // 60)
        return f"{hours}h {minutes:02d}m"
    except (ValueError, TypeError):
        return "unknown"


def format_session_block(index: int, session: Session) -> str:
    """Format a single session block for the /sessions list.

    Args:
        index: 1-based position in the list (usable as a reference).
        session: Session dataclass.

    Returns:
        Multi-line HTML string with state, bot, proxy, and last activity.
    """
    proxy = (
        f"{html.escape(session.proxy.host)}:{session.proxy.port}"
        if session.proxy
        else "direct"
    )
    return "\n".join(
        [
            f"<b>#{index} {session_label(session)}</b> <code>{session.id[:8]}</code>",
            f"   ├ State: {state_line(session)}",
            f"   ├ Bot: {bot_line(session)}",
            f"   ├ Proxy: {proxy}",
            f"   └ Last change: {uptime_str(session.last_active_at)} ago",
        ]
    )


def format_session_list(sessions: list[Session]) -> str:
    if not sessions:
        return "📋 <b>Sessions</b> — none\n\nUse /new to create one."

    header = f"📋 <b>Sessions</b> — {len(sessions)} total\n"
    header += "─" * 35 + "\n\n"
    blocks = [format_session_block(i, s) for i, s in enumerate(sessions, 1)]
    return header + "\n\n".join(blocks)


def format_log_entry(entry: LogEntry) -> str:
    """Format one log entry as ``HH:MM:SS emoji message``."""
    ts = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
    emoji = SEVERITY_EMOJI.get(entry.severity, "•")
    return f"<code>{ts}</code> {emoji} {html.escape(entry.message)}"


def format_log_entries(entries: list[LogEntry], limit: int = 20) -> str:
    if not entries:
        return "No log entries yet."
    return "\n".join(format_log_entry(e) for e in entries[-limit:])


def format_config(session: Session, config: SessionConfig) -> str:
    """Format a session's bot configuration, including its reply rules.

    Args:
        session: Owning session (for the header).
        config: Effective config (the session's own or the default).

    Returns:
        HTML string.
    """
    ai = config.ai
    if ai and ai.enabled:
        ai_text = f"{html.escape(ai.provider)} · {mono(ai.model)}"
    else:
        ai_text = "off"
    hours = "-".join(config.active_hours) if config.active_hours else "always"
    lines = [
        f"⚙️ <b>Config</b> — {session_label(session)}\n",
        f"Entry URL: {mono(config.entry_url)}",
        f"Auto start: {'on' if config.auto_start else 'off'}",
        f"Own handle: {mono(config.own_handle) if config.own_handle else 'unset'}",
        f"Typing delay: {config.typing_delay_ms[0]}-{config.typing_delay_ms[1]} ms",
        f"Pre-reply delay: {config.pre_reply_delay_ms[0]}-{config.pre_reply_delay_ms[1]} ms",
        f"Limits: {config.max_replies_per_minute}/min, {config.max_replies_per_hour}/hour",
        f"Max reply length: {config.max_reply_length}",
        f"Skip probability: {config.skip_probability:.2f}",
        f"Active hours: {hours}",
        f"AI: {ai_text}",
        "",
        f"<b>Rules</b> ({len(config.reply_rules)})",
    ]
    if not config.reply_rules:
        lines.append("No rules. Use /rule add to create one.")
    for i, rule in enumerate(config.reply_rules, 1):
        lines.append(
            f"#{i} {mono(rule.pattern)} → {mono(rule.reply)} "
            f"({rule.match_type}, p{rule.priority})"
        )
    return "\n".join(lines)


def format_proxies(proxies: list[ProxyConfig], holders: dict[str, str]) -> str:
    """Format the proxy pool.

    Args:
        proxies: Proxies in the pool.
        holders: Proxy id to holding session name.
    """
    if not proxies:
        return "🌐 <b>Proxies</b> — none\n\nUse /proxy_add to import some."
    lines = [f"🌐 <b>Proxies</b> — {len(proxies)} total\n"]
    for p in proxies:
        emoji = PROXY_STATUS_EMOJI.get(p.status, "❔")
        line = f"{emoji} <code>{p.id}</code> {p.protocol}://{html.escape(p.host)}:{p.port}"
        holder = holders.get(p.id)
        if holder:
            line += f" → {html.escape(holder)}"
        if p.last_error:
            line += f"\n   └ {html.escape(p.last_error[:100])}"
        lines.append(line)
    return "\n".join(lines)


def format_event(emoji: str, session: Session | None, text: str) -> str:
    """Format an event notification message.

    Args:
        emoji: Leading emoji for the notification.
        session: Related session (or None for global events).
        text: Event description text.

    Returns:
        Formatted notification string.
    """
    if session:
        return f"{emoji} {session_label(session)}\n{text}"
    return f"{emoji} {html.escape(text)}"


def mono(text: str) -> str:
    """Wrap text in ``<code>`` HTML tags for monospace display.

    Args:
        text: Text to wrap.

    Returns:
        HTML string with ``<code>`` tags.
    """
    return f"<code>{html.escape(text)}</code>"


def bold(text: str) -> str:
    """Wrap text in ``<b>`` HTML tags for bold display.

    Args:
        text: Text to wrap.

    Returns:
        HTML string with ``<b>`` tags.
    """
    return f"<b>{text}</b>"
